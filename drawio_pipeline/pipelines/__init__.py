from .processing import (
    DiagramProcessor,
    FileOutcome,
    ProcessingStatus,
    RunSummary,
    ChangeDetectionError,
)
from .summary import log_summary, render_markdown, write_step_summary

__all__ = [
    'DiagramProcessor',
    'FileOutcome',
    'ProcessingStatus',
    'RunSummary',
    'ChangeDetectionError',
    'log_summary',
    'render_markdown',
    'write_step_summary',
]
