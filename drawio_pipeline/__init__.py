# drawio_pipeline/__init__.py

# Expose key classes for easier importing
# This allows you to do: "from drawio_pipeline import DiagramProcessor, AppConfig"
# Instead of: "from drawio_pipeline.pipelines.processing import DiagramProcessor"

from .config import AppConfig, ConfigurationError
from .registry import IdentifierRegistry, extract_identifier
from .versioning import VersionLedger, Version
from .changelog import Changelog, ChangelogEntry
from .store import KeyValueStore, MappingFileStore, CounterFileStore, MemoryStore
from .pipelines.processing import DiagramProcessor, RunSummary

# Version of the pipeline package
__version__ = "1.0.0"

# Set up a default logging handler to avoid "No handler found" warnings
import logging
logging.getLogger(__name__).addHandler(logging.NullHandler())
