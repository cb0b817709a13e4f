from .git import GitClient, CommitInfo, GitError
from .sharepoint import (
    SharePointClient,
    SharePointError,
    SharePointAuthError,
    SharePointUploadError,
    UploadResult,
    UPLOAD_PATH_SHAPES,
)
from .teams import TeamsNotifier, MessageCard

__all__ = [
    'GitClient',
    'CommitInfo',
    'GitError',
    'SharePointClient',
    'SharePointError',
    'SharePointAuthError',
    'SharePointUploadError',
    'UploadResult',
    'UPLOAD_PATH_SHAPES',
    'TeamsNotifier',
    'MessageCard',
]
