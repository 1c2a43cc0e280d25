from .store import StateStore, NotFoundError, LockTimeoutError
from .models import (
    BatchStatus,
    FailureRecord,
    FileType,
    PreviewTrackingEntry,
    ProjectStatus,
    ProjectStatusDocument,
    QueueEntry,
    StateCorruptionError,
    WorkAction,
    WorkItem,
)
from .tracker import ProjectTracker

__all__ = [
    'StateStore',
    'NotFoundError',
    'LockTimeoutError',
    'BatchStatus',
    'FailureRecord',
    'FileType',
    'PreviewTrackingEntry',
    'ProjectStatus',
    'ProjectStatusDocument',
    'QueueEntry',
    'StateCorruptionError',
    'WorkAction',
    'WorkItem',
    'ProjectTracker',
]
