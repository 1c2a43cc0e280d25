from .base import ActionResponse, ActionWorker, ProjectConflictError, WorkerMetrics, setup_logging
from .entry import BulkCopyAction, InitiatePromoteAction
from .discovery import DiscoveryWorker
from .copy_worker import CopyWorker
from .process_worker import ProcessContentWorker
from .promote_worker import PromoteWorker
from .preview_worker import PromotedPreviewWorker

PIPELINE_WORKERS = [
    BulkCopyAction,
    InitiatePromoteAction,
    DiscoveryWorker,
    CopyWorker,
    ProcessContentWorker,
    PromoteWorker,
    PromotedPreviewWorker,
]

__all__ = [
    'ActionResponse',
    'ActionWorker',
    'ProjectConflictError',
    'WorkerMetrics',
    'setup_logging',
    'BulkCopyAction',
    'InitiatePromoteAction',
    'DiscoveryWorker',
    'CopyWorker',
    'ProcessContentWorker',
    'PromoteWorker',
    'PromotedPreviewWorker',
    'PIPELINE_WORKERS',
]
