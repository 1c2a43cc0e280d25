"""
Typed documents persisted in the state store, plus the validation layer used
on every read.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .store import NotFoundError, StateStore

logger = logging.getLogger(__name__)


class StateCorruptionError(Exception):
    """Raised when a state document does not have the expected shape"""
    pass


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ProjectStatus(str, Enum):
    """Project lifecycle, in stage order"""
    INITIATED = "initiated"
    FRAGMENT_DISCOVERY_COMPLETED = "fragment_discovery_completed"
    NON_PROCESSING_BATCHES_COPIED = "non_processing_batches_copied"
    PROCESSED = "processed"
    PROCESS_CONTENT_IN_PROGRESS = "process_content_in_progress"
    PROMOTE_IN_PROGRESS = "promote_in_progress"
    PROMOTED = "promoted"
    PARTIALLY_PROMOTED = "partially_promoted"
    PROMOTE_FAILED = "promote_failed"
    PROMOTED_PREVIEW_IN_PROGRESS = "promoted_preview_in_progress"
    PROMOTED_PREVIEW_COMPLETED = "promoted_preview_completed"


# Outcomes of the promote stage share one rank
PROJECT_STAGE_RANK: Dict[str, int] = {
    ProjectStatus.INITIATED.value: 0,
    ProjectStatus.FRAGMENT_DISCOVERY_COMPLETED.value: 1,
    ProjectStatus.NON_PROCESSING_BATCHES_COPIED.value: 2,
    ProjectStatus.PROCESSED.value: 3,
    ProjectStatus.PROCESS_CONTENT_IN_PROGRESS.value: 4,
    ProjectStatus.PROMOTE_IN_PROGRESS.value: 5,
    ProjectStatus.PROMOTED.value: 6,
    ProjectStatus.PARTIALLY_PROMOTED.value: 6,
    ProjectStatus.PROMOTE_FAILED.value: 6,
    ProjectStatus.PROMOTED_PREVIEW_IN_PROGRESS.value: 7,
    ProjectStatus.PROMOTED_PREVIEW_COMPLETED.value: 8,
}

PROMOTION_OUTCOMES = (
    ProjectStatus.PROMOTED.value,
    ProjectStatus.PARTIALLY_PROMOTED.value,
    ProjectStatus.PROMOTE_FAILED.value,
)


def stage_rank(status: str) -> int:
    try:
        return PROJECT_STAGE_RANK[status]
    except KeyError:
        raise StateCorruptionError(f"Unknown project status: {status}")


class BatchStatus(str, Enum):
    INITIATED = "initiated"
    COPY_IN_PROGRESS = "copy_in_progress"
    COPIED = "copied"
    PROCESS_IN_PROGRESS = "process_in_progress"
    PROCESSED = "processed"
    PROMOTE_IN_PROGRESS = "promote_in_progress"
    PROMOTED = "promoted"
    ERROR = "error"


class FileType(str, Enum):
    DOCX = "docx"
    EXCEL = "excel"
    OTHER = "other"


class WorkAction(str, Enum):
    PROMOTE = "promote"
    COPY = "copy"


class StatusEntry(BaseModel):
    model_config = ConfigDict(extra='allow')

    stepName: str
    status: str
    timestamp: str = Field(default_factory=utc_now)


class ProjectStatusDocument(BaseModel):
    model_config = ConfigDict(extra='allow')

    status: ProjectStatus
    params: Dict[str, Any] = Field(default_factory=dict)
    createdTime: str = Field(default_factory=utc_now)
    statuses: List[StatusEntry] = Field(default_factory=list)


class QueueEntry(BaseModel):
    projectPath: str
    status: ProjectStatus
    createdTime: str = Field(default_factory=utc_now)


class WorkItem(BaseModel):
    """One file to move from the graybox tree to production."""
    model_config = ConfigDict(extra='allow')

    sourcePath: str
    destinationPath: str
    fileType: FileType = FileType.OTHER
    action: WorkAction = WorkAction.COPY
    category: str = "page_no_fragments"
    priority: str = "low"
    hasFragments: bool = False
    nestedFragments: List[str] = Field(default_factory=list)
    mdPath: Optional[str] = None


class FailureRecord(BaseModel):
    model_config = ConfigDict(extra='allow')

    path: str
    error: str
    locked: bool = False


class PreviewTrackingEntry(BaseModel):
    filePath: str
    promotedAt: str = Field(default_factory=utc_now)
    previewStatus: str = "pending"
    fileType: str = "promoted"
    previewedAt: Optional[str] = None
    previewResult: Optional[Dict[str, Any]] = None


class NewerDestinationEntry(BaseModel):
    path: str
    sourceCreated: Optional[str] = None
    destinationModified: Optional[str] = None
    detectedAt: str = Field(default_factory=utc_now)


QUEUE_ADAPTER = TypeAdapter(List[QueueEntry])
BATCH_STATUS_ADAPTER = TypeAdapter(Dict[str, BatchStatus])
BATCH_FILE_ADAPTER = TypeAdapter(List[WorkItem])
SUCCESS_RECORD_ADAPTER = TypeAdapter(Dict[str, List[str]])
FAILURE_RECORD_ADAPTER = TypeAdapter(List[FailureRecord])
PREVIEW_TRACKING_ADAPTER = TypeAdapter(List[PreviewTrackingEntry])
NEWER_DESTINATION_ADAPTER = TypeAdapter(List[NewerDestinationEntry])
PROJECT_STATUS_ADAPTER = TypeAdapter(ProjectStatusDocument)


def validate_document(
    document: Any,
    adapter: TypeAdapter,
    default: Callable[[], Any],
    path: str,
    recover: bool,
    strict: bool = False,
) -> Any:
    """
    Validate a raw document. At a recovery point (recover=True, strict off)
    a malformed document is replaced with default() and logged; anywhere
    else the mismatch raises StateCorruptionError.
    """
    try:
        return adapter.validate_python(document)
    except ValidationError as e:
        if recover and not strict:
            logger.warning(f"Malformed state document {path}, using default: {e.error_count()} error(s)")
            return default()
        raise StateCorruptionError(f"Malformed state document {path}: {e}") from e


def load_document(
    store: StateStore,
    path: str,
    adapter: TypeAdapter,
    default: Callable[[], Any],
    recover: bool = True,
    strict: bool = False,
) -> Any:
    """Read and validate a document; a missing document yields default()."""
    try:
        document = store.read(path)
    except NotFoundError:
        return default()
    except ValueError as e:
        # Undecodable JSON is treated like any other shape mismatch
        if recover and not strict:
            logger.warning(f"Unreadable state document {path}, using default: {e}")
            return default()
        raise StateCorruptionError(f"Unreadable state document {path}: {e}") from e
    return validate_document(document, adapter, default, path, recover, strict)


def dump(value: Any) -> Any:
    """JSON-ready form of a model (or list/dict of models)."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode='json', exclude_none=True)
    if isinstance(value, list):
        return [dump(v) for v in value]
    if isinstance(value, dict):
        return {k: dump(v) for k, v in value.items()}
    if isinstance(value, Enum):
        return value.value
    return value
