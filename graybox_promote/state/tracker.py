"""
Project and batch lifecycle on top of the state store.

All status changes go through this module so that:
- project transitions are monotonic through the stage order
- the project queue is updated together with the project status document
- batch claims are compare-and-set from an exact expected status
- result records are appended with de-duplication (safe to replay)
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from .models import (
    BATCH_FILE_ADAPTER,
    BATCH_STATUS_ADAPTER,
    FAILURE_RECORD_ADAPTER,
    NEWER_DESTINATION_ADAPTER,
    PREVIEW_TRACKING_ADAPTER,
    PROJECT_STATUS_ADAPTER,
    PROMOTION_OUTCOMES,
    QUEUE_ADAPTER,
    SUCCESS_RECORD_ADAPTER,
    BatchStatus,
    FailureRecord,
    NewerDestinationEntry,
    PreviewTrackingEntry,
    ProjectStatus,
    ProjectStatusDocument,
    QueueEntry,
    StateCorruptionError,
    StatusEntry,
    WorkItem,
    dump,
    load_document,
    stage_rank,
    utc_now,
    validate_document,
)
from .store import NotFoundError, StateStore

logger = logging.getLogger(__name__)

STATE_PREFIX = "graybox_promote"
QUEUE_PATH = f"{STATE_PREFIX}/project_queue.json"

PROCESSING_PREFIX = "processing_batch"
NON_PROCESSING_PREFIX = "non_processing_batch"

# Result record names
COPIED_PATHS = "copied_paths"
COPY_ERRORS = "copy_errors"
PROCESSED_PATHS = "processed_paths"
PROCESS_ERRORS = "process_errors"
PROMOTED_PATHS = "promoted_paths"
PROMOTE_ERRORS = "promote_errors"
PREVIEW_ERRORS = "preview_errors"
PROMOTED_PREVIEW_ERRORS = "promoted_preview_errors"
PROMOTED_FILES_FOR_PREVIEW = "promoted_files_for_preview"
COPIED_FILES_FOR_PREVIEW = "copied_files_for_preview"
NEWER_DESTINATION_FILES = "newer_destination_files"

# Plain documents (written whole, not appended)
PATH_DETAILS = "path_details"
FRAGMENT_REPORT = "consolidated-fragment-data"
PREVIEW_STATUS = "preview_status"
PROMOTED_PREVIEW_STATUS = "promoted_preview_status"
DISCOVERY_CLAIM = "discovery_claim"

MAX_CAS_ATTEMPTS = 10


class ProjectTracker:
    """Reads and advances project / batch state for one store."""

    def __init__(self, store: StateStore, strict: bool = False):
        self.store = store
        self.strict = strict

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    @staticmethod
    def project_dir(project: str) -> str:
        return f"{STATE_PREFIX}/{project.strip('/')}"

    def status_path(self, project: str) -> str:
        return f"{self.project_dir(project)}/status.json"

    def batch_status_path(self, project: str) -> str:
        return f"{self.project_dir(project)}/batch_status.json"

    def batch_file_path(self, project: str, batch_name: str) -> str:
        return f"{self.project_dir(project)}/batches/{batch_name}.json"

    def batch_index_path(self, project: str) -> str:
        return f"{self.project_dir(project)}/batches/batches_index.json"

    def record_path(self, project: str, record: str) -> str:
        return f"{self.project_dir(project)}/{record}.json"

    def artifact_path(self, project: str, destination_path: str) -> str:
        return f"{self.project_dir(project)}/docx/{destination_path.lstrip('/')}"

    # ------------------------------------------------------------------
    # Projects and the queue
    # ------------------------------------------------------------------

    def create_project(self, project: str, params: Dict[str, Any]) -> ProjectStatusDocument:
        """Write the initial status document and enqueue the project."""
        document = ProjectStatusDocument(
            status=ProjectStatus.INITIATED,
            params=params,
            statuses=[StatusEntry(stepName="initiated", status=ProjectStatus.INITIATED.value)],
        )
        self.store.write(self.status_path(project), dump(document))
        self._upsert_queue(project, ProjectStatus.INITIATED, document.createdTime)
        logger.info(f"Created project {project}")
        return document

    def project_exists(self, project: str) -> bool:
        return self.store.exists(self.status_path(project))

    def reset_project(self, project: str) -> None:
        """Drop every document of a previous run (queue entry is rewritten on create)."""
        self.store.remove_tree(self.project_dir(project))
        logger.info(f"Cleared previous state for {project}")

    def get_project(self, project: str) -> ProjectStatusDocument:
        try:
            raw = self.store.read(self.status_path(project))
        except NotFoundError:
            raise NotFoundError(f"Project {project} has no status document")
        return validate_document(raw, PROJECT_STATUS_ADAPTER, dict, self.status_path(project), recover=False)

    def queue(self) -> List[QueueEntry]:
        return load_document(self.store, QUEUE_PATH, QUEUE_ADAPTER, list, recover=True, strict=self.strict)

    def transition_project(
        self,
        project: str,
        target: ProjectStatus,
        step_name: Optional[str] = None,
        expected: Optional[ProjectStatus] = None,
        allow_repreview: bool = False,
        **details: Any,
    ) -> bool:
        """
        Move a project to target if that does not regress its stage.

        With expected set, the move only happens when the current status is
        exactly expected (used to claim a project for one stage).
        Returns True when this call performed the transition.
        """
        target = ProjectStatus(target)
        path = self.status_path(project)

        for _ in range(MAX_CAS_ATTEMPTS):
            raw, version = self.store.read_versioned(path)
            if raw is None:
                raise NotFoundError(f"Project {project} has no status document")
            document = validate_document(raw, PROJECT_STATUS_ADAPTER, dict, path, recover=False)
            current = document.status

            if expected is not None and current != ProjectStatus(expected):
                logger.info(f"[{project}] Not moving to {target.value}: status is {current.value}, expected {ProjectStatus(expected).value}")
                return False

            repreview = (
                allow_repreview
                and current == ProjectStatus.PROMOTED_PREVIEW_COMPLETED
                and target == ProjectStatus.PROMOTED_PREVIEW_IN_PROGRESS
            )
            if not repreview and stage_rank(target.value) <= stage_rank(current.value):
                logger.warning(f"[{project}] Refusing transition {current.value} -> {target.value}")
                return False

            document.status = target
            entry = {"stepName": step_name or target.value, "status": target.value, "timestamp": utc_now()}
            entry.update(details)
            document.statuses.append(StatusEntry(**entry))

            if self.store.compare_and_set(path, dump(document), version):
                self._upsert_queue(project, target, document.createdTime)
                logger.info(f"[{project}] Status {current.value} -> {target.value}")
                return True
            logger.debug(f"[{project}] Concurrent status update, retrying")

        raise StateCorruptionError(f"Could not update status for {project} after {MAX_CAS_ATTEMPTS} attempts")

    def advance_project(self, project: str, target: ProjectStatus, **details: Any) -> bool:
        """transition_project, but a project already at or past target is not an error."""
        current = self.get_project(project).status
        if stage_rank(current.value) >= stage_rank(ProjectStatus(target).value):
            logger.debug(f"[{project}] Already at {current.value}, not advancing to {ProjectStatus(target).value}")
            return False
        return self.transition_project(project, target, **details)

    def add_status_entry(self, project: str, step_name: str, **details: Any) -> None:
        """Append an informational entry without changing the status."""
        def mutate(raw):
            document = validate_document(raw, PROJECT_STATUS_ADAPTER, dict, self.status_path(project), recover=False)
            entry = {"stepName": step_name, "status": document.status.value, "timestamp": utc_now()}
            entry.update(details)
            document.statuses.append(StatusEntry(**entry))
            return dump(document)

        self.store.update(self.status_path(project), mutate, default=dict)

    def _upsert_queue(self, project: str, status: ProjectStatus, created_time: str) -> None:
        def mutate(raw):
            entries = validate_document(raw, QUEUE_ADAPTER, list, QUEUE_PATH, recover=True, strict=self.strict)
            for entry in entries:
                if entry.projectPath == project:
                    entry.status = status
                    break
            else:
                entries.append(QueueEntry(projectPath=project, status=status, createdTime=created_time))
            return dump(entries)

        self.store.update(QUEUE_PATH, mutate, default=list)

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def claim_discovery(self, project: str) -> bool:
        """Create the discovery claim marker. False when another run already holds it."""
        claimed = self.store.compare_and_set(
            self.record_path(project, DISCOVERY_CLAIM), {'claimedTime': utc_now()}, None,
        )
        if not claimed:
            logger.info(f"[{project}] Discovery already claimed")
        return claimed

    def release_discovery(self, project: str) -> None:
        """Drop the claim of a discovery run that failed, so a redelivery can retry it."""
        self.store.remove_tree(self.record_path(project, DISCOVERY_CLAIM))

    def write_batches(self, project: str, batches: Dict[str, List[WorkItem]], index: Dict[str, Any]) -> None:
        """Persist batch files, the batch index and initial batch statuses. Written once per run."""
        status_path = self.batch_status_path(project)
        if self.store.exists(status_path):
            raise StateCorruptionError(f"Batches for {project} were already written")
        for name, items in batches.items():
            self.store.write(self.batch_file_path(project, name), dump(items))
        self.store.write(self.batch_index_path(project), index)
        statuses = {name: BatchStatus.INITIATED.value for name in batches}
        if not self.store.compare_and_set(status_path, statuses, None):
            raise StateCorruptionError(f"Batch statuses for {project} were written concurrently")
        logger.info(f"[{project}] Wrote {len(batches)} batch files")

    def read_batch(self, project: str, batch_name: str) -> List[WorkItem]:
        path = self.batch_file_path(project, batch_name)
        try:
            raw = self.store.read(path)
        except NotFoundError:
            raise NotFoundError(f"Batch {batch_name} not found for {project}")
        return validate_document(raw, BATCH_FILE_ADAPTER, list, path, recover=False)

    def batch_statuses(self, project: str) -> Dict[str, BatchStatus]:
        return load_document(
            self.store, self.batch_status_path(project), BATCH_STATUS_ADAPTER, dict,
            recover=False, strict=self.strict,
        )

    def claim_batch(self, project: str, batch_name: str, expected: BatchStatus, target: BatchStatus) -> bool:
        """Compare-and-set a batch from expected to target. False if someone else owns it."""
        path = self.batch_status_path(project)
        for _ in range(MAX_CAS_ATTEMPTS):
            raw, version = self.store.read_versioned(path)
            statuses = validate_document(raw or {}, BATCH_STATUS_ADAPTER, dict, path, recover=False)
            current = statuses.get(batch_name)
            if current != expected:
                logger.info(f"[{project}] Batch {batch_name} is {current.value if current else 'missing'}, not {expected.value}; skipping claim")
                return False
            statuses[batch_name] = target
            if self.store.compare_and_set(path, dump(statuses), version):
                logger.info(f"[{project}] Claimed {batch_name}: {expected.value} -> {target.value}")
                return True
        return False

    def set_batch_status(self, project: str, batch_name: str, status: BatchStatus) -> None:
        def mutate(raw):
            statuses = validate_document(raw, BATCH_STATUS_ADAPTER, dict, self.batch_status_path(project), recover=False)
            statuses[batch_name] = status
            return dump(statuses)

        self.store.update(self.batch_status_path(project), mutate, default=dict)

    def batches_with_prefix(self, project: str, prefix: str) -> Dict[str, BatchStatus]:
        return {
            name: status for name, status in self.batch_statuses(project).items()
            if name.startswith(f"{prefix}_")
        }

    def all_batches_reach(self, project: str, prefix: str, status: BatchStatus) -> bool:
        """True when every batch with prefix has status (vacuously true for none)."""
        return all(s == status for s in self.batches_with_prefix(project, prefix).values())

    # ------------------------------------------------------------------
    # Result records
    # ------------------------------------------------------------------

    def append_success(self, project: str, record: str, batch_name: str, paths: Iterable[str]) -> Dict[str, List[str]]:
        """Concatenate paths into record[batch_name] without duplicates."""
        path = self.record_path(project, record)
        new_paths = list(paths)

        def mutate(raw):
            data = validate_document(raw, SUCCESS_RECORD_ADAPTER, dict, path, recover=True, strict=self.strict)
            existing = data.get(batch_name, [])
            for p in new_paths:
                if p not in existing:
                    existing.append(p)
            data[batch_name] = existing
            return data

        return self.store.update(path, mutate, default=dict)

    def read_success(self, project: str, record: str) -> Dict[str, List[str]]:
        return load_document(self.store, self.record_path(project, record), SUCCESS_RECORD_ADAPTER, dict, strict=self.strict)

    def append_failures(self, project: str, record: str, failures: Iterable[FailureRecord]) -> None:
        path = self.record_path(project, record)
        new_failures = list(failures)
        if not new_failures:
            return

        def mutate(raw):
            data = validate_document(raw, FAILURE_RECORD_ADAPTER, list, path, recover=True, strict=self.strict)
            seen = {(f.path, f.error) for f in data}
            for failure in new_failures:
                if (failure.path, failure.error) not in seen:
                    data.append(failure)
                    seen.add((failure.path, failure.error))
            return dump(data)

        self.store.update(path, mutate, default=list)

    def read_failures(self, project: str, record: str) -> List[FailureRecord]:
        return load_document(self.store, self.record_path(project, record), FAILURE_RECORD_ADAPTER, list, strict=self.strict)

    def append_preview_tracking(self, project: str, record: str, entries: Iterable[PreviewTrackingEntry]) -> None:
        path = self.record_path(project, record)
        new_entries = list(entries)
        if not new_entries:
            return

        def mutate(raw):
            data = validate_document(raw, PREVIEW_TRACKING_ADAPTER, list, path, recover=True, strict=self.strict)
            known = {e.filePath for e in data}
            for entry in new_entries:
                if entry.filePath not in known:
                    data.append(entry)
                    known.add(entry.filePath)
            return dump(data)

        self.store.update(path, mutate, default=list)

    def read_preview_tracking(self, project: str, record: str) -> List[PreviewTrackingEntry]:
        return load_document(self.store, self.record_path(project, record), PREVIEW_TRACKING_ADAPTER, list, strict=self.strict)

    def write_preview_tracking(self, project: str, record: str, entries: List[PreviewTrackingEntry]) -> None:
        self.store.write(self.record_path(project, record), dump(entries))

    def append_newer_destination(self, project: str, entry: NewerDestinationEntry) -> None:
        path = self.record_path(project, NEWER_DESTINATION_FILES)

        def mutate(raw):
            data = validate_document(raw, NEWER_DESTINATION_ADAPTER, list, path, recover=True, strict=self.strict)
            if all(e.path != entry.path for e in data):
                data.append(entry)
            return dump(data)

        self.store.update(path, mutate, default=list)

    def read_newer_destination(self, project: str) -> List[NewerDestinationEntry]:
        return load_document(
            self.store, self.record_path(project, NEWER_DESTINATION_FILES),
            NEWER_DESTINATION_ADAPTER, list, strict=self.strict,
        )

    def write_record(self, project: str, record: str, document: Any) -> None:
        self.store.write(self.record_path(project, record), dump(document))

    def read_record(self, project: str, record: str) -> Any:
        try:
            return self.store.read(self.record_path(project, record))
        except NotFoundError:
            raise NotFoundError(f"{record} not found for {project}")

    # ------------------------------------------------------------------
    # Promotion outcome
    # ------------------------------------------------------------------

    def finalize_promotion(self, project: str) -> Optional[ProjectStatus]:
        """
        Decide promoted / partially_promoted / promote_failed from the
        processing records and move the project there.
        """
        successes = sum(len(paths) for paths in self.read_success(project, PROMOTED_PATHS).values())
        failures = (
            len(self.read_failures(project, PROMOTE_ERRORS))
            + len(self.read_failures(project, PROCESS_ERRORS))
        )

        if failures == 0:
            outcome = ProjectStatus.PROMOTED
        elif successes == 0:
            outcome = ProjectStatus.PROMOTE_FAILED
        else:
            outcome = ProjectStatus.PARTIALLY_PROMOTED

        current = self.get_project(project).status
        if current.value in PROMOTION_OUTCOMES:
            return current
        moved = self.transition_project(
            project, outcome, step_name="promotion_completed",
            promotedCount=successes, failedCount=failures,
        )
        return outcome if moved else None
