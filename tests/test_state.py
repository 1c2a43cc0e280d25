import json

import pytest

from graybox_promote.state.models import (
    PROJECT_STAGE_RANK,
    BatchStatus,
    FailureRecord,
    PreviewTrackingEntry,
    ProjectStatus,
    StateCorruptionError,
    WorkItem,
)
from graybox_promote.state.store import NotFoundError, StateStore
from graybox_promote.state.tracker import (
    COPY_ERRORS,
    PROCESS_ERRORS,
    PROCESSING_PREFIX,
    PROMOTE_ERRORS,
    PROMOTED_FILES_FOR_PREVIEW,
    PROMOTED_PATHS,
    QUEUE_PATH,
    ProjectTracker,
)

PROJECT = "/site-graybox/a"


def corrupt(store: StateStore, path: str, document):
    store.write(path, document)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


def test_read_missing_document_raises(store):
    with pytest.raises(NotFoundError):
        store.read("graybox_promote/nothing.json")


def test_buffers_round_trip(store):
    store.write_stream("graybox_promote/p/docx/page.docx", [b"PK", b"\x03\x04"])

    assert store.read_buffer("graybox_promote/p/docx/page.docx") == b"PK\x03\x04"


def test_compare_and_set_rejects_stale_version(store):
    path = "graybox_promote/p/batch_status.json"
    store.write(path, {"processing_batch_1": "initiated"})
    _, version = store.read_versioned(path)

    assert store.compare_and_set(path, {"processing_batch_1": "process_in_progress"}, version)
    # Second writer still holds the old version
    assert not store.compare_and_set(path, {"processing_batch_1": "error"}, version)
    assert store.read(path) == {"processing_batch_1": "process_in_progress"}


def test_compare_and_set_none_means_create_only(store):
    path = "graybox_promote/p/claim.json"

    assert store.compare_and_set(path, {"owner": 1}, None)
    assert not store.compare_and_set(path, {"owner": 2}, None)


def test_update_is_read_modify_write(store):
    path = "graybox_promote/p/counter.json"
    for _ in range(3):
        store.update(path, lambda doc: {"n": doc.get("n", 0) + 1})

    assert store.read(path) == {"n": 3}


def test_paths_cannot_escape_root(store):
    with pytest.raises(ValueError):
        store.write("../outside.json", {})


def test_remove_tree(store):
    store.write("graybox_promote/p/status.json", {})
    store.remove_tree("graybox_promote/p")

    assert not store.exists("graybox_promote/p/status.json")


# ---------------------------------------------------------------------------
# Project lifecycle
# ---------------------------------------------------------------------------


def test_create_project_writes_status_and_queue(tracker):
    tracker.create_project(PROJECT, {"experienceName": "a"})

    assert tracker.get_project(PROJECT).status == ProjectStatus.INITIATED
    queue = tracker.queue()
    assert [(e.projectPath, e.status) for e in queue] == [(PROJECT, ProjectStatus.INITIATED)]


def test_project_status_never_regresses(tracker):
    tracker.create_project(PROJECT, {})
    events = [
        ProjectStatus.FRAGMENT_DISCOVERY_COMPLETED,
        ProjectStatus.INITIATED,
        ProjectStatus.NON_PROCESSING_BATCHES_COPIED,
        ProjectStatus.FRAGMENT_DISCOVERY_COMPLETED,
        ProjectStatus.PROCESSED,
        ProjectStatus.PROCESS_CONTENT_IN_PROGRESS,
        ProjectStatus.PROCESSED,
        ProjectStatus.PROMOTE_IN_PROGRESS,
        ProjectStatus.PARTIALLY_PROMOTED,
        ProjectStatus.PROMOTED,
        ProjectStatus.PROMOTED_PREVIEW_IN_PROGRESS,
        ProjectStatus.PROMOTED_PREVIEW_COMPLETED,
        ProjectStatus.PROMOTED_PREVIEW_IN_PROGRESS,
    ]

    ranks = []
    for event in events:
        tracker.transition_project(PROJECT, event)
        ranks.append(PROJECT_STAGE_RANK[tracker.get_project(PROJECT).status.value])

    assert ranks == sorted(ranks)
    assert tracker.get_project(PROJECT).status == ProjectStatus.PROMOTED_PREVIEW_COMPLETED
    # Promotion outcomes share a rank: the first one sticks
    statuses = [entry.status for entry in tracker.get_project(PROJECT).statuses]
    assert "partially_promoted" in statuses and "promoted" not in statuses


def test_repreview_is_the_only_backward_move(tracker):
    tracker.create_project(PROJECT, {})
    tracker.transition_project(PROJECT, ProjectStatus.PROMOTED_PREVIEW_COMPLETED)

    assert tracker.transition_project(
        PROJECT, ProjectStatus.PROMOTED_PREVIEW_IN_PROGRESS, allow_repreview=True,
    )
    assert not tracker.transition_project(PROJECT, ProjectStatus.PROCESSED, allow_repreview=True)
    assert tracker.queue()[0].status == ProjectStatus.PROMOTED_PREVIEW_IN_PROGRESS


def test_transition_with_expected_status_is_a_claim(tracker):
    tracker.create_project(PROJECT, {})
    tracker.transition_project(PROJECT, ProjectStatus.PROCESSED)

    assert tracker.transition_project(
        PROJECT, ProjectStatus.PROCESS_CONTENT_IN_PROGRESS, expected=ProjectStatus.PROCESSED,
    )
    assert not tracker.transition_project(
        PROJECT, ProjectStatus.PROMOTE_IN_PROGRESS, expected=ProjectStatus.PROCESSED,
    )


def test_status_entries_carry_details(tracker):
    tracker.create_project(PROJECT, {})
    tracker.transition_project(PROJECT, ProjectStatus.FRAGMENT_DISCOVERY_COMPLETED, processingBatches=3)

    entry = tracker.get_project(PROJECT).statuses[-1]
    assert entry.stepName == "fragment_discovery_completed"
    assert entry.model_dump()["processingBatches"] == 3


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------


def write_two_batches(tracker):
    items = [WorkItem(sourcePath=f"/a/p{i}.docx", destinationPath=f"/p{i}.docx") for i in range(3)]
    tracker.create_project(PROJECT, {})
    tracker.write_batches(
        PROJECT,
        {"processing_batch_1": items[:2], "processing_batch_2": items[2:]},
        {"processing": ["processing_batch_1", "processing_batch_2"]},
    )


def test_batch_claim_is_exclusive(tracker):
    write_two_batches(tracker)

    first = tracker.claim_batch(PROJECT, "processing_batch_1", BatchStatus.INITIATED, BatchStatus.PROCESS_IN_PROGRESS)
    second = tracker.claim_batch(PROJECT, "processing_batch_1", BatchStatus.INITIATED, BatchStatus.PROCESS_IN_PROGRESS)

    assert (first, second) == (True, False)
    assert tracker.batch_statuses(PROJECT)["processing_batch_2"] == BatchStatus.INITIATED


def test_batches_are_written_once(tracker):
    write_two_batches(tracker)
    tracker.claim_batch(PROJECT, "processing_batch_1", BatchStatus.INITIATED, BatchStatus.PROCESS_IN_PROGRESS)

    with pytest.raises(StateCorruptionError):
        tracker.write_batches(PROJECT, {"processing_batch_1": []}, {"processing": ["processing_batch_1"]})

    assert tracker.batch_statuses(PROJECT)["processing_batch_1"] == BatchStatus.PROCESS_IN_PROGRESS
    assert len(tracker.read_batch(PROJECT, "processing_batch_1")) == 2


def test_discovery_claim_is_exclusive_until_released(tracker):
    tracker.create_project(PROJECT, {})

    assert tracker.claim_discovery(PROJECT)
    assert not tracker.claim_discovery(PROJECT)

    tracker.release_discovery(PROJECT)
    assert tracker.claim_discovery(PROJECT)


def test_all_batches_reach(tracker):
    write_two_batches(tracker)
    assert not tracker.all_batches_reach(PROJECT, PROCESSING_PREFIX, BatchStatus.PROCESSED)

    tracker.set_batch_status(PROJECT, "processing_batch_1", BatchStatus.PROCESSED)
    tracker.set_batch_status(PROJECT, "processing_batch_2", BatchStatus.PROCESSED)

    assert tracker.all_batches_reach(PROJECT, PROCESSING_PREFIX, BatchStatus.PROCESSED)
    # No batches with the prefix: vacuously true
    assert tracker.all_batches_reach(PROJECT, "non_processing_batch", BatchStatus.COPIED)


def test_batch_files_are_never_coerced(tracker, store):
    write_two_batches(tracker)
    corrupt(store, tracker.batch_file_path(PROJECT, "processing_batch_1"), {"not": "a list"})

    with pytest.raises(StateCorruptionError):
        tracker.read_batch(PROJECT, "processing_batch_1")


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


def test_success_record_append_is_idempotent(tracker):
    for _ in range(2):
        tracker.append_success(PROJECT, PROMOTED_PATHS, "processing_batch_1", ["/p0.docx", "/p1.docx"])

    assert tracker.read_success(PROJECT, PROMOTED_PATHS) == {"processing_batch_1": ["/p0.docx", "/p1.docx"]}


def test_failure_record_dedupes_path_and_error(tracker):
    failure = FailureRecord(path="/p0.docx", error="File is locked", locked=True)
    tracker.append_failures(PROJECT, PROMOTE_ERRORS, [failure])
    tracker.append_failures(PROJECT, PROMOTE_ERRORS, [failure, FailureRecord(path="/p0.docx", error="Upload failed")])

    errors = tracker.read_failures(PROJECT, PROMOTE_ERRORS)
    assert [(e.error, e.locked) for e in errors] == [("File is locked", True), ("Upload failed", False)]


def test_malformed_record_recovers_to_default(tracker, store):
    corrupt(store, tracker.record_path(PROJECT, COPY_ERRORS), {"oops": "object instead of list"})
    corrupt(store, tracker.record_path(PROJECT, PROMOTED_PATHS), ["list instead of object"])

    assert tracker.read_failures(PROJECT, COPY_ERRORS) == []
    assert tracker.read_success(PROJECT, PROMOTED_PATHS) == {}
    tracker.append_failures(PROJECT, COPY_ERRORS, [FailureRecord(path="/x", error="boom")])
    assert len(tracker.read_failures(PROJECT, COPY_ERRORS)) == 1


def test_unreadable_queue_recovers(tracker, store):
    store.write_stream(QUEUE_PATH, b"{not json")

    assert tracker.queue() == []


def test_strict_mode_disables_recovery(store):
    strict = ProjectTracker(store, strict=True)
    corrupt(store, strict.record_path(PROJECT, COPY_ERRORS), {"oops": 1})

    with pytest.raises(StateCorruptionError):
        strict.read_failures(PROJECT, COPY_ERRORS)


def test_status_document_is_never_coerced(tracker, store):
    tracker.create_project(PROJECT, {})
    corrupt(store, tracker.status_path(PROJECT), {"status": "somewhere_else"})

    with pytest.raises(StateCorruptionError):
        tracker.get_project(PROJECT)


def test_preview_tracking_dedupes_by_file(tracker):
    entry = PreviewTrackingEntry(filePath="/p0.docx")
    tracker.append_preview_tracking(PROJECT, PROMOTED_FILES_FOR_PREVIEW, [entry])
    tracker.append_preview_tracking(PROJECT, PROMOTED_FILES_FOR_PREVIEW, [entry])

    entries = tracker.read_preview_tracking(PROJECT, PROMOTED_FILES_FOR_PREVIEW)
    assert [(e.filePath, e.previewStatus) for e in entries] == [("/p0.docx", "pending")]


# ---------------------------------------------------------------------------
# Promotion outcome
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("promoted, promote_errors, process_errors, expected", [
    (["/p0.docx"], [], [], ProjectStatus.PROMOTED),
    ([], [], [], ProjectStatus.PROMOTED),
    (["/p0.docx"], ["/p1.docx"], [], ProjectStatus.PARTIALLY_PROMOTED),
    (["/p0.docx"], [], ["/p1.docx"], ProjectStatus.PARTIALLY_PROMOTED),
    ([], ["/p0.docx"], [], ProjectStatus.PROMOTE_FAILED),
])
def test_finalize_promotion(tracker, promoted, promote_errors, process_errors, expected):
    tracker.create_project(PROJECT, {})
    tracker.transition_project(PROJECT, ProjectStatus.PROMOTE_IN_PROGRESS)
    tracker.append_success(PROJECT, PROMOTED_PATHS, "processing_batch_1", promoted)
    tracker.append_failures(PROJECT, PROMOTE_ERRORS, [FailureRecord(path=p, error="Upload failed") for p in promote_errors])
    tracker.append_failures(PROJECT, PROCESS_ERRORS, [FailureRecord(path=p, error="Could not fetch content") for p in process_errors])

    assert tracker.finalize_promotion(PROJECT) == expected
    assert tracker.get_project(PROJECT).status == expected
    # Finalizing again keeps the first outcome
    assert tracker.finalize_promotion(PROJECT) == expected


def test_status_json_layout(tracker, store):
    tracker.create_project(PROJECT, {"experienceName": "a"})

    raw = json.loads(store.read_buffer("graybox_promote/site-graybox/a/status.json"))
    assert set(raw) >= {"status", "params", "createdTime", "statuses"}
    assert raw["statuses"][0]["status"] == "initiated"
