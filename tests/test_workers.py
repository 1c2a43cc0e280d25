import asyncio
import io
import json

from openpyxl import load_workbook

from conftest import GRAYBOX_ORIGIN, PROJECT, run, run_pipeline
from graybox_promote.state.models import BatchStatus, ProjectStatus
from graybox_promote.state.tracker import (
    COPIED_FILES_FOR_PREVIEW,
    COPIED_PATHS,
    FRAGMENT_REPORT,
    PREVIEW_ERRORS,
    PROCESS_ERRORS,
    PROCESSED_PATHS,
    PROMOTE_ERRORS,
    PROMOTED_FILES_FOR_PREVIEW,
    PROMOTED_PATHS,
    PROMOTED_PREVIEW_ERRORS,
)
from graybox_promote.workers.base import BULK_COPY, COPY_NON_PROCESSING, DISCOVERY, INITIATE_PROMOTE, PROMOTED_PREVIEW

OFFER_PAGE = f"# Offer\n\nSee the [deals]({GRAYBOX_ORIGIN}/a/deals).\n\n<{GRAYBOX_ORIGIN}/a/fragments/p1>\n"
BORDER = "+" + "-" * 34 + "+"
FRAGMENT = "\n".join([BORDER, "| " + "Columns (dark, gb-wide)".ljust(33) + "|", BORDER])


def seen_statuses(tracker):
    return [entry.status for entry in tracker.get_project(PROJECT).statuses]


def bulk_copy(context, params, paths):
    return run(run_pipeline(context, BULK_COPY, dict(params, sourcePaths=paths)))


def test_page_with_fragment_is_transformed_and_promoted(context, params, sharepoint, helix, renderer, tracker, store):
    sharepoint.add_graybox_file("/a/offer.docx", b"PK-graybox-offer")
    sharepoint.add_graybox_file("/a/fragments/p1.docx", b"PK-graybox-fragment")
    helix.add_page("/a/offer", OFFER_PAGE)
    helix.add_page("/a/fragments/p1", FRAGMENT)

    result = bulk_copy(context, params, "/a/offer")

    assert result["statusCode"] == 200
    assert result["body"]["project"] == PROJECT
    assert result["body"]["pathDetails"] == [{"sourcePath": "/a/offer.docx", "destinationPath": "/offer.docx"}]

    promoted = tracker.read_success(PROJECT, PROMOTED_PATHS)
    assert list(promoted) == ["processing_batch_1"]
    assert sorted(promoted["processing_batch_1"]) == ["/fragments/p1.docx", "/offer.docx"]

    artifact = store.read_buffer("graybox_promote/site-graybox/a/docx/fragments/p1.docx")
    assert sharepoint.production["/fragments/p1.docx"] == artifact
    assert artifact.startswith(b"PK")
    assert sharepoint.production["/offer.docx"] != b"PK-graybox-offer"
    assert len(renderer.documents) == 2

    assert tracker.get_project(PROJECT).status == ProjectStatus.PROMOTED_PREVIEW_COMPLETED
    assert seen_statuses(tracker) == [
        "initiated",
        "fragment_discovery_completed",
        "non_processing_batches_copied",
        "processed",
        "process_content_in_progress",
        "promote_in_progress",
        "promoted",
        "promoted_preview_in_progress",
        "promoted_preview_completed",
    ]

    tracking = tracker.read_preview_tracking(PROJECT, PROMOTED_FILES_FOR_PREVIEW)
    assert {e.previewStatus for e in tracking} == {"completed"}
    production_previews = [sorted(paths) for paths, graybox in helix.preview_calls if not graybox]
    assert production_previews == [["/fragments/p1", "/offer"]]

    report = tracker.read_record(PROJECT, FRAGMENT_REPORT)
    assert report["summary"]["pagesWithFragments"] == 1
    assert report["summary"]["processingItems"] == 2


def test_page_without_markers_is_copied_byte_for_byte(context, params, sharepoint, helix, renderer, tracker):
    sharepoint.add_graybox_file("/a/plain.docx", b"PK-original-bytes")
    sharepoint.add_graybox_file("/a/img.png", b"\x89PNG")
    helix.add_page("/a/plain", "# Plain page\n\nNothing staged here.")

    bulk_copy(context, params, "/a/plain,/a/img.png")

    assert sharepoint.production == {"/plain.docx": b"PK-original-bytes", "/img.png": b"\x89PNG"}
    assert renderer.documents == []
    assert sorted(tracker.read_success(PROJECT, COPIED_PATHS)["non_processing_batch_1"]) == ["/img.png", "/plain.docx"]
    assert tracker.read_success(PROJECT, PROMOTED_PATHS) == {}
    assert tracker.get_project(PROJECT).status == ProjectStatus.PROMOTED_PREVIEW_COMPLETED

    copied = tracker.read_preview_tracking(PROJECT, COPIED_FILES_FOR_PREVIEW)
    assert {e.fileType for e in copied} == {"copied"}
    assert {e.previewStatus for e in copied} == {"completed"}


def test_sheet_is_rewritten_and_promoted_as_a_workbook(context, params, sharepoint, helix, renderer, tracker):
    sharepoint.add_graybox_file("/a/data.xlsx", b"PK-graybox-sheet")
    helix.add_page("/a/data.json", json.dumps({
        "columns": ["url", "title"],
        "data": [{"url": f"{GRAYBOX_ORIGIN}/a/offer", "title": "Offer"}, {"url": "/about", "title": "About"}],
    }))

    bulk_copy(context, params, "/a/data.json")

    workbook = load_workbook(io.BytesIO(sharepoint.production["/data.xlsx"]))
    assert list(workbook["Sheet1"].iter_rows(values_only=True)) == [
        ("url", "title"),
        ("https://main--site--org.aem.page/offer", "Offer"),
        ("/about", "About"),
    ]
    assert tracker.read_success(PROJECT, PROMOTED_PATHS) == {"processing_batch_1": ["/data.xlsx"]}
    assert renderer.documents == []
    assert tracker.get_project(PROJECT).status == ProjectStatus.PROMOTED_PREVIEW_COMPLETED


def test_bad_sheet_fails_alone_and_its_batch_completes(context, params, sharepoint, helix, tracker):
    sharepoint.add_graybox_file("/a/offer.docx", b"PK")
    sharepoint.add_graybox_file("/a/bad.xlsx", b"PK-sheet")
    helix.add_page("/a/offer", f"[deals]({GRAYBOX_ORIGIN}/a/deals)")
    # a bare JSON string instead of a sheet
    helix.add_page("/a/bad.json", json.dumps(f"{GRAYBOX_ORIGIN}/a/x"))

    bulk_copy(context, params, "/a/offer,/a/bad.json")

    assert tracker.batch_statuses(PROJECT) == {"processing_batch_1": BatchStatus.PROMOTED}
    assert tracker.read_success(PROJECT, PROCESSED_PATHS) == {"processing_batch_1": ["/offer.docx"]}
    errors = tracker.read_failures(PROJECT, PROCESS_ERRORS)
    assert [e.path for e in errors] == ["/bad.xlsx"]
    assert errors[0].error.startswith("Invalid sheet JSON")
    assert "/offer.docx" in sharepoint.production
    assert "/bad.xlsx" not in sharepoint.production
    assert "partially_promoted" in seen_statuses(tracker)
    assert tracker.get_project(PROJECT).status == ProjectStatus.PROMOTED_PREVIEW_COMPLETED


def test_renderer_gets_the_graybox_admin_key(context, params, config, sharepoint, helix, renderer):
    config.HELIX_ADMIN_API_KEYS = {"site-graybox": "graybox-key", "site": "production-key"}
    sharepoint.add_graybox_file("/a/offer.docx", b"PK")
    helix.add_page("/a/offer", f"[deals]({GRAYBOX_ORIGIN}/a/deals)")

    bulk_copy(context, params, "/a/offer")

    assert renderer.tokens == ["graybox-key"]


def test_concurrent_discovery_runs_once(context, params, sharepoint, helix, tracker):
    sharepoint.add_graybox_file("/a/plain.docx", b"PK")
    helix.add_page("/a/plain", "plain")
    bulk_preview = helix.bulk_preview
    gates = {}

    async def held_preview(*args, **kwargs):
        gates["entered"].set()
        await gates["release"].wait()
        return await bulk_preview(*args, **kwargs)

    helix.bulk_preview = held_preview

    async def deliver_twice():
        gates["entered"], gates["release"] = asyncio.Event(), asyncio.Event()
        await context.invoker.workers[BULK_COPY].handle(dict(params, sourcePaths="/a/plain"))
        # the entry action dispatched the first run; wait until it is inside preview
        await gates["entered"].wait()
        late = await context.invoker.workers[DISCOVERY].handle(dict(params, project=PROJECT))
        gates["release"].set()
        await context.invoker.drain()
        return late

    late = run(deliver_twice())

    assert late["statusCode"] == 200
    assert late["body"]["message"] == "already processed"
    assert len([call for call in helix.preview_calls if call[1]]) == 1
    assert tracker.batch_statuses(PROJECT) == {"non_processing_batch_1": BatchStatus.INITIATED}
    assert tracker.get_project(PROJECT).status == ProjectStatus.FRAGMENT_DISCOVERY_COMPLETED


def test_replayed_batch_is_already_processed(context, params, sharepoint, helix, tracker):
    sharepoint.add_graybox_file("/a/plain.docx", b"PK")
    helix.add_page("/a/plain", "plain")
    bulk_copy(context, params, "/a/plain")
    saves = list(sharepoint.saves)
    copied = tracker.read_success(PROJECT, COPIED_PATHS)

    replay = run(context.invoker.workers[COPY_NON_PROCESSING].handle(
        dict(params, project=PROJECT, batchName="non_processing_batch_1"),
    ))

    assert replay["statusCode"] == 200
    assert replay["body"]["message"] == "already processed"
    assert replay["body"]["status"] == BatchStatus.COPIED.value
    assert sharepoint.saves == saves
    assert tracker.read_success(PROJECT, COPIED_PATHS) == copied


def test_missing_parameters_are_rejected(context, params):
    incomplete = dict(params)
    del incomplete["spToken"]

    result = run(context.invoker.workers[BULK_COPY].handle(dict(incomplete, sourcePaths="/a/x")))

    assert result["statusCode"] == 400
    assert result["body"]["error"] == "Missing required parameters: spToken"
    assert context.invoker.workers[BULK_COPY].metrics.failed_requests == 1


def test_empty_source_list_is_rejected(context, params, tracker):
    result = run(context.invoker.workers[BULK_COPY].handle(dict(params, sourcePaths=" , ")))

    assert result["statusCode"] == 400
    assert result["body"]["error"] == "No valid source paths provided"
    assert not tracker.project_exists(PROJECT)


def test_bad_admin_page_uri_writes_no_state(context, params, tracker):
    result = run(context.invoker.workers[BULK_COPY].handle(
        dict(params, sourcePaths="/a/x", adminPageUri="https://admin.example/tools/graybox"),
    ))

    assert result["statusCode"] == 400
    assert "owner/repo" in result["body"]["error"]
    assert not tracker.project_exists(PROJECT)


def test_locked_destination_ends_in_promote_failed(context, params, sharepoint, helix, tracker):
    sharepoint.add_graybox_file("/a/offer.docx", b"PK")
    sharepoint.locked.add("/offer.docx")
    helix.add_page("/a/offer", f"[deals]({GRAYBOX_ORIGIN}/a/deals)")

    bulk_copy(context, params, "/a/offer")

    assert tracker.read_success(PROJECT, PROCESSED_PATHS) == {"processing_batch_1": ["/offer.docx"]}
    errors = tracker.read_failures(PROJECT, PROMOTE_ERRORS)
    assert [(e.path, e.locked) for e in errors] == [("/offer.docx", True)]
    assert "promote_failed" in seen_statuses(tracker)
    assert "/offer.docx" not in sharepoint.production


def test_preview_failure_is_discovered_and_reported(context, params, sharepoint, helix, tracker):
    sharepoint.add_graybox_file("/a/plain.docx", b"PK")
    sharepoint.add_graybox_file("/a/broken.docx", b"PK")
    helix.add_page("/a/plain", "plain")
    helix.preview_failures.add("/a/broken")

    bulk_copy(context, params, "/a/plain,/a/broken")

    errors = tracker.read_failures(PROJECT, PREVIEW_ERRORS)
    assert [(e.path, e.error) for e in errors] == [("/a/broken.docx", "Preview failed")]
    assert "/broken.docx" not in sharepoint.production
    assert sharepoint.production["/plain.docx"] == b"PK"


def test_production_preview_is_retried_once_then_recorded(context, params, sharepoint, helix, tracker):
    sharepoint.add_graybox_file("/a/plain.docx", b"PK")
    helix.add_page("/a/plain", "plain")
    helix.preview_failures.add("/plain")

    bulk_copy(context, params, "/a/plain")

    production_calls = [paths for paths, graybox in helix.preview_calls if not graybox]
    assert production_calls == [["/plain"], ["/plain"]]
    errors = tracker.read_failures(PROJECT, PROMOTED_PREVIEW_ERRORS)
    assert [(e.path, e.error) for e in errors] == [("/plain", "Preview failed 500")]
    tracking = tracker.read_preview_tracking(PROJECT, COPIED_FILES_FOR_PREVIEW)
    assert tracking[0].previewStatus == "failed"
    assert tracker.get_project(PROJECT).status == ProjectStatus.PROMOTED_PREVIEW_COMPLETED


def test_re_preview_previews_every_tracked_file(context, params, sharepoint, helix, tracker):
    sharepoint.add_graybox_file("/a/plain.docx", b"PK")
    helix.add_page("/a/plain", "plain")
    bulk_copy(context, params, "/a/plain")
    calls = len(helix.preview_calls)

    result = run(context.invoker.workers[PROMOTED_PREVIEW].handle(dict(params, project=PROJECT, rePreview="true")))

    assert result["statusCode"] == 200
    assert result["body"]["rePreview"] is True
    assert result["body"]["previewed"] == 1
    assert helix.preview_calls[calls:] == [(["/plain"], False)]
    assert seen_statuses(tracker)[-2:] == ["promoted_preview_in_progress", "promoted_preview_completed"]


def test_running_project_conflicts(context, params, sharepoint, helix):
    sharepoint.add_graybox_file("/a/plain.docx", b"PK")
    helix.add_page("/a/plain", "plain")
    worker = context.invoker.workers[BULK_COPY]

    async def start_twice():
        first = await worker.handle(dict(params, sourcePaths="/a/plain"))
        second = await worker.handle(dict(params, sourcePaths="/a/plain"))
        await context.invoker.drain()
        return first, second

    first, second = run(start_twice())

    assert first["statusCode"] == 200
    assert second["statusCode"] == 409
    assert "already in progress" in second["body"]["error"]


def test_finished_project_can_be_restarted(context, params, sharepoint, helix, tracker):
    sharepoint.add_graybox_file("/a/plain.docx", b"PK")
    helix.add_page("/a/plain", "plain")
    bulk_copy(context, params, "/a/plain")

    async def restart():
        result = await context.invoker.workers[BULK_COPY].handle(dict(params, sourcePaths="/a/plain"))
        await context.invoker.drain()
        return result

    result = run(restart())

    assert result["statusCode"] == 200
    # only discovery has run again; the previous run's records are gone
    assert seen_statuses(tracker) == ["initiated", "fragment_discovery_completed"]
    assert tracker.read_success(PROJECT, COPIED_PATHS) == {}


def test_initiate_promote_collects_the_experience_tree(context, params, sharepoint, helix, tracker):
    sharepoint.add_graybox_file("/a/plain.docx", b"PK-a")
    sharepoint.add_graybox_file("/b/other.docx", b"PK-b")
    helix.add_page("/a/plain", "plain")

    result = run(run_pipeline(context, INITIATE_PROMOTE, params))

    assert result["statusCode"] == 200
    assert [d["sourcePath"] for d in result["body"]["pathDetails"]] == ["/a/plain.docx"]
    assert sharepoint.production == {"/plain.docx": b"PK-a"}


def test_initiate_promote_without_files_is_rejected(context, params, tracker):
    result = run(context.invoker.workers[INITIATE_PROMOTE].handle(params))

    assert result["statusCode"] == 400
    assert "No graybox files found" in result["body"]["error"]
    assert not tracker.project_exists(PROJECT)


def test_status_rows_are_written_for_each_stage(context, params, sharepoint, helix):
    sharepoint.add_graybox_file("/a/plain.docx", b"PK")
    helix.add_page("/a/plain", "plain")

    bulk_copy(context, params, "/a/plain")

    steps = [row[0] for row in sharepoint.table_rows]
    assert steps[0] == "Bulk copy initiated"
    assert "Fragment discovery completed" in steps
    assert "Copied non_processing_batch_1" in steps
    assert steps[-1] == "Promoted content previewed"
    assert json.loads(sharepoint.table_rows[0][3])["files"] == 1
