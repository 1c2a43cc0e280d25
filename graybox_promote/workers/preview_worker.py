"""
Preview everything that landed in production (promoted-preview-worker).

Pending entries of promoted_files_for_preview and copied_files_for_preview
are previewed in the production repo; failures get one more attempt.
With rePreview set, every tracked entry is previewed again.
"""

from collections import defaultdict
from typing import Any, Dict, List

from ..config import PromoteParams, is_truthy
from ..context import failure_summary
from ..paths import web_path
from ..state.models import PROMOTION_OUTCOMES, FailureRecord, PreviewTrackingEntry, ProjectStatus, utc_now
from ..state.tracker import (
    COPIED_FILES_FOR_PREVIEW,
    PROMOTED_FILES_FOR_PREVIEW,
    PROMOTED_PREVIEW_ERRORS,
    PROMOTED_PREVIEW_STATUS,
)
from .base import PROMOTED_PREVIEW, ActionWorker

TRACKING_RECORDS = (PROMOTED_FILES_FOR_PREVIEW, COPIED_FILES_FOR_PREVIEW)


class PromotedPreviewWorker(ActionWorker):
    name = PROMOTED_PREVIEW

    async def process(self, params: PromoteParams) -> Dict[str, Any]:
        project = params.project
        repreview = is_truthy(params.raw.get('rePreview', False))
        current = self.tracker.get_project(project).status

        if current == ProjectStatus.PROMOTED_PREVIEW_COMPLETED and repreview:
            self.tracker.transition_project(
                project, ProjectStatus.PROMOTED_PREVIEW_IN_PROGRESS,
                step_name="re_preview", allow_repreview=True,
            )
        elif current.value in PROMOTION_OUTCOMES:
            if not self.tracker.transition_project(project, ProjectStatus.PROMOTED_PREVIEW_IN_PROGRESS, expected=current):
                return self.already_processed(project, status=self.tracker.get_project(project).status.value)
        elif current != ProjectStatus.PROMOTED_PREVIEW_IN_PROGRESS:
            return self.already_processed(project, status=current.value)

        tracking = {record: self.tracker.read_preview_tracking(project, record) for record in TRACKING_RECORDS}
        by_path: Dict[str, List[PreviewTrackingEntry]] = defaultdict(list)
        for entries in tracking.values():
            for entry in entries:
                if repreview or entry.previewStatus == "pending":
                    by_path[web_path(entry.filePath)].append(entry)

        async with self.context.sharepoint(params) as sp, self.context.helix(params) as helix:
            statuses = {}
            paths = list(by_path)
            for attempt in range(2):
                if not paths:
                    break
                if attempt:
                    self.logger.info(f"[{project}] Retrying preview for {len(paths)} paths")
                for status in await helix.bulk_preview(paths, "preview", graybox=False):
                    statuses[status.path] = status
                paths = [p for p in paths if not statuses.get(p) or not statuses[p].success]

            previewed_at = utc_now()
            errors: List[FailureRecord] = []
            for path, entries in by_path.items():
                status = statuses.get(path)
                succeeded = bool(status and status.success)
                for entry in entries:
                    entry.previewStatus = "completed" if succeeded else "failed"
                    entry.previewedAt = previewed_at
                    entry.previewResult = status.to_dict() if status else None
                if not succeeded:
                    code = status.response_code if status else ""
                    errors.append(FailureRecord(path=path, error=f"Preview failed {code}".strip()))

            for record, entries in tracking.items():
                self.tracker.write_preview_tracking(project, record, entries)
            self.tracker.write_record(project, PROMOTED_PREVIEW_STATUS, [s.to_dict() for s in statuses.values()])
            self.tracker.write_record(project, PROMOTED_PREVIEW_ERRORS, errors)

            self.tracker.transition_project(
                project, ProjectStatus.PROMOTED_PREVIEW_COMPLETED,
                previewed=len(by_path) - len(errors), failed=len(errors),
            )

            summary = {
                'project': project,
                'previewed': len(by_path) - len(errors),
                'failed': len(errors),
                'rePreview': repreview,
            }
            self.logger.info(f"[{project}] Preview: ✓ {summary['previewed']} ✗ {summary['failed']}")
            await self.context.report_status(
                sp, params, "Promoted content previewed",
                failures=failure_summary(errors),
                payload=summary,
            )
        return summary
