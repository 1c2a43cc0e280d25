"""Upload the stored artifacts of one processed batch to production."""

from contextlib import AsyncExitStack
from typing import Any, Dict, Optional, Tuple

from ..config import PromoteParams
from ..context import failure_summary
from ..executor import ContentUnavailableError, PromotionExecutor
from ..state.models import BatchStatus, ProjectStatus, WorkItem
from ..state.store import NotFoundError
from ..state.tracker import (
    PROCESSED_PATHS,
    PROCESSING_PREFIX,
    PROMOTE_ERRORS,
    PROMOTED_FILES_FOR_PREVIEW,
    PROMOTED_PATHS,
)
from .base import PROMOTE
from .copy_worker import BatchWorker

PROMOTE_STARTABLE = (ProjectStatus.PROCESSED, ProjectStatus.PROCESS_CONTENT_IN_PROGRESS)


class PromoteWorker(BatchWorker):
    name = PROMOTE

    async def process(self, params: PromoteParams) -> Dict[str, Any]:
        project, batch_name = params.project, params.batch_name
        skipped = self.claim(project, batch_name, BatchStatus.PROCESSED, BatchStatus.PROMOTE_IN_PROGRESS)
        if skipped:
            return skipped

        async with AsyncExitStack() as stack:
            with self.claimed(project, batch_name):
                current = self.tracker.get_project(project).status
                if current in PROMOTE_STARTABLE:
                    self.tracker.transition_project(project, ProjectStatus.PROMOTE_IN_PROGRESS, expected=current)

                # Items that failed processing have no artifact and are already in process_errors
                processed = set(self.tracker.read_success(project, PROCESSED_PATHS).get(batch_name, []))
                items = [item for item in self.tracker.read_batch(project, batch_name) if item.destinationPath in processed]

                sp = await stack.enter_async_context(self.context.sharepoint(params))
                executor = PromotionExecutor(
                    sp, self.tracker, project,
                    success_record=PROMOTED_PATHS,
                    failure_record=PROMOTE_ERRORS,
                    preview_record=PROMOTED_FILES_FOR_PREVIEW,
                    preview_file_type="promoted",
                    concurrency=self.config.ITEM_CONCURRENCY,
                )

                async def load_artifact(item: WorkItem) -> Tuple[bytes, Optional[str]]:
                    try:
                        content = self.context.store.read_buffer(self.tracker.artifact_path(project, item.destinationPath))
                    except NotFoundError:
                        raise ContentUnavailableError(f"Transformed artifact missing for {item.destinationPath}")
                    source = await sp.get_file_data(item.sourcePath, graybox=True)
                    return content, source.created if source else None

                outcome = await executor.run_batch(batch_name, items, load_artifact)

            self.tracker.set_batch_status(project, batch_name, BatchStatus.PROMOTED)
            final_status = None
            if self.tracker.all_batches_reach(project, PROCESSING_PREFIX, BatchStatus.PROMOTED):
                final_status = self.tracker.finalize_promotion(project)

            summary = self.batch_summary(project, outcome)
            if final_status:
                summary['projectStatus'] = final_status.value
            await self.context.report_status(
                sp, params, f"Promoted {batch_name}",
                failures=failure_summary(outcome.failed),
                payload=summary,
            )
        return summary
