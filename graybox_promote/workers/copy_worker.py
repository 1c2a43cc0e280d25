"""Byte-identical copy of one non-processing batch into production."""

from contextlib import AsyncExitStack, contextmanager
from typing import Any, Dict, Optional, Tuple

from ..config import PromoteParams
from ..context import failure_summary
from ..executor import ContentUnavailableError, PromotionExecutor
from ..state.models import BatchStatus, ProjectStatus, WorkItem
from ..state.tracker import (
    COPIED_FILES_FOR_PREVIEW,
    COPIED_PATHS,
    COPY_ERRORS,
    NON_PROCESSING_PREFIX,
)
from .base import COPY_NON_PROCESSING, ActionWorker


class BatchWorker(ActionWorker):
    """An action that owns exactly one batch per invocation."""

    required_params = PromoteParams.BASE_REQUIRED_PARAMS + ['batchName']

    def claim(self, project: str, batch_name: str, expected: BatchStatus, target: BatchStatus) -> Optional[Dict[str, Any]]:
        """None when claimed; otherwise the 'already processed' body to return."""
        if self.tracker.claim_batch(project, batch_name, expected, target):
            return None
        current = self.tracker.batch_statuses(project).get(batch_name)
        return self.already_processed(project, batch_name, current.value if current else None)

    @contextmanager
    def claimed(self, project: str, batch_name: str):
        """Everything between a claim and the batch's final status; a failure marks the batch 'error'."""
        try:
            yield
        except Exception:
            self.logger.error(f"[{project}] {batch_name} failed after it was claimed")
            self.tracker.set_batch_status(project, batch_name, BatchStatus.ERROR)
            raise

    def batch_summary(self, project: str, outcome) -> Dict[str, Any]:
        summary = dict(outcome.summary())
        summary['project'] = project
        return summary


class CopyWorker(BatchWorker):
    name = COPY_NON_PROCESSING

    async def process(self, params: PromoteParams) -> Dict[str, Any]:
        project, batch_name = params.project, params.batch_name
        skipped = self.claim(project, batch_name, BatchStatus.INITIATED, BatchStatus.COPY_IN_PROGRESS)
        if skipped:
            return skipped

        async with AsyncExitStack() as stack:
            with self.claimed(project, batch_name):
                items = self.tracker.read_batch(project, batch_name)
                sp = await stack.enter_async_context(self.context.sharepoint(params))
                executor = PromotionExecutor(
                    sp, self.tracker, project,
                    success_record=COPIED_PATHS,
                    failure_record=COPY_ERRORS,
                    preview_record=COPIED_FILES_FOR_PREVIEW,
                    preview_file_type="copied",
                    concurrency=self.config.ITEM_CONCURRENCY,
                )

                async def load_source(item: WorkItem) -> Tuple[bytes, Optional[str]]:
                    source = await sp.get_file_data(item.sourcePath, graybox=True)
                    if source is None or not source.download_url:
                        raise ContentUnavailableError(f"Source not found: {item.sourcePath}")
                    return await sp.download(source.download_url), source.created

                outcome = await executor.run_batch(batch_name, items, load_source)

            self.tracker.set_batch_status(project, batch_name, BatchStatus.COPIED)
            if self.tracker.all_batches_reach(project, NON_PROCESSING_PREFIX, BatchStatus.COPIED):
                self.tracker.advance_project(project, ProjectStatus.NON_PROCESSING_BATCHES_COPIED)

            summary = self.batch_summary(project, outcome)
            await self.context.report_status(
                sp, params, f"Copied {batch_name}",
                failures=failure_summary(outcome.failed),
                payload=summary,
            )
        return summary
