"""
Transform one processing batch.

Each item's markdown is fetched again, cleaned and rendered; the artifact is
stored at docx/{destinationPath} in the project's state so the upload can be
retried without regenerating it.
"""

import asyncio
from contextlib import AsyncExitStack
from typing import Any, Dict, List, Optional

from ..clients.helix import GRAYBOX_REPO_POSTFIX
from ..config import PromoteParams
from ..context import failure_summary
from ..state.models import BatchStatus, FailureRecord, ProjectStatus, WorkItem
from ..state.tracker import PROCESS_ERRORS, PROCESSED_PATHS, PROCESSING_PREFIX
from ..transform.dispatcher import ContentTransformDispatcher
from .base import PROCESS_CONTENT
from .copy_worker import BatchWorker


class ProcessContentWorker(BatchWorker):
    name = PROCESS_CONTENT

    async def process(self, params: PromoteParams) -> Dict[str, Any]:
        project, batch_name = params.project, params.batch_name
        skipped = self.claim(project, batch_name, BatchStatus.INITIATED, BatchStatus.PROCESS_IN_PROGRESS)
        if skipped:
            return skipped

        processed: List[str] = []
        failures: List[FailureRecord] = []
        semaphore = asyncio.Semaphore(max(self.config.ITEM_CONCURRENCY, 1))

        async with AsyncExitStack() as stack:
            with self.claimed(project, batch_name):
                items = self.tracker.read_batch(project, batch_name)
                dispatcher = ContentTransformDispatcher(
                    params.experience_name,
                    renderer=self.context.renderer,
                    style_sheet=self.config.DOCX_STYLE_TEMPLATE,
                    # images are fetched from the graybox origin
                    auth_token=self.config.helix_api_key(f"{params.url_info.repo}{GRAYBOX_REPO_POSTFIX}"),
                )
                sp = await stack.enter_async_context(self.context.sharepoint(params))
                helix = await stack.enter_async_context(self.context.helix(params))

                async def transform_item(item: WorkItem):
                    async with semaphore:
                        error = await self._transform(helix, dispatcher, project, item)
                    if error:
                        self.logger.warning(f"[{project}] ✗ {item.sourcePath}: {error}")
                        failures.append(FailureRecord(path=item.destinationPath, error=error))
                    else:
                        processed.append(item.destinationPath)

                await asyncio.gather(*(transform_item(item) for item in items))
                # Keep batch order in the record
                ordered = [item.destinationPath for item in items if item.destinationPath in processed]
                self.tracker.append_success(project, PROCESSED_PATHS, batch_name, ordered)
                self.tracker.append_failures(project, PROCESS_ERRORS, failures)

            self.tracker.set_batch_status(project, batch_name, BatchStatus.PROCESSED)
            if self.tracker.all_batches_reach(project, PROCESSING_PREFIX, BatchStatus.PROCESSED):
                self.tracker.advance_project(project, ProjectStatus.PROCESSED)

            summary = {
                'project': project,
                'batchName': batch_name,
                'processed': len(processed),
                'failed': len(failures),
            }
            self.logger.info(f"[{project}] {batch_name}: ✓ {len(processed)} processed, ✗ {len(failures)} failed")
            await self.context.report_status(
                sp, params, f"Processed {batch_name}",
                failures=failure_summary(failures),
                payload=summary,
            )
        return summary

    async def _transform(self, helix, dispatcher: ContentTransformDispatcher, project: str, item: WorkItem) -> Optional[str]:
        """Generate and store one artifact; returns an error message or None."""
        if not item.mdPath:
            return "No content path for item"
        try:
            content = await helix.fetch_content(item.mdPath)
            if content is None:
                return "Could not fetch content"

            result = dispatcher.transform(item, content)
            if not result.success:
                return result.error
            self.context.store.write_stream(self.tracker.artifact_path(project, item.destinationPath), result.artifact)
        except Exception as e:
            self.logger.error(f"[{project}] Transform of {item.sourcePath} failed: {e}", exc_info=True)
            return f"Transform failed: {e}"

        if result.report:
            self.logger.debug(
                f"[{project}] {item.destinationPath}: {result.report.links_rewritten} links rewritten, "
                f"{result.report.blocks_removed} blocks removed"
            )
        return None
