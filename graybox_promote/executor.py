"""
Promotion / copy executor.

Moves a batch of work items into the production tree:
    load bytes -> (newer-destination check) -> save_file -> record result

Each item is independent: a failed, missing or locked item is recorded and
the rest of the batch carries on.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Tuple

from .clients.sharepoint import SaveResult
from .state.models import FailureRecord, NewerDestinationEntry, PreviewTrackingEntry, WorkItem
from .state.tracker import ProjectTracker

logger = logging.getLogger(__name__)

# Returns (content, source created timestamp)
LoadContent = Callable[[WorkItem], Awaitable[Tuple[bytes, Optional[str]]]]


class ContentUnavailableError(Exception):
    """Raised by a content loader when an item's bytes cannot be produced"""
    pass


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        logger.debug(f"Unparseable timestamp: {value}")
        return None


@dataclass
class BatchOutcome:
    batch_name: str
    succeeded: List[str] = field(default_factory=list)
    failed: List[FailureRecord] = field(default_factory=list)
    newer_destination: List[str] = field(default_factory=list)

    @property
    def locked(self) -> List[FailureRecord]:
        return [f for f in self.failed if f.locked]

    def summary(self) -> dict:
        return {
            'batchName': self.batch_name,
            'succeeded': len(self.succeeded),
            'failed': len(self.failed),
            'locked': len(self.locked),
            'newerDestination': len(self.newer_destination),
        }


class PromotionExecutor:
    """
    Writes work items to production and appends results to the project's
    records: success_record[batch] gets destination paths, failure_record
    gets {path, error, locked} descriptors, preview_record gets entries for
    the post-promotion preview.
    """

    def __init__(
        self,
        sharepoint,
        tracker: ProjectTracker,
        project: str,
        success_record: str,
        failure_record: str,
        preview_record: Optional[str] = None,
        preview_file_type: str = "promoted",
        concurrency: int = 10,
        check_newer_destination: bool = True,
    ):
        self.sharepoint = sharepoint
        self.tracker = tracker
        self.project = project
        self.success_record = success_record
        self.failure_record = failure_record
        self.preview_record = preview_record
        self.preview_file_type = preview_file_type
        self.concurrency = max(concurrency, 1)
        self.check_newer_destination = check_newer_destination

    async def promote(self, item: WorkItem, content: bytes, source_created: Optional[str] = None) -> Tuple[SaveResult, bool]:
        """Write one item; returns (save result, destination-was-newer flag)."""
        newer = False
        if self.check_newer_destination and source_created:
            newer = await self._destination_is_newer(item, source_created)
        result = await self.sharepoint.save_file(content, item.destinationPath, graybox=False)
        return result, newer

    async def _destination_is_newer(self, item: WorkItem, source_created: str) -> bool:
        """
        Production files edited after the graybox copy was made are flagged for
        manual reconciliation. The write still goes ahead.
        """
        destination = await self.sharepoint.get_file_data(item.destinationPath, graybox=False)
        if destination is None:
            return False
        created = _parse_timestamp(source_created)
        modified = _parse_timestamp(destination.last_modified)
        if created is None or modified is None or modified <= created:
            return False

        logger.warning(
            f"[{self.project}] Destination {item.destinationPath} modified {destination.last_modified}, "
            f"after graybox source was created {source_created}"
        )
        self.tracker.append_newer_destination(self.project, NewerDestinationEntry(
            path=item.destinationPath,
            sourceCreated=source_created,
            destinationModified=destination.last_modified,
        ))
        return True

    async def run_batch(self, batch_name: str, items: List[WorkItem], load_content: LoadContent) -> BatchOutcome:
        outcome = BatchOutcome(batch_name=batch_name)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run_item(item: WorkItem):
            async with semaphore:
                try:
                    content, source_created = await load_content(item)
                    result, newer = await self.promote(item, content, source_created)
                except ContentUnavailableError as e:
                    result, newer = SaveResult(success=False, path=item.destinationPath, error_msg=str(e)), False
                except Exception as e:
                    logger.error(f"[{self.project}] {item.sourcePath} failed: {e}", exc_info=True)
                    result, newer = SaveResult(success=False, path=item.destinationPath, error_msg=str(e)), False
            self._record(batch_name, item, result, newer, outcome)

        await asyncio.gather(*(run_item(item) for item in items))
        logger.info(f"[{self.project}] {batch_name}: {outcome.summary()}")
        return outcome

    def _record(self, batch_name: str, item: WorkItem, result: SaveResult, newer: bool, outcome: BatchOutcome) -> None:
        # Records are re-read under lock on every append
        if newer:
            outcome.newer_destination.append(item.destinationPath)
        if result.success:
            outcome.succeeded.append(item.destinationPath)
            self.tracker.append_success(self.project, self.success_record, batch_name, [item.destinationPath])
            if self.preview_record:
                self.tracker.append_preview_tracking(self.project, self.preview_record, [
                    PreviewTrackingEntry(filePath=item.destinationPath, fileType=self.preview_file_type),
                ])
            return

        failure = FailureRecord(
            path=item.destinationPath,
            error=result.error_msg or "Unknown error",
            locked=result.locked,
        )
        logger.warning(f"[{self.project}] Failed {item.destinationPath}: {failure.error}")
        outcome.failed.append(failure)
        self.tracker.append_failures(self.project, self.failure_record, [failure])
