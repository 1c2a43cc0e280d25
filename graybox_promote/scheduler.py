"""
Scheduler: moves projects from one stage to the next.

Each scan reads the project queue oldest first and, per project status,
dispatches the next stage's workers (one per pending batch) or advances the
project once every batch of the current stage is done. Dispatch never waits
for a worker; batch claims make duplicate dispatches harmless.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from .config import PromoteParams
from .context import PipelineContext
from .state.models import PROMOTION_OUTCOMES, BatchStatus, ProjectStatus, QueueEntry, StateCorruptionError
from .state.store import NotFoundError
from .state.tracker import NON_PROCESSING_PREFIX, PROCESSING_PREFIX
from .workers.base import COPY_NON_PROCESSING, PROCESS_CONTENT, PROMOTE, PROMOTED_PREVIEW, SCHEDULER, ActionWorker

logger = logging.getLogger(__name__)

NO_PROJECTS_MESSAGE = "No projects were processed"


class PromotionScheduler:

    def __init__(self, context: PipelineContext):
        self.context = context
        self.tracker = context.tracker

    async def run_once(self) -> Dict[str, Any]:
        queue: List[QueueEntry] = sorted(self.tracker.queue(), key=lambda e: e.createdTime)
        limit = self.context.config.SCHEDULER_MAX_PROJECTS_PER_RUN
        handled: List[Dict[str, Any]] = []

        for entry in queue:
            if limit and len(handled) >= limit:
                break
            try:
                action = await self.advance(entry.projectPath)
            except (NotFoundError, StateCorruptionError) as e:
                logger.error(f"Skipping {entry.projectPath}: {e}")
                continue
            if action:
                handled.append({'project': entry.projectPath, 'action': action})

        if not handled:
            logger.info(NO_PROJECTS_MESSAGE)
            return {'message': NO_PROJECTS_MESSAGE}

        logger.info("=" * 60)
        logger.info(f"SCHEDULER: advanced {len(handled)} project(s)")
        for item in handled:
            logger.info(f"  ✓ {item['project']}: {item['action']}")
        logger.info("=" * 60)
        return {'message': f"Processed {len(handled)} project(s)", 'projects': handled}

    async def advance(self, project: str) -> Optional[str]:
        """Do whatever the project's status calls for; returns a description or None."""
        document = self.tracker.get_project(project)
        status = document.status
        params = dict(document.params)
        params['project'] = project

        if status == ProjectStatus.FRAGMENT_DISCOVERY_COMPLETED:
            batches = self.tracker.batches_with_prefix(project, NON_PROCESSING_PREFIX)
            pending = [name for name, s in batches.items() if s == BatchStatus.INITIATED]
            if pending:
                await self._dispatch_batches(COPY_NON_PROCESSING, params, pending)
                return f"dispatched {len(pending)} copy batch(es)"
            if all(s == BatchStatus.COPIED for s in batches.values()):
                self.tracker.advance_project(project, ProjectStatus.NON_PROCESSING_BATCHES_COPIED)
                return "non-processing batches copied"
            return None

        if status == ProjectStatus.NON_PROCESSING_BATCHES_COPIED:
            batches = self.tracker.batches_with_prefix(project, PROCESSING_PREFIX)
            pending = [name for name, s in batches.items() if s == BatchStatus.INITIATED]
            if pending:
                await self._dispatch_batches(PROCESS_CONTENT, params, pending)
                return f"dispatched {len(pending)} process batch(es)"
            if all(s == BatchStatus.PROCESSED for s in batches.values()):
                self.tracker.advance_project(project, ProjectStatus.PROCESSED)
                return "processing batches processed"
            return None

        if status == ProjectStatus.PROCESSED:
            if not self.tracker.transition_project(
                project, ProjectStatus.PROCESS_CONTENT_IN_PROGRESS, expected=ProjectStatus.PROCESSED,
            ):
                return None
            batches = self.tracker.batches_with_prefix(project, PROCESSING_PREFIX)
            if not batches:
                outcome = self.tracker.finalize_promotion(project)
                return f"finalized ({outcome.value if outcome else 'unchanged'})"
            ready = [name for name, s in batches.items() if s == BatchStatus.PROCESSED]
            await self._dispatch_batches(PROMOTE, params, ready)
            return f"dispatched {len(ready)} promote batch(es)"

        if status in (ProjectStatus.PROCESS_CONTENT_IN_PROGRESS, ProjectStatus.PROMOTE_IN_PROGRESS):
            batches = self.tracker.batches_with_prefix(project, PROCESSING_PREFIX)
            if all(s == BatchStatus.PROMOTED for s in batches.values()):
                outcome = self.tracker.finalize_promotion(project)
                return f"finalized ({outcome.value if outcome else 'unchanged'})"
            # Re-dispatch batches whose promote invocation never claimed them
            ready = [name for name, s in batches.items() if s == BatchStatus.PROCESSED]
            if ready:
                await self._dispatch_batches(PROMOTE, params, ready)
                return f"re-dispatched {len(ready)} promote batch(es)"
            return None

        if status.value in PROMOTION_OUTCOMES:
            if not self.tracker.transition_project(project, ProjectStatus.PROMOTED_PREVIEW_IN_PROGRESS, expected=status):
                return None
            await self.context.invoker.invoke(PROMOTED_PREVIEW, params)
            return "dispatched promoted preview"

        return None

    async def _dispatch_batches(self, action: str, params: Dict[str, Any], batch_names: List[str]) -> None:
        for batch_name in batch_names:
            await self.context.invoker.invoke(action, dict(params, batchName=batch_name))

    async def run_forever(self, interval: Optional[float] = None) -> None:
        interval = interval if interval is not None else self.context.config.SCHEDULER_INTERVAL_SECONDS
        logger.info(f"Scheduler loop started (every {interval}s)")
        while True:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Scheduler scan failed: {e}", exc_info=True)
            await asyncio.sleep(interval)


class SchedulerAction(ActionWorker):
    """The scheduler as an invocable action (one scan per call)."""

    name = SCHEDULER
    required_params: List[str] = []

    def __init__(self, context: PipelineContext):
        super().__init__(context)
        self.scheduler = PromotionScheduler(context)

    async def process(self, params: PromoteParams) -> Dict[str, Any]:
        return await self.scheduler.run_once()
