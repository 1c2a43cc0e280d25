"""
Base class for pipeline actions.

Every action takes a flat parameter bag and returns {statusCode, body}.
handle() owns timing, metrics and the error boundary; subclasses implement
process().
"""

import logging
import time
import uuid
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..config import ConfigurationError, PromoteParams
from ..context import PipelineContext

# Action names
BULK_COPY = "bulk-copy"
INITIATE_PROMOTE = "initiate-promote"
DISCOVERY = "bulk-copy-worker"
COPY_NON_PROCESSING = "bulk-copy-non-processing-worker"
PROCESS_CONTENT = "process-content-worker"
PROMOTE = "promote-worker"
PROMOTED_PREVIEW = "promoted-preview-worker"
SCHEDULER = "scheduler"


class ProjectConflictError(Exception):
    """Raised when a request collides with a project that is still running"""
    pass


class ActionResponse(BaseModel):
    """Standard response format for pipeline actions"""
    statusCode: int = Field(..., description="HTTP-style status of the invocation")
    body: Dict[str, Any] = Field(default_factory=dict, description="Result or error payload")


class WorkerMetrics(BaseModel):
    """Per-action request metrics"""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    average_response_time_ms: float = 0.0


class ActionWorker:
    """
    Pipeline action with standard error handling and metrics.

    Subclasses set `name` (the action name used for invocation) and
    `required_params`, and implement process().
    """

    name = "action"
    required_params: List[str] = PromoteParams.BASE_REQUIRED_PARAMS

    def __init__(self, context: PipelineContext):
        self.context = context
        self.logger = logging.getLogger(f"graybox_promote.{self.name}")
        self.metrics = WorkerMetrics()

    @property
    def config(self):
        return self.context.config

    @property
    def tracker(self):
        return self.context.tracker

    async def handle(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Run the action with error handling and metrics.

        ConfigurationError -> 400, ProjectConflictError -> 409,
        anything else -> 500. Item-level failures are recorded in state by
        the action itself and never reach this boundary.
        """
        start_time = time.time()
        request_id = f"{self.name}-{uuid.uuid4().hex[:8]}"
        self.logger.info(
            f"[{request_id}] Processing {self.name} for {params.get('project') or params.get('experienceName') or 'unknown'}"
        )
        self.metrics.total_requests += 1

        try:
            promote_params = PromoteParams.from_params(params, self.required_params)
            body = await self.process(promote_params)
            response = ActionResponse(statusCode=200, body=body)
        except ConfigurationError as e:
            self.logger.error(f"[{request_id}] Rejected: {e}")
            response = ActionResponse(statusCode=400, body={'error': str(e)})
        except ProjectConflictError as e:
            self.logger.warning(f"[{request_id}] Conflict: {e}")
            response = ActionResponse(statusCode=409, body={'error': str(e)})
        except Exception as e:
            self.logger.error(f"[{request_id}] {self.name} failed: {e}", exc_info=True)
            response = ActionResponse(statusCode=500, body={'error': str(e)})

        execution_time = (time.time() - start_time) * 1000
        if response.statusCode == 200:
            self.metrics.successful_requests += 1
            self._update_average_response_time(execution_time)
            self.logger.info(f"[{request_id}] Completed in {execution_time:.2f}ms")
        else:
            self.metrics.failed_requests += 1

        return response.model_dump()

    async def process(self, params: PromoteParams) -> Dict[str, Any]:
        """
        Main processing method to be implemented by subclasses
        Must return the response body
        """
        raise NotImplementedError(f"Action {self.name} must implement process() method")

    def _update_average_response_time(self, new_time_ms: float):
        """Update rolling average response time"""
        current_avg = self.metrics.average_response_time_ms
        total = self.metrics.successful_requests
        self.metrics.average_response_time_ms = (
            (current_avg * (total - 1) + new_time_ms) / total
        )

    def stage_params(self, params: PromoteParams, batch_name: Optional[str] = None) -> Dict[str, Any]:
        """Parameter bag for the next stage: replayed params plus project/batch."""
        payload = params.get_payload()
        payload['project'] = params.project
        if batch_name:
            payload['batchName'] = batch_name
        return payload

    def already_processed(self, project: str, batch_name: Optional[str] = None, status: Optional[str] = None) -> Dict[str, Any]:
        target = f"{project} / {batch_name}" if batch_name else project
        self.logger.info(f"{target} already processed ({status}); nothing to do")
        return {
            'message': 'already processed',
            'project': project,
            'batchName': batch_name,
            'status': status,
        }


def setup_logging(level: str = "INFO"):
    """Setup comprehensive logging configuration"""
    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    # Reduce noise from third-party libraries
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
