"""
Shared dependencies for every worker in one process.

Workers never construct clients directly; they ask the context, which lets
the service wire real Graph / admin API clients and lets tests swap in fakes.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .clients.helix import HelixAdminClient
from .clients.invoker import ActionInvoker, HttpActionInvoker, LocalActionInvoker
from .clients.sharepoint import SharePointClient, SharePointConfig
from .config import PromoteParams, ServiceConfig
from .state.models import FailureRecord, utc_now
from .state.store import StateStore
from .state.tracker import ProjectTracker
from .transform.docx_renderer import DocxRenderer

logger = logging.getLogger(__name__)


def default_sharepoint_factory(config: ServiceConfig) -> Callable[[PromoteParams], Any]:
    def factory(params: PromoteParams) -> SharePointClient:
        return SharePointClient(SharePointConfig.from_params(params, config))
    return factory


def default_helix_factory(config: ServiceConfig) -> Callable[[PromoteParams], Any]:
    def factory(params: PromoteParams) -> HelixAdminClient:
        return HelixAdminClient(params.url_info, config)
    return factory


def failure_summary(failures: List[FailureRecord]) -> str:
    if not failures:
        return ""
    locked = sum(1 for f in failures if f.locked)
    summary = f"{len(failures)} failed"
    if locked:
        summary += f" ({locked} locked)"
    return summary


@dataclass
class PipelineContext:
    config: ServiceConfig
    store: StateStore
    tracker: ProjectTracker
    invoker: ActionInvoker
    sharepoint_factory: Callable[[PromoteParams], Any]
    helix_factory: Callable[[PromoteParams], Any]
    renderer: DocxRenderer = field(default_factory=DocxRenderer)

    @classmethod
    def from_config(cls, config: Optional[ServiceConfig] = None, invoker: Optional[ActionInvoker] = None) -> "PipelineContext":
        config = config or ServiceConfig()
        store = StateStore(config.STATE_ROOT)
        if invoker is None:
            if config.ACTIONS_BASE_URL:
                invoker = HttpActionInvoker(config.ACTIONS_BASE_URL, max_retries=config.MAX_RETRIES)
            else:
                invoker = LocalActionInvoker()
        return cls(
            config=config,
            store=store,
            tracker=ProjectTracker(store, strict=config.STRICT_STATE_VALIDATION),
            invoker=invoker,
            sharepoint_factory=default_sharepoint_factory(config),
            helix_factory=default_helix_factory(config),
            renderer=DocxRenderer(style_template=config.DOCX_STYLE_TEMPLATE),
        )

    def sharepoint(self, params: PromoteParams):
        """Async context manager over the project's drive."""
        return self.sharepoint_factory(params)

    def helix(self, params: PromoteParams):
        """Async context manager over the content-origin admin API."""
        return self.helix_factory(params)

    async def report_status(
        self,
        sharepoint,
        params: PromoteParams,
        step: str,
        failures: str = "",
        payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Append [step, timestamp, failures, payload] to the project's status
        table. A failed write is logged and otherwise ignored.
        """
        row = [step, utc_now(), failures, json.dumps(payload or {}, default=str)]
        try:
            written = await sharepoint.update_excel_table(
                params.project_excel_path, self.config.STATUS_TABLE_NAME, [row],
            )
        except Exception as e:
            logger.warning(f"Status row '{step}' not written: {e}")
            return False
        if not written:
            logger.warning(f"Status row '{step}' not written to {params.project_excel_path}")
        return bool(written)
