import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest

from graybox_promote.clients.helix import PreviewStatus
from graybox_promote.clients.invoker import LocalActionInvoker
from graybox_promote.clients.sharepoint import LOCKED_MESSAGE, FileData, SaveResult
from graybox_promote.config import ServiceConfig
from graybox_promote.context import PipelineContext
from graybox_promote.scheduler import NO_PROJECTS_MESSAGE, PromotionScheduler, SchedulerAction
from graybox_promote.state.store import StateStore
from graybox_promote.state.tracker import ProjectTracker
from graybox_promote.transform.docx_renderer import DocxRenderer
from graybox_promote.workers import PIPELINE_WORKERS

GRAYBOX_ORIGIN = "https://main--site-graybox--org.aem.page"
PRODUCTION_ORIGIN = "https://main--site--org.aem.page"
PROJECT = "/site-graybox/a"


def now() -> str:
    return datetime.now(timezone.utc).isoformat()


class FakeSharePoint:
    """In-memory drive with a graybox and a production tree."""

    def __init__(self):
        self.graybox: Dict[str, bytes] = {}
        self.production: Dict[str, bytes] = {}
        self.created: Dict[str, str] = {}
        self.modified: Dict[str, str] = {}
        self.locked = set()
        self.saves: List[str] = []
        self.table_rows: List[list] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    def add_graybox_file(self, path: str, data: bytes, created: Optional[str] = None):
        self.graybox[path] = data
        self.created[path] = created or "2024-01-01T00:00:00+00:00"

    async def get_file_data(self, path: str, graybox: bool = False) -> Optional[FileData]:
        tree = self.graybox if graybox else self.production
        if path not in tree:
            return None
        prefix = "gb" if graybox else "prod"
        return FileData(
            path=path,
            download_url=f"fake://{prefix}{path}",
            size=len(tree[path]),
            created=self.created.get(path) if graybox else None,
            last_modified=None if graybox else self.modified.get(path),
        )

    async def download(self, download_url: str) -> bytes:
        prefix, path = download_url[len("fake://"):].split("/", 1)
        tree = self.graybox if prefix == "gb" else self.production
        return tree[f"/{path}"]

    async def save_file(self, data: bytes, path: str, graybox: bool = False) -> SaveResult:
        self.saves.append(path)
        if path in self.locked:
            return SaveResult(success=False, path=path, error_msg=LOCKED_MESSAGE, locked=True)
        tree = self.graybox if graybox else self.production
        tree[path] = data
        if not graybox:
            self.modified[path] = now()
        return SaveResult(success=True, path=path)

    async def find_graybox_files(self, experience_name: str, ignore_patterns: List[str], drafts_only: bool = False) -> List[str]:
        prefix = f"/{experience_name}/drafts/" if drafts_only else f"/{experience_name}/"
        return [path for path in self.graybox if path.startswith(prefix)]

    async def update_excel_table(self, excel_path: str, table_name: str, values: List[list]) -> bool:
        self.table_rows.extend(values)
        return True


def resource_path(path: str) -> str:
    if path.endswith('/'):
        return f"{path}index.md"
    if '.' in path.rsplit('/', 1)[-1]:
        return path
    return f"{path}.md"


class FakeHelix:
    """Admin API double: previews succeed unless listed in preview_failures."""

    def __init__(self):
        self.content: Dict[str, str] = {}
        self.preview_failures = set()
        self.preview_calls: List[tuple] = []
        self.fetches: List[str] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    def add_page(self, path: str, markdown: str, graybox: bool = True):
        origin = GRAYBOX_ORIGIN if graybox else PRODUCTION_ORIGIN
        self.content[f"{origin}{resource_path(path)}"] = markdown

    async def fetch_content(self, url: str) -> Optional[str]:
        self.fetches.append(url)
        return self.content.get(url)

    async def bulk_preview(self, paths, operation="preview", experience_name=None, graybox=False) -> List[PreviewStatus]:
        self.preview_calls.append((list(paths), graybox))
        origin = GRAYBOX_ORIGIN if graybox else PRODUCTION_ORIGIN
        statuses = []
        for path in paths:
            if path in self.preview_failures:
                statuses.append(PreviewStatus(path=path, success=False, response_code=500))
                continue
            resource = resource_path(path)
            statuses.append(PreviewStatus(
                path=path, success=True, response_code=200,
                resource_path=resource, md_path=f"{origin}{resource}",
            ))
        return statuses


class RecordingRenderer(DocxRenderer):
    def __init__(self):
        super().__init__()
        self.documents = []
        self.tokens = []

    def render(self, document, style_sheet=None, auth_token=None):
        self.documents.append(document)
        self.tokens.append(auth_token)
        return super().render(document, style_sheet=style_sheet, auth_token=auth_token)


@pytest.fixture
def config(tmp_path):
    return ServiceConfig(
        STATE_ROOT=str(tmp_path / "state"),
        SHAREPOINT_SITE_URL="https://graph.example/sites/site",
        RETRY_DELAY_SECONDS=0,
        BULK_PREVIEW_CHECK_INTERVAL=0,
        BATCH_SIZE=2,
    )


@pytest.fixture
def store(tmp_path):
    return StateStore(tmp_path / "state")


@pytest.fixture
def tracker(store):
    return ProjectTracker(store)


@pytest.fixture
def sharepoint():
    return FakeSharePoint()


@pytest.fixture
def helix():
    return FakeHelix()


@pytest.fixture
def renderer():
    return RecordingRenderer()


@pytest.fixture
def context(config, store, tracker, sharepoint, helix, renderer):
    invoker = LocalActionInvoker()
    ctx = PipelineContext(
        config=config,
        store=store,
        tracker=tracker,
        invoker=invoker,
        sharepoint_factory=lambda params: sharepoint,
        helix_factory=lambda params: helix,
        renderer=renderer,
    )
    for cls in PIPELINE_WORKERS:
        invoker.register(cls(ctx))
    invoker.register(SchedulerAction(ctx))
    return ctx


@pytest.fixture
def params():
    return {
        'rootFolder': '/site',
        'gbRootFolder': '/site-graybox',
        'experienceName': 'a',
        'projectExcelPath': '/a/promote-status.xlsx',
        'adminPageUri': 'https://admin.example/tools/graybox?owner=org&repo=site&ref=main',
        'spToken': 'token',
    }


async def run_pipeline(context: PipelineContext, action: str, params: dict, max_scans: int = 10) -> dict:
    """Run an entry action, then scheduler scans until nothing is left to do."""
    result = await context.invoker.workers[action].handle(params)
    await context.invoker.drain()
    scheduler = PromotionScheduler(context)
    for _ in range(max_scans):
        scan = await scheduler.run_once()
        await context.invoker.drain()
        if scan['message'] == NO_PROJECTS_MESSAGE:
            break
    return result


def run(coro):
    return asyncio.run(coro)
