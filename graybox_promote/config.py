"""
Configuration for the graybox promotion service.

Two layers:
- ServiceConfig: process-wide settings from environment variables / .env
- PromoteParams: the per-project parameter bag replayed into every worker
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

DEFAULT_IGNORE_PATHS = ['/.milo', '/.helix', '/metadata.xlsx', '*/query-index.xlsx']


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid"""
    pass


class ServiceConfig(BaseSettings):
    """
    Centralized configuration for the promotion workers and scheduler.
    Reads from environment variables (and .env when present).
    """

    # --- State ---
    STATE_ROOT: str = "./.graybox_state"
    STRICT_STATE_VALIDATION: bool = False

    # --- Pipeline tuning ---
    BATCH_SIZE: int = 200
    ITEM_CONCURRENCY: int = 10
    FRAGMENT_DISCOVERY_MAX_DEPTH: int = 1

    # --- Retry / polling ---
    MAX_RETRIES: int = 5
    RETRY_DELAY_SECONDS: float = 5
    MAX_BULK_PREVIEW_CHECKS: int = 30
    BULK_PREVIEW_CHECK_INTERVAL: float = 30

    # --- Content origin admin API ---
    HELIX_ADMIN_URL: str = "https://admin.hlx.page"
    HELIX_ADMIN_API_KEYS: Dict[str, str] = {}
    ENABLE_PREVIEW: List[str] = [".*"]

    # --- Object store (Graph) ---
    SHAREPOINT_SITE_URL: Optional[str] = None
    GRAPH_TIMEOUT_SECONDS: int = 60
    STATUS_TABLE_NAME: str = "PROMOTE_STATUS"

    # --- Rendering ---
    DOCX_STYLE_TEMPLATE: Optional[str] = None

    # --- Action topology ---
    # Unset means actions are invoked in-process
    ACTIONS_BASE_URL: Optional[str] = None
    SCHEDULER_ENABLED: bool = False
    SCHEDULER_INTERVAL_SECONDS: float = 60
    SCHEDULER_MAX_PROJECTS_PER_RUN: int = 0

    # --- Service ---
    PORT: int = 8080
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True

    def helix_api_key(self, repo: str) -> Optional[str]:
        return self.HELIX_ADMIN_API_KEYS.get(repo)


@dataclass
class UrlInfo:
    """Owner/repo/branch coordinates parsed from the admin page URI"""
    owner: str
    repo: str
    branch: str = "main"

    @classmethod
    def from_admin_page_uri(cls, admin_page_uri: str) -> "UrlInfo":
        query = parse_qs(urlparse(admin_page_uri or "").query)

        def first(key: str) -> Optional[str]:
            values = query.get(key)
            return values[0] if values else None

        owner = first('owner')
        repo = first('repo')
        branch = first('ref') or "main"

        # Older sidekick links carry project=repo--owner
        project = first('project')
        if project and (not owner or not repo) and '--' in project:
            repo, owner = project.split('--', 1)

        if not owner or not repo:
            raise ConfigurationError(f"Cannot determine owner/repo from adminPageUri: {admin_page_uri}")
        return cls(owner=owner, repo=repo, branch=branch)

    @property
    def origin(self) -> str:
        return f"https://{self.branch}--{self.repo}--{self.owner}.aem.page"


def str_to_list(value: Any) -> List[str]:
    """Split a comma separated parameter into trimmed, non-empty entries."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        items = value
    else:
        items = str(value).split(',')
    return [str(item).strip() for item in items if str(item).strip()]


def is_truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('true', '1', 'yes')


@dataclass
class PromoteParams:
    """
    Validated view of the flat parameter bag a worker receives.

    The raw dict is kept as-is so it can be replayed into the next stage.
    """

    BASE_REQUIRED_PARAMS = [
        'rootFolder',
        'gbRootFolder',
        'experienceName',
        'projectExcelPath',
        'adminPageUri',
        'spToken',
    ]

    root_folder: str
    gb_root_folder: str
    experience_name: str
    project_excel_path: str
    admin_page_uri: str
    sp_token: str
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_params(cls, params: Dict[str, Any], required: Optional[List[str]] = None) -> "PromoteParams":
        required = cls.BASE_REQUIRED_PARAMS if required is None else required
        missing = [name for name in required if not params.get(name)]
        if missing:
            error_msg = f"Missing required parameters: {', '.join(missing)}"
            logger.error(error_msg)
            raise ConfigurationError(error_msg)

        return cls(
            root_folder=params.get('rootFolder', ''),
            gb_root_folder=params.get('gbRootFolder', ''),
            experience_name=params.get('experienceName', ''),
            project_excel_path=params.get('projectExcelPath', ''),
            admin_page_uri=params.get('adminPageUri', ''),
            sp_token=params.get('spToken', ''),
            raw=dict(params),
        )

    @property
    def project(self) -> str:
        return self.raw.get('project') or f"{self.gb_root_folder}/{self.experience_name}"

    @property
    def batch_name(self) -> Optional[str]:
        return self.raw.get('batchName')

    @property
    def url_info(self) -> UrlInfo:
        return UrlInfo.from_admin_page_uri(self.admin_page_uri)

    @property
    def drafts_only(self) -> bool:
        return is_truthy(self.raw.get('draftsOnly', False))

    @property
    def promote_ignore_paths(self) -> List[str]:
        return str_to_list(self.raw.get('promoteIgnorePaths')) + DEFAULT_IGNORE_PATHS

    def get_payload(self) -> Dict[str, Any]:
        """Parameters replayed into downstream actions (without per-call keys)."""
        payload = dict(self.raw)
        payload.pop('batchName', None)
        return payload
