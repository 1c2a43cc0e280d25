"""
SharePoint (Microsoft Graph drive) client for the promotion pipeline.

Two trees live in the same drive:

    {site}/drive/root:{rootFolder}     <- production content
    {site}/drive/root:{gbRootFolder}   <- graybox (staging) content

Every path-based call takes `graybox=` to pick the tree. Bearer tokens are
supplied by the caller (they travel in the replayed parameter bag); acquiring
or refreshing them is out of scope here.
"""

import fnmatch
import logging
import re
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import aiohttp

from ..config import PromoteParams, ServiceConfig
from ..paths import split_parent
from .http import HttpResult, request_with_retry

logger = logging.getLogger(__name__)

LOCKED_STATUS = 423
MAX_CHILDREN = 1000
LOCKED_MESSAGE = "File is locked"


@dataclass
class SharePointConfig:
    """
    Connection settings for one project's drive.

    Built from the service settings (site URL, timeouts) plus the replayed
    parameter bag (folders, token).
    """
    site_url: str
    root_folder: str
    gb_root_folder: str
    token: str
    timeout_seconds: int = 60
    max_retries: int = 5
    retry_base_delay: float = 1.0

    @classmethod
    def from_params(cls, params: PromoteParams, service_config: ServiceConfig) -> "SharePointConfig":
        return cls(
            site_url=(service_config.SHAREPOINT_SITE_URL or "").rstrip('/'),
            root_folder=params.root_folder,
            gb_root_folder=params.gb_root_folder,
            token=params.sp_token,
            timeout_seconds=service_config.GRAPH_TIMEOUT_SECONDS,
            max_retries=service_config.MAX_RETRIES,
        )

    def is_valid(self) -> bool:
        return bool(self.site_url and self.root_folder and self.gb_root_folder and self.token)

    def base_uri(self, graybox: bool) -> str:
        folder = self.gb_root_folder if graybox else self.root_folder
        return f"{self.site_url}/drive/root:{folder}"

    @property
    def items_uri(self) -> str:
        return f"{self.site_url}/drive/items"


@dataclass
class FileData:
    """Download location and timestamps of a drive item"""
    path: str
    download_url: Optional[str]
    size: int = 0
    created: Optional[str] = None
    last_modified: Optional[str] = None


class UploadOutcome(str, Enum):
    SUCCESS = "success"
    LOCKED = "locked"
    FAILED = "failed"


@dataclass
class SaveResult:
    """
    Outcome of writing one file to the drive.

    locked=True means the destination refused the write because another
    writer holds it (HTTP 423); the caller records it separately from
    generic failures so it can be retried later.
    """
    success: bool
    path: str
    error_msg: Optional[str] = None
    locked: bool = False


def _encode_path(path: str) -> str:
    return quote(path, safe="/:")


def is_path_ignored(path: str, patterns: List[str]) -> bool:
    """Prefix match for plain patterns, glob match for patterns with '*'."""
    for pattern in patterns:
        if '*' in pattern:
            if fnmatch.fnmatch(path, pattern):
                return True
        elif path == pattern or path.startswith(pattern.rstrip('/') + '/'):
            return True
    return False


class SharePointClient:
    """
    Async Graph drive client (async context manager).

    Usage:
        async with SharePointClient(config) as sp:
            data = await sp.get_file_data('/exp/page.docx', graybox=True)
    """

    def __init__(self, config: SharePointConfig):
        self.config = config
        self.session: Optional[aiohttp.ClientSession] = None
        self._item_ids: Dict[str, str] = {}

    async def __aenter__(self):
        self.session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.config.timeout_seconds),
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.session:
            await self.session.close()
            self.session = None

    def _get_headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.config.token}",
            "Accept": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    async def _request(self, method: str, url: str, headers: Optional[Dict[str, str]] = None, **kwargs) -> HttpResult:
        if self.session is None:
            raise RuntimeError("SharePointClient must be used as an async context manager")
        return await request_with_retry(
            self.session, method, url,
            headers=headers if headers is not None else self._get_headers(),
            max_retries=self.config.max_retries,
            base_delay=self.config.retry_base_delay,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_file_data(self, path: str, graybox: bool = False) -> Optional[FileData]:
        """
        Look up a file's download URL and timestamps.

        MS GRAPH API CALL
        ------------------
        GET {site}/drive/root:{folder}{path}

        Response (abridged):
        {
            "@microsoft.graph.downloadUrl": "https://...",
            "size": 12345,
            "createdDateTime": "2024-01-01T10:00:00Z",
            "lastModifiedDateTime": "2024-01-02T10:00:00Z"
        }

        Returns:
            FileData, or None when the file does not exist
        """
        url = f"{self.config.base_uri(graybox)}{_encode_path(path)}"
        result = await self._request("GET", url)
        if result.status == 404:
            return None
        if not result.ok:
            logger.warning(f"Could not read file metadata for {path}: {result.status}")
            return None

        item = result.json() or {}
        return FileData(
            path=path,
            download_url=item.get('@microsoft.graph.downloadUrl'),
            size=item.get('size', 0),
            created=item.get('createdDateTime'),
            last_modified=item.get('lastModifiedDateTime'),
        )

    async def download(self, download_url: str) -> bytes:
        """Fetch file bytes from a pre-authenticated download URL."""
        result = await self._request("GET", download_url, headers={})
        if not result.ok:
            raise IOError(f"Download failed with status {result.status}")
        return result.body

    async def list_children(self, folder: str, graybox: bool = False) -> List[Dict[str, Any]]:
        url = f"{self.config.base_uri(graybox)}{_encode_path(folder)}:/children?$top={MAX_CHILDREN}"
        result = await self._request("GET", url)
        if not result.ok:
            logger.warning(f"Could not list {folder}: {result.status}")
            return []
        return (result.json() or {}).get('value', [])

    async def find_graybox_files(self, experience_name: str, ignore_patterns: List[str], drafts_only: bool = False) -> List[str]:
        """
        Breadth-first walk of the graybox tree collecting every file that
        belongs to the experience (experience folder at first or second level).
        """
        gb_root = self.config.gb_root_folder
        parent_prefix = re.compile(f".*:{re.escape(gb_root)}")
        select = re.compile(f"^/([^/]+/)?{re.escape(experience_name)}(/.*)?$")

        folders = deque([f"/{experience_name}/drafts"] if drafts_only else [""])
        files: List[str] = []
        while folders:
            folder = folders.popleft()
            for item in await self.list_children(folder, graybox=True):
                parent = (item.get('parentReference') or {}).get('path', '')
                item_path = f"{parent_prefix.sub('', parent)}/{item.get('name')}"
                if is_path_ignored(item_path, ignore_patterns):
                    logger.info(f"Ignored from promote: {item_path}")
                    continue
                if 'folder' in item:
                    folders.append(item_path)
                elif select.match(item_path):
                    files.append(item_path)

        logger.info(f"Found {len(files)} graybox files for experience '{experience_name}'")
        return files

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_folder(self, folder: str, graybox: bool = False) -> bool:
        """
        Ensure a folder (and its parents) exists.

        MS GRAPH API CALLS
        -------------------
        1. GET   {base}{folder}                      200 = exists
        2. PATCH {base}{folder}  {"folder": {}}      creates missing folders
        """
        if not folder or folder == '/':
            return True
        url = f"{self.config.base_uri(graybox)}{_encode_path(folder)}"
        result = await self._request("GET", url)
        if result.ok:
            return True
        if result.status != 404:
            logger.warning(f"Could not check folder {folder}: {result.status}")
            return False

        result = await self._request(
            "PATCH", url,
            headers=self._get_headers({"Content-Type": "application/json"}),
            json_body={"folder": {}},
        )
        if result.status in (200, 201):
            logger.info(f"Created folder: {folder}")
            return True
        logger.warning(f"Could not create folder: {folder} - {result.status}")
        return False

    async def create_upload_session(self, path: str, size: int, graybox: bool = False) -> HttpResult:
        """
        MS GRAPH API CALL
        ------------------
        POST {base}{path}:/createUploadSession
        {
            "item": {"@microsoft.graph.conflictBehavior": "replace"}
        }

        The returned result carries `uploadUrl` in its JSON body on success.
        """
        _, name = split_parent(path)
        url = f"{self.config.base_uri(graybox)}{_encode_path(path)}:/createUploadSession"
        payload = {
            "item": {
                "@microsoft.graph.conflictBehavior": "replace",
                "name": name,
            },
            "deferCommit": False,
        }
        logger.debug(f"Creating upload session for {path} ({size} bytes)")
        return await self._request(
            "POST", url,
            headers=self._get_headers({"Content-Type": "application/json"}),
            json_body=payload,
        )

    async def upload(self, upload_url: str, data: bytes) -> UploadOutcome:
        """Single-request PUT of the whole file into an upload session."""
        size = len(data)
        headers = {
            "Content-Length": str(size),
            "Content-Range": f"bytes 0-{size - 1}/{size}" if size else "bytes */0",
            "Prefer": "bypass-shared-lock",
        }
        result = await self._request("PUT", upload_url, headers=headers, data=data)
        if result.ok:
            return UploadOutcome.SUCCESS
        if result.status == LOCKED_STATUS:
            return UploadOutcome.LOCKED
        logger.warning(f"Upload failed with status {result.status}: {result.text[:200]}")
        return UploadOutcome.FAILED

    async def save_file(self, data: bytes, path: str, graybox: bool = False) -> SaveResult:
        """
        Write bytes to path: ensure parent folder, open an upload session
        sized to the payload, upload. A 423 from either step is reported as
        locked rather than as a generic failure.
        """
        folder, _ = split_parent(path)
        if not await self.create_folder(folder, graybox=graybox):
            return SaveResult(success=False, path=path, error_msg=f"Could not create folder {folder}")

        session = await self.create_upload_session(path, len(data), graybox=graybox)
        if session.status == LOCKED_STATUS:
            return SaveResult(success=False, path=path, error_msg=LOCKED_MESSAGE, locked=True)
        upload_url = (session.json() or {}).get('uploadUrl') if session.ok else None
        if not upload_url:
            return SaveResult(success=False, path=path, error_msg=f"Could not create upload session ({session.status})")

        outcome = await self.upload(upload_url, data)
        if outcome == UploadOutcome.SUCCESS:
            logger.info(f"Saved {path}")
            return SaveResult(success=True, path=path)
        if outcome == UploadOutcome.LOCKED:
            logger.warning(f"Destination locked: {path}")
            return SaveResult(success=False, path=path, error_msg=LOCKED_MESSAGE, locked=True)
        return SaveResult(success=False, path=path, error_msg="Upload failed")

    async def update_excel_table(self, excel_path: str, table_name: str, values: List[List[Any]]) -> bool:
        """
        Append rows to a named table in a workbook of the production tree.

        MS GRAPH API CALLS
        -------------------
        1. GET  {base}{excelPath}?$select=id          (cached per path)
        2. POST {site}/drive/items/{id}/workbook/tables/{table}/rows
           {"values": [[...], ...]}
        """
        item_id = self._item_ids.get(excel_path)
        if not item_id:
            result = await self._request("GET", f"{self.config.base_uri(False)}{_encode_path(excel_path)}?$select=id")
            if not result.ok:
                logger.warning(f"Could not resolve workbook {excel_path}: {result.status}")
                return False
            item_id = (result.json() or {}).get('id')
            if not item_id:
                return False
            self._item_ids[excel_path] = item_id

        url = f"{self.config.items_uri}/{item_id}/workbook/tables/{quote(table_name)}/rows"
        result = await self._request(
            "POST", url,
            headers=self._get_headers({"Content-Type": "application/json"}),
            json_body={"values": values},
        )
        if not result.ok:
            logger.warning(f"Could not append to table {table_name} in {excel_path}: {result.status}")
        return result.ok
