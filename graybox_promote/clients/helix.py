import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp

from ..config import ServiceConfig, UrlInfo
from .http import request_with_retry

logger = logging.getLogger(__name__)

PREVIEW = 'preview'
LIVE = 'live'
PREVIEW_OK_STATUSES = (200, 304)
AUTH_ERROR_STATUSES = (401, 403)
GRAYBOX_REPO_POSTFIX = '-graybox'
JOB_DONE_STATES = ('stopped', 'cancelled')


@dataclass
class PreviewStatus:
    path: str
    success: bool = False
    file_name: str = ""
    resource_path: str = ""
    response_code: Any = ""
    md_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'path': self.path,
            'success': self.success,
            'fileName': self.file_name,
            'resourcePath': self.resource_path,
            'responseCode': self.response_code,
            'mdPath': self.md_path,
        }


@dataclass
class JobStatus:
    name: str
    state: str = ""
    resources: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def done(self) -> bool:
        return self.state in JOB_DONE_STATES


class HelixAdminClient:
    """
    Client for the content-origin admin API: bulk preview/publish jobs and
    markdown fetches from the *.aem.page origin.
    """

    def __init__(self, url_info: UrlInfo, config: ServiceConfig, session: Optional[aiohttp.ClientSession] = None):
        self.url_info = url_info
        self.config = config
        self.session = session
        self._owns_session = session is None
        self.retry_base_delay = 1.0

    async def __aenter__(self):
        if self.session is None:
            self.session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.config.GRAPH_TIMEOUT_SECONDS))
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.session and self._owns_session:
            await self.session.close()
            self.session = None

    def repo(self, graybox: bool) -> str:
        return f"{self.url_info.repo}{GRAYBOX_REPO_POSTFIX}" if graybox else self.url_info.repo

    def origin(self, graybox: bool) -> str:
        return f"https://{self.url_info.branch}--{self.repo(graybox)}--{self.url_info.owner}.aem.page"

    def can_bulk_preview(self, graybox: bool = False) -> bool:
        repo = self.repo(graybox)
        return any(re.match(pattern, repo) for pattern in self.config.ENABLE_PREVIEW)

    def _headers(self, graybox: bool) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        key = self.config.helix_api_key(self.repo(graybox))
        if key:
            headers["Authorization"] = f"token {key}"
        return headers

    async def fetch_content(self, url: str) -> Optional[str]:
        """GET a markdown / JSON resource; None unless the origin answers 200."""
        result = await request_with_retry(
            self.session, "GET", url,
            max_retries=self.config.MAX_RETRIES, base_delay=self.retry_base_delay,
        )
        if result.status != 200:
            logger.warning(f"Content fetch {url} returned {result.status}")
            return None
        return result.text

    async def bulk_preview(
        self,
        paths: List[str],
        operation: str = PREVIEW,
        experience_name: Optional[str] = None,
        graybox: bool = False,
    ) -> List[PreviewStatus]:
        """
        Run a bulk preview/publish job for paths and wait for it to finish.

        Every requested path gets a PreviewStatus; anything the job did not
        report (or a job that could not start / never finished) stays failed.
        """
        statuses = {path: PreviewStatus(path=path) for path in paths}
        if not paths:
            return []
        if not self.can_bulk_preview(graybox):
            logger.warning(f"Bulk {operation} not enabled for repo {self.repo(graybox)}")
            return list(statuses.values())

        scope = f"{experience_name}/" if graybox and experience_name else ""
        url = (
            f"{self.config.HELIX_ADMIN_URL}/{operation}/{self.url_info.owner}/"
            f"{self.repo(graybox)}/{self.url_info.branch}/{scope}*"
        )
        body = {"forceUpdate": True, "paths": paths}

        job_name = None
        for attempt in range(self.config.MAX_RETRIES):
            result = await request_with_retry(
                self.session, "POST", url, headers=self._headers(graybox), json_body=body,
                max_retries=self.config.MAX_RETRIES, base_delay=self.retry_base_delay,
            )
            if result.ok:
                job_name = ((result.json() or {}).get('job') or {}).get('name')
                break
            if result.status in AUTH_ERROR_STATUSES:
                logger.error(f"Bulk {operation} rejected ({result.status}); check the admin API key")
                break
            logger.warning(f"Bulk {operation} failed with {result.status}, retry {attempt + 1}/{self.config.MAX_RETRIES}")
            await asyncio.sleep(self.config.RETRY_DELAY_SECONDS)

        if not job_name:
            return list(statuses.values())

        job = await self._wait_for_job(job_name, operation, graybox)
        if job is None:
            logger.error(f"Bulk {operation} job {job_name} did not finish in time")
            return list(statuses.values())

        for resource in job.resources:
            path = resource.get('path')
            if path not in statuses:
                continue
            status = statuses[path]
            status.response_code = resource.get('status', '')
            status.success = status.response_code in PREVIEW_OK_STATUSES
            status.file_name = (resource.get('source') or {}).get('name', '')
            status.resource_path = resource.get('resourcePath', '')
            if status.success:
                status.md_path = f"{self.origin(graybox)}{status.resource_path}"

        succeeded = sum(1 for s in statuses.values() if s.success)
        logger.info(f"Bulk {operation} job {job_name}: {succeeded}/{len(paths)} succeeded")
        return list(statuses.values())

    async def job_status(self, job_name: str, operation: str = PREVIEW, graybox: bool = False) -> Optional[JobStatus]:
        op = 'publish' if operation == LIVE else operation
        url = (
            f"{self.config.HELIX_ADMIN_URL}/job/{self.url_info.owner}/{self.repo(graybox)}/"
            f"{self.url_info.branch}/{op}/{job_name}/details"
        )
        result = await request_with_retry(
            self.session, "GET", url, headers=self._headers(graybox),
            max_retries=self.config.MAX_RETRIES, base_delay=self.retry_base_delay,
        )
        if not result.ok:
            logger.warning(f"Job status for {job_name} returned {result.status}")
            return None
        data = result.json() or {}
        return JobStatus(
            name=job_name,
            state=data.get('state', ''),
            resources=(data.get('data') or {}).get('resources', []),
        )

    async def _wait_for_job(self, job_name: str, operation: str, graybox: bool) -> Optional[JobStatus]:
        for _ in range(self.config.MAX_BULK_PREVIEW_CHECKS):
            job = await self.job_status(job_name, operation, graybox)
            if job is not None and job.done:
                return job
            await asyncio.sleep(self.config.BULK_PREVIEW_CHECK_INTERVAL)
        return None
