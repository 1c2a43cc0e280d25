"""
Entry actions: the two ways a promotion project starts.

bulk-copy         promote an explicit list of graybox paths / URLs
initiate-promote  promote every file of the experience tree

Both create the project (status 'initiated' plus its queue entry), store the
resolved path list and hand off to the discovery worker without waiting.
"""

from typing import Any, Dict, List

from ..config import ConfigurationError, PromoteParams, str_to_list
from ..paths import normalize_source_path, path_details
from ..state.models import PROMOTION_OUTCOMES, ProjectStatus
from ..state.tracker import PATH_DETAILS
from .base import BULK_COPY, DISCOVERY, INITIATE_PROMOTE, ActionWorker, ProjectConflictError

RESTARTABLE_STATUSES = PROMOTION_OUTCOMES + (ProjectStatus.PROMOTED_PREVIEW_COMPLETED.value,)


class EntryAction(ActionWorker):

    def resolve_paths(self, paths: List[str], experience_name: str) -> List[Dict[str, str]]:
        details: List[Dict[str, str]] = []
        seen = set()
        for path in paths:
            detail = path_details(normalize_source_path(path), experience_name)
            if detail['sourcePath'] in seen:
                continue
            seen.add(detail['sourcePath'])
            details.append(detail)
        return details

    async def start_project(self, params: PromoteParams, details: List[Dict[str, str]], sharepoint=None) -> Dict[str, Any]:
        project = params.project
        # Raises ConfigurationError before any state is written
        url_info = params.url_info
        self.logger.info(f"Starting {project} for {url_info.owner}/{url_info.repo}@{url_info.branch}")

        if self.tracker.project_exists(project):
            current = self.tracker.get_project(project).status
            if current.value not in RESTARTABLE_STATUSES:
                raise ProjectConflictError(f"Project {project} is already in progress ({current.value})")
            self.tracker.reset_project(project)

        payload = params.get_payload()
        payload['project'] = project
        payload.pop('sourcePaths', None)

        self.tracker.create_project(project, payload)
        self.tracker.write_record(project, PATH_DETAILS, details)
        activation_id = await self.context.invoker.invoke(DISCOVERY, payload)

        if sharepoint is not None:
            await self.context.report_status(
                sharepoint, params, "Bulk copy initiated",
                payload={'files': len(details), 'activationId': activation_id},
            )

        return {
            'pathDetails': details,
            'project': project,
            'message': 'Bulk copy operation started',
            'activationId': activation_id,
        }


class BulkCopyAction(EntryAction):
    """Start a project from an explicit comma separated `sourcePaths` list."""

    name = BULK_COPY
    required_params = PromoteParams.BASE_REQUIRED_PARAMS + ['sourcePaths']

    async def process(self, params: PromoteParams) -> Dict[str, Any]:
        source_paths = str_to_list(params.raw.get('sourcePaths'))
        if not source_paths:
            raise ConfigurationError("No valid source paths provided")

        details = self.resolve_paths(source_paths, params.experience_name)
        self.logger.info(f"Bulk copy of {len(details)} paths for {params.project}")
        async with self.context.sharepoint(params) as sp:
            return await self.start_project(params, details, sharepoint=sp)


class InitiatePromoteAction(EntryAction):
    """Start a project covering the whole experience tree in the graybox drive."""

    name = INITIATE_PROMOTE

    async def process(self, params: PromoteParams) -> Dict[str, Any]:
        async with self.context.sharepoint(params) as sp:
            files = await sp.find_graybox_files(
                params.experience_name,
                params.promote_ignore_paths,
                drafts_only=params.drafts_only,
            )
            if not files:
                raise ConfigurationError(f"No graybox files found for experience '{params.experience_name}'")

            details = self.resolve_paths(files, params.experience_name)
            self.logger.info(f"Promoting {len(details)} graybox files for {params.project}")
            return await self.start_project(params, details, sharepoint=sp)
