"""
Discovery worker (bulk-copy-worker).

    stage-1 preview (graybox repo) -> markdown fetch -> fragment discovery
        -> classify once -> partition -> batch files + fragment report

Runs once per project, while the project is 'initiated'. A claim marker
turns a second delivery of the same run into a no-op.
"""

from typing import Any, Dict, List, Optional, Tuple

from ..batching import partition
from ..config import PromoteParams
from ..fragments import (
    FragmentDiscovery,
    FragmentRef,
    categorize_fragment,
    categorize_fragments,
    categorize_page,
    consolidated_fragment_data,
    fragment_path,
    iter_fragments,
)
from ..paths import excel_drive_path, file_type_for, in_experience, strip_experience, web_path
from ..state.models import FailureRecord, FileType, ProjectStatus, WorkAction, WorkItem, utc_now
from ..state.tracker import (
    FRAGMENT_REPORT,
    NON_PROCESSING_PREFIX,
    PATH_DETAILS,
    PREVIEW_ERRORS,
    PREVIEW_STATUS,
    PROCESSING_PREFIX,
)
from ..transform.dispatcher import ContentTransformDispatcher
from .base import DISCOVERY, ActionWorker


class DiscoveryWorker(ActionWorker):
    name = DISCOVERY

    async def process(self, params: PromoteParams) -> Dict[str, Any]:
        project = params.project
        current = self.tracker.get_project(project).status
        if current != ProjectStatus.INITIATED or not self.tracker.claim_discovery(project):
            return self.already_processed(project, status=current.value)

        try:
            return await self._discover(params)
        except Exception:
            self.tracker.release_discovery(project)
            raise

    async def _discover(self, params: PromoteParams) -> Dict[str, Any]:
        project = params.project
        exp = params.experience_name
        details = self.tracker.read_record(project, PATH_DETAILS)
        items = [self._work_item(d['sourcePath'], d['destinationPath']) for d in details]
        self.logger.info(f"[{project}] Discovering {len(items)} source items")

        async with self.context.sharepoint(params) as sp, self.context.helix(params) as helix:
            # 1. Stage-1 preview in the graybox repo
            previewed, preview_errors = await self._preview(helix, project, exp, items)

            # 2. Markdown for documents and sheets, fragments for documents
            discovery = FragmentDiscovery(helix.fetch_content, max_depth=self.config.FRAGMENT_DISCOVERY_MAX_DEPTH)
            pages: List[Dict[str, Any]] = []
            roots: List[FragmentRef] = []
            contents: Dict[str, Optional[str]] = {}
            kept: List[WorkItem] = []

            for item in previewed:
                if item.fileType == FileType.OTHER:
                    kept.append(item)
                    continue
                content = await helix.fetch_content(item.mdPath) if item.mdPath else None
                if content is None:
                    preview_errors.append(FailureRecord(path=item.sourcePath, error="Could not fetch content"))
                    continue
                contents[item.sourcePath] = content
                kept.append(item)

                if item.fileType == FileType.DOCX:
                    fragments = await discovery.discover(content)
                    item.hasFragments = bool(fragments)
                    item.nestedFragments = [f.fragmentPath for f in fragments]
                    page = categorize_page(item.sourcePath, fragments)
                    item.category, item.priority = page['category'], page['priority']
                    pages.append(page)
                    roots.extend(fragments)

            # 3. Fragments inside the experience tree become work items
            kept.extend(self._fragment_items(iter_fragments(roots), exp, contents))

            # 4. Classify once, then partition each set
            processing, non_processing = self._classify(self._dedupe(kept), exp, contents)
            processing_batches = partition(processing, self.config.BATCH_SIZE, PROCESSING_PREFIX)
            non_processing_batches = partition(non_processing, self.config.BATCH_SIZE, NON_PROCESSING_PREFIX)

            batches = {**processing_batches, **non_processing_batches}
            index = {
                'processing': list(processing_batches),
                'nonProcessing': list(non_processing_batches),
                'batchSize': self.config.BATCH_SIZE,
                'createdTime': utc_now(),
            }
            self.tracker.write_batches(project, batches, index)
            self.tracker.append_failures(project, PREVIEW_ERRORS, preview_errors)

            report = consolidated_fragment_data(
                pages,
                categorize_fragments(roots),
                {'processing': index['processing'], 'nonProcessing': index['nonProcessing']},
                len(processing),
                len(non_processing),
            )
            self.tracker.write_record(project, FRAGMENT_REPORT, report)

            self.tracker.transition_project(
                project, ProjectStatus.FRAGMENT_DISCOVERY_COMPLETED,
                expected=ProjectStatus.INITIATED,
                processingBatches=len(processing_batches),
                nonProcessingBatches=len(non_processing_batches),
            )

            summary = {
                'project': project,
                'processingItems': len(processing),
                'nonProcessingItems': len(non_processing),
                'processingBatches': list(processing_batches),
                'nonProcessingBatches': list(non_processing_batches),
                'previewErrors': len(preview_errors),
            }
            self._log_summary(summary)
            await self.context.report_status(
                sp, params, "Fragment discovery completed",
                failures=f"{len(preview_errors)} preview errors" if preview_errors else "",
                payload=summary,
            )
        return summary

    @staticmethod
    def _work_item(source: str, destination: str, **extra: Any) -> WorkItem:
        file_type = file_type_for(source)
        if file_type == FileType.EXCEL:
            source, destination = excel_drive_path(source), excel_drive_path(destination)
        return WorkItem(sourcePath=source, destinationPath=destination, fileType=file_type, **extra)

    async def _preview(self, helix, project: str, exp: str, items: List[WorkItem]) -> Tuple[List[WorkItem], List[FailureRecord]]:
        """Bulk preview every source; items that fail are dropped."""
        by_web_path = {web_path(item.sourcePath): item for item in items}
        statuses = await helix.bulk_preview(list(by_web_path), "preview", experience_name=exp, graybox=True)
        self.tracker.write_record(project, PREVIEW_STATUS, [s.to_dict() for s in statuses])

        ok = {s.path: s for s in statuses if s.success}
        previewed: List[WorkItem] = []
        errors: List[FailureRecord] = []
        for path, item in by_web_path.items():
            status = ok.get(path)
            if status is None:
                self.logger.warning(f"[{project}] Preview failed for {item.sourcePath}")
                errors.append(FailureRecord(path=item.sourcePath, error="Preview failed"))
                continue
            item.mdPath = status.md_path
            previewed.append(item)
        self.logger.info(f"[{project}] Preview succeeded for {len(previewed)}/{len(items)} items")
        return previewed, errors

    def _fragment_items(self, refs: List[FragmentRef], exp: str, contents: Dict[str, Optional[str]]) -> List[WorkItem]:
        items: List[WorkItem] = []
        for ref in refs:
            path = fragment_path(ref.fragmentPath)
            if not in_experience(path, exp):
                self.logger.info(f"Fragment outside the experience, not moved: {ref.fragmentPath}")
                continue
            if not ref.available:
                self.logger.warning(f"Fragment unavailable, not moved: {ref.fragmentPath}")
                continue
            category = categorize_fragment(ref)
            source = f"{path}.docx"
            items.append(self._work_item(
                source,
                strip_experience(source, exp),
                category=category['type'],
                priority=category['priority'],
                hasFragments=ref.has_nested,
                nestedFragments=list(ref.references),
                mdPath=f"{ref.fragmentPath}.md",
            ))
            contents[source] = ref.content
        return items

    @staticmethod
    def _dedupe(items: List[WorkItem]) -> List[WorkItem]:
        seen = set()
        unique: List[WorkItem] = []
        for item in items:
            if item.sourcePath in seen:
                continue
            seen.add(item.sourcePath)
            unique.append(item)
        return unique

    def _classify(self, items: List[WorkItem], exp: str, contents: Dict[str, Optional[str]]) -> Tuple[List[WorkItem], List[WorkItem]]:
        dispatcher = ContentTransformDispatcher(exp, renderer=self.context.renderer)
        processing: List[WorkItem] = []
        non_processing: List[WorkItem] = []
        for item in items:
            item.action = dispatcher.classify(item, contents.get(item.sourcePath))
            if item.action == WorkAction.PROMOTE:
                item.priority = "high"
                processing.append(item)
            else:
                non_processing.append(item)
        return processing, non_processing

    def _log_summary(self, summary: Dict[str, Any]) -> None:
        self.logger.info("=" * 60)
        self.logger.info(f"DISCOVERY SUMMARY: {summary['project']}")
        self.logger.info(f"  Processing items:     {summary['processingItems']} in {len(summary['processingBatches'])} batches")
        self.logger.info(f"  Non-processing items: {summary['nonProcessingItems']} in {len(summary['nonProcessingBatches'])} batches")
        if summary['previewErrors']:
            self.logger.info(f"  ⚠ Preview errors:      {summary['previewErrors']}")
        self.logger.info("=" * 60)
