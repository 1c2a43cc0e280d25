"""
Per-item routing between the transform path and the byte-copy path.

An item is routed to transformation when its content carries any staging
marker, or when it is part of a fragment structure (a page embedding
fragments, a fragment embedding fragments). Everything else is copied as-is.
Routing is decided once, at discovery, and stored on the WorkItem.
"""

import re
import logging
from dataclasses import dataclass
from typing import Optional

from ..state.models import FileType, WorkAction, WorkItem
from .cleaner import GRAYBOX_DOMAIN_SUFFIX, CleanupReport, GrayboxCleaner
from .docx_renderer import DocxRenderer
from .markdown_parser import parse_markdown
from .spreadsheet import json_to_xlsx, rewrite_sheet_json

logger = logging.getLogger(__name__)

GRAYBOX_STYLE_PREFIX = 'gb-'
GRAYBOX_BLOCK = re.compile(r'^\s*\|\s*graybox\b', re.IGNORECASE | re.MULTILINE)


def has_staging_markers(content: Optional[str], experience_name: str) -> bool:
    if not content:
        return False
    return (
        (bool(experience_name) and f"/{experience_name}/" in content)
        or GRAYBOX_STYLE_PREFIX in content
        or GRAYBOX_DOMAIN_SUFFIX in content
        or GRAYBOX_BLOCK.search(content) is not None
    )


@dataclass
class TransformResult:
    action: WorkAction
    artifact: Optional[bytes] = None
    error: Optional[str] = None
    report: Optional[CleanupReport] = None

    @property
    def success(self) -> bool:
        return self.error is None


class ContentTransformDispatcher:

    def __init__(
        self,
        experience_name: str,
        renderer: Optional[DocxRenderer] = None,
        style_sheet: Optional[str] = None,
        auth_token: Optional[str] = None,
    ):
        self.experience_name = experience_name
        self.renderer = renderer or DocxRenderer()
        self.style_sheet = style_sheet
        self.auth_token = auth_token

    def classify(self, item: WorkItem, content: Optional[str]) -> WorkAction:
        if item.fileType == FileType.OTHER:
            return WorkAction.COPY
        if has_staging_markers(content, self.experience_name):
            return WorkAction.PROMOTE
        if item.fileType == FileType.DOCX and (item.hasFragments or item.nestedFragments):
            return WorkAction.PROMOTE
        return WorkAction.COPY

    def transform(self, item: WorkItem, content: str) -> TransformResult:
        """Generate the production artifact for an item routed to PROMOTE."""
        if item.fileType == FileType.EXCEL:
            try:
                sheet = rewrite_sheet_json(content, self.experience_name)
            except ValueError as e:
                return TransformResult(WorkAction.PROMOTE, error=f"Invalid sheet JSON: {e}")
            return TransformResult(WorkAction.PROMOTE, artifact=json_to_xlsx(sheet))

        if item.fileType == FileType.DOCX:
            document = parse_markdown(content)
            report = GrayboxCleaner(self.experience_name).clean(document)
            artifact = self.renderer.render(document, style_sheet=self.style_sheet, auth_token=self.auth_token)
            if artifact is None:
                return TransformResult(WorkAction.PROMOTE, error="Renderer returned no document", report=report)
            return TransformResult(WorkAction.PROMOTE, artifact=artifact, report=report)

        return TransformResult(WorkAction.PROMOTE, error=f"Cannot transform file type {item.fileType.value}")

    def classify_and_transform(self, item: WorkItem, content: Optional[str]) -> TransformResult:
        action = self.classify(item, content)
        if action == WorkAction.COPY:
            return TransformResult(WorkAction.COPY)
        logger.info(f"Transforming {item.sourcePath} -> {item.destinationPath}")
        return self.transform(item, content or "")
