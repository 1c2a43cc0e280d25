import re
import logging
from dataclasses import dataclass, field
from typing import List

from .nodes import Document, GridRow, GridTable, Link, Node, NodeVisitor, Text, walk

logger = logging.getLogger(__name__)

GRAYBOX_STYLE = re.compile(r'gb-[a-zA-Z0-9,._-]*')
GRAYBOX_DOMAIN_SUFFIX = '-graybox'
GRAYBOX_BLOCK_TEXT = 'graybox'


def rewrite_graybox_url(value: str, experience_name: str) -> str:
    """Point a staging URL back at production."""
    return value.replace(f"/{experience_name}/", "/").replace(GRAYBOX_DOMAIN_SUFFIX, "")


def strip_graybox_styles(value: str) -> str:
    """'Columns (dark, gb-wide)' -> 'Columns (dark)'; an emptied '()' is dropped."""
    value = GRAYBOX_STYLE.sub('', value)
    return value.replace('()', '', 1).replace(', )', ')', 1)


@dataclass
class CleanupReport:
    """What one clean() call changed; also carries the first-row accumulator."""
    links_rewritten: int = 0
    styles_stripped: int = 0
    blocks_removed: int = 0
    first_rows: List[GridRow] = field(default_factory=list)


class _LinkRewriter(NodeVisitor):
    def __init__(self, experience_name: str, report: CleanupReport):
        self.experience_name = experience_name
        self.report = report

    def visit_Link(self, node: Link):
        url = rewrite_graybox_url(node.url, self.experience_name)
        if url != node.url:
            node.url = url
            self.report.links_rewritten += 1
        # Link text is rewritten on its own; a production URL can carry staging text
        for child in node.children:
            if isinstance(child, Text):
                child.value = rewrite_graybox_url(child.value, self.experience_name)
        self.generic_visit(node)

    def visit_GridTable(self, node: GridTable):
        for child in node.children:
            if isinstance(child, GridRow):
                self.report.first_rows.append(child)
                break
        self.generic_visit(node)


class GrayboxCleaner:
    """
    Removes graybox-only content from a parsed document, in place:

    1. links into the experience / graybox site are rewritten to production
    2. gb-* style variants are stripped from the first row (block name row)
       of every grid table
    3. top-level nodes whose text mentions 'graybox' are deleted
    """

    def __init__(self, experience_name: str):
        self.experience_name = experience_name

    def clean(self, document: Document) -> CleanupReport:
        report = CleanupReport()
        _LinkRewriter(self.experience_name, report).visit(document)

        for row in report.first_rows:
            for node in walk(row):
                if isinstance(node, Text) and 'gb-' in node.value:
                    node.value = strip_graybox_styles(node.value)
                    report.styles_stripped += 1

        kept: List[Node] = []
        for child in document.children:
            if self._is_graybox_block(child):
                report.blocks_removed += 1
            else:
                kept.append(child)
        document.children = kept

        logger.debug(
            f"Cleaned document for '{self.experience_name}': {report.links_rewritten} links, "
            f"{report.styles_stripped} styles, {report.blocks_removed} blocks removed"
        )
        return report

    @staticmethod
    def _is_graybox_block(node: Node) -> bool:
        return any(isinstance(n, Text) and GRAYBOX_BLOCK_TEXT in n.value for n in walk(node))
