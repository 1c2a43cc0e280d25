import io
import logging
from typing import Optional

import docx
from docx.enum.text import WD_BREAK
from docx.opc.constants import RELATIONSHIP_TYPE
from docx.oxml import OxmlElement
from docx.oxml.ns import qn
from docx.shared import Pt

from .nodes import (
    BlockQuote, Break, CodeBlock, Document, Emphasis, GridCell, GridRow, GridTable,
    Heading, Html, Image, InlineCode, Link, ListItem, ListNode, Node, Paragraph,
    Strong, Table, TableCell, TableRow, Text, ThematicBreak, text_content,
)

logger = logging.getLogger(__name__)

MONOSPACE_FONT = "Courier New"


def _add_hyperlink(paragraph, url: str, text: str, bold: bool = False, italic: bool = False):
    """python-docx has no hyperlink API; build the w:hyperlink element directly."""
    part = paragraph.part
    rel_id = part.relate_to(url, RELATIONSHIP_TYPE.HYPERLINK, is_external=True)

    hyperlink = OxmlElement('w:hyperlink')
    hyperlink.set(qn('r:id'), rel_id)

    run = OxmlElement('w:r')
    props = OxmlElement('w:rPr')
    style = OxmlElement('w:rStyle')
    style.set(qn('w:val'), 'Hyperlink')
    props.append(style)
    underline = OxmlElement('w:u')
    underline.set(qn('w:val'), 'single')
    props.append(underline)
    if bold:
        props.append(OxmlElement('w:b'))
    if italic:
        props.append(OxmlElement('w:i'))
    run.append(props)

    text_el = OxmlElement('w:t')
    text_el.text = text
    text_el.set(qn('xml:space'), 'preserve')
    run.append(text_el)
    hyperlink.append(run)
    paragraph._p.append(hyperlink)
    return hyperlink


class DocxRenderer:
    """
    Renders a cleaned Document tree to .docx bytes.

    style_sheet may point at a .docx template whose styles are reused.
    auth_token is accepted for renderers that embed remote images; this one
    keeps images as linked alt text.
    """

    def __init__(self, style_template: Optional[str] = None):
        self.style_template = style_template

    def render(self, document: Document, style_sheet: Optional[str] = None, auth_token: Optional[str] = None) -> Optional[bytes]:
        try:
            out = docx.Document(style_sheet or self.style_template)
            for block in document.children:
                self._render_block(out, block)
            buffer = io.BytesIO()
            out.save(buffer)
            return buffer.getvalue()
        except Exception as e:
            logger.error(f"Failed to render docx: {e}", exc_info=True)
            return None

    # container is a Document or a table cell; both support add_paragraph/add_table
    def _render_block(self, container, node: Node, list_style: Optional[str] = None):
        if isinstance(node, Heading):
            if hasattr(container, 'add_heading'):
                paragraph = container.add_heading(level=min(max(node.depth, 1), 9))
            else:
                paragraph = container.add_paragraph()
            self._render_inline(paragraph, node.children)
        elif isinstance(node, Paragraph):
            paragraph = container.add_paragraph(style=list_style) if list_style else container.add_paragraph()
            self._render_inline(paragraph, node.children)
        elif isinstance(node, ListNode):
            style = 'List Number' if node.ordered else 'List Bullet'
            for item in node.children:
                self._render_block(container, item, list_style=style)
        elif isinstance(node, ListItem):
            for child in node.children:
                self._render_block(container, child, list_style=list_style)
        elif isinstance(node, BlockQuote):
            for child in node.children:
                self._render_block(container, child)
        elif isinstance(node, CodeBlock):
            run = container.add_paragraph().add_run(node.value)
            run.font.name = MONOSPACE_FONT
            run.font.size = Pt(9)
        elif isinstance(node, ThematicBreak):
            container.add_paragraph('---')
        elif isinstance(node, Html):
            container.add_paragraph(node.value)
        elif isinstance(node, (GridTable, Table)):
            self._render_table(container, node)
        elif isinstance(node, (GridRow, GridCell, TableRow, TableCell)):
            for child in node.children:
                self._render_block(container, child)
        else:
            # Stray inline node at block level
            self._render_inline(container.add_paragraph(), [node])

    def _render_table(self, container, node: Node):
        rows = [r for r in node.children if isinstance(r, (GridRow, TableRow))]
        if not rows:
            return
        cols = max(len(r.children) for r in rows) or 1
        table = container.add_table(rows=len(rows), cols=cols)
        try:
            table.style = 'Table Grid'
        except (KeyError, ValueError):
            logger.debug("Template has no 'Table Grid' style")

        for r_idx, row in enumerate(rows):
            cells = row.children
            if len(cells) < cols:
                # Block name rows span the full width
                table.cell(r_idx, len(cells) - 1 if cells else 0).merge(table.cell(r_idx, cols - 1))
            for c_idx, cell in enumerate(cells):
                target = table.cell(r_idx, c_idx)
                # New cells start with one empty paragraph
                first = target.paragraphs[0]
                blocks = cell.children
                if isinstance(cell, TableCell):
                    self._render_inline(first, blocks)
                    continue
                for b_idx, block in enumerate(blocks):
                    if b_idx == 0 and isinstance(block, Paragraph):
                        self._render_inline(first, block.children)
                    else:
                        self._render_block(target, block)

    def _render_inline(self, paragraph, nodes, bold: bool = False, italic: bool = False):
        for node in nodes:
            if isinstance(node, Text):
                run = paragraph.add_run(node.value)
                run.bold = bold or None
                run.italic = italic or None
            elif isinstance(node, Strong):
                self._render_inline(paragraph, node.children, bold=True, italic=italic)
            elif isinstance(node, Emphasis):
                self._render_inline(paragraph, node.children, bold=bold, italic=True)
            elif isinstance(node, InlineCode):
                run = paragraph.add_run(node.value)
                run.font.name = MONOSPACE_FONT
            elif isinstance(node, Link):
                _add_hyperlink(paragraph, node.url, text_content(node) or node.url, bold=bold, italic=italic)
            elif isinstance(node, Image):
                _add_hyperlink(paragraph, node.url, node.alt or node.url)
            elif isinstance(node, Break):
                paragraph.add_run().add_break(WD_BREAK.LINE)
            else:
                paragraph.add_run(text_content(node))
