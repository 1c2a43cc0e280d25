import re
import logging
from typing import Any, List, Tuple

import markdown
from bs4 import BeautifulSoup, NavigableString, Tag

from .nodes import (
    BlockQuote, Break, CodeBlock, Document, Emphasis, GridCell, GridRow, GridTable,
    Heading, Html, Image, InlineCode, Link, ListItem, ListNode, Node, Paragraph,
    Strong, Table, TableCell, TableRow, Text, ThematicBreak,
)

logger = logging.getLogger(__name__)

MARKDOWN_EXTENSIONS = ['tables', 'fenced_code', 'sane_lists']

GRID_BORDER = re.compile(r'^\s*\+[-=:+]+\+\s*$')
GRID_LINE = re.compile(r'^\s*[+|]')


def parse_markdown(text: str) -> Document:
    """Parse markdown (including grid tables) into a typed Document."""
    return Document(children=_parse_blocks(text or ""))


def _parse_blocks(text: str) -> List[Node]:
    nodes: List[Node] = []
    for is_grid, segment in _split_segments(text):
        if is_grid:
            nodes.append(_parse_grid_table(segment))
        elif segment.strip():
            nodes.extend(_parse_html_blocks(segment))
    return nodes


def _split_segments(text: str) -> List[Tuple[bool, Any]]:
    """Separate grid table line runs from ordinary markdown."""
    segments: List[Tuple[bool, Any]] = []
    lines = text.splitlines()
    buffer: List[str] = []
    i = 0
    while i < len(lines):
        if GRID_BORDER.match(lines[i]):
            if buffer:
                segments.append((False, "\n".join(buffer)))
                buffer = []
            grid = []
            while i < len(lines) and GRID_LINE.match(lines[i]):
                grid.append(lines[i])
                i += 1
            segments.append((True, grid))
            continue
        buffer.append(lines[i])
        i += 1
    if buffer:
        segments.append((False, "\n".join(buffer)))
    return segments


# ---------------------------------------------------------------------------
# Grid tables
# ---------------------------------------------------------------------------

def _parse_grid_table(lines: List[str]) -> GridTable:
    table = GridTable()
    border = lines[0]
    row_lines: List[str] = []

    for line in lines[1:]:
        if GRID_BORDER.match(line):
            if row_lines:
                table.children.append(_parse_grid_row(border, row_lines))
            border = line
            row_lines = []
        else:
            row_lines.append(line)

    # A table missing its closing border still keeps the last row
    if row_lines:
        table.children.append(_parse_grid_row(border, row_lines))
    return table


def _parse_grid_row(border: str, row_lines: List[str]) -> GridRow:
    border_cols = {i for i, ch in enumerate(border) if ch == '+'}
    pipe_cols = {i for i, ch in enumerate(row_lines[0]) if ch == '|'}
    # Merged cells have no '|' at inner border positions
    bounds = sorted(border_cols & pipe_cols) or sorted(pipe_cols)

    row = GridRow()
    for left, right in zip(bounds, bounds[1:]):
        cell_text = "\n".join(line[left + 1:right].strip() for line in row_lines)
        row.children.append(GridCell(children=_parse_blocks(cell_text.strip())))
    return row


# ---------------------------------------------------------------------------
# Regular markdown via Python-Markdown + BeautifulSoup
# ---------------------------------------------------------------------------

def _parse_html_blocks(text: str) -> List[Node]:
    html = markdown.markdown(text, extensions=MARKDOWN_EXTENSIONS)
    soup = BeautifulSoup(html, 'html.parser')
    return _blocks_from(soup.children)


def _blocks_from(elements) -> List[Node]:
    blocks: List[Node] = []
    for el in elements:
        if isinstance(el, NavigableString):
            if el.strip():
                blocks.append(Paragraph(children=[Text(value=str(el).strip())]))
            continue
        if not isinstance(el, Tag):
            continue
        block = _block_from(el)
        if block is not None:
            blocks.append(block)
    return blocks


def _block_from(el: Tag):
    name = el.name
    if name in ('h1', 'h2', 'h3', 'h4', 'h5', 'h6'):
        return Heading(depth=int(name[1]), children=_inline_from(el))
    if name == 'p':
        return Paragraph(children=_inline_from(el))
    if name in ('ul', 'ol'):
        items = [_list_item(li) for li in el.find_all('li', recursive=False)]
        return ListNode(ordered=(name == 'ol'), children=items)
    if name == 'pre':
        code = el.find('code')
        lang = None
        if code is not None:
            for cls in code.get('class') or []:
                if cls.startswith('language-'):
                    lang = cls[len('language-'):]
        return CodeBlock(value=el.get_text().rstrip('\n'), lang=lang)
    if name == 'hr':
        return ThematicBreak()
    if name == 'blockquote':
        return BlockQuote(children=_blocks_from(el.children))
    if name == 'table':
        return _table_from(el)
    return Html(value=str(el))


def _list_item(li: Tag) -> ListItem:
    block_tags = {'p', 'ul', 'ol', 'pre', 'blockquote', 'table'}
    if any(isinstance(c, Tag) and c.name in block_tags for c in li.children):
        return ListItem(children=_blocks_from(li.children))
    return ListItem(children=[Paragraph(children=_inline_from(li))])


def _table_from(el: Tag) -> Table:
    table = Table()
    for tr in el.find_all('tr'):
        row = TableRow(header=tr.find('th') is not None)
        for cell in tr.find_all(['th', 'td'], recursive=False):
            row.children.append(TableCell(children=_inline_from(cell)))
        table.children.append(row)
    return table


def _inline_from(el: Tag) -> List[Node]:
    nodes: List[Node] = []
    for child in el.children:
        if isinstance(child, NavigableString):
            if str(child):
                nodes.append(Text(value=str(child)))
            continue
        if not isinstance(child, Tag):
            continue
        name = child.name
        if name == 'a':
            nodes.append(Link(url=child.get('href', ''), title=child.get('title'), children=_inline_from(child)))
        elif name == 'img':
            nodes.append(Image(url=child.get('src', ''), alt=child.get('alt', ''), title=child.get('title')))
        elif name in ('strong', 'b'):
            nodes.append(Strong(children=_inline_from(child)))
        elif name in ('em', 'i'):
            nodes.append(Emphasis(children=_inline_from(child)))
        elif name == 'code':
            nodes.append(InlineCode(value=child.get_text()))
        elif name == 'br':
            nodes.append(Break())
        else:
            nodes.extend(_inline_from(child))
    return nodes
