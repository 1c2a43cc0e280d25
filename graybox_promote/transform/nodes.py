"""
Typed document tree for markdown content.

Every node is a dataclass with a fixed `kind` (mirroring mdast type names).
Traversal goes through NodeVisitor, which dispatches on the node class and
rejects anything that is not a known node.
"""

from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Type


@dataclass
class Node:
    kind = "node"

    def child_nodes(self) -> List["Node"]:
        return getattr(self, 'children', [])


# --- Inline nodes ---

@dataclass
class Text(Node):
    kind = "text"
    value: str = ""


@dataclass
class Link(Node):
    kind = "link"
    url: str = ""
    title: Optional[str] = None
    children: List[Node] = field(default_factory=list)


@dataclass
class Image(Node):
    kind = "image"
    url: str = ""
    alt: str = ""
    title: Optional[str] = None


@dataclass
class Emphasis(Node):
    kind = "emphasis"
    children: List[Node] = field(default_factory=list)


@dataclass
class Strong(Node):
    kind = "strong"
    children: List[Node] = field(default_factory=list)


@dataclass
class InlineCode(Node):
    kind = "inlineCode"
    value: str = ""


@dataclass
class Break(Node):
    kind = "break"


# --- Block nodes ---

@dataclass
class Document(Node):
    kind = "root"
    children: List[Node] = field(default_factory=list)


@dataclass
class Heading(Node):
    kind = "heading"
    depth: int = 1
    children: List[Node] = field(default_factory=list)


@dataclass
class Paragraph(Node):
    kind = "paragraph"
    children: List[Node] = field(default_factory=list)


@dataclass
class BlockQuote(Node):
    kind = "blockquote"
    children: List[Node] = field(default_factory=list)


@dataclass
class ListItem(Node):
    kind = "listItem"
    children: List[Node] = field(default_factory=list)


@dataclass
class ListNode(Node):
    kind = "list"
    ordered: bool = False
    children: List[Node] = field(default_factory=list)


@dataclass
class CodeBlock(Node):
    kind = "code"
    value: str = ""
    lang: Optional[str] = None


@dataclass
class ThematicBreak(Node):
    kind = "thematicBreak"


@dataclass
class Html(Node):
    kind = "html"
    value: str = ""


# --- Tables ---

@dataclass
class TableCell(Node):
    kind = "tableCell"
    children: List[Node] = field(default_factory=list)


@dataclass
class TableRow(Node):
    kind = "tableRow"
    header: bool = False
    children: List[Node] = field(default_factory=list)


@dataclass
class Table(Node):
    kind = "table"
    children: List[Node] = field(default_factory=list)


@dataclass
class GridCell(Node):
    kind = "gtCell"
    children: List[Node] = field(default_factory=list)


@dataclass
class GridRow(Node):
    kind = "gtRow"
    children: List[Node] = field(default_factory=list)


@dataclass
class GridTable(Node):
    """Block table (the '+---+' grid syntax) used for page blocks."""
    kind = "gridTable"
    children: List[Node] = field(default_factory=list)


NODE_TYPES: List[Type[Node]] = [
    Text, Link, Image, Emphasis, Strong, InlineCode, Break,
    Document, Heading, Paragraph, BlockQuote, ListItem, ListNode,
    CodeBlock, ThematicBreak, Html,
    TableCell, TableRow, Table, GridCell, GridRow, GridTable,
]


class NodeVisitor:
    """
    Dispatches visit(node) to visit_<ClassName>; falls back to generic_visit,
    which walks children. Unknown objects raise TypeError.
    """

    def visit(self, node: Node):
        if type(node) not in NODE_TYPES:
            raise TypeError(f"Unknown document node: {type(node).__name__}")
        method = getattr(self, f"visit_{type(node).__name__}", self.generic_visit)
        return method(node)

    def generic_visit(self, node: Node):
        for child in node.child_nodes():
            self.visit(child)


def walk(node: Node) -> Iterator[Node]:
    """Depth-first, pre-order iteration without recursion."""
    stack = [node]
    while stack:
        current = stack.pop()
        yield current
        stack.extend(reversed(current.child_nodes()))


def text_content(node: Node) -> str:
    parts = []
    for n in walk(node):
        if isinstance(n, (Text, InlineCode)):
            parts.append(n.value)
        elif isinstance(n, Image):
            parts.append(n.alt)
    return "".join(parts)
