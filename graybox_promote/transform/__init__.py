from .nodes import Document, NodeVisitor
from .markdown_parser import parse_markdown
from .cleaner import GrayboxCleaner, CleanupReport
from .docx_renderer import DocxRenderer
from .spreadsheet import json_to_xlsx, rewrite_sheet_json
from .dispatcher import ContentTransformDispatcher, TransformResult, has_staging_markers

__all__ = [
    'Document',
    'NodeVisitor',
    'parse_markdown',
    'GrayboxCleaner',
    'CleanupReport',
    'DocxRenderer',
    'json_to_xlsx',
    'rewrite_sheet_json',
    'ContentTransformDispatcher',
    'TransformResult',
    'has_staging_markers',
]
