import re
import posixpath
from typing import Dict, Tuple
from urllib.parse import urlparse

from .state.models import FileType

AEM_PAGE_PATH = re.compile(r'aem\.page(/.*?)(?:$|\s)')


def normalize_source_path(path: str) -> str:
    """
    Turn a user supplied source (path or *.aem.page URL) into a drive path.

    '/exp/page' and 'https://main--site--org.aem.page/exp/page' both become
    '/exp/page.docx'; '.md' resources map back to their '.docx' document.
    """
    path = path.strip()
    if 'aem.page' in path:
        match = AEM_PAGE_PATH.search(path)
        path = urlparse(match.group(1)).path if match else '/'
    if not path.startswith('/'):
        path = f"/{path}"

    base = posixpath.basename(path)
    if base.endswith('.md'):
        path = path[:-len('.md')] + '.docx'
    elif '.' not in base:
        path = f"{path.rstrip('/') or ''}{'/index' if path.endswith('/') else ''}.docx"
    return path


def strip_experience(path: str, experience_name: str) -> str:
    """Remove the experience segment (first or second level) from a path."""
    parts = path.split('/')
    # parts[0] is '' for absolute paths
    for idx in (1, 2):
        if idx < len(parts) and parts[idx] == experience_name:
            del parts[idx]
            break
    stripped = '/'.join(parts)
    return stripped or '/'


def in_experience(path: str, experience_name: str) -> bool:
    parts = path.split('/')
    return experience_name in parts[1:3]


def path_details(path: str, experience_name: str) -> Dict[str, str]:
    """Source (graybox tree) and destination (production tree) for a path."""
    source = normalize_source_path(path)
    if not in_experience(source, experience_name):
        source = f"/{experience_name}{source}"
    return {
        'sourcePath': source,
        'destinationPath': strip_experience(source, experience_name),
    }


def file_type_for(path: str) -> FileType:
    lowered = path.lower()
    if lowered.endswith('.docx'):
        return FileType.DOCX
    if lowered.endswith('.xlsx') or lowered.endswith('.json'):
        return FileType.EXCEL
    return FileType.OTHER


def excel_drive_path(path: str) -> str:
    """Spreadsheets are served as .json but stored as .xlsx."""
    if path.lower().endswith('.json'):
        return path[:-len('.json')] + '.xlsx'
    return path


def web_path(file_path: str) -> str:
    """Admin API path for a drive file: documents drop .docx, sheets become .json."""
    lowered = file_path.lower()
    if lowered.endswith('.docx'):
        path = file_path[:-len('.docx')]
        if path.endswith('/index'):
            path = path[:-len('index')]
        return path
    if lowered.endswith('.xlsx'):
        return file_path[:-len('.xlsx')] + '.json'
    return file_path


def split_parent(path: str) -> Tuple[str, str]:
    """('/a/b', 'c.docx') for '/a/b/c.docx'."""
    parent, name = posixpath.split(path)
    return parent or '/', name
