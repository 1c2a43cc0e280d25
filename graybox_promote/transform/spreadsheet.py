import io
import json
import logging
from typing import Any, Dict, List, Union

from openpyxl import Workbook

from .cleaner import GRAYBOX_DOMAIN_SUFFIX, rewrite_graybox_url

logger = logging.getLogger(__name__)

DEFAULT_SHEET = "Sheet1"
FALLBACK_MESSAGE = "Error converting JSON to Excel"


def _is_multi_sheet(data: Dict[str, Any]) -> bool:
    return data.get(':type') == 'multi-sheet' or ':names' in data


def _sheets(data: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    if _is_multi_sheet(data):
        return {name: data.get(name) or {} for name in data.get(':names', [])}
    return {DEFAULT_SHEET: data}


def _columns(sheet: Dict[str, Any]) -> List[str]:
    columns = sheet.get('columns')
    if columns:
        return list(columns)
    # Derive from row keys, first-seen order
    derived: List[str] = []
    for row in sheet.get('data') or []:
        if isinstance(row, dict):
            for key in row:
                if key not in derived:
                    derived.append(key)
    return derived


def _rewrite_value(value: Any, experience_name: str) -> Any:
    if isinstance(value, str) and (f"/{experience_name}/" in value or GRAYBOX_DOMAIN_SUFFIX in value):
        return rewrite_graybox_url(value, experience_name)
    return value


def rewrite_sheet_json(content: Union[str, Dict[str, Any], List[Any]], experience_name: str) -> Dict[str, Any]:
    """
    Rewrite staging URLs in the header and every cell of a sheet JSON document.

    A bare array is read as the data rows of a single sheet. Anything other
    than an object or an array raises ValueError.
    """
    data = json.loads(content) if isinstance(content, str) else content
    if isinstance(data, list):
        data = {'data': data}
    if not isinstance(data, dict):
        raise ValueError(f"expected an object or an array, got {type(data).__name__}")

    for name, sheet in _sheets(data).items():
        if not isinstance(sheet, dict):
            raise ValueError(f"sheet '{name}' is not an object")
        if isinstance(sheet.get('columns'), list):
            sheet['columns'] = [_rewrite_value(column, experience_name) for column in sheet['columns']]
        rows = sheet.get('data') or []
        rewritten = []
        for row in rows:
            if isinstance(row, dict):
                rewritten.append({k: _rewrite_value(v, experience_name) for k, v in row.items()})
            elif isinstance(row, list):
                rewritten.append([_rewrite_value(v, experience_name) for v in row])
            else:
                rewritten.append(_rewrite_value(row, experience_name))
        sheet['data'] = rewritten
        logger.debug(f"Rewrote {len(rows)} rows in sheet '{name}'")
    return data


def json_to_xlsx(data: Dict[str, Any]) -> bytes:
    """
    Write sheet JSON ({columns, data} or multi-sheet) to an .xlsx workbook.
    Never raises: on failure a one-cell error workbook is returned.
    """
    try:
        workbook = Workbook()
        workbook.remove(workbook.active)
        for name, sheet in _sheets(data).items():
            worksheet = workbook.create_sheet(title=name[:31] or DEFAULT_SHEET)
            columns = _columns(sheet)
            if columns:
                worksheet.append(columns)
            for row in sheet.get('data') or []:
                if isinstance(row, dict):
                    worksheet.append([row.get(col) for col in columns])
                elif isinstance(row, list):
                    worksheet.append(row)
                else:
                    worksheet.append([row])
        if not workbook.worksheets:
            workbook.create_sheet(title=DEFAULT_SHEET)
        return _save(workbook)
    except Exception as e:
        logger.error(f"Failed to convert JSON to Excel: {e}")
        workbook = Workbook()
        workbook.active.title = DEFAULT_SHEET
        workbook.active.append([FALLBACK_MESSAGE])
        return _save(workbook)


def _save(workbook: Workbook) -> bytes:
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()
