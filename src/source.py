# src/source.py
"""
Reads the ward-round spreadsheet export into header-keyed rows.

The export template carries three title/instruction lines before the
header row, so the first three physical lines are always dropped and
line four is read as the header. Blank lines are skipped and every
cell is trimmed.
"""
import csv
import io
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import httpx
from pydantic import BaseModel, Field

import config
from models import RawRow, ParseIssue

logger = logging.getLogger(__name__)

HEADER_LINES_SKIPPED = 3

SHEETS_RE = re.compile(r"^(https?://[^/]+)/spreadsheets/d/([^/?#]+)")
GID_RE = re.compile(r"[#?&]gid=(\d+)")
LOGIN_HOST = "accounts.google.com"


class SourceError(Exception):
    """The source could not be read at all; no rows are returned."""

    def __init__(self, code: str, message: Optional[str] = None):
        super().__init__(message or code)
        self.code = code


class SourceReadResult(BaseModel):
    rows: List[RawRow] = Field(default_factory=list)
    parseErrors: List[ParseIssue] = Field(default_factory=list)
    # physical line of each entry in rows
    lineNumbers: List[int] = Field(default_factory=list)
    meta: Dict[str, Any] = Field(default_factory=dict)


def to_csv_export_url(url: str) -> str:
    """Rewrite a spreadsheet share link into its CSV export link; other URLs pass through."""
    m = SHEETS_RE.match(url.strip())
    if not m:
        return url
    base, doc_id = m.group(1), m.group(2)
    export = f"{base}/spreadsheets/d/{doc_id}/export?format=csv"
    gid = GID_RE.search(url)
    if gid:
        export += f"&gid={gid.group(1)}"
    return export


def _decode(raw: str | bytes) -> Tuple[str, str]:
    """Text and the encoding it was read with. Exports saved from Excel are often cp1252."""
    if isinstance(raw, str):
        return (raw[1:] if raw.startswith("\ufeff") else raw), "utf-8"
    if raw.startswith(b"\xef\xbb\xbf"):
        raw = raw[3:]
    try:
        return raw.decode("utf-8"), "utf-8"
    except UnicodeDecodeError:
        logger.warning("[import] source is not valid UTF-8, reading it as cp1252")
        return raw.decode("cp1252", errors="replace"), "cp1252"


def parse_text(text: str) -> SourceReadResult:
    lines = text.splitlines()
    body = "\n".join(lines[HEADER_LINES_SKIPPED:])
    reader = csv.reader(io.StringIO(body))

    header: Optional[List[str]] = None
    rows: List[RawRow] = []
    line_numbers: List[int] = []
    issues: List[ParseIssue] = []

    for cells in reader:
        if not any(c.strip() for c in cells):
            continue
        if header is None:
            header = [c.strip() for c in cells]
            continue

        line_no = reader.line_num + HEADER_LINES_SKIPPED
        if len(cells) > len(header):
            issues.append(ParseIssue(row=line_no, message=f"Too many fields: expected {len(header)}, got {len(cells)}"))
        elif len(cells) < len(header):
            issues.append(ParseIssue(row=line_no, message=f"Too few fields: expected {len(header)}, got {len(cells)}"))

        row: RawRow = {}
        for name, value in zip(header, cells):
            if name:
                row[name] = value.strip()
        rows.append(row)
        line_numbers.append(line_no)

    return SourceReadResult(
        rows=rows,
        parseErrors=issues,
        lineNumbers=line_numbers,
        meta={"fields": header or [], "skippedLines": HEADER_LINES_SKIPPED, "rowCount": len(rows)},
    )


def _require_rows(result: SourceReadResult) -> SourceReadResult:
    if not result.rows:
        raise SourceError("EMPTY_SOURCE", "No data rows found after the header row")
    return result


def read_source_bytes(raw: str | bytes) -> SourceReadResult:
    text, encoding = _decode(raw)
    result = parse_text(text)
    result.meta.update(source="upload", encoding=encoding)
    return _require_rows(result)


async def read_source_url(url: str, client: Optional[httpx.AsyncClient] = None) -> SourceReadResult:
    export_url = to_csv_export_url(url)
    logger.info("[import] fetching source %s", export_url)

    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=config.SOURCE_FETCH_TIMEOUT_S, follow_redirects=True)
    try:
        resp = await client.get(export_url)
    except httpx.HTTPError as e:
        raise SourceError("NETWORK_ERROR", f"NETWORK_ERROR: {e}") from e
    finally:
        if owns_client:
            await client.aclose()

    # private sheets redirect to the login page instead of failing
    if LOGIN_HOST in str(resp.url):
        raise SourceError("AUTH_REQUIRED")
    if resp.status_code == 403:
        raise SourceError("FORBIDDEN")
    if resp.status_code == 404:
        raise SourceError("NOT_FOUND")
    if not resp.is_success:
        raise SourceError(f"HTTP_ERROR_{resp.status_code}")

    content, encoding = _decode(resp.content)
    head = content.lstrip()[:20].lower()
    if head.startswith("<!doctype") or head.startswith("<html"):
        raise SourceError("AUTH_REQUIRED")

    result = parse_text(content)
    result.meta.update(source=export_url, encoding=encoding)
    return _require_rows(result)
