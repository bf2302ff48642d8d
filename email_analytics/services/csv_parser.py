"""
CSV Row Parser

Converts a raw provider export into header-keyed rows, reporting fractional
progress while it reads. Parsing is done by pandas in chunks so large uploads
yield to the event loop between chunks instead of blocking it.

Key Features:
- Quoted fields containing delimiters, doubled quotes and embedded newlines
- Malformed rows (more fields than the header) are skipped and reported
- Preamble rows before the real header (flow exports) are skipped by marker
- Never raises: whole-file failures come back as Err(reason)
- Per-kind row validation mirroring the upload checks of the dashboard

Progress:
    on_progress receives values in [0, 100]. Intermediate values are throttled
    and capped at 99; 100 is sent exactly once, after the last chunk.
"""

import asyncio
import csv
import io
import logging
import os
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import pandas as pd

from email_analytics.core.config import Settings, get_settings
from email_analytics.models import Err, Ok, RecordKind, Result, RowError
from email_analytics.services.transformers.base import find_column, find_field, is_blank

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]
CsvSource = Union[bytes, bytearray, str, os.PathLike, io.IOBase]

# =============================================================================
# CONSTANTS
# =============================================================================

# Flow exports start with report metadata; the real header starts with "Day"
FLOW_HEADER_MARKER: str = 'Day'
HEADER_SCAN_ROWS: int = 10

# Row-level errors kept per upload before summarizing the rest
MAX_ROW_ERRORS: int = 50

CAMPAIGN_NAME_COLUMNS: List[str] = ['Campaign Name', 'Name']
CAMPAIGN_SEND_COLUMNS: List[str] = [
    'Message send date time',
    'Send Time',
    'Send Date',
    'Sent At',
    'Send Date (UTC)',
    'Send Date (GMT)',
    'Date',
]
CAMPAIGN_CHANNEL_COLUMNS: List[str] = ['Send channel', 'Campaign Channel', 'Channel', 'Message Channel']

FLOW_REQUIRED_COLUMNS: List[str] = [
    'Day',
    'Flow ID',
    'Flow Name',
    'Flow Message ID',
    'Flow Message Name',
    'Status',
    'Delivered',
]

SUBSCRIBER_REQUIRED_COLUMNS: List[str] = ['Email', 'Klaviyo ID', 'Email Marketing Consent']

EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')


@dataclass
class ParsedTable:
    """
    Rows parsed from one upload.

    Attributes:
        columns: Header names in file order.
        rows: One dict per data row, keyed by header; missing cells are ''.
        errors: Row-level problems (skipped malformed or invalid rows).
    """
    columns: List[str] = field(default_factory=list)
    rows: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[RowError] = field(default_factory=list)


# =============================================================================
# SOURCE HANDLING
# =============================================================================

def _decode(raw: bytes) -> str:
    try:
        return raw.decode('utf-8-sig')
    except UnicodeDecodeError:
        # Spreadsheet tools still save Windows-1252 / Latin-1 exports
        logger.warning("Upload is not valid UTF-8; decoding as latin-1")
        return raw.decode('latin-1')


def read_source_text(source: CsvSource) -> str:
    """
    Read an upload into text.

    Args:
        source: Raw bytes, a filesystem path, or a binary/text file-like object.

    Raises:
        OSError: If a path cannot be read.
        TypeError: If the source type is not supported.
    """
    if isinstance(source, (bytes, bytearray)):
        return _decode(bytes(source))
    if isinstance(source, (str, os.PathLike)):
        return _decode(Path(source).read_bytes())
    if hasattr(source, 'read'):
        content = source.read()
        if isinstance(content, (bytes, bytearray)):
            return _decode(bytes(content))
        return str(content).lstrip('\ufeff')
    raise TypeError(f"Unsupported CSV source type: {type(source).__name__}")


def find_header_line(text: str, marker: str, scan_rows: int = HEADER_SCAN_ROWS) -> int:
    """
    Index of the first line (within scan_rows) whose first cell equals marker.

    Returns 0 when no line matches, so files without a preamble parse normally.
    """
    for index, line in enumerate(text.splitlines()[:scan_rows]):
        first_cell = line.split(',', 1)[0].strip().strip('"').strip()
        if first_cell == marker:
            return index
    return 0


class _ProgressReporter:
    """Throttles progress callbacks: every whole percent or every interval."""

    def __init__(self, callback: Optional[ProgressCallback], min_interval: float):
        self._callback = callback
        self._min_interval = min_interval
        self._last_value = -1.0
        self._last_time = 0.0

    def update(self, fraction: float) -> None:
        if self._callback is None:
            return
        value = min(max(fraction * 100, 0.0), 99.0)
        now = time.monotonic()
        if value >= self._last_value + 1 or now - self._last_time >= self._min_interval:
            if value < self._last_value:
                value = self._last_value
            self._last_value = value
            self._last_time = now
            self._callback(value)

    def complete(self) -> None:
        if self._callback is not None:
            self._callback(100.0)


# =============================================================================
# PARSING
# =============================================================================

async def parse_csv(
    source: CsvSource,
    on_progress: Optional[ProgressCallback] = None,
    header_marker: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> Result[ParsedTable]:
    """
    Parse a CSV upload into header-keyed rows.

    Args:
        source: Raw bytes, a path, or a file-like object.
        on_progress: Called with progress values in [0, 100].
        header_marker: First-cell value identifying the header row when the
            file starts with preamble lines.
        settings: Engine settings (chunk size, progress throttle).

    Returns:
        Ok(ParsedTable) with the rows that parsed (malformed rows reported in
        its errors), or Err(reason) when the file cannot be parsed at all.
    """
    settings = settings or get_settings()
    reporter = _ProgressReporter(on_progress, settings.progress_min_interval_seconds)

    try:
        text = read_source_text(source)
    except (OSError, TypeError) as e:
        logger.warning(f"Could not read CSV source: {e}")
        return Err(f"Could not read file: {e}")

    if not text.strip():
        return Err("File is empty")

    skip_rows = find_header_line(text, header_marker) if header_marker else 0
    buffer = io.StringIO(text)
    total_chars = max(len(text), 1)

    table = ParsedTable()
    malformed: List[int] = []

    def _on_bad_line(bad_line: List[str]) -> None:
        malformed.append(len(bad_line))
        return None

    try:
        reader = pd.read_csv(
            buffer,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            skiprows=skip_rows,
            engine='python',
            on_bad_lines=_on_bad_line,
            chunksize=max(settings.csv_chunk_size, 1),
        )
        with reader:
            for chunk in reader:
                if not table.columns:
                    table.columns = [str(column).strip().lstrip('\ufeff') for column in chunk.columns]
                chunk.columns = table.columns
                chunk = chunk.fillna('')
                for row in chunk.to_dict(orient='records'):
                    if all(is_blank(value) for value in row.values()):
                        continue
                    table.rows.append(row)

                try:
                    reporter.update(buffer.tell() / total_chars)
                except OSError:
                    pass
                await asyncio.sleep(0)

        if not table.columns:
            # Header-only file: no chunk was produced
            header = pd.read_csv(io.StringIO(text), skiprows=skip_rows, nrows=0, dtype=str, engine='python')
            table.columns = [str(column).strip() for column in header.columns]
    except pd.errors.EmptyDataError:
        return Err("File has no header row")
    except (pd.errors.ParserError, csv.Error, ValueError) as e:
        logger.warning(f"CSV parsing failed: {e}")
        return Err(f"Failed to parse CSV: {e}")

    if not table.columns:
        return Err("File has no header row")

    for field_count in malformed[:MAX_ROW_ERRORS]:
        table.errors.append(RowError(
            message=f"Malformed row skipped: {field_count} fields, expected {len(table.columns)}",
        ))
    if len(malformed) > MAX_ROW_ERRORS:
        table.errors.append(RowError(message=f"{len(malformed) - MAX_ROW_ERRORS} more malformed rows skipped"))
    if malformed:
        logger.warning(f"Skipped {len(malformed)} malformed CSV rows")

    reporter.complete()
    logger.info(f"Parsed {len(table.rows)} rows with {len(table.columns)} columns")
    return Ok(table)


# =============================================================================
# ROW VALIDATION
# =============================================================================

def _append_row_error(errors: List[RowError], error: RowError, rejected: int) -> None:
    if rejected <= MAX_ROW_ERRORS:
        errors.append(error)


def validate_campaign_rows(table: ParsedTable) -> Tuple[List[Dict[str, Any]], List[RowError]]:
    """
    Keep campaign rows with a name and a send time that are not SMS-only.

    Returns:
        (valid rows, errors). A missing required column yields no rows and one
        column-level error.
    """
    errors: List[RowError] = []
    if find_column(table.columns, CAMPAIGN_NAME_COLUMNS) is None:
        errors.append(RowError(field='Campaign Name', message="Required column 'Campaign Name' is missing"))
    if find_column(table.columns, CAMPAIGN_SEND_COLUMNS) is None:
        errors.append(RowError(field='Send Time', message="Required column 'Send Time' is missing"))
    if errors:
        return [], errors

    valid: List[Dict[str, Any]] = []
    rejected = 0
    for row_number, row in enumerate(table.rows, start=1):
        reason: Optional[str] = None
        if is_blank(find_field(row, CAMPAIGN_NAME_COLUMNS)):
            reason = 'missing campaign name'
        elif is_blank(find_field(row, CAMPAIGN_SEND_COLUMNS)):
            reason = 'missing send time'
        else:
            channel = find_field(row, CAMPAIGN_CHANNEL_COLUMNS)
            if isinstance(channel, str):
                lowered = channel.lower()
                if 'sms' in lowered and 'email' not in lowered:
                    reason = 'sms-only campaign'
        if reason:
            rejected += 1
            _append_row_error(errors, RowError(message=f"Row skipped: {reason}", row_number=row_number), rejected)
            continue
        valid.append(row)

    return valid, errors


def _validate_required(
    table: ParsedTable,
    required: List[str],
    email_column: Optional[str] = None,
) -> Tuple[List[Dict[str, Any]], List[RowError]]:
    errors: List[RowError] = []
    missing = [column for column in required if column not in table.columns]
    if missing:
        errors.append(RowError(
            field=missing[0],
            message=f"Missing required columns: {', '.join(missing)}",
        ))
        return [], errors

    valid: List[Dict[str, Any]] = []
    rejected = 0
    for row_number, row in enumerate(table.rows, start=1):
        blank = [column for column in required if is_blank(row.get(column))]
        reason: Optional[str] = None
        if blank:
            reason = f"empty {', '.join(blank)}"
        elif email_column and not EMAIL_PATTERN.match(str(row.get(email_column, '')).strip()):
            reason = 'invalid email address'
        if reason:
            rejected += 1
            _append_row_error(errors, RowError(message=f"Row skipped: {reason}", row_number=row_number), rejected)
            continue
        valid.append(row)

    return valid, errors


def validate_flow_rows(table: ParsedTable) -> Tuple[List[Dict[str, Any]], List[RowError]]:
    return _validate_required(table, FLOW_REQUIRED_COLUMNS)


def validate_subscriber_rows(table: ParsedTable) -> Tuple[List[Dict[str, Any]], List[RowError]]:
    return _validate_required(table, SUBSCRIBER_REQUIRED_COLUMNS, email_column='Email')


_VALIDATORS = {
    RecordKind.CAMPAIGNS: validate_campaign_rows,
    RecordKind.FLOWS: validate_flow_rows,
    RecordKind.SUBSCRIBERS: validate_subscriber_rows,
}

_NO_VALID_ROWS = {
    RecordKind.CAMPAIGNS: "No valid campaign data found. Ensure the CSV has Campaign Name and Send Time columns.",
    RecordKind.FLOWS: "No valid flow data found. Check that the CSV contains the required fields.",
    RecordKind.SUBSCRIBERS: "No valid subscriber data found. Check that the CSV contains valid email addresses.",
}


async def parse_export(
    kind: RecordKind,
    source: CsvSource,
    on_progress: Optional[ProgressCallback] = None,
    settings: Optional[Settings] = None,
) -> Result[ParsedTable]:
    """
    Parse and validate one provider export.

    Args:
        kind: Which export this is (selects header detection and validation).
        source: Raw bytes, a path, or a file-like object.
        on_progress: Progress callback in [0, 100].
        settings: Engine settings.

    Returns:
        Ok(ParsedTable) containing only valid rows (row errors attached), or
        Err(reason) when the file is unreadable or has no valid rows.
    """
    header_marker = FLOW_HEADER_MARKER if kind == RecordKind.FLOWS else None
    parsed = await parse_csv(source, on_progress=on_progress, header_marker=header_marker, settings=settings)
    if isinstance(parsed, Err):
        return parsed

    table = parsed.value
    valid_rows, errors = _VALIDATORS[kind](table)
    if not valid_rows:
        column_error = next((error.message for error in errors if error.field), None)
        return Err(column_error or _NO_VALID_ROWS[kind])

    skipped = len(table.rows) - len(valid_rows)
    if skipped:
        logger.info(f"{kind.label}: {len(valid_rows)} rows accepted, {skipped} rejected")

    return Ok(ParsedTable(columns=table.columns, rows=valid_rows, errors=table.errors + errors))


__all__ = [
    'ParsedTable',
    'ProgressCallback',
    'parse_csv',
    'parse_export',
    'read_source_text',
    'find_header_line',
    'validate_campaign_rows',
    'validate_flow_rows',
    'validate_subscriber_rows',
    'FLOW_HEADER_MARKER',
    'FLOW_REQUIRED_COLUMNS',
    'SUBSCRIBER_REQUIRED_COLUMNS',
    'MAX_ROW_ERRORS',
]
