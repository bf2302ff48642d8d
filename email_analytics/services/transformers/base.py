"""
Shared field coercion for the record transformers.

Provider exports are hand-edited spreadsheets as often as they are raw
downloads, so every cell is treated as untrusted text:

- Numbers may carry thousands separators, currency symbols or percent signs
- Booleans may be TRUE/FALSE, YES/NO, 1/0 or sentinels like NEVER_SUBSCRIBED
- Header names drift between export versions ("Campaign name" vs
  "Campaign Name") and duplicates get suffixed by the CSV reader
  ("Send Time.1"), so lookups go through a normalized key.
"""

import logging
import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, TypeVar

from email_analytics.core.config import Settings, get_settings
from email_analytics.models.result import Result
from email_analytics.services.dates import parse_date

logger = logging.getLogger(__name__)

RecordT = TypeVar('RecordT')

# Maximum number of rejected values kept for diagnostics per transform
MAX_REJECTED_SAMPLES: int = 5

_NON_ALNUM = re.compile(r'[^a-z0-9]+')
_NUMBER_NOISE = re.compile(r'[,\s$%€£¥]')

TRUE_STRINGS: Set[str] = {'TRUE', 'YES', 'Y', '1', 'SUBSCRIBED'}
FALSE_STRINGS: Set[str] = {'FALSE', 'NO', 'N', '0', 'NEVER_SUBSCRIBED', 'UNSUBSCRIBED'}


# =============================================================================
# TRANSFORM REPORT
# =============================================================================


@dataclass
class TransformReport(Generic[RecordT]):
    """
    Outcome of transforming one upload.

    Attributes:
        records: Normalized records, in input order.
        dropped: Rows excluded because their primary date failed every strategy.
        rejected_samples: A few raw values that were rejected, for diagnostics.
    """
    records: List[RecordT] = field(default_factory=list)
    dropped: int = 0
    rejected_samples: List[str] = field(default_factory=list)

    def reject(self, raw_value: Any) -> None:
        self.dropped += 1
        if len(self.rejected_samples) < MAX_REJECTED_SAMPLES:
            self.rejected_samples.append(str(raw_value))


# =============================================================================
# HEADER LOOKUP
# =============================================================================


def normalize_key(key: Any) -> str:
    """
    Lowercase and collapse non-alphanumerics to single spaces.

    >>> normalize_key("Send Date (UTC)")
    'send date utc'
    """
    return _NON_ALNUM.sub(' ', str(key).lower()).strip()


def _tokens(text: str) -> Set[str]:
    return set(text.split())


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return isinstance(value, str) and not value.strip()


def find_column(columns: Iterable[str], candidates: Sequence[str]) -> Optional[str]:
    """
    Resolve the first header matching any candidate.

    Matching order per candidate: exact normalized match, then prefix match
    (duplicate headers such as "Send Time.1"), then token subset
    ("Campaign Name" inside "Campaign Name (Internal)").
    """
    normalized = [(column, normalize_key(column)) for column in columns]
    for candidate in candidates:
        target = normalize_key(candidate)
        wanted = _tokens(target)
        for matcher in (
            lambda key: key == target,
            lambda key: key.startswith(target),
            lambda key: wanted <= _tokens(key),
        ):
            for column, key in normalized:
                if matcher(key):
                    return column
    return None


def find_field(row: Mapping[str, Any], candidates: Sequence[str]) -> Any:
    """
    Value of the first non-blank column matching any candidate.

    Same matching order as find_column, but blank cells are skipped so that a
    later duplicate column can supply the value.
    """
    normalized = [(key, normalize_key(key)) for key in row.keys()]
    for candidate in candidates:
        target = normalize_key(candidate)
        wanted = _tokens(target)
        for matcher in (
            lambda key: key == target,
            lambda key: key.startswith(target),
            lambda key: wanted <= _tokens(key),
        ):
            for column, key in normalized:
                if matcher(key) and not is_blank(row[column]):
                    return row[column]
    return None


def first_present(row: Mapping[str, Any], *names: str) -> Any:
    """First non-blank value among exact column names."""
    for name in names:
        value = row.get(name)
        if not is_blank(value):
            return value
    return None


# =============================================================================
# VALUE COERCION
# =============================================================================


def parse_number(value: Any) -> float:
    """
    Parse a numeric cell; anything unparseable or non-finite becomes 0.

    >>> parse_number("$1,234.50")
    1234.5
    >>> parse_number("12%")
    12.0
    """
    if is_blank(value) or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = _NUMBER_NOISE.sub('', str(value))
        if text.startswith('(') and text.endswith(')'):
            text = '-' + text[1:-1]
        try:
            number = float(text)
        except ValueError:
            return 0.0
    return number if math.isfinite(number) else 0.0


def parse_count(value: Any) -> int:
    """Counters are whole numbers; fractional exports are rounded."""
    return int(round(parse_number(value)))


def parse_optional_number(value: Any) -> Optional[float]:
    return None if is_blank(value) else parse_number(value)


def parse_decimal_rate(value: Any) -> float:
    """
    Parse a rate cell into a fraction.

    "2.5%" -> 0.025, while a bare "0.025" is already a fraction.
    """
    if is_blank(value):
        return 0.0
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return parse_number(value)
    if '%' in str(value):
        return parse_number(value) / 100
    return parse_number(value)


def parse_bool(value: Any) -> Optional[bool]:
    """TRUE/FALSE style cells; None when the value is not boolean-like."""
    if isinstance(value, bool):
        return value
    if is_blank(value):
        return None
    text = str(value).strip().upper()
    if text in TRUE_STRINGS:
        return True
    if text in FALSE_STRINGS:
        return False
    return None


def parse_consent(value: Any, settings: Optional[Settings] = None) -> bool:
    """
    Email marketing consent.

    TRUE/FALSE and NEVER_SUBSCRIBED are explicit; the provider otherwise writes
    the consent date into the column, which counts as consent.
    """
    flag = parse_bool(value)
    if flag is not None:
        return flag
    if is_blank(value):
        return False
    return parse_generic_date(value, settings).ok


def parse_suppressions(raw: Any) -> Tuple[List[str], bool]:
    """
    Parse the "Email Suppressions" column.

    Returns:
        (suppression reasons, can_receive_email). "[]" means no suppressions;
        an empty cell means the provider did not report deliverability, which
        is treated as not receivable.
    """
    if is_blank(raw):
        return [], False
    text = str(raw).strip()
    if text == '[]':
        return [], True
    inner = text.replace('""', '"')
    if inner.startswith('[') and inner.endswith(']'):
        inner = inner[1:-1]
    reasons = [
        part.strip().strip('\'"').strip().upper()
        for part in re.split(r'[,;|]', inner)
    ]
    return [reason for reason in reasons if reason], False


def parse_send_date(value: Any, settings: Optional[Settings] = None) -> Result:
    settings = settings or get_settings()
    return parse_date(
        value,
        min_year=settings.send_year_min,
        max_year=settings.send_year_max,
        pivot=settings.two_digit_year_pivot,
        tz_name=settings.local_timezone,
    )


def parse_generic_date(value: Any, settings: Optional[Settings] = None) -> Result:
    settings = settings or get_settings()
    return parse_date(
        value,
        min_year=settings.generic_year_min,
        max_year=settings.generic_year_max,
        pivot=settings.two_digit_year_pivot,
        tz_name=settings.local_timezone,
    )


def sunday_first_weekday(moment) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return (moment.weekday() + 1) % 7


# =============================================================================
# BASE TRANSFORMER
# =============================================================================


class BaseTransformer(ABC, Generic[RecordT]):
    """
    Common shape of the three transformers.

    Subclasses implement transform_with_report; transform is the plain
    records-only view of it.
    """

    kind_label: str = 'rows'

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def transform(self, raw_rows: Sequence[Dict[str, Any]]) -> List[RecordT]:
        return self.transform_with_report(raw_rows).records

    @abstractmethod
    def transform_with_report(self, raw_rows: Sequence[Dict[str, Any]]) -> TransformReport[RecordT]:
        """Normalize raw rows and report what was dropped."""
        pass

    def _log_report(self, report: TransformReport[RecordT]) -> None:
        if report.dropped:
            logger.warning(
                f"Skipped {report.dropped} {self.kind_label} rows with unparseable dates "
                f"(samples: {report.rejected_samples})"
            )
        logger.info(f"Transformed {len(report.records)} {self.kind_label} rows")


__all__ = [
    'TransformReport',
    'BaseTransformer',
    'normalize_key',
    'is_blank',
    'find_column',
    'find_field',
    'first_present',
    'parse_number',
    'parse_count',
    'parse_optional_number',
    'parse_decimal_rate',
    'parse_bool',
    'parse_consent',
    'parse_suppressions',
    'parse_send_date',
    'parse_generic_date',
    'sunday_first_weekday',
    'MAX_REJECTED_SAMPLES',
]
