"""Token cleaning, primitive value parsers and ingredient key normalization."""
from __future__ import annotations

import math
import re
import unicodedata
from typing import Any, Iterable, List, Optional, Tuple, Union

Number = Union[int, float]

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_PAGE_COUNTER = re.compile(r"^[0-9]+\s+/\s+[0-9]+$")
_CURRENCY_NOISE = re.compile(r"[￥¥,\s]")
_INTEGER_LITERAL = re.compile(r"^[+-]?[0-9]+$")
_NUMBER_LITERAL = re.compile(r"^[+-]?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)(?:[eE][+-]?[0-9]+)?$")
_NUMBER_PREFIX = re.compile(r"^[+-]?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)(?:[eE][+-]?[0-9]+)?")
_DATE_LIKE = re.compile(r"^([0-9]{4}/[0-9]{2}/[0-9]{2})(?:\s+([0-9]{2}:[0-9]{2}))?$")
_WHITESPACE = re.compile(r"\s+")

_IGNORED_PREFIXES = ("抽出条件→",)
_IGNORED_FRAGMENTS = ("ソート条件→",)


def clean_line(value: Any) -> str:
    """Return ``value`` as a trimmed string without control characters."""

    if value is None:
        return ""
    return _CONTROL_CHARS.sub("", str(value)).strip()


def should_ignore_line(line: str) -> bool:
    """Return ``True`` for page markers, extraction footers and blank lines."""

    if not line:
        return True
    if line == "/" or _PAGE_COUNTER.match(line):
        return True
    if line.startswith(_IGNORED_PREFIXES):
        return True
    return any(fragment in line for fragment in _IGNORED_FRAGMENTS)


def normalize_lines(raw_lines: Iterable[Any] | None) -> List[str]:
    """Clean the extracted fragments and drop boilerplate, keeping reading order."""

    cleaned: List[str] = []
    for raw in raw_lines or ():
        line = clean_line(raw)
        if should_ignore_line(line):
            continue
        cleaned.append(line)
    return cleaned


def parse_number(token: Any) -> Optional[Number]:
    """Parse a price/quantity token such as ``"¥1,200"``.

    Currency symbols, thousands separators and whitespace are removed first.
    Integer literals come back as ``int`` so that persisted JSON keeps its
    original shape; anything that is not a finite number yields ``None``.
    """

    text = clean_line(token)
    if not text:
        return None
    text = _CURRENCY_NOISE.sub("", text)
    if not _NUMBER_LITERAL.match(text):
        return None
    if _INTEGER_LITERAL.match(text):
        return int(text)
    value = float(text)
    if not math.isfinite(value):
        return None
    return value


def parse_date_like(token: Any) -> Optional[str]:
    """Accept ``YYYY/MM/DD`` optionally followed by ``HH:mm``."""

    text = clean_line(token)
    if not text:
        return None
    match = _DATE_LIKE.match(text)
    if match is None:
        return None
    if match.group(2):
        return f"{match.group(1)} {match.group(2)}"
    return match.group(1)


def coerce_quantity(value: Any) -> Optional[Number]:
    """Leniently read a quantity from a decoded JSON payload.

    Numbers pass through when finite. Strings keep only digits, dots and signs
    and the longest leading numeric prefix is used, so ``"12kg"`` becomes 12.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else None
    stripped = re.sub(r"[^0-9.+-]", "", str(value))
    match = _NUMBER_PREFIX.match(stripped)
    if match is None:
        return None
    literal = match.group(0)
    if _INTEGER_LITERAL.match(literal):
        return int(literal)
    number = float(literal)
    return number if math.isfinite(number) else None


def normalize_ingredient_key(value: Any) -> str:
    """Collapse case, width and whitespace variants of an ingredient name."""

    raw = "" if value is None else str(value)
    folded = unicodedata.normalize("NFKC", raw).strip()
    return _WHITESPACE.sub("", folded).lower()


def normalize_unit(value: Any) -> str:
    return "" if value is None else str(value).strip()


def normalize_vendor(value: Any) -> str:
    return "" if value is None else str(value).strip()


def stock_key(name: Any, unit: Any, vendor: Any) -> Tuple[str, str, str]:
    """Composite identity shared by delta records and stock items."""

    return (normalize_vendor(vendor), normalize_ingredient_key(name), normalize_unit(unit))


def collation_key(value: Any) -> Tuple[str, str]:
    """Deterministic, width- and case-insensitive ordering key for display sorts."""

    text = "" if value is None else str(value)
    return (unicodedata.normalize("NFKC", text).casefold(), text)


__all__ = [
    "Number",
    "clean_line",
    "should_ignore_line",
    "normalize_lines",
    "parse_number",
    "parse_date_like",
    "coerce_quantity",
    "normalize_ingredient_key",
    "normalize_unit",
    "normalize_vendor",
    "stock_key",
    "collation_key",
]
