"""Deterministic parser for the vendor's "納品予定一覧" delivery schedule report.

The input is the ordered stream of text fragments extracted from the PDF, with
no position data.  Slips are opened (or resumed) on ``伝票No.`` markers, header
fields are attributed to the current slip, and the item table following the
``ﾁｪｯｸ`` column header is read with :func:`parse_item_at`.
"""
from __future__ import annotations

import re
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

from .delivery import DeliveryDocument, Item, ReportMeta, Slip
from .normalize import collation_key, normalize_lines, parse_date_like, parse_number

DOCUMENT_TITLE = "納品予定一覧"
TITLE_FRAGMENT = "納品"
OUTPUT_DATE_LABELS = frozenset({"出力日", "出力日："})
SLIP_DATE_LABEL = "伝票日付"
DELIVERY_DATE_LABEL = "納品日"
TOTAL_LABEL = "総合計"
COMMENT_LABEL = "コメント"
TABLE_MARKERS = frozenset({"ﾁｪｯｸ", "チェック"})
COLUMN_HEADERS = frozenset(
    {"No", "商品コード", "商品名", "単価", "納品数量", "規格・入数／単位", "発注数量"}
) | TABLE_MARKERS
CHECKMARKS = frozenset({"□", "○"})

_SLIP_INLINE = re.compile(r"^伝票No\.?\s*([0-9]{3,})\s*$")
_SLIP_LABEL = re.compile(r"^伝票No\.?\s*$")
_SLIP_START = re.compile(r"^伝票No\.?\s*([0-9]{3,})?\s*$")
_SLIP_NUMBER = re.compile(r"^[0-9]{3,}$")
_DIGITS = re.compile(r"^[0-9]+$")
_VENDOR_LABEL = re.compile(r"^(?:取引先|仕入先|発注先)名?")
_VENDOR_EXCLUDED = ("コード", "住所", "電話")
_VENDOR_CODE_PREFIX = re.compile(r"^([0-9]+)\s+(.+)$")
_SLIP_DATE_INLINE = re.compile(r"^伝票日付\s*([0-9]{4}/[0-9]{2}/[0-9]{2})$")
_DELIVERY_DATE_INLINE = re.compile(r"^納品日\s*([0-9]{4}/[0-9]{2}/[0-9]{2})$")
_COMMENT = re.compile(r"^コメント[:：]?\s*(.*)$")
_OUTPUT_DATE = re.compile(r"^出力日[:：]?\s*(.*)$")
_DATE_RANGE = re.compile(r"^([0-9]{4}/[0-9]{2}/[0-9]{2})\s*[～〜~]\s*([0-9]{4}/[0-9]{2}/[0-9]{2})")


class ParsedItem(NamedTuple):
    item: Item
    next_index: int


def _at(lines: Sequence[str], index: int) -> str:
    if 0 <= index < len(lines):
        return lines[index]
    return ""


def detect_slip_no(line: str, next_line: str = "") -> Optional[Tuple[str, bool]]:
    """Return ``(slip_no, consumes_next_line)`` when ``line`` opens a slip."""

    inline = _SLIP_INLINE.match(line)
    if inline:
        return inline.group(1), False
    if _SLIP_LABEL.match(line) and _SLIP_NUMBER.match(next_line.strip()):
        return next_line.strip(), True
    return None


def is_slip_start(line: str) -> bool:
    return bool(line) and _SLIP_START.match(line) is not None


def is_table_terminator(line: str) -> bool:
    """Lines that mean "no further items here" for an item-table scan."""

    if not line:
        return True
    if is_slip_start(line):
        return True
    return line == DOCUMENT_TITLE or line in OUTPUT_DATE_LABELS or line in COLUMN_HEADERS


def parse_item_at(lines: Sequence[str], start: int) -> Optional[ParsedItem]:
    """Read one item run beginning with the name at ``start``.

    Token order is name, unit price, delivery quantity, delivery unit, then
    either ``spec, order qty, order unit`` or, when the spec column is empty,
    ``order qty, order unit`` directly.  A number in the slot after the
    delivery unit selects the second shape.  Checkmark glyphs and a trailing
    line number are optional.  Returns ``None`` when a required field is
    missing; callers retry at ``start + 1``.
    """

    name = _at(lines, start)
    if is_table_terminator(name):
        return None

    index = start + 1
    unit_price = parse_number(_at(lines, index))
    if unit_price is None:
        return None
    index += 1

    delivery_qty = parse_number(_at(lines, index))
    if delivery_qty is None:
        return None
    index += 1

    delivery_unit = _at(lines, index)
    if not delivery_unit:
        return None
    index += 1

    spec: Optional[str] = None
    order_qty = parse_number(_at(lines, index))
    if order_qty is None:
        spec = _at(lines, index) or None
        if spec is None:
            return None
        index += 1
        order_qty = parse_number(_at(lines, index))
        if order_qty is None:
            return None
    index += 1

    order_unit = _at(lines, index)
    if not order_unit:
        return None
    index += 1

    while _at(lines, index) in CHECKMARKS:
        index += 1

    no: Optional[int] = None
    maybe_no = _at(lines, index)
    if _DIGITS.match(maybe_no):
        no = int(maybe_no)
        index += 1

    item = Item(
        no=no,
        name=name,
        unit_price=unit_price,
        delivery_qty=delivery_qty,
        delivery_unit=delivery_unit,
        spec=spec,
        order_qty=order_qty,
        order_unit=order_unit,
    )
    return ParsedItem(item=item, next_index=index)


def scan_item_table(lines: Sequence[str], start: int) -> Tuple[List[Item], int]:
    """Collect items from ``start`` until a terminator; return them and the resume index."""

    items: List[Item] = []
    index = start
    while index < len(lines):
        if is_table_terminator(lines[index]):
            break
        parsed = parse_item_at(lines, index)
        if parsed is None:
            index += 1
            continue
        items.append(parsed.item)
        index = parsed.next_index
    return items, index


def _vendor_from_label(line: str, following: str) -> Optional[str]:
    match = _VENDOR_LABEL.match(line)
    if match is None:
        return None
    rest = line[match.end():].strip()
    if rest.startswith((":", "：")):
        rest = rest[1:].strip()
    if not rest:
        if following and not _DIGITS.match(following) and "コード" not in following:
            return following
        return None
    coded = _VENDOR_CODE_PREFIX.match(rest)
    if coded:
        rest = coded.group(2).strip()
    return rest or None


def _is_vendor_label(line: str) -> bool:
    if _VENDOR_LABEL.match(line) is None:
        return False
    return not any(word in line for word in _VENDOR_EXCLUDED)


class SlipStateMachine:
    """Walks cleaned lines and builds slips keyed by slip number.

    ``current`` is ``None`` until the first slip marker; lines seen before that
    are ignored.  A repeated slip number resumes the existing record, so a slip
    split across pages accumulates its items in one place.
    """

    def __init__(self, lines: Sequence[str]) -> None:
        self.lines = lines
        self.slips: Dict[str, Slip] = {}
        self.current: Optional[Slip] = None

    def run(self) -> List[Slip]:
        index = 0
        while index < len(self.lines):
            index = self._step(index)
        return list(self.slips.values())

    def open_slip(self, slip_no: str) -> Slip:
        slip = self.slips.get(slip_no)
        if slip is None:
            slip = Slip(slip_no=slip_no)
            self.slips[slip_no] = slip
        self.current = slip
        return slip

    def _step(self, index: int) -> int:
        line = self.lines[index]
        following = _at(self.lines, index + 1)

        detected = detect_slip_no(line, following)
        if detected is not None:
            slip_no, consumes_next = detected
            self.open_slip(slip_no)
            return index + (2 if consumes_next else 1)

        slip = self.current
        if slip is None:
            return index + 1

        if line.startswith(SLIP_DATE_LABEL):
            inline = _SLIP_DATE_INLINE.match(line)
            if inline:
                slip.slip_date = inline.group(1)
            elif parse_date_like(following):
                slip.slip_date = parse_date_like(following)
        elif _is_vendor_label(line):
            vendor = _vendor_from_label(line, following)
            if vendor and not slip.vendor:
                slip.vendor = vendor
        elif line == TOTAL_LABEL:
            total = parse_number(following)
            if total is not None:
                slip.total = total
        elif line.startswith(DELIVERY_DATE_LABEL):
            inline = _DELIVERY_DATE_INLINE.match(line)
            if inline:
                slip.delivery_date = inline.group(1)
            else:
                value = parse_date_like(following)
                if value:
                    slip.delivery_date = value[:10]
        elif line.startswith(COMMENT_LABEL):
            comment = self._read_comment(index)
            if comment:
                slip.comment = comment
        elif line in TABLE_MARKERS:
            items, resume = scan_item_table(self.lines, index + 1)
            slip.items.extend(items)
            return resume
        return index + 1

    def _read_comment(self, index: int) -> Optional[str]:
        match = _COMMENT.match(self.lines[index])
        inline = match.group(1).strip() if match else ""
        if inline and inline != "No":
            return inline
        parts: List[str] = []
        for line in self.lines[index + 1:]:
            if is_slip_start(line) or line in COLUMN_HEADERS:
                break
            parts.append(line)
        text = " ".join(parts).strip()
        if not text or text == "No":
            return None
        return text


def extract_report_meta(lines: Sequence[str]) -> ReportMeta:
    """First-match scan for title, output date and the covered date range."""

    title = next((line for line in lines if TITLE_FRAGMENT in line), None)
    output_at: Optional[str] = None
    range_from: Optional[str] = None
    range_to: Optional[str] = None

    for index, line in enumerate(lines):
        if output_at is None:
            match = _OUTPUT_DATE.match(line)
            if match:
                value = match.group(1).strip() or _at(lines, index + 1)
                if value:
                    output_at = parse_date_like(value) or value
                continue
        if range_from is None:
            match = _DATE_RANGE.match(line)
            if match:
                range_from, range_to = match.group(1), match.group(2)

    return ReportMeta(
        title=title,
        output_at=output_at,
        range_from=range_from,
        range_to=range_to,
    )


def parse_delivery_lines(raw_lines: Iterable[str] | None) -> DeliveryDocument:
    """Turn extracted text fragments into a :class:`DeliveryDocument`."""

    lines = normalize_lines(raw_lines)
    report = extract_report_meta(lines)
    slips = SlipStateMachine(lines).run()
    slips.sort(key=lambda slip: collation_key(slip.slip_no))
    return DeliveryDocument(report=report, slips=tuple(slips))


__all__ = [
    "ParsedItem",
    "SlipStateMachine",
    "detect_slip_no",
    "extract_report_meta",
    "is_slip_start",
    "is_table_terminator",
    "parse_delivery_lines",
    "parse_item_at",
    "scan_item_table",
]
