# import-service/src/decoder.py
"""Incremental CSV decoding.

Text arrives in arbitrary chunks; ``LineBuffer`` carries the trailing
partial line between them and ``decode_records`` turns complete lines into
``RawRecord``s keyed by the header row.
"""
import csv
import re
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from errors import ParseFatal
from log import get_logger
from models import RawRecord

logger = get_logger(__name__)

DEFAULT_MAX_LINE_CHARS = 256 * 1024

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
# csv rejects NUL and a bare CR inside a single line
_LINE_FIXUPS = str.maketrans({"\x00": None, "\r": " "})


def normalize_header(name: str) -> str:
    """'Provider First Name' -> 'provider_first_name'."""
    return _NON_ALNUM.sub("_", (name or "").strip().lower()).strip("_")


def split_fields(line: str, delimiter: str = ",", quote: str = '"') -> List[str]:
    if "\x00" in line or "\r" in line:
        line = line.translate(_LINE_FIXUPS)
    fields = next(csv.reader([line], delimiter=delimiter, quotechar=quote), [])
    return [f.strip() for f in fields]


def index_header(header: Sequence[str]) -> Dict[str, Tuple[str, ...]]:
    """Map each normalized column name to the header names that produce it."""
    index: Dict[str, List[str]] = {}
    for name in header:
        names = index.setdefault(normalize_header(name), [])
        if name not in names:
            names.append(name)
    return {norm: tuple(names) for norm, names in index.items()}


def row_values(header: Sequence[str], values: List[str], unique: bool = True) -> Dict[str, str]:
    """Zip a row onto the header; extra values are dropped, missing ones are ""."""
    if unique:
        if len(values) < len(header):
            values = values + [""] * (len(header) - len(values))
        return dict(zip(header, values))
    # repeated header names keep their first non-empty value
    row: Dict[str, str] = {}
    for i, name in enumerate(header):
        value = values[i] if i < len(values) else ""
        if not row.get(name):
            row[name] = value
    return row


@dataclass(frozen=True)
class HeaderRule:
    """Column groups a header must contain; one name per group is enough.

    Names are compared after ``normalize_header``.
    """

    required: Tuple[Tuple[str, ...], ...] = ()

    def check(self, header: Sequence[str]) -> None:
        present = {normalize_header(h) for h in header}
        missing = [
            " | ".join(group)
            for group in self.required
            if not any(normalize_header(name) in present for name in group)
        ]
        if missing:
            raise ParseFatal(f"header is missing required columns: {', '.join(missing)}")


class LineBuffer:
    def __init__(self, max_line_chars: int = DEFAULT_MAX_LINE_CHARS):
        self.max_line_chars = max_line_chars
        self._carry = ""
        self._discarding = False

    def feed(self, text: str) -> List[str]:
        lines: List[str] = []
        if self._discarding:
            idx = text.find("\n")
            if idx < 0:
                return lines
            # the oversized line ends here; emit its retained head
            lines.append(self._carry)
            self._carry = ""
            self._discarding = False
            text = text[idx + 1:]

        parts = (self._carry + text).split("\n")
        self._carry = parts.pop()
        lines.extend(parts)

        if len(self._carry) > self.max_line_chars:
            logger.warning(
                "line exceeds %d chars without a newline; truncating it", self.max_line_chars
            )
            self._carry = self._carry[: self.max_line_chars]
            self._discarding = True
        return [ln.rstrip("\r") for ln in lines]

    def finish(self) -> List[str]:
        rest, self._carry, self._discarding = self._carry, "", False
        return [rest.rstrip("\r")] if rest else []


class _RecordAssembler:
    def __init__(self, header_rule: Optional[HeaderRule]):
        self.header_rule = header_rule
        self.header: Optional[List[str]] = None
        self.columns: Dict[str, Tuple[str, ...]] = {}
        self.unique = True
        self.line_number = 0

    def accept(self, line: str) -> Optional[RawRecord]:
        self.line_number += 1
        if not line.strip():
            return None
        values = split_fields(line)
        if self.header is None:
            self.header = [h or f"column_{i + 1}" for i, h in enumerate(values)]
            if self.header_rule is not None:
                self.header_rule.check(self.header)
            self.columns = index_header(self.header)
            self.unique = len(set(self.header)) == len(self.header)
            logger.info("header parsed columns=%d", len(self.header))
            return None
        return RawRecord(
            row_number=self.line_number,
            values=row_values(self.header, values, self.unique),
            columns=self.columns,
        )

    def close(self) -> None:
        if self.header is None:
            raise ParseFatal("source contained no header row")


async def decode_records(
    text_chunks: AsyncIterator[str],
    header_rule: Optional[HeaderRule] = None,
    max_line_chars: int = DEFAULT_MAX_LINE_CHARS,
) -> AsyncIterator[RawRecord]:
    buffer = LineBuffer(max_line_chars)
    assembler = _RecordAssembler(header_rule)
    async with aclosing(text_chunks):
        async for chunk in text_chunks:
            for line in buffer.feed(chunk):
                record = assembler.accept(line)
                if record is not None:
                    yield record
    for line in buffer.finish():
        record = assembler.accept(line)
        if record is not None:
            yield record
    assembler.close()


def iter_records(
    chunks: Iterable[str],
    header_rule: Optional[HeaderRule] = None,
    max_line_chars: int = DEFAULT_MAX_LINE_CHARS,
) -> Iterator[RawRecord]:
    """Synchronous twin of ``decode_records`` for already-loaded text."""
    buffer = LineBuffer(max_line_chars)
    assembler = _RecordAssembler(header_rule)
    for chunk in chunks:
        for line in buffer.feed(chunk):
            record = assembler.accept(line)
            if record is not None:
                yield record
    for line in buffer.finish():
        record = assembler.accept(line)
        if record is not None:
            yield record
    assembler.close()


def count_data_rows(text: str) -> int:
    non_empty = sum(1 for ln in text.split("\n") if ln.strip())
    return max(0, non_empty - 1)
