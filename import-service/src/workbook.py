# import-service/src/workbook.py
from datetime import date, datetime
from io import BytesIO
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple
from zipfile import BadZipFile

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from decoder import HeaderRule, index_header, row_values
from errors import ParseFatal
from log import get_logger
from models import RawRecord

logger = get_logger(__name__)

WORKBOOK_SUFFIXES = (".xlsx", ".xlsm")


def is_workbook(ref: str) -> bool:
    return ref.lower().endswith(WORKBOOK_SUFFIXES)


def cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime):
        return value.date().isoformat() if value.time() == datetime.min.time() else value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value).strip()


class WorkbookRecords:
    """Rows of the first sheet of an XLSX payload.

    The sheet reader supplies header and rows directly; no line splitting.
    """

    def __init__(self, payload: bytes, header_rule: Optional[HeaderRule] = None):
        try:
            self._wb = load_workbook(BytesIO(payload), read_only=True, data_only=True)
        except (InvalidFileException, BadZipFile, KeyError, ValueError, OSError) as e:
            raise ParseFatal(f"unreadable workbook: {e}") from e
        if not self._wb.sheetnames:
            raise ParseFatal("workbook has no sheets")
        self._ws = self._wb[self._wb.sheetnames[0]]
        self.header_rule = header_rule
        max_row = self._ws.max_row or 0
        # approximate: blank rows are counted until iterated
        self.total_rows = max(0, max_row - 1)

    async def records(self) -> AsyncIterator[RawRecord]:
        header: Optional[List[str]] = None
        columns: Dict[str, Tuple[str, ...]] = {}
        unique = True
        try:
            for row_number, row in enumerate(self._ws.iter_rows(values_only=True), start=1):
                values = [cell_text(v) for v in row]
                if not any(values):
                    continue
                if header is None:
                    header = [h or f"column_{i + 1}" for i, h in enumerate(values)]
                    if self.header_rule is not None:
                        self.header_rule.check(header)
                    columns = index_header(header)
                    unique = len(set(header)) == len(header)
                    logger.info("sheet header parsed columns=%d rows~%d", len(header), self.total_rows)
                    continue
                yield RawRecord(
                    row_number=row_number,
                    values=row_values(header, values, unique),
                    columns=columns,
                )
        finally:
            self._wb.close()
        if header is None:
            raise ParseFatal("sheet contained no header row")
