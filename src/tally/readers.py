"""Statement file readers.

Each reader turns the raw bytes of an upload into ``(row_index, RawRow)``
pairs. Readers are generators, so rows are produced lazily, and a
``RowStream`` can be iterated again from the start at any time.
"""

import csv
import io
import logging
from datetime import date, datetime
from typing import Iterable, Iterator

from tally.models import ParseReport, RawRow, ReaderInfo
from tally.registry import registry

logger = logging.getLogger(__name__)

QIF_FIELDS = {
    "D": "date",
    "T": "amount",
    "$": "amount",
    "P": "description",
    "L": "category",
    "M": "memo",
}
QIF_END_OF_RECORD = "^"


def decode_text(content: bytes) -> str:
    """Decode statement bytes as UTF-8, falling back to Windows-1252."""
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        logger.warning("File is not valid UTF-8, decoding as cp1252")
        return content.decode("cp1252", errors="replace")


def _sniff_delimiter(text: str) -> str:
    header_line = next((line for line in io.StringIO(text) if line.strip()), "")
    return ";" if header_line.count(";") > header_line.count(",") else ","


def _zip_rows(
    rows: Iterable[list[str]], report: ParseReport, pad_short_rows: bool = False,
) -> Iterator[tuple[int, RawRow]]:
    """Use the first row as header and zip every following row against it.

    Trailing empty cells are dropped from the header, and from data rows
    that are longer than the header, so lines ending with a delimiter
    still line up.
    """
    header: list[str] | None = None
    index = 0
    for cells in rows:
        if not any(cell.strip() for cell in cells):
            continue
        if header is None:
            header = [cell.strip() for cell in cells]
            while header and not header[-1]:
                header.pop()
            continue
        if report.reached_limit(index):
            return
        cells = list(cells)
        while len(cells) > len(header) and not cells[-1].strip():
            cells.pop()
        if pad_short_rows:
            cells += [""] * (len(header) - len(cells))
        if len(cells) != len(header):
            logger.warning(
                "Row %d skipped: %d fields, header has %d", index, len(cells), len(header),
            )
            report.skip(index, f"expected {len(header)} fields, found {len(cells)}")
        else:
            yield index, dict(zip(header, cells))
        index += 1


def read_delimited(content: bytes, report: ParseReport) -> Iterator[tuple[int, RawRow]]:
    text = decode_text(content)
    reader = csv.reader(io.StringIO(text, newline=""), delimiter=_sniff_delimiter(text))
    yield from _zip_rows(reader, report)


def _cell_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    return str(value)


def _xlsx_rows(content: bytes) -> Iterator[list[str]]:
    from openpyxl import load_workbook

    wb = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    try:
        ws = wb.worksheets[0]
        for row in ws.iter_rows(values_only=True):
            yield [_cell_text(value) for value in row]
    finally:
        wb.close()


def _xls_rows(content: bytes) -> Iterator[list[str]]:
    import xlrd

    book = xlrd.open_workbook(file_contents=content)
    sheet = book.sheet_by_index(0)
    for r in range(sheet.nrows):
        cells = []
        for cell in sheet.row(r):
            if cell.ctype == xlrd.XL_CELL_DATE:
                cells.append(_cell_text(xlrd.xldate_as_datetime(cell.value, book.datemode)))
            else:
                cells.append(_cell_text(cell.value))
        yield cells


def read_xlsx(content: bytes, report: ParseReport) -> Iterator[tuple[int, RawRow]]:
    yield from _zip_rows(_xlsx_rows(content), report, pad_short_rows=True)


def read_xls(content: bytes, report: ParseReport) -> Iterator[tuple[int, RawRow]]:
    yield from _zip_rows(_xls_rows(content), report, pad_short_rows=True)


def read_qif(content: bytes, report: ParseReport) -> Iterator[tuple[int, RawRow]]:
    """Accumulate tagged lines into records closed by ``^``."""
    current: RawRow = {}
    index = 0
    for line in decode_text(content).splitlines():
        if report.reached_limit(index):
            return
        line = line.strip()
        if not line:
            continue
        code, value = line[0], line[1:]
        if code == QIF_END_OF_RECORD:
            if current:
                yield index, current
                index += 1
            current = {}
            continue
        destination = QIF_FIELDS.get(code)
        if destination is not None:
            current[destination] = value.strip()
    if current:
        logger.warning("Record %d has no '^' terminator and was dropped", index)
        report.skip(index, "unterminated record at end of file")


class RowStream:
    """Re-iterable view of the rows of one file.

    ``limit`` bounds the data lines read, including lines the reader skips.
    """

    def __init__(self, info: ReaderInfo, content: bytes, limit: int | None = None):
        self.info = info
        self.content = content
        self.limit = limit
        self.report = ParseReport(row_limit=limit)

    def __iter__(self) -> Iterator[tuple[int, RawRow]]:
        self.report = ParseReport(row_limit=self.limit)
        return self.info.read(self.content, self.report)


def open_rows(file_name: str, content: bytes) -> RowStream:
    """Pick the reader for a file name and wrap its content in a RowStream."""
    return RowStream(registry.get_for_file(file_name), content)


registry.register(ReaderInfo(
    key="delimited", name="Delimited text (CSV)",
    file_extensions=["csv"], read=read_delimited,
))
registry.register(ReaderInfo(
    key="xlsx", name="Excel workbook",
    file_extensions=["xlsx"], read=read_xlsx,
))
registry.register(ReaderInfo(
    key="xls", name="Excel 97-2003 workbook",
    file_extensions=["xls"], read=read_xls,
))
registry.register(ReaderInfo(
    key="qif", name="Quicken Interchange Format",
    file_extensions=["qif"], read=read_qif,
))
