"""Merge the spreadsheets teachers sent back for a project into one workbook.

Columns only ever grow: the output header starts with three provenance
columns and the first usable header, later wider headers append their extra
cells, and data rows wider than the header append ``ExtraCol_N`` columns.
Existing column positions never change.
"""

from __future__ import annotations

import asyncio
import os
import tempfile
import zipfile
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, time
from pathlib import Path

import openpyxl
import structlog
from openpyxl.utils.exceptions import InvalidFileException

from .config import StorageConfig
from .db import Database
from .db import queries
from .db.queries import AttachmentSource
from .errors import NoSpreadsheetDataError

logger = structlog.get_logger()

SPREADSHEET_EXTENSIONS = frozenset({".xlsx", ".xlsm", ".xltx", ".xltm", ".xls", ".xlsb"})
META_COLUMNS = ("Teacher", "Email", "Source File")
UNMATCHED_TEACHER = "(unmatched teacher)"
SHEET_NAME = "Aggregated"


class OutputHeader:
    """Ordered, append-only column list with a name to index lookup."""

    def __init__(self, columns: Iterable[str] = ()) -> None:
        self._columns: list[str] = []
        self._index: dict[str, int] = {}
        self.extend(columns)

    def append(self, name: str) -> int:
        position = len(self._columns)
        self._columns.append(name)
        self._index.setdefault(name, position)
        return position

    def extend(self, names: Iterable[str]) -> None:
        for name in names:
            self.append(name)

    def index(self, name: str) -> int:
        """Position of the first column called *name*."""
        return self._index[name]

    def __contains__(self, name: object) -> bool:
        return name in self._index

    def __len__(self) -> int:
        return len(self._columns)

    def __iter__(self) -> Iterator[str]:
        return iter(self._columns)

    @property
    def columns(self) -> tuple[str, ...]:
        return tuple(self._columns)


@dataclass
class MergedTable:
    header: OutputHeader = field(default_factory=OutputHeader)
    rows: list[list[str]] = field(default_factory=list)
    attachments_processed: int = 0

    @property
    def has_header(self) -> bool:
        return len(self.header) > 0

    @property
    def data_columns(self) -> int:
        return max(len(self.header) - len(META_COLUMNS), 0)


@dataclass
class AggregationResult:
    output_path: Path
    attachments_processed: int
    rows_written: int


def is_spreadsheet(name: str) -> bool:
    return Path(name).suffix.lower() in SPREADSHEET_EXTENSIONS


def cell_text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    return str(value)


def row_is_blank(row: Sequence[str]) -> bool:
    return all(not cell.strip() for cell in row)


def _trim(row: list[str]) -> list[str]:
    end = len(row)
    while end and row[end - 1] == "":
        end -= 1
    return row[:end]


def read_first_sheet(path: Path) -> list[list[str]] | None:
    """All rows of the first sheet as text; None when the workbook has no sheets."""
    workbook = openpyxl.load_workbook(path, read_only=True, data_only=True)
    try:
        if not workbook.worksheets:
            return None
        sheet = workbook.worksheets[0]
        return [_trim([cell_text(v) for v in row]) for row in sheet.iter_rows(values_only=True)]
    finally:
        workbook.close()


def merge_spreadsheets(sources: Iterable[AttachmentSource]) -> MergedTable:
    """Fold every readable spreadsheet into one table, in the given order."""
    table = MergedTable()

    for source in sources:
        if not (is_spreadsheet(source.original_filename) or is_spreadsheet(source.stored_path)):
            continue

        path = Path(source.stored_path)
        log = logger.bind(stored_path=source.stored_path, filename=source.original_filename)
        if not path.is_file():
            log.warning("aggregation_attachment_missing")
            continue

        try:
            rows = read_first_sheet(path)
        except (InvalidFileException, zipfile.BadZipFile, OSError, KeyError, ValueError) as exc:
            log.warning("aggregation_attachment_unreadable", error=str(exc))
            continue
        if rows is None:
            log.warning("aggregation_attachment_no_sheets")
            continue

        header_idx = next((i for i, row in enumerate(rows) if not row_is_blank(row)), None)
        if header_idx is None:
            log.warning("aggregation_attachment_no_header")
            continue
        header_cells = rows[header_idx]

        if not table.has_header:
            table.header.extend(META_COLUMNS)
            table.header.extend(header_cells)
        elif len(header_cells) > table.data_columns:
            table.header.extend(header_cells[table.data_columns :])

        meta = [
            source.teacher_name or UNMATCHED_TEACHER,
            source.teacher_email,
            source.original_filename,
        ]
        for data_row in rows[header_idx + 1 :]:
            if row_is_blank(data_row):
                continue
            width = table.data_columns
            if len(data_row) > width:
                table.header.extend(f"ExtraCol_{n}" for n in range(width + 1, len(data_row) + 1))
                width = len(data_row)
            table.rows.append(meta + data_row + [""] * (width - len(data_row)))

        table.attachments_processed += 1

    return table


def _append_text_row(sheet, values: list[str]) -> None:
    sheet.append(values)
    # openpyxl turns any str starting with "=" into a formula
    for cell in sheet[sheet.max_row]:
        if isinstance(cell.value, str) and cell.value.startswith("="):
            cell.data_type = "s"


def write_workbook(table: MergedTable, output_path: Path) -> None:
    """Write *table* to *output_path*, replacing any previous file atomically."""
    workbook = openpyxl.Workbook()
    sheet = workbook.active
    sheet.title = SHEET_NAME
    width = len(table.header)
    _append_text_row(sheet, list(table.header))
    for row in table.rows:
        _append_text_row(sheet, row + [""] * (width - len(row)))

    output_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=output_path.parent, prefix=".agg-", suffix=".xlsx")
    os.close(fd)
    try:
        workbook.save(tmp_name)
        os.replace(tmp_name, output_path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class SpreadsheetAggregator:
    """On-demand aggregation of a project's spreadsheet attachments."""

    def __init__(self, db: Database, config: StorageConfig) -> None:
        self._db = db
        self._dir = Path(config.aggregated_dir)

    def aggregated_file_path(self, project_id: int) -> Path:
        """Output location for a project; the file may not exist yet."""
        return self._dir / f"project_{project_id}.xlsx"

    async def aggregate(self, project_id: int) -> AggregationResult:
        async with self._db.session() as session:
            sources = await queries.project_attachment_sources(session, project_id)

        table = await asyncio.to_thread(merge_spreadsheets, sources)
        if not table.has_header:
            logger.info("aggregation_empty", project_id=project_id, attachments=len(sources))
            raise NoSpreadsheetDataError(project_id)

        output_path = self.aggregated_file_path(project_id)
        await asyncio.to_thread(write_workbook, table, output_path)

        logger.info(
            "aggregation_written",
            project_id=project_id,
            path=str(output_path),
            attachments=table.attachments_processed,
            rows=len(table.rows),
            columns=len(table.header),
        )
        return AggregationResult(
            output_path=output_path,
            attachments_processed=table.attachments_processed,
            rows_written=len(table.rows),
        )
