import logging
from pathlib import Path
from string import ascii_lowercase
from typing import Any, Iterable, Protocol, Sequence, TextIO

from core import settings
from transfer.config import TableSpec
from transfer.domain import ChunkFile, ExportedTable, MigrationError

logger = logging.getLogger(__name__)


class ChunkExportError(MigrationError):
    pass


class Cursor(Protocol):
    """The slice of a DB-API cursor the exporter relies on."""

    description: Sequence[Sequence[Any]] | None

    def execute(self, query: str, *args: Any) -> Any:
        ...

    def fetchmany(self, size: int) -> list[Sequence[Any]]:
        ...


def chunk_suffix(index: int, min_width: int = 2) -> str:
    """Alphabetic chunk suffix: 0 -> 'aa', 1 -> 'ab', 26 -> 'ba', 676 -> 'baa'."""
    letters: list[str] = []
    while True:
        index, remainder = divmod(index, 26)
        letters.append(ascii_lowercase[remainder])
        if index == 0:
            break
    return "".join(reversed(letters)).rjust(min_width, "a")


def format_value(value: Any) -> str:
    """
    Render one column value as a chunk field.

    NULL stays an unquoted literal so it is distinguishable from the string "NULL"
    and from the empty string, both of which are written quoted. Binary values
    must decode as CHUNK_ENCODING; anything else raises UnicodeDecodeError.
    """
    if value is None:
        return settings.NULL_LITERAL

    if isinstance(value, (bytes, bytearray, memoryview)):
        text = bytes(value).decode(settings.CHUNK_ENCODING)
    else:
        text = str(value)

    quote = settings.QUOTE_CHAR
    return quote + text.replace(quote, quote + quote) + quote


def format_record(row: Iterable[Any], columns: Sequence[str] = ()) -> str:
    fields: list[str] = []
    for index, value in enumerate(row):
        try:
            fields.append(format_value(value))
        except UnicodeDecodeError as e:
            column = columns[index] if index < len(columns) else f"#{index + 1}"
            raise ChunkExportError(
                f"Column '{column}' holds a value that is not valid {settings.CHUNK_ENCODING}: {e}"
            ) from e
    return settings.FIELD_DELIMITER.join(fields) + settings.LINE_TERMINATOR


class ChunkedExporter:
    """
    Streams a query result set into a raw CSV file, then splits the file into
    chunks of at most lines_to_split records.
    """

    def __init__(self, *, lines_to_split: int = settings.DEFAULT_LINES_TO_SPLIT,
                 fetch_size: int = settings.DEFAULT_FETCH_SIZE) -> None:
        if lines_to_split <= 0:
            raise ValueError("lines_to_split must be positive")
        if fetch_size <= 0:
            raise ValueError("fetch_size must be positive")
        self.lines_to_split = lines_to_split
        self.fetch_size = fetch_size

    def export_query(self, cursor: Cursor, query: str, sink: TextIO) -> int:
        """Run the query and write every row to sink. Returns the number of rows written."""
        cursor.execute(query)
        columns = [str(d[0]) for d in (cursor.description or ())]

        row_count = 0
        while True:
            rows = cursor.fetchmany(self.fetch_size)
            if not rows:
                break
            for row in rows:
                sink.write(format_record(row, columns))
            row_count += len(rows)
            logger.debug("Exported %s rows so far", row_count)

        return row_count

    def split_into_chunks(self, raw_path: Path, table_name: str, output_dir: Path) -> list[ChunkFile]:
        """
        Split raw_path every lines_to_split records.

        Splitting counts lines. A physical line whose running quote count is odd
        belongs to a value with an embedded newline, so the record continues on
        the next line and is never cut in two.
        """
        output_dir.mkdir(parents=True, exist_ok=True)
        quote_b = settings.QUOTE_CHAR.encode(settings.CHUNK_ENCODING)

        chunks: list[ChunkFile] = []
        out = None
        out_path: Path | None = None
        records_in_chunk = 0
        quotes_open = False

        def close_chunk() -> None:
            nonlocal out, out_path, records_in_chunk
            if out is None or out_path is None:
                return
            out.close()
            chunks.append(ChunkFile(table_name=table_name, path=out_path, row_count=records_in_chunk))
            out, out_path, records_in_chunk = None, None, 0

        try:
            with open(raw_path, "rb") as raw:
                for line in raw:
                    if out is None:
                        out_path = output_dir / f"{table_name}{settings.CHUNK_NAME_SEPARATOR}{chunk_suffix(len(chunks))}"
                        out = open(out_path, "wb")

                    out.write(line)
                    if line.count(quote_b) % 2 == 1:
                        quotes_open = not quotes_open
                    if quotes_open:
                        continue

                    records_in_chunk += 1
                    if records_in_chunk == self.lines_to_split:
                        close_chunk()

                if quotes_open:
                    raise ChunkExportError(f"Unterminated quoted value at end of {raw_path}")
                close_chunk()
        finally:
            if out is not None:
                out.close()

        return chunks

    def export_table(self, cursor: Cursor, table: TableSpec, raw_dir: Path, chunk_dir: Path) -> ExportedTable:
        """Export one table into chunk files under chunk_dir. The raw file is removed afterwards."""
        raw_dir.mkdir(parents=True, exist_ok=True)
        raw_path = raw_dir / f"{table.name}.csv"
        logger.info("Exporting %s: %s", table.name, table.select_query)

        try:
            with open(raw_path, "w", encoding=settings.CHUNK_ENCODING, newline="") as sink:
                row_count = self.export_query(cursor, table.select_query, sink)
            columns = tuple(str(d[0]) for d in (cursor.description or ()))
            chunks = self.split_into_chunks(raw_path, table.name, chunk_dir)
        except Exception as e:
            raise ChunkExportError(f"Export of table '{table.name}' failed: {e}") from e
        finally:
            raw_path.unlink(missing_ok=True)

        logger.info("Exported %s rows of %s into %s chunk(s)", row_count, table.name, len(chunks))
        return ExportedTable(table_name=table.name, columns=columns, row_count=row_count, chunks=tuple(chunks))
