"""Delimited flat-file reader and writer."""

import csv
import logging
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

Row = Dict[str, Any]


class CsvFileIO:
    """
    Read-all / write-all access to delimited files.

    Supports:
    - Delimiter detection with a configured fallback
    - Encoding fallback to latin-1
    - Byte-order-mark stripping
    - Empty cells read as None when nulls are enabled
    """

    def __init__(
        self,
        read_delimiter: str = ",",
        write_delimiter: str = ",",
        encoding: str = "utf-8",
        insert_nulls: bool = True,
        sniff: bool = True,
    ):
        """
        Initialize the file accessor.

        Args:
            read_delimiter: Delimiter used when detection fails
            write_delimiter: Delimiter for written files
            encoding: File encoding
            insert_nulls: Read empty cells as None
            sniff: Try to detect the delimiter from the file content
        """
        self.read_delimiter = read_delimiter
        self.write_delimiter = write_delimiter
        self.encoding = encoding
        self.insert_nulls = insert_nulls
        self.sniff = sniff

    def exists(self, path: str) -> bool:
        return Path(path).is_file()

    def read_all(self, path: str) -> Tuple[List[str], List[Row]]:
        """
        Read a whole file.

        Returns:
            Tuple of (column names, rows)
        """
        try:
            return self._read(path, self._reader_encoding(self.encoding))
        except UnicodeDecodeError:
            logger.warning(f"{self.encoding} decode failed, trying latin-1 for {path}")
            return self._read(path, "latin-1")

    def _reader_encoding(self, encoding: str) -> str:
        # utf-8-sig strips the byte-order mark on read
        return "utf-8-sig" if encoding.lower().replace("_", "-") in ("utf-8", "utf8") else encoding

    def _read(self, path: str, encoding: str) -> Tuple[List[str], List[Row]]:
        with open(path, "r", encoding=encoding, newline="") as f:
            sample = f.readline()
            f.seek(0)

            delimiter = self.read_delimiter
            if self.sniff and sample:
                try:
                    delimiter = csv.Sniffer().sniff(sample, delimiters=",;\t|").delimiter
                except csv.Error:
                    delimiter = self.read_delimiter

            reader = csv.DictReader(f, delimiter=delimiter)
            columns = list(reader.fieldnames or [])
            rows = []
            for raw in reader:
                row = {}
                for column in columns:
                    value = raw.get(column)
                    if value == "" and self.insert_nulls:
                        value = None
                    row[column] = value
                rows.append(row)

        logger.debug(f"Read {len(rows)} rows from {path}")
        return columns, rows

    def write_all(self, path: str, rows: Sequence[Row], columns: Optional[Sequence[str]] = None) -> None:
        """Write rows to a file, creating parent directories; None is written as an empty cell."""
        if columns is None:
            columns = []
            for row in rows:
                for key in row:
                    if key not in columns:
                        columns.append(key)

        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding=self.encoding, newline="") as f:
            writer = csv.DictWriter(
                f,
                fieldnames=list(columns),
                delimiter=self.write_delimiter,
                quoting=csv.QUOTE_ALL,
                extrasaction="ignore",
            )
            writer.writeheader()
            for row in rows:
                writer.writerow({c: ("" if row.get(c) is None else row.get(c)) for c in columns})

        logger.debug(f"Wrote {len(rows)} rows to {path}")

    def copy(self, source: str, destination: str) -> None:
        Path(destination).parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, destination)
