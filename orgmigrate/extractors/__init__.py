"""Flat-file access."""

from .csv_extractor import CsvFileIO

__all__ = [
    "CsvFileIO",
]
