"""Batch conversion of Word, Excel and PowerPoint documents to PDF."""

__version__ = "0.1.0"
