"""Module entry point for `python -m smart_office_pdf` and frozen binaries.

Absolute imports keep freezing (PyInstaller) working without package context.
"""

from smart_office_pdf.cli import main

if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
