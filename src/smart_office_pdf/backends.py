"""Rendering backends: the worker side of the open / render / close contract.

Backends included:

- ``msoffice``: Microsoft Office through pywin32 COM automation (Windows).
- ``wps``: WPS Office through the same COM object model (Windows).
- ``libreoffice``: headless ``soffice --convert-to pdf`` subprocess.
- ``mock``: renders the document's raw text with PyMuPDF; used by tests and
  for dry environments. Fault injection is driven by ``core.MOCK_*``.

Each backend is described by a ``BackendSpec`` that probes availability and
builds fresh ``RenderingBackend`` instances for one document kind.
"""

from __future__ import annotations

import re
import shutil
import subprocess
import sys
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from . import core
from .errors import (
    BackendUnavailable,
    FailureKind,
    OpenError,
    RenderError,
    WorkerCrashed,
    classify_failure,
)
from .models import DocumentKind

FITZ_IMPORT_ERROR: Exception | None = None
fitz: Any | None
try:  # PyMuPDF only backs the mock renderer
    import fitz as _fitz

    fitz = _fitz
except Exception as e:  # pragma: no cover - best effort
    fitz = None
    FITZ_IMPORT_ERROR = e


@dataclass(frozen=True)
class WorkerSettings:
    """Options a backend variant may honour through ``configure``."""

    print_revisions: bool = True
    one_pdf_per_sheet: bool = False
    soffice_path: str | None = None
    timeout: int = 300


class RenderingBackend(ABC):
    """One live worker session for a single document kind.

    ``open`` raises ``OpenError``; ``render_to_pdf`` raises ``RenderError`` or
    ``WorkerCrashed`` and may write extra ``{stem}_{suffix}.pdf`` siblings
    next to the destination; ``close`` must be safe after a failed render.
    """

    name = "base"

    def __init__(self, kind: DocumentKind, settings: WorkerSettings | None = None) -> None:
        self.kind = kind
        self.settings = settings or WorkerSettings()
        self.configure(self.settings)

    def configure(self, settings: WorkerSettings) -> None:
        """Pick up the settings this variant understands; default ignores them."""

    @abstractmethod
    def open(self, path: Path) -> None: ...

    @abstractmethod
    def render_to_pdf(self, destination: Path) -> None: ...

    @abstractmethod
    def close(self) -> None: ...

    def dispose(self) -> None:
        """Tear down the worker process; the instance is unusable afterwards."""

    def __enter__(self) -> "RenderingBackend":
        return self

    def __exit__(self, *exc: object) -> None:
        self.dispose()


class BackendSpec(ABC):
    """Factory plus availability probe for one backend name."""

    name = "base"

    def is_available(self, kind: DocumentKind) -> bool:
        return True

    @abstractmethod
    def create(self, kind: DocumentKind, settings: WorkerSettings) -> RenderingBackend:
        """Start a worker; raises ``BackendUnavailable`` when it cannot be started."""

    def needs_stabilization(self, kind: DocumentKind) -> bool:
        """True when the worker needs a pause after rendering before disposal."""
        return False


def safe_sheet_name(name: str) -> str:
    return re.sub(r'[<>:"/\\|?*\x00-\x1f]', "_", name).strip() or "Sheet"


# --- mock ---------------------------------------------------------------

_SHEET_RE = re.compile(r"^\[sheet:(?P<name>[^\]]+)\]\s*$")
LINES_PER_PAGE = 50


def write_text_pdf(destination: Path, text: str, *, title: str = "") -> None:
    """Write ``text`` into a simple paginated PDF using PyMuPDF."""
    if not fitz:
        raise RenderError(f"PyMuPDF not installed: {FITZ_IMPORT_ERROR!r}")
    lines = text.splitlines() or [""]
    doc = fitz.open()
    try:
        for start in range(0, len(lines), LINES_PER_PAGE):
            page = doc.new_page()
            chunk = "\n".join(lines[start : start + LINES_PER_PAGE])
            page.insert_text((72, 72), chunk, fontsize=10)
        doc.set_metadata({"title": title, "producer": "smart-office-pdf"})
        doc.save(str(destination))
    finally:
        doc.close()


def split_sheets(text: str) -> list[tuple[str, str]]:
    """Split mock spreadsheet text on ``[sheet:Name]`` marker lines."""
    sheets: list[tuple[str, list[str]]] = []
    for line in text.splitlines():
        m = _SHEET_RE.match(line)
        if m:
            sheets.append((m.group("name"), []))
        elif sheets:
            sheets[-1][1].append(line)
    return [(name, "\n".join(body)) for name, body in sheets]


class MockBackend(RenderingBackend):
    name = "mock"

    def __init__(self, kind: DocumentKind, settings: WorkerSettings | None = None) -> None:
        super().__init__(kind, settings)
        self.renders = 0
        self._source: Path | None = None
        self._text: str | None = None

    def configure(self, settings: WorkerSettings) -> None:
        self.one_pdf_per_sheet = settings.one_pdf_per_sheet and self.kind is DocumentKind.EXCEL

    def open(self, path: Path) -> None:
        try:
            text = Path(path).read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            raise OpenError(f"cannot read {path}: {e}") from e
        if text.startswith("CORRUPT"):
            raise OpenError(f"document is corrupt: {path}")
        self._source = Path(path)
        self._text = text

    def render_to_pdf(self, destination: Path) -> None:
        if self._text is None or self._source is None:
            raise RenderError("no document open")
        if core.MOCK_FAIL:
            raise RenderError(f"mock render failure: {self._source.name}")
        if core.MOCK_CRASH_AFTER and self.renders >= core.MOCK_CRASH_AFTER:
            raise WorkerCrashed("mock worker crashed: The RPC server is unavailable")
        self.renders += 1
        destination = Path(destination)
        sheets = split_sheets(self._text) if self.one_pdf_per_sheet else []
        if sheets:
            for name, body in sheets:
                out = destination.with_name(f"{destination.stem}_{safe_sheet_name(name)}.pdf")
                write_text_pdf(out, body, title=f"{self._source.name} [{name}]")
            return
        write_text_pdf(destination, self._text, title=self._source.name)

    def close(self) -> None:
        self._source = None
        self._text = None


class MockSpec(BackendSpec):
    name = "mock"

    def is_available(self, kind: DocumentKind) -> bool:
        return fitz is not None and not core.MOCK_UNAVAILABLE

    def create(self, kind: DocumentKind, settings: WorkerSettings) -> RenderingBackend:
        if not self.is_available(kind):
            raise BackendUnavailable("mock backend unavailable")
        return MockBackend(kind, settings)


# --- COM automation (Microsoft Office / WPS) ------------------------------

MS_PROG_IDS = {
    DocumentKind.WORD: "Word.Application",
    DocumentKind.EXCEL: "Excel.Application",
    DocumentKind.PPT: "PowerPoint.Application",
}
WPS_PROG_IDS = {
    DocumentKind.WORD: "KWPS.Application",
    DocumentKind.EXCEL: "KET.Application",
    DocumentKind.PPT: "KWPP.Application",
}

WD_EXPORT_FORMAT_PDF = 17
WD_EXPORT_DOCUMENT_CONTENT = 0
WD_EXPORT_DOCUMENT_WITH_MARKUP = 7
XL_TYPE_PDF = 0
PP_SAVE_AS_PDF = 32


def _import_pywin32():
    try:
        import pythoncom  # type: ignore
        import win32com.client  # type: ignore
    except ImportError as e:
        raise BackendUnavailable("pywin32 is required for COM automation") from e
    return pythoncom, win32com.client


def progid_registered(prog_id: str) -> bool:
    """Resolve a ProgID to its CLSID without launching the application."""
    if sys.platform != "win32":
        return False
    try:
        import pywintypes  # type: ignore
    except ImportError:
        return False
    try:
        pywintypes.IID(prog_id)
    except pywintypes.com_error:
        return False
    return True


def _translate(exc: Exception, default: type[Exception], message: str) -> Exception:
    kind = classify_failure(exc)
    if kind is FailureKind.CRITICAL:
        return WorkerCrashed(f"{message}: {exc}")
    if kind is FailureKind.UNAVAILABLE:
        return BackendUnavailable(f"{message}: {exc}")
    return default(f"{message}: {exc}")


class ComBackend(RenderingBackend):
    """Shared COM session handling; subclasses drive one Office application."""

    name = "com"

    def __init__(self, kind: DocumentKind, prog_id: str, settings: WorkerSettings | None = None) -> None:
        self.prog_id = prog_id
        self.doc: Any = None
        self._pythoncom, client = _import_pywin32()
        self._pythoncom.CoInitialize()
        try:
            self.app = client.DispatchEx(prog_id)
        except Exception as e:
            self._pythoncom.CoUninitialize()
            raise _translate(e, WorkerCrashed, f"cannot start {prog_id}") from e
        self._quiet()
        super().__init__(kind, settings)

    def _quiet(self) -> None:
        try:
            self.app.Visible = False
            self.app.DisplayAlerts = False
        except Exception as e:  # some hosts refuse either property
            core.log(f"[debug] {self.prog_id}: cannot hide window: {e!r}", level="DEBUG")

    def open(self, path: Path) -> None:
        try:
            self.doc = self._open(str(Path(path).resolve()))
        except Exception as e:
            raise _translate(e, OpenError, f"cannot open {path}") from e

    def render_to_pdf(self, destination: Path) -> None:
        if self.doc is None:
            raise RenderError("no document open")
        try:
            self._export(str(Path(destination).resolve()))
        except Exception as e:
            raise _translate(e, RenderError, f"cannot export {destination}") from e

    def close(self) -> None:
        if self.doc is None:
            return
        try:
            self._close_doc()
        except Exception as e:
            core.log(f"[debug] {self.prog_id}: close failed: {e!r}", level="DEBUG")
        finally:
            self.doc = None

    def dispose(self) -> None:
        self.close()
        try:
            self.app.Quit()
        except Exception as e:
            core.log(f"[debug] {self.prog_id}: quit failed: {e!r}", level="DEBUG")
        finally:
            self.app = None
            self._pythoncom.CoUninitialize()

    @abstractmethod
    def _open(self, path: str) -> Any:
        """Open ``path`` in the application and return the document handle."""

    @abstractmethod
    def _export(self, destination: str) -> None:
        """Export the open document to ``destination`` as PDF."""

    def _close_doc(self) -> None:
        self.doc.Close(False)


class ComWordBackend(ComBackend):
    def configure(self, settings: WorkerSettings) -> None:
        self.print_revisions = settings.print_revisions

    def _open(self, path: str) -> Any:
        return self.app.Documents.Open(path, ReadOnly=True, AddToRecentFiles=False, Visible=False)

    def _export(self, destination: str) -> None:
        item = WD_EXPORT_DOCUMENT_WITH_MARKUP if self.print_revisions else WD_EXPORT_DOCUMENT_CONTENT
        self.doc.ExportAsFixedFormat(
            OutputFileName=destination,
            ExportFormat=WD_EXPORT_FORMAT_PDF,
            OpenAfterExport=False,
            Item=item,
        )


class ComExcelBackend(ComBackend):
    def configure(self, settings: WorkerSettings) -> None:
        self.one_pdf_per_sheet = settings.one_pdf_per_sheet

    def _open(self, path: str) -> Any:
        return self.app.Workbooks.Open(path, ReadOnly=True, UpdateLinks=0)

    def _export(self, destination: str) -> None:
        if not self.one_pdf_per_sheet:
            self.doc.ExportAsFixedFormat(XL_TYPE_PDF, destination)
            return
        dest = Path(destination)
        for sheet in self.doc.Worksheets:
            out = dest.with_name(f"{dest.stem}_{safe_sheet_name(str(sheet.Name))}.pdf")
            sheet.ExportAsFixedFormat(XL_TYPE_PDF, str(out))


class ComPowerPointBackend(ComBackend):
    def _quiet(self) -> None:
        # PowerPoint rejects Visible=False on the application object
        try:
            self.app.DisplayAlerts = 1  # ppAlertsNone
        except Exception as e:
            core.log(f"[debug] {self.prog_id}: cannot silence alerts: {e!r}", level="DEBUG")

    def _open(self, path: str) -> Any:
        return self.app.Presentations.Open(path, ReadOnly=True, Untitled=False, WithWindow=False)

    def _export(self, destination: str) -> None:
        self.doc.SaveAs(destination, PP_SAVE_AS_PDF)

    def _close_doc(self) -> None:
        self.doc.Close()


_COM_CLASSES = {
    DocumentKind.WORD: ComWordBackend,
    DocumentKind.EXCEL: ComExcelBackend,
    DocumentKind.PPT: ComPowerPointBackend,
}


class ComSpec(BackendSpec):
    def __init__(self, name: str, prog_ids: dict[DocumentKind, str]) -> None:
        self.name = name
        self.prog_ids = prog_ids

    def is_available(self, kind: DocumentKind) -> bool:
        return progid_registered(self.prog_ids[kind])

    def create(self, kind: DocumentKind, settings: WorkerSettings) -> RenderingBackend:
        backend = _COM_CLASSES[kind](kind, self.prog_ids[kind], settings)
        backend.name = self.name
        return backend

    def needs_stabilization(self, kind: DocumentKind) -> bool:
        return kind is DocumentKind.PPT


# --- LibreOffice ----------------------------------------------------------

_SOFFICE_CANDIDATES = (
    r"C:\Program Files\LibreOffice\program\soffice.exe",
    r"C:\Program Files (x86)\LibreOffice\program\soffice.exe",
    "/Applications/LibreOffice.app/Contents/MacOS/soffice",
    "/usr/lib/libreoffice/program/soffice",
    "/opt/libreoffice/program/soffice",
)


def find_soffice(explicit: str | None = None) -> str | None:
    """Resolve soffice: explicit path, then PATH, then common install locations."""
    if explicit:
        return explicit if Path(explicit).exists() else None
    found = shutil.which("soffice") or shutil.which("libreoffice")
    if found:
        return found
    for cand in _SOFFICE_CANDIDATES:
        if Path(cand).exists():
            return cand
    return None


class LibreOfficeBackend(RenderingBackend):
    """Runs one headless ``soffice`` conversion per render with a private profile."""

    name = "libreoffice"

    def __init__(self, kind: DocumentKind, settings: WorkerSettings | None = None) -> None:
        super().__init__(kind, settings)
        exe = find_soffice(self.settings.soffice_path)
        if not exe:
            raise BackendUnavailable("soffice not found (install LibreOffice)")
        self.exe = exe
        self.profile = Path(tempfile.mkdtemp(prefix="smart-office-pdf-lo-"))
        self._source: Path | None = None

    def open(self, path: Path) -> None:
        p = Path(path)
        if not p.is_file():
            raise OpenError(f"document not found: {p}")
        self._source = p

    def render_to_pdf(self, destination: Path) -> None:
        if self._source is None:
            raise RenderError("no document open")
        destination = Path(destination)
        with tempfile.TemporaryDirectory() as td:
            cmd = [
                self.exe,
                f"-env:UserInstallation={self.profile.resolve().as_uri()}",
                "--headless",
                "--norestore",
                "--convert-to",
                "pdf",
                "--outdir",
                td,
                str(self._source),
            ]
            core.log(f"[RUN  ] {' '.join(cmd)}", level="DEBUG")
            try:
                proc = subprocess.run(  # noqa: S603
                    cmd, capture_output=True, text=True, timeout=self.settings.timeout
                )
            except subprocess.TimeoutExpired as e:
                raise WorkerCrashed(f"soffice timed out after {self.settings.timeout}s") from e
            except OSError as e:
                raise BackendUnavailable(f"cannot run soffice: {e}") from e
            if proc.returncode < 0:
                raise WorkerCrashed(f"soffice killed by signal {-proc.returncode}")
            produced = Path(td) / (self._source.stem + ".pdf")
            if proc.returncode != 0 or not produced.exists():
                detail = (proc.stderr or proc.stdout or "").strip().splitlines()
                raise RenderError(f"soffice rc={proc.returncode}: {detail[-1] if detail else 'no output'}")
            shutil.move(str(produced), str(destination))

    def close(self) -> None:
        self._source = None

    def dispose(self) -> None:
        self.close()
        shutil.rmtree(self.profile, ignore_errors=True)


class LibreOfficeSpec(BackendSpec):
    name = "libreoffice"

    def __init__(self, soffice_path: str | None = None) -> None:
        self.soffice_path = soffice_path

    def is_available(self, kind: DocumentKind) -> bool:
        return find_soffice(self.soffice_path or core.SOFFICE) is not None

    def create(self, kind: DocumentKind, settings: WorkerSettings) -> RenderingBackend:
        if settings.soffice_path is None and (self.soffice_path or core.SOFFICE):
            settings = replace(settings, soffice_path=self.soffice_path or core.SOFFICE)
        return LibreOfficeBackend(kind, settings)


BACKENDS: dict[str, BackendSpec] = {
    "msoffice": ComSpec("msoffice", MS_PROG_IDS),
    "wps": ComSpec("wps", WPS_PROG_IDS),
    "libreoffice": LibreOfficeSpec(),
    "mock": MockSpec(),
}


def default_backends() -> tuple[str, str | None]:
    """(primary, fallback) names for this host."""
    if sys.platform == "win32":
        return "msoffice", "wps"
    return "libreoffice", None
