import sys
from pathlib import Path

import pytest

from smart_office_pdf import backends, core
from smart_office_pdf.backends import (
    BACKENDS,
    LibreOfficeSpec,
    MockBackend,
    WorkerSettings,
    default_backends,
    find_soffice,
    safe_sheet_name,
    split_sheets,
)
from smart_office_pdf.errors import BackendUnavailable, OpenError, RenderError, WorkerCrashed
from smart_office_pdf.models import DocumentKind


def test_split_sheets_and_names() -> None:
    text = "ignored\n[sheet:First]\na\nb\n[sheet:Sec:ond]\nc\n"
    assert split_sheets(text) == [("First", "a\nb"), ("Sec:ond", "c")]
    assert safe_sheet_name("Sec:ond") == "Sec_ond"
    assert safe_sheet_name("   ") == "Sheet"


def test_mock_open_rejects_corrupt_documents(tmp_path: Path) -> None:
    doc = tmp_path / "bad.docx"
    doc.write_text("CORRUPT header", encoding="utf-8")
    backend = MockBackend(DocumentKind.WORD)
    with pytest.raises(OpenError):
        backend.open(doc)
    with pytest.raises(OpenError):
        backend.open(tmp_path / "missing.docx")
    with pytest.raises(RenderError):
        backend.render_to_pdf(tmp_path / "x.pdf")


def test_mock_render_writes_pdf_and_sheets(tmp_path: Path) -> None:
    pytest.importorskip("fitz")
    doc = tmp_path / "book.xlsx"
    doc.write_text("[sheet:A]\n1\n[sheet:B]\n2\n", encoding="utf-8")
    backend = MockBackend(DocumentKind.EXCEL, WorkerSettings(one_pdf_per_sheet=True))
    backend.open(doc)
    backend.render_to_pdf(tmp_path / "book.pdf")
    backend.close()
    assert sorted(p.name for p in tmp_path.glob("*.pdf")) == ["book_A.pdf", "book_B.pdf"]

    word = MockBackend(DocumentKind.WORD, WorkerSettings(one_pdf_per_sheet=True))
    word.open(doc)
    word.render_to_pdf(tmp_path / "single.pdf")
    assert (tmp_path / "single.pdf").read_bytes().startswith(b"%PDF")


def test_mock_fault_injection(tmp_path: Path, monkeypatch) -> None:
    pytest.importorskip("fitz")
    doc = tmp_path / "a.docx"
    doc.write_text("text", encoding="utf-8")
    monkeypatch.setattr(core, "MOCK_CRASH_AFTER", 1)
    backend = MockBackend(DocumentKind.WORD)
    backend.open(doc)
    backend.render_to_pdf(tmp_path / "1.pdf")
    with pytest.raises(WorkerCrashed):
        backend.render_to_pdf(tmp_path / "2.pdf")

    monkeypatch.setattr(core, "MOCK_CRASH_AFTER", 0)
    monkeypatch.setattr(core, "MOCK_FAIL", True)
    with pytest.raises(RenderError):
        backend.render_to_pdf(tmp_path / "3.pdf")


def test_mock_spec_availability(monkeypatch) -> None:
    spec = BACKENDS["mock"]
    monkeypatch.setattr(core, "MOCK_UNAVAILABLE", True)
    assert not spec.is_available(DocumentKind.WORD)
    with pytest.raises(BackendUnavailable):
        spec.create(DocumentKind.WORD, WorkerSettings())


def test_soffice_lookup(tmp_path: Path, monkeypatch) -> None:
    assert find_soffice(str(tmp_path / "no-soffice")) is None
    fake = tmp_path / "soffice"
    fake.write_text("#!/bin/sh\n")
    assert find_soffice(str(fake)) == str(fake)
    monkeypatch.setattr(core, "SOFFICE", None)
    spec = LibreOfficeSpec(str(tmp_path / "no-soffice"))
    assert not spec.is_available(DocumentKind.WORD)
    with pytest.raises(BackendUnavailable):
        spec.create(DocumentKind.WORD, WorkerSettings())


@pytest.mark.skipif(sys.platform == "win32", reason="COM backends are only probed on Windows")
def test_com_backends_unavailable_off_windows() -> None:
    assert not BACKENDS["msoffice"].is_available(DocumentKind.WORD)
    assert not BACKENDS["wps"].is_available(DocumentKind.PPT)
    assert BACKENDS["wps"].needs_stabilization(DocumentKind.PPT)
    assert not BACKENDS["wps"].needs_stabilization(DocumentKind.WORD)
    assert default_backends() == ("libreoffice", None)


def test_backend_registry_names() -> None:
    assert set(BACKENDS) == {"msoffice", "wps", "libreoffice", "mock"}
    assert backends.MS_PROG_IDS[DocumentKind.EXCEL] == "Excel.Application"
    assert backends.WPS_PROG_IDS[DocumentKind.WORD] == "KWPS.Application"


def test_backend_bases_are_abstract() -> None:
    with pytest.raises(TypeError):
        backends.BackendSpec()
    with pytest.raises(TypeError):
        backends.ComBackend(DocumentKind.WORD, "Word.Application")
