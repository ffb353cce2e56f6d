from pathlib import Path

import pytest

from smart_office_pdf.backends import RenderingBackend
from smart_office_pdf.errors import (
    BackendUnavailable,
    FailureKind,
    OpenError,
    RenderError,
    WorkerCrashed,
    classify_failure,
    hresult_of,
)
from smart_office_pdf.models import DocumentKind
from smart_office_pdf.netpath import NetworkPathBackend, is_network_path, local_copy_path


class FakeComError(Exception):
    """Shaped like pywintypes.com_error: (hresult, text, excepinfo, argerror)."""


@pytest.mark.parametrize(
    "code",
    [-2147023174, -2147023170, -2147417848, -2147418111],  # signed forms of the RPC HRESULTs
)
def test_rpc_hresults_are_critical(code: int) -> None:
    assert classify_failure(FakeComError(code, "boom", None, None)) is FailureKind.CRITICAL


def test_class_not_registered_is_unavailable() -> None:
    exc = FakeComError(-2147221164, "Class not registered", None, None)
    assert hresult_of(exc) == 0x80040154
    assert classify_failure(exc) is FailureKind.UNAVAILABLE


def test_typed_errors_classify_by_type() -> None:
    assert classify_failure(WorkerCrashed("x")) is FailureKind.CRITICAL
    assert classify_failure(BackendUnavailable("x")) is FailureKind.UNAVAILABLE
    assert classify_failure(OpenError("bad file")) is FailureKind.RECOVERABLE
    assert classify_failure(ValueError("unsupported content")) is FailureKind.RECOVERABLE


def test_message_markers_are_recognised() -> None:
    assert classify_failure(RuntimeError("The object invoked has disconnected from its clients.")) is (
        FailureKind.CRITICAL
    )
    assert classify_failure(RuntimeError("file /srv/grpc/report.docx is locked")) is FailureKind.RECOVERABLE


def test_render_error_caused_by_crash_is_critical() -> None:
    try:
        try:
            raise FakeComError(-2147023174, "RPC server unavailable", None, None)
        except FakeComError as e:
            raise RenderError("cannot export") from e
    except RenderError as err:
        assert classify_failure(err) is FailureKind.CRITICAL


def test_network_path_detection(tmp_path: Path) -> None:
    assert is_network_path(r"\\server\share\a.docx")
    assert is_network_path("//server/share/a.docx")
    assert not is_network_path(tmp_path / "a.docx")
    a = local_copy_path(r"\\server\share\a.docx", tmp_path)
    assert a == local_copy_path(r"\\server\share\a.docx", tmp_path)
    assert a.suffix == ".docx" and a.name.startswith("a_")


class Recorder(RenderingBackend):
    name = "rec"

    def __init__(self):
        super().__init__(DocumentKind.WORD)
        self.opened = []
        self.disposed = False

    def open(self, path):
        self.opened.append(Path(path))

    def render_to_pdf(self, destination):
        Path(destination).write_bytes(b"pdf")

    def close(self):
        pass

    def dispose(self):
        self.disposed = True


def test_local_paths_pass_straight_through(tmp_path: Path) -> None:
    inner = Recorder()
    wrapped = NetworkPathBackend(inner, tmp_path / "net")
    doc = tmp_path / "a.docx"
    doc.write_bytes(b"x")
    wrapped.open(doc)
    wrapped.close()
    wrapped.dispose()
    assert inner.opened == [doc]
    assert inner.disposed
    assert not (tmp_path / "net").exists()


def test_network_copy_failure_is_an_open_error(tmp_path: Path) -> None:
    wrapped = NetworkPathBackend(Recorder(), tmp_path / "net")
    with pytest.raises(OpenError):
        wrapped.open(Path("//no-such-host-for-tests/share/a.docx"))
