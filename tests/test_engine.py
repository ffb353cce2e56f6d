import os
import threading
import time
from pathlib import Path

from smart_office_pdf.backends import BackendSpec, RenderingBackend
from smart_office_pdf.engine import ConversionEngine, EngineOptions, EngineState
from smart_office_pdf.errors import BackendUnavailable, BackupFailed, OpenError, WorkerCrashed
from smart_office_pdf.models import (
    ConversionRequest,
    DocumentKind,
    DuplicateFileAction,
    OperationKind,
    SessionContext,
)


class FakeBackend(RenderingBackend):
    name = "fake"

    def __init__(self, spec, kind, settings, instance):
        self.spec = spec
        self.instance = instance
        self.current = None
        super().__init__(kind, settings)

    def open(self, path):
        if self.spec.on_open:
            self.spec.on_open(path.name)
        if path.name in self.spec.open_fail:
            raise OpenError(f"cannot open {path.name}")
        self.current = path

    def render_to_pdf(self, destination):
        name = self.current.name
        if self.spec.crash_on.get(name, 0) > 0:
            self.spec.crash_on[name] -= 1
            raise WorkerCrashed("The RPC server is unavailable")
        self.spec.rendered.append((self.instance, name))
        if not self.spec.sheets_only:
            destination.write_bytes(b"%PDF-fake " + name.encode())
        for sheet in self.spec.sheets:
            destination.with_name(f"{destination.stem}_{sheet}.pdf").write_bytes(sheet.encode())
        if self.spec.on_render:
            self.spec.on_render(name)

    def close(self):
        self.current = None

    def dispose(self):
        self.spec.disposed += 1


class FakeSpec(BackendSpec):
    def __init__(self, name="fake", *, available=True, unavailable_on_create=False):
        self.name = name
        self.available = available
        self.unavailable_on_create = unavailable_on_create
        self.instances = 0
        self.disposed = 0
        self.rendered = []
        self.crash_on = {}
        self.open_fail = set()
        self.sheets = []
        self.sheets_only = False
        self.on_render = None
        self.on_open = None
        self._lock = threading.Lock()

    def is_available(self, kind):
        return self.available

    def create(self, kind, settings):
        if self.unavailable_on_create:
            raise BackendUnavailable("Class not registered")
        with self._lock:
            self.instances += 1
            instance = self.instances
        return FakeBackend(self, kind, settings, instance)


class Sink:
    def __init__(self):
        self.lines = []
        self.on_message = None

    def __call__(self, msg, level="INFO"):
        self.lines.append((level, msg))
        if self.on_message:
            self.on_message(msg)

    def text(self):
        return "\n".join(m for _, m in self.lines)


def make_sources(root: Path, names, content=b"doc") -> list[Path]:
    out = []
    for n in names:
        p = root / n
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(content + n.encode())
        out.append(p)
    return out


def make_request(tmp_path: Path, names, kind=DocumentKind.WORD, **kw) -> ConversionRequest:
    src_root = tmp_path / "in"
    files = make_sources(src_root, names)
    return ConversionRequest(kind, tuple(files), src_root, tmp_path / "out", **kw)


def make_engine(tmp_path: Path, specs, **opts):
    opts.setdefault("retry_delay", 0)
    opts.setdefault("stabilization_delay", 0)
    opts.setdefault("primary_backend", specs[0].name)
    if len(specs) > 1:
        opts.setdefault("fallback_backend", specs[1].name)
    sink = Sink()
    ctx = SessionContext(log=sink, temp_root=tmp_path / "tmp")
    engine = ConversionEngine(EngineOptions(**opts), ctx, registry={s.name: s for s in specs})
    return engine, sink


def assert_invariant(summary):
    for c in summary.counters.values():
        assert c.total_seen == c.succeeded + c.failed + c.skipped
        assert c.overwritten + c.renamed <= c.succeeded


def test_batch_mode_reuses_one_worker(tmp_path: Path) -> None:
    spec = FakeSpec()
    engine, _ = make_engine(tmp_path, [spec])
    req = make_request(tmp_path, ["a.docx", "b.docx", "sub/c.doc"])
    summary = engine.run([req])
    assert spec.instances == 1
    assert spec.disposed == 1
    assert (tmp_path / "out" / "a.pdf").exists()
    assert (tmp_path / "out" / "sub" / "c.pdf").exists()
    assert summary.counters[DocumentKind.WORD].succeeded == 3
    kinds = [op.kind for op in engine.history.snapshot()]
    assert kinds.count(OperationKind.CREATE_FILE) == 3
    assert kinds.count(OperationKind.CREATE_DIRECTORY) == 2
    assert engine.states[DocumentKind.WORD] is EngineState.DONE
    assert summary.ok


def test_flat_output_ignores_subfolders(tmp_path: Path) -> None:
    spec = FakeSpec()
    engine, _ = make_engine(tmp_path, [spec])
    req = make_request(tmp_path, ["x/a.docx", "y/b.docx"], keep_folder_structure=False)
    engine.run([req])
    assert sorted(p.name for p in (tmp_path / "out").iterdir()) == ["a.pdf", "b.pdf"]


def test_crash_switches_remaining_files_to_safe_mode(tmp_path: Path) -> None:
    spec = FakeSpec()
    names = [f"f{i:02d}.docx" for i in range(1, 11)]
    spec.crash_on = {"f04.docx": 1}
    engine, sink = make_engine(tmp_path, [spec])
    summary = engine.run([make_request(tmp_path, names)])

    first = [inst for inst, name in spec.rendered if name in names[:3]]
    assert first == [1, 1, 1]
    rest = [inst for inst, name in spec.rendered if name in names[3:]]
    assert len(rest) == 7
    assert 1 not in rest
    assert len(set(rest)) == 7
    c = summary.counters[DocumentKind.WORD]
    assert c.succeeded == 10 and c.failed == 0
    assert "[SAFE ]" in sink.text()
    assert_invariant(summary)


def test_safe_mode_retries_with_fresh_worker(tmp_path: Path) -> None:
    spec = FakeSpec()
    spec.crash_on = {"b.docx": 3}  # batch crash, then two failed safe attempts
    engine, sink = make_engine(tmp_path, [spec], safe_attempts=3)
    summary = engine.run([make_request(tmp_path, ["a.docx", "b.docx", "c.docx"])])
    assert summary.counters[DocumentKind.WORD].succeeded == 3
    assert sink.text().count("[RETRY]") == 2
    assert spec.instances == 1 + 3 + 1


def test_safe_mode_gives_up_after_attempts(tmp_path: Path) -> None:
    spec = FakeSpec()
    spec.crash_on = {"b.docx": 99}
    engine, _ = make_engine(tmp_path, [spec], safe_attempts=3)
    summary = engine.run([make_request(tmp_path, ["a.docx", "b.docx", "c.docx"])])
    c = summary.counters[DocumentKind.WORD]
    assert (c.succeeded, c.failed) == (2, 1)
    assert summary.failures[0].path.name == "b.docx"
    assert "after 3 attempts" in summary.failures[0].reason
    assert_invariant(summary)


def test_recoverable_error_keeps_same_worker(tmp_path: Path) -> None:
    spec = FakeSpec()
    spec.open_fail = {"b.docx"}
    engine, _ = make_engine(tmp_path, [spec])
    summary = engine.run([make_request(tmp_path, ["a.docx", "b.docx", "c.docx"])])
    assert spec.instances == 1
    c = summary.counters[DocumentKind.WORD]
    assert (c.succeeded, c.failed) == (2, 1)
    assert "OpenError" in summary.failures[0].reason


def test_unavailable_primary_restarts_on_fallback(tmp_path: Path) -> None:
    primary = FakeSpec("primary", unavailable_on_create=True)
    fallback = FakeSpec("fallback")
    engine, sink = make_engine(tmp_path, [primary, fallback])
    names = [f"f{i}.docx" for i in range(5)]
    summary = engine.run([make_request(tmp_path, names)])
    assert primary.instances == 0
    assert [n for _, n in fallback.rendered] == names
    c = summary.counters[DocumentKind.WORD]
    assert (c.requested, c.total_seen, c.succeeded, c.failed) == (5, 5, 5, 0)
    assert "[FALLB]" in sink.text()


def test_primary_probe_failure_uses_fallback(tmp_path: Path) -> None:
    primary = FakeSpec("primary", available=False)
    fallback = FakeSpec("fallback")
    engine, _ = make_engine(tmp_path, [primary, fallback])
    summary = engine.run([make_request(tmp_path, ["a.docx", "b.docx"])])
    assert fallback.instances == 1
    assert summary.counters[DocumentKind.WORD].succeeded == 2


def test_no_usable_backend_fails_every_file(tmp_path: Path) -> None:
    primary = FakeSpec("primary", available=False)
    fallback = FakeSpec("fallback", unavailable_on_create=True)
    engine, _ = make_engine(tmp_path, [primary, fallback])
    summary = engine.run([make_request(tmp_path, ["a.docx", "b.docx"])])
    assert summary.unavailable == (DocumentKind.WORD,)
    assert summary.counters[DocumentKind.WORD].failed == 2
    assert not (tmp_path / "out").exists()
    assert_invariant(summary)


def test_backup_failure_leaves_existing_pdf_untouched(tmp_path: Path, monkeypatch) -> None:
    spec = FakeSpec()
    engine, _ = make_engine(tmp_path, [spec], duplicate_action=DuplicateFileAction.OVERWRITE)
    existing = tmp_path / "out" / "report.pdf"
    existing.parent.mkdir(parents=True)
    existing.write_bytes(b"original report")

    def boom(path):
        raise BackupFailed(f"disk full: {path}")

    monkeypatch.setattr(engine.backups, "create", boom)
    summary = engine.run([make_request(tmp_path, ["report.docx"])])
    assert existing.read_bytes() == b"original report"
    c = summary.counters[DocumentKind.WORD]
    assert (c.failed, c.succeeded, c.overwritten) == (1, 0, 0)
    assert all(op.kind is not OperationKind.OVERWRITE_FILE for op in engine.history.snapshot())


def test_overwrite_then_undo_restores_original(tmp_path: Path) -> None:
    spec = FakeSpec()
    engine, _ = make_engine(tmp_path, [spec], duplicate_action=DuplicateFileAction.OVERWRITE)
    existing = tmp_path / "out" / "report.pdf"
    existing.parent.mkdir(parents=True)
    existing.write_bytes(b"original report")
    summary = engine.run([make_request(tmp_path, ["report.docx", "other.docx"])])
    assert existing.read_bytes() == b"%PDF-fake report.docx"
    assert summary.counters[DocumentKind.WORD].overwritten == 1

    undone, failed = engine.undo()
    assert (undone, failed) == (2, 0)
    assert existing.read_bytes() == b"original report"
    assert sorted(p.name for p in existing.parent.iterdir()) == ["report.pdf"]
    assert not engine.context.backup_dir.exists()
    assert tuple(engine.undo()) == (0, 0)


def test_rename_policy_numbers_the_copy(tmp_path: Path) -> None:
    spec = FakeSpec()
    engine, _ = make_engine(tmp_path, [spec], duplicate_action=DuplicateFileAction.RENAME)
    existing = tmp_path / "out" / "report.pdf"
    existing.parent.mkdir(parents=True)
    existing.write_bytes(b"keep me")
    summary = engine.run([make_request(tmp_path, ["report.docx"])])
    assert existing.read_bytes() == b"keep me"
    assert (existing.parent / "report (1).pdf").exists()
    c = summary.counters[DocumentKind.WORD]
    assert (c.succeeded, c.renamed) == (1, 1)


def test_skip_policy_counts_skipped(tmp_path: Path) -> None:
    spec = FakeSpec()
    engine, _ = make_engine(tmp_path, [spec])
    existing = tmp_path / "out" / "report.pdf"
    existing.parent.mkdir(parents=True)
    existing.write_bytes(b"keep me")
    summary = engine.run([make_request(tmp_path, ["report.docx", "new.docx"])])
    c = summary.counters[DocumentKind.WORD]
    assert (c.skipped, c.succeeded) == (1, 1)
    assert [n for _, n in spec.rendered] == ["new.docx"]
    assert_invariant(summary)


def test_same_basename_across_kinds_keeps_extension(tmp_path: Path) -> None:
    spec = FakeSpec()
    engine, _ = make_engine(tmp_path, [spec])
    src_root = tmp_path / "in"
    doc, xls = make_sources(src_root, ["a.docx", "a.xlsx"])
    reqs = [
        ConversionRequest(DocumentKind.WORD, (doc,), src_root, tmp_path / "out"),
        ConversionRequest(DocumentKind.EXCEL, (xls,), src_root, tmp_path / "out"),
    ]
    engine.run(reqs)
    assert sorted(p.name for p in (tmp_path / "out").iterdir()) == ["a.docx.pdf", "a.xlsx.pdf"]


def test_multi_artifact_render_records_each_file(tmp_path: Path) -> None:
    spec = FakeSpec()
    spec.sheets = ["Q1", "Q2"]
    spec.sheets_only = True
    engine, _ = make_engine(tmp_path, [spec])
    summary = engine.run([make_request(tmp_path, ["book.xlsx"], kind=DocumentKind.EXCEL)])
    out = tmp_path / "out"
    assert sorted(p.name for p in out.iterdir()) == ["book_Q1.pdf", "book_Q2.pdf"]
    created = [op for op in engine.history.snapshot() if op.kind is OperationKind.CREATE_FILE]
    assert len(created) == 2
    assert summary.counters[DocumentKind.EXCEL].succeeded == 1
    engine.undo()
    assert not out.exists()


def test_cancel_before_start_converts_nothing(tmp_path: Path) -> None:
    spec = FakeSpec()
    engine, _ = make_engine(tmp_path, [spec])
    cancel = threading.Event()
    cancel.set()
    summary = engine.run([make_request(tmp_path, ["a.docx", "b.docx"])], cancel)
    assert summary.cancelled
    assert summary.anomalies == []
    assert spec.rendered == []
    assert not summary.ok


def test_cancel_mid_batch_keeps_committed_work_undoable(tmp_path: Path) -> None:
    spec = FakeSpec()
    cancel = threading.Event()
    spec.on_render = lambda name: cancel.set() if name == "b.docx" else None
    engine, _ = make_engine(tmp_path, [spec])
    summary = engine.run([make_request(tmp_path, ["a.docx", "b.docx", "c.docx"])], cancel)
    c = summary.counters[DocumentKind.WORD]
    assert summary.cancelled
    assert (c.requested, c.total_seen, c.succeeded) == (3, 2, 2)
    assert not (tmp_path / "out" / "c.pdf").exists()
    assert summary.undoable == engine.history_count() > 0
    engine.undo()
    assert not (tmp_path / "out").exists()


def test_delete_originals_round_trip(tmp_path: Path) -> None:
    spec = FakeSpec()
    engine, _ = make_engine(tmp_path, [spec], delete_originals=True)
    req = make_request(tmp_path, ["a.docx", "sub/b.docx"])
    before = {p: p.read_bytes() for p in req.source_paths}
    summary = engine.run([req])
    assert summary.deleted_originals == 2
    assert not any(p.exists() for p in req.source_paths)

    undone, failed = engine.undo()
    assert failed == 0
    assert {p: p.read_bytes() for p in req.source_paths} == before
    assert not (tmp_path / "out").exists()


def test_kinds_can_run_concurrently(tmp_path: Path) -> None:
    spec = FakeSpec()
    engine, _ = make_engine(tmp_path, [spec], kind_workers=3)
    src_root = tmp_path / "in"
    files = make_sources(src_root, ["a.docx", "b.xlsx", "c.pptx", "d.docx"])
    reqs = [
        ConversionRequest(DocumentKind.WORD, (files[0], files[3]), src_root, tmp_path / "out"),
        ConversionRequest(DocumentKind.EXCEL, (files[1],), src_root, tmp_path / "out"),
        ConversionRequest(DocumentKind.PPT, (files[2],), src_root, tmp_path / "out"),
    ]
    summary = engine.run(reqs)
    assert summary.total("succeeded") == 4
    assert spec.instances == 3
    dirs = [op for op in engine.history.snapshot() if op.kind is OperationKind.CREATE_DIRECTORY]
    assert len(dirs) == 1


def test_path_too_long_fails_the_file(tmp_path: Path) -> None:
    spec = FakeSpec()
    limit = len(str(tmp_path / "out")) + 10
    engine, _ = make_engine(tmp_path, [spec], max_path_length=limit)
    summary = engine.run([make_request(tmp_path, ["a" * 30 + ".docx"])])
    assert summary.counters[DocumentKind.WORD].failed == 1
    assert "PathTooLong" in summary.failures[0].reason


def test_long_names_are_truncated_with_hash(tmp_path: Path) -> None:
    spec = FakeSpec()
    limit = len(str(tmp_path / "out")) + 40
    engine, sink = make_engine(tmp_path, [spec], max_path_length=limit)
    summary = engine.run([make_request(tmp_path, ["x" * 80 + ".docx"])])
    assert summary.counters[DocumentKind.WORD].succeeded == 1
    (out,) = list((tmp_path / "out").iterdir())
    assert len(str(out)) <= limit
    assert "path too long" in sink.text()


def test_plan_does_not_touch_the_filesystem(tmp_path: Path) -> None:
    spec = FakeSpec()
    engine, _ = make_engine(tmp_path, [spec])
    plan = engine.plan([make_request(tmp_path, ["a.docx", "b.docx"])])
    assert [p.target.name for p in plan] == ["a.pdf", "b.pdf"]
    assert all(p.action == "create" for p in plan)
    assert not (tmp_path / "out").exists()
    assert spec.instances == 0


def test_worker_start_crash_falls_back_to_safe_mode(tmp_path: Path) -> None:
    spec = FakeSpec()
    calls = {"n": 0}
    original = spec.create

    def flaky(kind, settings):
        calls["n"] += 1
        if calls["n"] == 1:
            raise WorkerCrashed("cannot start worker")
        return original(kind, settings)

    spec.create = flaky
    engine, _ = make_engine(tmp_path, [spec])
    summary = engine.run([make_request(tmp_path, ["a.docx", "b.docx"])])
    assert summary.counters[DocumentKind.WORD].succeeded == 2
    assert calls["n"] == 3


def test_rename_on_truncated_name_never_reuses_an_output(tmp_path: Path) -> None:
    limit = len(str(tmp_path / "out")) + 41
    name = "x" * 60 + ".docx"
    outputs = []
    for run in range(3):
        spec = FakeSpec()
        engine, _ = make_engine(
            tmp_path, [spec], max_path_length=limit, duplicate_action=DuplicateFileAction.RENAME
        )
        summary = engine.run([make_request(tmp_path, [name])])
        assert summary.counters[DocumentKind.WORD].succeeded == 1
        (op,) = [o for o in engine.history.snapshot() if o.kind is not OperationKind.CREATE_DIRECTORY]
        assert op.kind is OperationKind.CREATE_FILE
        assert len(str(op.target_path)) <= limit
        outputs.append(op.target_path)
        op.target_path.write_bytes(f"RUN{run + 1}-OUTPUT".encode())
    assert len(set(outputs)) == 3

    engine.undo()
    assert not outputs[2].exists()
    assert outputs[0].read_bytes() == b"RUN1-OUTPUT"
    assert outputs[1].read_bytes() == b"RUN2-OUTPUT"


def test_target_appearing_during_render_is_not_clobbered(tmp_path: Path) -> None:
    spec = FakeSpec()
    out = tmp_path / "out" / "a.pdf"
    spec.on_render = lambda name: out.write_bytes(b"someone else")
    engine, _ = make_engine(tmp_path, [spec], duplicate_action=DuplicateFileAction.RENAME)
    summary = engine.run([make_request(tmp_path, ["a.docx"])])
    assert summary.counters[DocumentKind.WORD].failed == 1
    assert "TargetExists" in summary.failures[0].reason
    assert out.read_bytes() == b"someone else"
    assert not any(op.kind is OperationKind.CREATE_FILE for op in engine.history.snapshot())


def test_cancel_while_opening_skips_the_render(tmp_path: Path) -> None:
    spec = FakeSpec()
    cancel = threading.Event()
    spec.on_open = lambda name: cancel.set() if name == "b.docx" else None
    engine, _ = make_engine(tmp_path, [spec])
    summary = engine.run([make_request(tmp_path, ["a.docx", "b.docx", "c.docx"])], cancel)
    assert [name for _, name in spec.rendered] == ["a.docx"]
    c = summary.counters[DocumentKind.WORD]
    assert summary.cancelled
    assert (c.requested, c.total_seen, c.succeeded, c.failed) == (3, 1, 1, 0)
    assert not (tmp_path / "out" / "b.pdf").exists()
    assert summary.undoable == engine.history_count() > 0
    engine.undo()
    assert not (tmp_path / "out").exists()


def test_cancel_during_retry_backoff_stops_waiting(tmp_path: Path) -> None:
    spec = FakeSpec()
    spec.crash_on = {"b.docx": 99}
    cancel = threading.Event()
    engine, sink = make_engine(tmp_path, [spec], safe_attempts=3, retry_delay=10)
    sink.on_message = lambda msg: cancel.set() if msg.startswith("[RETRY]") else None
    started = time.monotonic()
    summary = engine.run([make_request(tmp_path, ["a.docx", "b.docx", "c.docx"])], cancel)
    assert time.monotonic() - started < 5
    assert sink.text().count("[RETRY]") == 1
    assert spec.instances == 2
    c = summary.counters[DocumentKind.WORD]
    assert summary.cancelled
    assert (c.total_seen, c.succeeded, c.failed) == (1, 1, 0)
    assert [name for _, name in spec.rendered] == ["a.docx"]
    assert summary.undoable == engine.history_count() > 0


def test_read_only_original_is_still_deleted(tmp_path: Path, monkeypatch) -> None:
    spec = FakeSpec()
    engine, _ = make_engine(tmp_path, [spec], delete_originals=True)
    req = make_request(tmp_path, ["a.docx"])
    (src,) = req.source_paths
    real_unlink = Path.unlink
    chmodded = []

    def unlink(self, *args, **kwargs):
        if self == src and not chmodded:
            raise PermissionError(13, "Access is denied", str(self))
        return real_unlink(self, *args, **kwargs)

    real_chmod = os.chmod

    def chmod(path, mode, *args, **kwargs):
        if Path(path) == src:
            chmodded.append(src)
        return real_chmod(path, mode, *args, **kwargs)

    monkeypatch.setattr(Path, "unlink", unlink)
    monkeypatch.setattr(os, "chmod", chmod)
    summary = engine.run([req])
    assert chmodded == [src]
    assert summary.deleted_originals == 1
    assert not src.exists()
