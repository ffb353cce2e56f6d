"""Conversion orchestrator: batch and safe strategies, backend fallback, commit.

Per document kind the engine walks ``idle -> batch_running -> (batch_complete |
batch_aborted) -> safe_running -> done``. Batch mode keeps one worker for the
whole file set; a crash-classified failure aborts it and the unprocessed
remainder, crashed file included, is retried in safe mode with a fresh worker
per file. A backend that cannot be used at all hands the file set to the
configured fallback backend.

Renders always land in a private staging directory first and are copied into
the destination tree afterwards, so every mutation of the destination is
recorded in the transaction log and can be undone.
"""

from __future__ import annotations

import glob
import os
import shutil
import stat
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from . import duplicates
from .backends import BACKENDS, BackendSpec, RenderingBackend, WorkerSettings
from .errors import (
    BackendUnavailable,
    BackupFailed,
    Cancelled,
    ConversionError,
    FailureKind,
    PathTooLong,
    RenderError,
    TargetExists,
    classify_failure,
)
from .models import (
    ConversionOperation,
    ConversionRequest,
    DocumentKind,
    DuplicateFileAction,
    FileHandleResult,
    FileOutcome,
    FileStatus,
    OperationKind,
    SessionContext,
)
from .netpath import NetworkPathBackend
from .paths import MAX_PATH_LENGTH, guard_path, missing_parents, plan_target_dir, target_file_name
from .report import BatchSummary, build_summary
from .stats import EngineStatistics
from .transaction import BackupStore, TransactionLog, UndoExecutor, UndoReport

DELETE_ATTEMPTS = 3


@dataclass(frozen=True)
class EngineOptions:
    duplicate_action: DuplicateFileAction = DuplicateFileAction.SKIP
    primary_backend: str = "libreoffice"
    fallback_backend: str | None = None
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    max_path_length: int = MAX_PATH_LENGTH
    safe_attempts: int = 3
    retry_delay: float = 1.0
    stabilization_delay: float = 0.5
    delete_originals: bool = False
    kind_workers: int = 1


class EngineState(str, Enum):
    IDLE = "idle"
    BATCH_RUNNING = "batch_running"
    BATCH_COMPLETE = "batch_complete"
    BATCH_ABORTED = "batch_aborted"
    SAFE_RUNNING = "safe_running"
    DONE = "done"


class StrategyStatus(str, Enum):
    COMPLETED = "completed"
    CRASHED = "crashed"
    CANCELLED = "cancelled"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class StrategyResult:
    """How a strategy run ended; ``processed`` files received an outcome."""

    status: StrategyStatus
    processed: int = 0
    reason: str = ""


@dataclass(frozen=True)
class KindResult:
    kind: DocumentKind
    status: StrategyStatus
    backend: str | None = None


@dataclass(frozen=True)
class PlannedFile:
    kind: DocumentKind
    source: Path
    target: Path | None
    conflicted: bool
    action: str
    reason: str = ""


class ConversionEngine:
    def __init__(
        self,
        options: EngineOptions | None = None,
        context: SessionContext | None = None,
        registry: dict[str, BackendSpec] | None = None,
    ) -> None:
        self.options = options or EngineOptions()
        self.context = context or SessionContext()
        self.registry = registry if registry is not None else BACKENDS
        self.stats = EngineStatistics()
        self.history = TransactionLog()
        self.backups = BackupStore(self.context)
        self.conflicts: frozenset[Path] = frozenset()
        self.states: dict[DocumentKind, EngineState] = {}
        self.cancelled = False
        self.unavailable: list[DocumentKind] = []
        self.deleted_originals = 0
        self._dir_lock = threading.Lock()
        self._state_lock = threading.Lock()

    # --- session --------------------------------------------------------

    def _log(self, msg: str, level: str = "INFO") -> None:
        self.context.log(msg, level)

    def reset(self) -> None:
        self.stats.reset()
        self.states = {}
        self.cancelled = False
        self.unavailable = []
        self.deleted_originals = 0

    def clear_history(self) -> None:
        """Forget the previous batch: its log entries and its backups."""
        self.history.clear()
        self.backups.purge()

    def history_count(self) -> int:
        return len(self.history)

    def undo(self) -> UndoReport:
        """Reverse the most recent batch; a second call is a no-op."""
        return UndoExecutor(self.history, self.backups, self.context).undo()

    def summary(self) -> BatchSummary:
        return build_summary(
            self.stats,
            cancelled=self.cancelled,
            undoable=len(self.history),
            unavailable=tuple(self.unavailable),
            deleted_originals=self.deleted_originals,
        )

    def _set_state(self, kind: DocumentKind, state: EngineState) -> None:
        with self._state_lock:
            self.states[kind] = state
        self._log(f"[state] {kind.label}: {state.value}", "DEBUG")

    # --- planning -------------------------------------------------------

    def prescan(self, requests: list[ConversionRequest]) -> frozenset[Path]:
        pairs = [
            (src, plan_target_dir(src, r.source_root, r.destination_root, r.keep_folder_structure))
            for r in requests
            for src in r.source_paths
        ]
        self.conflicts = duplicates.prescan_conflicts(pairs)
        if self.conflicts:
            self._log(
                f"[scan ] {len(self.conflicts)} file(s) share a name in one output folder; "
                "their PDFs keep the source extension",
                "WARNING",
            )
        return self.conflicts

    def plan_target(self, request: ConversionRequest, source: Path) -> Path:
        directory = plan_target_dir(
            source, request.source_root, request.destination_root, request.keep_folder_structure
        )
        name = target_file_name(source, source in self.conflicts)
        return guard_path(directory / name, max_length=self.options.max_path_length, log=self.context.log)

    def _guard(self, path: Path) -> Path:
        return guard_path(path, max_length=self.options.max_path_length)

    def plan(self, requests: list[ConversionRequest]) -> list[PlannedFile]:
        """Dry-run view of the batch; the filesystem is not modified."""
        self.prescan(requests)
        out: list[PlannedFile] = []
        for r in requests:
            for src in r.source_paths:
                conflicted = src in self.conflicts
                try:
                    target = self.plan_target(r, src)
                except PathTooLong as e:
                    out.append(PlannedFile(r.kind, src, None, conflicted, "fail", str(e)))
                    continue
                action = self.options.duplicate_action.value if target.exists() else "create"
                out.append(PlannedFile(r.kind, src, target, conflicted, action))
        return out

    # --- batch entry point ----------------------------------------------

    def run(self, requests: list[ConversionRequest], cancel: threading.Event | None = None) -> BatchSummary:
        """Convert every request and return the end-of-batch summary.

        Starts a new batch: statistics, the previous transaction log and its
        backups are cleared first.
        """
        cancel = cancel or threading.Event()
        self.reset()
        self.clear_history()
        self.prescan(requests)
        for r in requests:
            self.stats.add_requested(r.kind, len(r.source_paths))
            self._set_state(r.kind, EngineState.IDLE)
        results: list[KindResult] = []
        try:
            workers = min(max(1, self.options.kind_workers), len(requests))
            if workers > 1:
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="kind") as pool:
                    futures = [pool.submit(self.convert, r, cancel) for r in requests]
                    results = [f.result() for f in futures]
            else:
                for r in requests:
                    results.append(self.convert(r, cancel))
                    if cancel.is_set():
                        break
            self.cancelled = cancel.is_set() or any(r.status is StrategyStatus.CANCELLED for r in results)
            if self.options.delete_originals and not self.cancelled:
                self.delete_originals(cancel)
        finally:
            self._cleanup_staging()
        return self.summary()

    def convert(self, request: ConversionRequest, cancel: threading.Event) -> KindResult:
        """Convert one document kind, falling back between backends as needed."""
        kind = request.kind
        pending = list(request.source_paths)
        if not pending:
            self._set_state(kind, EngineState.DONE)
            return KindResult(kind, StrategyStatus.COMPLETED)
        names = [n for n in (self.options.primary_backend, self.options.fallback_backend) if n]
        for name in names:
            spec = self.registry.get(name)
            if spec is None:
                self._log(f"[WARN ] unknown backend: {name}", "WARNING")
                continue
            if not spec.is_available(kind):
                self._log(f"[FALLB] {kind.label}: backend '{name}' is not available on this host", "WARNING")
                continue
            start = len(request.source_paths) - len(pending)
            self._log(f"[RUN  ] {kind.label}: {len(pending)} file(s) via {name}")
            result = self._convert_with(spec, request, pending, cancel, start)
            if result.status is not StrategyStatus.UNAVAILABLE:
                self._set_state(kind, EngineState.DONE)
                return KindResult(kind, result.status, name)
            self._log(f"[FALLB] {kind.label}: backend '{name}' unusable: {result.reason}", "WARNING")
            if result.processed == 0:
                # whole set restarts elsewhere; only that run's outcomes count
                self.stats.reset_kind(kind)
            pending = pending[result.processed :]
        self._log(f"[ERROR] {kind.label}: no usable rendering backend ({', '.join(names) or 'none'})", "ERROR")
        with self._state_lock:
            self.unavailable.append(kind)
        for src in pending:
            self.stats.record(kind, src, FileOutcome(FileStatus.FAILED, "no rendering backend available"))
        self._set_state(kind, EngineState.DONE)
        return KindResult(kind, StrategyStatus.UNAVAILABLE)

    def _convert_with(
        self,
        spec: BackendSpec,
        request: ConversionRequest,
        files: list[Path],
        cancel: threading.Event,
        start: int,
    ) -> StrategyResult:
        kind = request.kind
        self._set_state(kind, EngineState.BATCH_RUNNING)
        batch = self._run_batch(spec, request, files, cancel, start)
        if batch.status is not StrategyStatus.CRASHED:
            if batch.status is StrategyStatus.COMPLETED:
                self._set_state(kind, EngineState.BATCH_COMPLETE)
            return batch
        self._set_state(kind, EngineState.BATCH_ABORTED)
        remaining = files[batch.processed :]
        self._log(
            f"[SAFE ] {kind.label}: worker lost ({batch.reason}); "
            f"{len(remaining)} file(s) continue with one worker per file",
            "WARNING",
        )
        self._set_state(kind, EngineState.SAFE_RUNNING)
        safe = self._run_safe(spec, request, remaining, cancel, start + batch.processed)
        return StrategyResult(safe.status, batch.processed + safe.processed, safe.reason)

    # --- strategies -----------------------------------------------------

    def _run_batch(
        self,
        spec: BackendSpec,
        request: ConversionRequest,
        files: list[Path],
        cancel: threading.Event,
        start: int,
    ) -> StrategyResult:
        try:
            backend = self._create(spec, request.kind)
        except BackendUnavailable as e:
            return StrategyResult(StrategyStatus.UNAVAILABLE, 0, str(e))
        except Exception as e:
            return StrategyResult(StrategyStatus.CRASHED, 0, f"cannot start worker: {e}")
        processed = 0
        try:
            for i, src in enumerate(files):
                if cancel.is_set():
                    return self._cancelled(request.kind, processed)
                tag = self._tag(request, start + i)
                outcome = self._process_file(backend, request, src, cancel)
                if outcome.status is FileStatus.CRASHED:
                    self._log(f"[CRASH] {tag} {src.name}: {outcome.reason}", "ERROR")
                    return StrategyResult(StrategyStatus.CRASHED, processed, outcome.reason)
                if outcome.status is FileStatus.CANCELLED:
                    return self._cancelled(request.kind, processed)
                self._account(request.kind, src, outcome, tag)
                processed += 1
            return StrategyResult(StrategyStatus.COMPLETED, processed)
        finally:
            self._dispose(backend)

    def _run_safe(
        self,
        spec: BackendSpec,
        request: ConversionRequest,
        files: list[Path],
        cancel: threading.Event,
        start: int,
    ) -> StrategyResult:
        attempts = max(1, self.options.safe_attempts)
        for i, src in enumerate(files):
            if cancel.is_set():
                return self._cancelled(request.kind, i)
            tag = self._tag(request, start + i)
            outcome: FileOutcome | None = None
            for attempt in range(1, attempts + 1):
                try:
                    outcome = self._attempt_isolated(spec, request, src, cancel)
                except BackendUnavailable as e:
                    return StrategyResult(StrategyStatus.UNAVAILABLE, i, str(e))
                if outcome.status not in (FileStatus.FAILED, FileStatus.CRASHED):
                    break
                if attempt < attempts:
                    delay = self.options.retry_delay * attempt
                    self._log(
                        f"[RETRY] {tag} {src.name}: attempt {attempt}/{attempts} failed "
                        f"({outcome.reason}); retrying in {delay:g}s",
                        "WARNING",
                    )
                    if self._sleep(delay, cancel):
                        outcome = FileOutcome(FileStatus.CANCELLED, "cancelled")
                        break
            if outcome is None or outcome.status is FileStatus.CANCELLED:
                return self._cancelled(request.kind, i)
            if outcome.status in (FileStatus.FAILED, FileStatus.CRASHED) and attempts > 1:
                outcome = FileOutcome(outcome.status, f"{outcome.reason} (after {attempts} attempts)")
            self._account(request.kind, src, outcome, tag)
        return StrategyResult(StrategyStatus.COMPLETED, len(files))

    def _attempt_isolated(
        self, spec: BackendSpec, request: ConversionRequest, src: Path, cancel: threading.Event
    ) -> FileOutcome:
        """One safe-mode attempt on a worker created and disposed for this file only."""
        try:
            backend = self._create(spec, request.kind)
        except BackendUnavailable:
            raise
        except Exception as e:
            return self._failure_outcome(e)
        try:
            outcome = self._process_file(backend, request, src, cancel)
            if (
                outcome.status is FileStatus.SUCCEEDED
                and spec.needs_stabilization(request.kind)
                and self.options.stabilization_delay > 0
            ):
                self._sleep(self.options.stabilization_delay, cancel)
            return outcome
        finally:
            self._dispose(backend)

    def _cancelled(self, kind: DocumentKind, processed: int) -> StrategyResult:
        self._log(f"[WARN ] {kind.label}: cancelled by user", "WARNING")
        return StrategyResult(StrategyStatus.CANCELLED, processed, "cancelled")

    @staticmethod
    def _sleep(delay: float, cancel: threading.Event) -> bool:
        """Wait ``delay`` seconds; True when cancellation arrived meanwhile."""
        if delay <= 0:
            return cancel.is_set()
        return cancel.wait(delay)

    # --- workers --------------------------------------------------------

    def _create(self, spec: BackendSpec, kind: DocumentKind) -> RenderingBackend:
        try:
            backend = spec.create(kind, self.options.worker)
        except ConversionError:
            raise
        except Exception as e:
            if classify_failure(e) is FailureKind.UNAVAILABLE:
                raise BackendUnavailable(f"{spec.name}: {e}") from e
            raise
        return NetworkPathBackend(backend, self.context.staging_dir / "network")

    def _dispose(self, backend: RenderingBackend) -> None:
        try:
            backend.dispose()
        except Exception as e:
            self._log(f"[debug] dispose failed: {e!r}", "DEBUG")

    # --- per file -------------------------------------------------------

    def _tag(self, request: ConversionRequest, index: int) -> str:
        total = len(request.source_paths)
        return f"({index + 1:0{len(str(total))}d}/{total}) {request.kind.label}"

    def _account(self, kind: DocumentKind, src: Path, outcome: FileOutcome, tag: str) -> None:
        self.stats.record(kind, src, outcome)
        if outcome.status is FileStatus.SUCCEEDED:
            note = ""
            if not outcome.is_new_file:
                note = f" ({'overwritten' if outcome.action is DuplicateFileAction.OVERWRITE else 'renamed'})"
            names = ", ".join(p.name for p in outcome.artifacts)
            self._log(f"[OK   ] {tag} {src.name} -> {names}{note}")
        elif outcome.status is FileStatus.SKIPPED:
            self._log(f"[SKIP ] {tag} {src.name}: {outcome.reason}", "WARNING")
        else:
            self._log(f"[FAIL ] {tag} {src}: {outcome.reason}", "ERROR")

    @staticmethod
    def _failure_outcome(exc: BaseException) -> FileOutcome:
        reason = f"{type(exc).__name__}: {exc}"
        if isinstance(exc, (BackupFailed, PathTooLong, TargetExists)):
            return FileOutcome(FileStatus.FAILED, reason)
        if classify_failure(exc) in (FailureKind.CRITICAL, FailureKind.UNAVAILABLE):
            return FileOutcome(FileStatus.CRASHED, reason)
        return FileOutcome(FileStatus.FAILED, reason)

    def _process_file(
        self, backend: RenderingBackend, request: ConversionRequest, src: Path, cancel: threading.Event
    ) -> FileOutcome:
        """open -> plan -> render -> commit -> close; never raises for per-file errors."""
        try:
            backend.open(src)
        except Exception as e:
            return self._failure_outcome(e)
        try:
            return self._convert_open_document(backend, request, src, cancel)
        except Cancelled:
            return FileOutcome(FileStatus.CANCELLED, "cancelled")
        except Exception as e:
            return self._failure_outcome(e)
        finally:
            try:
                backend.close()
            except Exception as e:
                self._log(f"[debug] close failed for {src.name}: {e!r}", "DEBUG")

    def _convert_open_document(
        self, backend: RenderingBackend, request: ConversionRequest, src: Path, cancel: threading.Event
    ) -> FileOutcome:
        target = self.plan_target(request, src)
        handled = duplicates.resolve(target, self.options.duplicate_action, guard=self._guard)
        if handled.skipped:
            return FileOutcome(
                FileStatus.SKIPPED, f"target exists: {target.name}", action=handled.action, is_new_file=False
            )
        final = handled.final_path
        self._ensure_dir(final.parent, src)
        if cancel.is_set():
            raise Cancelled(f"cancelled before rendering {src.name}")
        self.context.staging_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(dir=self.context.staging_dir, ignore_cleanup_errors=True) as td:
            staged = Path(td) / final.name
            backend.render_to_pdf(staged)
            artifacts = self._collect_artifacts(staged)
            if not artifacts:
                raise RenderError(f"renderer produced no PDF for {src.name}")
            return self._commit(artifacts, staged, final, handled, src)

    @staticmethod
    def _collect_artifacts(staged: Path) -> list[Path]:
        """The main PDF plus any ``{stem}_*.pdf`` siblings the renderer wrote."""
        pattern = f"{glob.escape(staged.stem)}_*.pdf"
        found = sorted(p for p in staged.parent.glob(pattern) if p.is_file())
        if staged.is_file():
            found.insert(0, staged)
        return found

    def _commit(
        self,
        artifacts: list[Path],
        staged: Path,
        final: Path,
        handled: FileHandleResult,
        src: Path,
    ) -> FileOutcome:
        # phase 1: decide every destination and back up everything that gets replaced
        plan: list[tuple[Path, Path, FileHandleResult]] = []
        for artifact in artifacts:
            if artifact == staged:
                plan.append((artifact, final, handled))
                continue
            res = duplicates.resolve(final.parent / artifact.name, self.options.duplicate_action, guard=self._guard)
            if res.skipped:
                self._log(f"[SKIP ] {src.name}: {artifact.name} already exists", "DEBUG")
                continue
            plan.append((artifact, res.final_path, res))
        if not plan:
            return FileOutcome(
                FileStatus.SKIPPED, f"all outputs exist: {final.name}", action=DuplicateFileAction.SKIP, is_new_file=False
            )

        for _, dest, res in plan:
            if res.action is not DuplicateFileAction.OVERWRITE and dest.exists():
                raise TargetExists(f"{dest} appeared after it was chosen as a new file")

        backups: dict[Path, Path] = {}
        try:
            for _, dest, res in plan:
                if res.action is DuplicateFileAction.OVERWRITE and dest.exists():
                    backups[dest] = self.backups.create(dest)
        except BackupFailed:
            for b in backups.values():
                self.backups.discard(b)
            raise

        # phase 2: record, then copy into place
        committed: list[Path] = []
        for artifact, dest, _ in plan:
            backup = backups.get(dest)
            if backup is not None:
                op = ConversionOperation(OperationKind.OVERWRITE_FILE, dest, backup_path=backup, source_path=src)
            else:
                op = ConversionOperation(OperationKind.CREATE_FILE, dest, source_path=src)
            self.history.record(op)
            shutil.copy2(artifact, dest)
            committed.append(dest)

        results = [res for _, _, res in plan]
        if backups:
            action, is_new = DuplicateFileAction.OVERWRITE, False
        elif any(not r.is_new_file for r in results):
            action, is_new = DuplicateFileAction.RENAME, False
        else:
            action, is_new = handled.action, True
        return FileOutcome(FileStatus.SUCCEEDED, artifacts=tuple(committed), action=action, is_new_file=is_new)

    def _ensure_dir(self, directory: Path, src: Path) -> None:
        with self._dir_lock:
            created = missing_parents(directory)
            if not created:
                return
            directory.mkdir(parents=True, exist_ok=True)
            for d in created:
                self.history.record(ConversionOperation(OperationKind.CREATE_DIRECTORY, d, source_path=src))
                self._log(f"[mkdir] {d}", "DEBUG")

    # --- after the batch ------------------------------------------------

    def delete_originals(self, cancel: threading.Event | None = None) -> int:
        """Back up and delete every successfully converted source document."""
        cancel = cancel or threading.Event()
        deleted = 0
        for src in self.stats.converted_sources():
            if cancel.is_set():
                self.cancelled = True
                self._log("[WARN ] deleting originals cancelled by user", "WARNING")
                break
            try:
                backup = self.backups.create(src)
            except BackupFailed as e:
                self._log(f"[FAIL ] keeping {src}: {e}", "ERROR")
                continue
            if self._unlink_with_retry(src, cancel):
                self.history.record(
                    ConversionOperation(OperationKind.DELETE_FILE, src, backup_path=backup, source_path=src)
                )
                deleted += 1
                self._log(f"[DEL  ] {src}", "DEBUG")
            else:
                self.backups.discard(backup)
        self.deleted_originals = deleted
        if deleted:
            self._log(f"[DEL  ] {deleted} original(s) deleted")
        return deleted

    def _unlink_with_retry(self, path: Path, cancel: threading.Event) -> bool:
        for attempt in range(1, DELETE_ATTEMPTS + 1):
            try:
                path.unlink()
                return True
            except FileNotFoundError:
                return False
            except OSError as e:
                if isinstance(e, PermissionError):
                    self._clear_read_only(path)
                if attempt == DELETE_ATTEMPTS or self._sleep(0.2 * attempt, cancel):
                    self._log(f"[FAIL ] cannot delete {path}: {e}", "ERROR")
                    return False
        return False

    def _clear_read_only(self, path: Path) -> None:
        try:
            os.chmod(path, stat.S_IWRITE | stat.S_IREAD)
        except OSError as e:
            self._log(f"[debug] cannot clear read-only flag on {path}: {e!r}", "DEBUG")

    def _cleanup_staging(self) -> None:
        staging = self.context.staging_dir
        if not staging.exists():
            return
        try:
            shutil.rmtree(staging)
        except OSError as e:
            self._log(f"[WARN ] cannot remove staging directory {staging}: {e}", "WARNING")
