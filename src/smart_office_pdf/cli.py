"""Argparse-based command-line interface for smart-office-pdf.

Invoked via the console script `smart-office-pdf` or as a module with
`python -m smart_office_pdf`.
"""

from __future__ import annotations

import signal
import threading
import time
from pathlib import Path
import argparse
from typing import Any, Callable

from . import core
from .backends import BACKENDS, WorkerSettings, default_backends
from .core import iter_input_files, log, set_config
from .engine import ConversionEngine, EngineOptions
from .models import ConversionRequest, DocumentKind, DuplicateFileAction, SessionContext
from .report import BatchSummary, log_summary, write_summary_json
from . import __version__

EXIT_OK = 0
EXIT_NO_INPUT = 1
EXIT_USAGE = 2
EXIT_FAILURES = 3
EXIT_NO_BACKEND = 4
EXIT_CANCELLED = 5


def _compute_version() -> str:
    """Return a version string, optionally with git metadata if available."""
    base = f"smart-office-pdf {__version__}"
    try:
        import subprocess
        import os

        git_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..", ".git"))
        if not os.path.isdir(git_dir):
            return base
        sha = (
            subprocess.check_output(["git", "rev-parse", "--short", "HEAD"], stderr=subprocess.DEVNULL)
            .decode()
            .strip()
        )
        return f"{base} (git {sha})"
    except Exception:
        return base


def build_parser() -> argparse.ArgumentParser:
    """Create and return the CLI argument parser."""
    p = argparse.ArgumentParser(prog="smart-office-pdf", add_help=True)
    p.add_argument("input", nargs="?", help="Input document or directory")
    p.add_argument("-o", "--out", dest="outdir", help="Output root (default: <INPUT>_PDFs)")
    p.add_argument(
        "-C",
        "--config",
        dest="config",
        help="Path to a config file (.toml/.yaml/.yml/.json)",
    )
    p.add_argument(
        "-k",
        "--kind",
        dest="kinds",
        action="append",
        choices=[k.value for k in DocumentKind],
        help="Document kind(s) to convert; can be repeated (default: all)",
    )
    p.add_argument(
        "-d",
        "--duplicates",
        choices=[a.value for a in DuplicateFileAction],
        help="What to do when the target PDF already exists",
    )
    p.add_argument("-b", "--backend", choices=sorted(BACKENDS), help="Primary rendering backend")
    p.add_argument(
        "-B",
        "--fallback",
        choices=sorted(BACKENDS) + ["none"],
        help="Fallback backend when the primary cannot be used",
    )
    p.add_argument("--soffice", help="Path to the LibreOffice soffice executable")
    p.add_argument("--flat", action="store_true", default=None, help="Write every PDF into the output root")
    p.add_argument(
        "--no-recurse", dest="recurse", action="store_false", default=None, help="Do not scan subfolders"
    )
    p.add_argument(
        "--print-revisions",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Include tracked changes in Word output",
    )
    p.add_argument(
        "--sheet-per-pdf", action="store_true", default=None, help="Write one PDF per Excel worksheet"
    )
    p.add_argument(
        "--delete-originals",
        action="store_true",
        default=None,
        help="Delete converted source documents after the batch (undoable)",
    )
    # Reliability knobs
    p.add_argument("-x", "--attempts", type=int, help="Safe-mode attempts per file")
    p.add_argument("--retry-delay", type=float, help="Base backoff between safe-mode attempts (seconds)")
    p.add_argument("-t", "--timeout", type=int, help="Per-document timeout for soffice (seconds)")
    p.add_argument("--max-path", type=int, help="Maximum output path length")
    p.add_argument("-j", "--kind-workers", type=int, help="Convert up to N document kinds concurrently")
    p.add_argument(
        "-S",
        "--include",
        action="append",
        help="Glob pattern(s) to include when scanning a folder",
    )
    p.add_argument(
        "-X",
        "--exclude",
        action="append",
        help="Glob pattern(s) to exclude when scanning a folder",
    )
    p.add_argument(
        "-n",
        "--dry-run",
        action="store_true",
        default=None,
        help="Print the conversion plan; do not write anything",
    )
    p.add_argument(
        "-U", "--undo-prompt", action="store_true", default=None, help="Offer to undo the batch when it ends"
    )
    p.add_argument(
        "--rollback-on-failure",
        action="store_true",
        default=None,
        help="Undo the whole batch automatically when any file failed",
    )
    p.add_argument("--summary-json", help="Write the end-of-batch summary as JSON")
    p.add_argument(
        "-L",
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Standard logging level threshold",
    )
    p.add_argument("-q", "--quiet", action="store_true", help="Set log level to ERROR (overridden by --log-level)")
    p.add_argument("-v", "--verbose", action="store_true", help="Set log level to DEBUG (overridden by --log-level)")
    p.add_argument("--log-json", action="store_true", default=None, help="Emit logs as JSON lines (ts, level, message)")
    p.add_argument("--log-file", help="Append logs to a file (1MB simple rotation)")
    p.add_argument(
        "-V",
        "--version",
        action="version",
        version=_compute_version(),
        help="Show version and exit",
    )
    return p


def _pick(value: Any, cfg: dict[str, Any], key: str, conv: Callable[[Any], Any] = lambda v: v) -> Any:
    """CLI value when given, else the converted config value, else None."""
    if value is not None:
        return value
    if cfg.get(key) is not None:
        return conv(cfg[key])
    return None


def _as_list(v: Any) -> list[str]:
    return [str(x) for x in v] if isinstance(v, list) else [str(v)]


def _apply_config(ns: argparse.Namespace, cfg: dict[str, Any]) -> None:
    """Merge config-file values with CLI overrides into ``core``."""
    log_level = ns.log_level
    if log_level is None and ns.verbose:
        log_level = "DEBUG"
    if log_level is None and ns.quiet:
        log_level = "ERROR"
    flat = _pick(ns.flat, cfg, "flat", bool)
    set_config(
        outdir=_pick(ns.outdir, cfg, "outdir", str),
        kinds=_pick(ns.kinds, cfg, "kinds", _as_list),
        duplicates=_pick(ns.duplicates, cfg, "duplicates", str),
        backend=_pick(ns.backend, cfg, "backend", str),
        fallback=_pick(ns.fallback, cfg, "fallback", str),
        soffice=_pick(ns.soffice, cfg, "soffice", str),
        keep_structure=None if flat is None else not flat,
        recurse=_pick(ns.recurse, cfg, "recurse", bool),
        print_revisions=_pick(ns.print_revisions, cfg, "print_revisions", bool),
        sheet_per_pdf=_pick(ns.sheet_per_pdf, cfg, "sheet_per_pdf", bool),
        delete_originals=_pick(ns.delete_originals, cfg, "delete_originals", bool),
        attempts=_pick(ns.attempts, cfg, "attempts", int),
        retry_delay=_pick(ns.retry_delay, cfg, "retry_delay", float),
        stabilization_delay=_pick(None, cfg, "stabilization_delay", float),
        max_path=_pick(ns.max_path, cfg, "max_path", int),
        kind_workers=_pick(ns.kind_workers, cfg, "kind_workers", int),
        timeout=_pick(ns.timeout, cfg, "timeout", int),
        include=_pick(ns.include, cfg, "include", _as_list),
        exclude=_pick(ns.exclude, cfg, "exclude", _as_list),
        dry_run=_pick(ns.dry_run, cfg, "dry_run", bool),
        undo_prompt=_pick(ns.undo_prompt, cfg, "undo_prompt", bool),
        rollback_on_failure=_pick(ns.rollback_on_failure, cfg, "rollback_on_failure", bool),
        summary_json=_pick(ns.summary_json, cfg, "summary_json", str),
        log_level=_pick(log_level, cfg, "log_level", lambda v: str(v).upper()),
        log_json=_pick(ns.log_json, cfg, "log_json", bool),
        log_file=_pick(ns.log_file, cfg, "log_file", str),
    )


def _resolve_backends() -> tuple[str, str | None]:
    primary, fallback = default_backends()
    if core.BACKEND:
        primary = core.BACKEND
        fallback = None
    if core.FALLBACK:
        fallback = None if core.FALLBACK.lower() == "none" else core.FALLBACK
    return primary, fallback


def _default_outdir(source_root: Path) -> Path:
    return source_root.parent / f"{source_root.name}_PDFs"


def build_options() -> EngineOptions:
    primary, fallback = _resolve_backends()
    return EngineOptions(
        duplicate_action=DuplicateFileAction(core.DUPLICATES),
        primary_backend=primary,
        fallback_backend=fallback,
        worker=WorkerSettings(
            print_revisions=core.PRINT_REVISIONS,
            one_pdf_per_sheet=core.SHEET_PER_PDF,
            soffice_path=core.SOFFICE,
            timeout=core.TIMEOUT,
        ),
        max_path_length=core.MAX_PATH,
        safe_attempts=core.ATTEMPTS,
        retry_delay=core.RETRY_DELAY,
        stabilization_delay=core.STABILIZATION_DELAY,
        delete_originals=core.DELETE_ORIGINALS,
        kind_workers=core.KIND_WORKERS,
    )


def _validate() -> str | None:
    """Return an error message for settings argparse could not check, if any."""
    if core.DUPLICATES not in {a.value for a in DuplicateFileAction}:
        return f"invalid duplicates action: {core.DUPLICATES}"
    primary, fallback = _resolve_backends()
    for name in (primary, fallback):
        if name and name not in BACKENDS:
            return f"unknown backend: {name}"
    if not core.selected_kinds():
        return f"no valid document kinds in: {', '.join(core.KINDS) or '(empty)'}"
    return None


def _install_sigint(cancel: threading.Event) -> Callable[[], None]:
    """Route Ctrl+C to ``cancel``; a second Ctrl+C aborts immediately."""
    if threading.current_thread() is not threading.main_thread():
        return lambda: None

    def _handler(signum: int, frame: object) -> None:
        if cancel.is_set():
            raise KeyboardInterrupt
        log("[WARN ] cancelling after the current file (Ctrl+C again to abort)", level="WARNING")
        cancel.set()

    previous = signal.signal(signal.SIGINT, _handler)
    return lambda: signal.signal(signal.SIGINT, previous)


def _log_plan(engine: ConversionEngine, requests: list[ConversionRequest]) -> None:
    for item in engine.plan(requests):
        if item.target is None:
            log(f"[DRY  ] {item.kind.label}: {item.source} -> FAIL ({item.reason})", level="WARNING")
            continue
        note = " (name conflict)" if item.conflicted else ""
        log(f"[DRY  ] {item.kind.label}: {item.source} -> {item.target} [{item.action}]{note}")


def _confirm_undo() -> bool:
    try:
        answer = input("Undo this batch? [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in {"y", "yes"}


def _exit_code(summary: BatchSummary) -> int:
    if summary.cancelled:
        return EXIT_CANCELLED
    if summary.unavailable:
        return EXIT_NO_BACKEND
    if summary.total("failed") or summary.anomalies:
        return EXIT_FAILURES
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    """CLI entry point; returns a conventional exit code."""
    parser = build_parser()
    ns = parser.parse_args(argv if argv is not None else None)

    cfg: dict[str, Any] = {}
    if ns.config:
        from .config import load_config_file, unknown_keys

        try:
            cfg = load_config_file(ns.config)
        except Exception as e:  # pragma: no cover - I/O/parsing
            log(f"[ERROR] config load failed: {e!r}", level="ERROR")
            return EXIT_USAGE
        for key in unknown_keys(cfg):
            log(f"[WARN ] unknown config key: {key}", level="WARNING")

    inp_val = ns.input if ns.input is not None else cfg.get("input")
    if inp_val is None:
        log("[USAGE] smart-office-pdf INPUT [-o OUT] [-C CONFIG] [options]")
        return EXIT_USAGE
    try:
        _apply_config(ns, cfg)
    except (TypeError, ValueError) as e:
        log(f"[ERROR] invalid configuration: {e}", level="ERROR")
        return EXIT_USAGE
    problem = _validate()
    if problem:
        log(f"[ERROR] {problem}", level="ERROR")
        return EXIT_USAGE

    inp = Path(str(inp_val))
    by_kind = iter_input_files(inp, core.selected_kinds(), core.RECURSE)
    total = sum(len(v) for v in by_kind.values())
    if total == 0:
        if inp.exists():
            log("[WARN ] no office documents to convert", level="WARNING")
        return EXIT_NO_INPUT

    source_root = inp if inp.is_dir() else inp.parent
    dest_root = Path(core.OUTDIR) if core.OUTDIR else _default_outdir(source_root.resolve())
    requests = [
        ConversionRequest(
            kind=kind,
            source_paths=tuple(paths),
            source_root=source_root,
            destination_root=dest_root,
            keep_folder_structure=core.KEEP_STRUCTURE,
            recurse_subfolders=core.RECURSE,
        )
        for kind, paths in by_kind.items()
        if paths
    ]
    options = build_options()
    engine = ConversionEngine(options, SessionContext(log=log))
    log(f"[info ] output: {dest_root}  backend={options.primary_backend} fallback={options.fallback_backend}")

    if core.DRY_RUN:
        _log_plan(engine, requests)
        return EXIT_OK

    cancel = threading.Event()
    restore = _install_sigint(cancel)
    t0 = time.perf_counter()
    try:
        summary = engine.run(requests, cancel)
    finally:
        restore()
    log_summary(summary, log, source_root)
    log(f"[DONE ] elapsed={time.perf_counter() - t0:.2f}s")
    if core.SUMMARY_JSON:
        try:
            write_summary_json(summary, core.SUMMARY_JSON)
        except OSError as e:
            log(f"[WARN ] cannot write summary JSON: {e}", level="WARNING")

    if engine.history_count():
        if core.ROLLBACK_ON_FAILURE and summary.total("failed"):
            log("[UNDO ] some files failed; rolling back the batch", level="WARNING")
            engine.undo()
        elif core.UNDO_PROMPT and _confirm_undo():
            engine.undo()
    return _exit_code(summary)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
