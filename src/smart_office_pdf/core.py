"""Runtime configuration, logging and input discovery for smart-office-pdf.

Configuration lives in module-level globals seeded from ``SMART_OFFICE_PDF_*``
environment variables and overridden by ``set_config`` (the CLI applies config
files and flags through it). ``log`` is the single output channel: one tagged
line per event, optionally as JSON and mirrored to a log file.
"""

from __future__ import annotations

import os
from pathlib import Path

from .models import DocumentKind

# Configurable globals (overridable via set_config)
OUTDIR = os.environ.get("SMART_OFFICE_PDF_OUTPUT_DIR")
KINDS = [k for k in os.environ.get("SMART_OFFICE_PDF_KINDS", "word,excel,ppt").lower().split(",") if k]
DUPLICATES = os.environ.get("SMART_OFFICE_PDF_DUPLICATES", "skip").lower()
BACKEND = os.environ.get("SMART_OFFICE_PDF_BACKEND")
FALLBACK = os.environ.get("SMART_OFFICE_PDF_FALLBACK")
SOFFICE = os.environ.get("SMART_OFFICE_PDF_SOFFICE")
KEEP_STRUCTURE = os.environ.get("SMART_OFFICE_PDF_FLAT", "0") != "1"
RECURSE = os.environ.get("SMART_OFFICE_PDF_NO_RECURSE", "0") != "1"
PRINT_REVISIONS = os.environ.get("SMART_OFFICE_PDF_PRINT_REVISIONS", "1") == "1"
SHEET_PER_PDF = os.environ.get("SMART_OFFICE_PDF_SHEET_PER_PDF", "0") == "1"
DELETE_ORIGINALS = os.environ.get("SMART_OFFICE_PDF_DELETE_ORIGINALS", "0") == "1"
ATTEMPTS = int(os.environ.get("SMART_OFFICE_PDF_ATTEMPTS", "3"))
RETRY_DELAY = float(os.environ.get("SMART_OFFICE_PDF_RETRY_DELAY", "1.0"))
STABILIZATION_DELAY = float(os.environ.get("SMART_OFFICE_PDF_STABILIZATION_DELAY", "0.5"))
MAX_PATH = int(os.environ.get("SMART_OFFICE_PDF_MAX_PATH", "260"))
KIND_WORKERS = int(os.environ.get("SMART_OFFICE_PDF_KIND_WORKERS", "1"))
TIMEOUT = int(os.environ.get("SMART_OFFICE_PDF_TIMEOUT", "300"))
MOCK_FAIL = os.environ.get("SMART_OFFICE_PDF_MOCK_FAIL", "0") == "1"
MOCK_CRASH_AFTER = int(os.environ.get("SMART_OFFICE_PDF_MOCK_CRASH_AFTER", "0"))
MOCK_UNAVAILABLE = os.environ.get("SMART_OFFICE_PDF_MOCK_UNAVAILABLE", "0") == "1"
DRY_RUN = os.environ.get("SMART_OFFICE_PDF_DRY_RUN", "0") == "1"
UNDO_PROMPT = os.environ.get("SMART_OFFICE_PDF_UNDO_PROMPT", "0") == "1"
ROLLBACK_ON_FAILURE = os.environ.get("SMART_OFFICE_PDF_ROLLBACK_ON_FAILURE", "0") == "1"
SUMMARY_JSON = os.environ.get("SMART_OFFICE_PDF_SUMMARY_JSON")
INCLUDE: list[str] = []
EXCLUDE: list[str] = []
LOG_JSON = os.environ.get("SMART_OFFICE_PDF_LOG_JSON", "0") == "1"
LOG_FILE = os.environ.get("SMART_OFFICE_PDF_LOG_FILE")
_LEVELS = {"DEBUG": 10, "INFO": 20, "WARNING": 30, "ERROR": 40, "CRITICAL": 50}
_LOG_LEVEL_NAME = os.environ.get("SMART_OFFICE_PDF_LOG_LEVEL", "INFO").upper()
LOG_LEVEL = _LEVELS.get(_LOG_LEVEL_NAME, 20)


def set_config(
    *,
    outdir: str | None = None,
    kinds: list[str] | None = None,
    duplicates: str | None = None,
    backend: str | None = None,
    fallback: str | None = None,
    soffice: str | None = None,
    keep_structure: bool | None = None,
    recurse: bool | None = None,
    print_revisions: bool | None = None,
    sheet_per_pdf: bool | None = None,
    delete_originals: bool | None = None,
    attempts: int | None = None,
    retry_delay: float | None = None,
    stabilization_delay: float | None = None,
    max_path: int | None = None,
    kind_workers: int | None = None,
    timeout: int | None = None,
    mock_fail: bool | None = None,
    mock_crash_after: int | None = None,
    mock_unavailable: bool | None = None,
    dry_run: bool | None = None,
    undo_prompt: bool | None = None,
    rollback_on_failure: bool | None = None,
    summary_json: str | None = None,
    include: list[str] | None = None,
    exclude: list[str] | None = None,
    log_level: str | None = None,
    log_json: bool | None = None,
    log_file: str | None = None,
) -> None:
    """Override runtime configuration values in memory.

    Parameters mirror the ``SMART_OFFICE_PDF_*`` environment variables.
    """
    global \
        OUTDIR, \
        KINDS, \
        DUPLICATES, \
        BACKEND, \
        FALLBACK, \
        SOFFICE, \
        KEEP_STRUCTURE, \
        RECURSE, \
        PRINT_REVISIONS, \
        SHEET_PER_PDF, \
        DELETE_ORIGINALS, \
        ATTEMPTS, \
        RETRY_DELAY, \
        STABILIZATION_DELAY, \
        MAX_PATH, \
        KIND_WORKERS, \
        TIMEOUT, \
        MOCK_FAIL, \
        MOCK_CRASH_AFTER, \
        MOCK_UNAVAILABLE, \
        DRY_RUN, \
        UNDO_PROMPT, \
        ROLLBACK_ON_FAILURE, \
        SUMMARY_JSON, \
        INCLUDE, \
        EXCLUDE, \
        LOG_LEVEL, \
        LOG_JSON, \
        LOG_FILE
    if outdir is not None:
        OUTDIR = outdir
    if kinds is not None:
        KINDS = [str(k).lower() for k in kinds]
    if duplicates is not None:
        DUPLICATES = str(duplicates).lower()
    if backend is not None:
        BACKEND = backend
    if fallback is not None:
        FALLBACK = fallback
    if soffice is not None:
        SOFFICE = soffice
    if keep_structure is not None:
        KEEP_STRUCTURE = bool(keep_structure)
    if recurse is not None:
        RECURSE = bool(recurse)
    if print_revisions is not None:
        PRINT_REVISIONS = bool(print_revisions)
    if sheet_per_pdf is not None:
        SHEET_PER_PDF = bool(sheet_per_pdf)
    if delete_originals is not None:
        DELETE_ORIGINALS = bool(delete_originals)
    if attempts is not None:
        ATTEMPTS = max(1, int(attempts))
    if retry_delay is not None:
        RETRY_DELAY = max(0.0, float(retry_delay))
    if stabilization_delay is not None:
        STABILIZATION_DELAY = max(0.0, float(stabilization_delay))
    if max_path is not None:
        MAX_PATH = int(max_path)
    if kind_workers is not None:
        KIND_WORKERS = max(1, int(kind_workers))
    if timeout is not None:
        TIMEOUT = int(timeout)
    if mock_fail is not None:
        MOCK_FAIL = bool(mock_fail)
    if mock_crash_after is not None:
        MOCK_CRASH_AFTER = int(mock_crash_after)
    if mock_unavailable is not None:
        MOCK_UNAVAILABLE = bool(mock_unavailable)
    if dry_run is not None:
        DRY_RUN = bool(dry_run)
    if undo_prompt is not None:
        UNDO_PROMPT = bool(undo_prompt)
    if rollback_on_failure is not None:
        ROLLBACK_ON_FAILURE = bool(rollback_on_failure)
    if summary_json is not None:
        SUMMARY_JSON = summary_json
    if include is not None:
        INCLUDE = list(include)
    if exclude is not None:
        EXCLUDE = list(exclude)
    if log_level is not None:
        lvl = _LEVELS.get(str(log_level).upper())
        if lvl is not None:
            LOG_LEVEL = lvl
    if log_json is not None:
        LOG_JSON = bool(log_json)
    if log_file is not None:
        LOG_FILE = log_file


def _maybe_rotate_log_file(path: Path, max_bytes: int = 1_000_000) -> None:
    try:
        if path.exists() and path.stat().st_size > max_bytes:
            backup = path.with_suffix(path.suffix + ".1")
            backup.unlink(missing_ok=True)
            path.replace(backup)
    except OSError:
        pass


def log(msg: str, level: str = "INFO") -> None:
    """Print a single-line message at a given level if above threshold.

    Emits plain text by default; when LOG_JSON is enabled, emits a JSON line.
    Output is mirrored to LOG_FILE when configured.
    """
    lv = _LEVELS.get(str(level).upper(), 20)
    if lv < LOG_LEVEL:
        return
    out = msg
    if LOG_JSON:
        import json as _json
        from datetime import datetime, timezone

        out = _json.dumps(
            {
                "ts": datetime.now(timezone.utc).isoformat(),
                "level": level.upper(),
                "message": msg,
            },
            ensure_ascii=False,
        )
    print(out, flush=True)
    if LOG_FILE:
        p = Path(LOG_FILE)
        _maybe_rotate_log_file(p)
        try:
            with p.open("a", encoding="utf-8") as fh:
                fh.write(out + "\n")
        except OSError:
            pass


def selected_kinds() -> list[DocumentKind]:
    """Document kinds named in KINDS, in canonical order; unknown names are ignored."""
    wanted = {str(k).lower() for k in KINDS}
    return [k for k in DocumentKind if k.value in wanted]


def _pattern_match(path: Path, patterns: list[str]) -> bool:
    from fnmatch import fnmatch
    import os as _os

    # Normalize to forward slashes so patterns behave the same on every OS
    s_full = str(path).replace(_os.sep, "/")
    s_name = path.name
    for pat in patterns:
        p = pat.replace("\\", "/").replace(_os.sep, "/")
        if fnmatch(s_full, p) or fnmatch(s_name, p):
            return True
    return False


def _is_lock_file(path: Path) -> bool:
    # Office keeps "~$name.docx" owner files next to open documents
    return path.name.startswith("~$")


def iter_input_files(
    inp: Path, kinds: list[DocumentKind] | None = None, recurse: bool | None = None
) -> dict[DocumentKind, list[Path]]:
    """Group the office documents under ``inp`` (or ``inp`` itself) by kind."""
    kinds = list(kinds) if kinds is not None else selected_kinds()
    recurse = RECURSE if recurse is None else recurse
    out: dict[DocumentKind, list[Path]] = {k: [] for k in kinds}
    if inp.exists() and inp.is_dir():
        walker = inp.rglob("*") if recurse else inp.glob("*")
        files = sorted(p for p in walker if p.is_file() and not _is_lock_file(p))
        if INCLUDE:
            files = [p for p in files if _pattern_match(p.relative_to(inp), INCLUDE)]
        if EXCLUDE:
            files = [p for p in files if not _pattern_match(p.relative_to(inp), EXCLUDE)]
        for p in files:
            kind = DocumentKind.for_path(p)
            if kind in out:
                out[kind].append(p)
        counts = "  ".join(f"{k.value}={len(v)}" for k, v in out.items())
        log(f"[scan ] folder: {inp}  {counts}")
        return out
    if inp.exists():
        kind = DocumentKind.for_path(inp)
        if kind in out:
            log(f"[scan ] single file: {inp}")
            out[kind].append(inp)
        else:
            log(f"[WARN ] not a supported document: {inp}", level="WARNING")
        return out
    log(f"[ERROR] input not found: {inp}", level="ERROR")
    return out
