"""Configuration file loading helpers.

Supports TOML (.toml), YAML (.yml/.yaml), and JSON (.json) formats.
Keys are normalized to lowercase with hyphens converted to underscores.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict
import json

KNOWN_KEYS = frozenset(
    {
        "input",
        "outdir",
        "kinds",
        "duplicates",
        "backend",
        "fallback",
        "soffice",
        "flat",
        "recurse",
        "print_revisions",
        "sheet_per_pdf",
        "delete_originals",
        "attempts",
        "retry_delay",
        "stabilization_delay",
        "max_path",
        "kind_workers",
        "timeout",
        "include",
        "exclude",
        "dry_run",
        "undo_prompt",
        "rollback_on_failure",
        "summary_json",
        "log_level",
        "log_json",
        "log_file",
    }
)


def _norm_key(key: str) -> str:
    return key.replace("-", "_").lower()


def _normalize(d: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for k, v in d.items():
        nk = _norm_key(str(k))
        if isinstance(v, dict):
            out[nk] = _normalize(v)
        else:
            out[nk] = v
    return out


def unknown_keys(cfg: dict[str, Any]) -> list[str]:
    """Top-level keys the CLI does not understand, sorted."""
    return sorted(k for k in cfg if k not in KNOWN_KEYS)


def load_config_file(path: str | Path) -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(p)
    suf = p.suffix.lower()
    if suf == ".toml":
        import tomllib

        data = tomllib.loads(p.read_text(encoding="utf-8"))
        return _normalize(data)
    if suf in {".yml", ".yaml"}:
        import yaml

        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ValueError("YAML config must be a mapping at the top level")
        return _normalize(data)
    if suf == ".json":
        data = json.loads(p.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError("JSON config must be an object at the top level")
        return _normalize(data)
    raise ValueError(f"Unsupported config extension: {suf}")
