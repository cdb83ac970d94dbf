"""Centralised runtime configuration with fail-fast validation.

Usage
-----
    from foldertree import config

    # once, at startup:
    settings = config.load()   # prints diagnostics, sys.exit(1) on error

    # anywhere else in the app:
    settings = config.get()    # returns cached Settings; raises if not loaded

Tree display flags come from the environment and may be overridden by an
optional YAML file named in ``TREE_SETTINGS_FILE``.
"""

import os
import sys
from dataclasses import dataclass
from pathlib import Path

import yaml

# honour a .env file in the project root (local-dev convenience)
from dotenv import load_dotenv

load_dotenv()  # no-op when .env doesn't exist


# ── public data class ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Settings:
    """Immutable, app-wide settings."""

    data_dir: Path  # writable dir for the SQLite database
    show_only_accessible_folders: bool = False
    tree_counters: bool = False
    enable_pf_feature: bool = True
    tree_load_strategy: str = "full"  # "full" | "sequential"
    max_nodes: int = 50_000
    max_depth: int = 64


LOAD_STRATEGIES: frozenset[str] = frozenset({"full", "sequential"})

_TRUE = frozenset({"1", "true", "yes", "on"})
_FALSE = frozenset({"0", "false", "no", "off", ""})

# setting name -> (env var, kind)
_TREE_FLAGS: dict[str, tuple[str, str]] = {
    "show_only_accessible_folders": ("SHOW_ONLY_ACCESSIBLE_FOLDERS", "bool"),
    "tree_counters": ("TREE_COUNTERS", "bool"),
    "enable_pf_feature": ("ENABLE_PF_FEATURE", "bool"),
    "tree_load_strategy": ("TREE_LOAD_STRATEGY", "str"),
    "max_nodes": ("TREE_MAX_NODES", "int"),
    "max_depth": ("TREE_MAX_DEPTH", "int"),
}


# ── value parsing ────────────────────────────────────────────────────────────


def _parse_value(name: str, raw: object, kind: str, errors: list[str]) -> object:
    """Coerce *raw* into *kind*; append to *errors* and return None on failure."""
    if kind == "bool":
        if isinstance(raw, bool):
            return raw
        text = str(raw).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        errors.append(f"{name}={raw!r} is not a boolean (use 1/0, true/false).")
        return None

    if kind == "int":
        try:
            value = int(str(raw).strip())
        except ValueError:
            errors.append(f"{name}={raw!r} is not an integer.")
            return None
        if value <= 0:
            errors.append(f"{name}={value} must be a positive integer.")
            return None
        return value

    text = str(raw).strip().lower()
    if name == "tree_load_strategy" and text not in LOAD_STRATEGIES:
        errors.append(
            f"{name}={raw!r} is invalid; expected one of {sorted(LOAD_STRATEGIES)}."
        )
        return None
    return text


def _read_settings_file(raw_path: str, errors: list[str]) -> dict:
    """Return the mapping stored in the YAML settings file (empty on error)."""
    path = Path(raw_path)
    if not path.is_file():
        errors.append(f"TREE_SETTINGS_FILE={raw_path} does not exist.")
        return {}
    try:
        parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        errors.append(f"TREE_SETTINGS_FILE={raw_path} is not valid YAML: {exc}")
        return {}
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        errors.append(f"TREE_SETTINGS_FILE={raw_path} must contain a mapping.")
        return {}
    unknown = set(parsed) - set(_TREE_FLAGS)
    if unknown:
        errors.append(
            f"TREE_SETTINGS_FILE={raw_path} has unknown keys: {sorted(unknown)}"
        )
    return parsed


def read_tree_flags(errors: list[str]) -> dict:
    """Collect tree display flags from env, then the optional YAML file."""
    flags: dict = {}
    for name, (env_var, kind) in _TREE_FLAGS.items():
        raw = os.environ.get(env_var)
        if raw is None:
            continue
        value = _parse_value(env_var, raw, kind, errors)
        if value is not None:
            flags[name] = value

    file_raw = os.environ.get("TREE_SETTINGS_FILE", "").strip()
    if file_raw:
        for name, raw in _read_settings_file(file_raw, errors).items():
            if name not in _TREE_FLAGS:
                continue
            value = _parse_value(name, raw, _TREE_FLAGS[name][1], errors)
            if value is not None:
                flags[name] = value
    return flags


# ── module-level singleton ───────────────────────────────────────────────────

_settings: Settings | None = None


def load() -> Settings:
    """Read env vars, validate, cache, and return Settings.

    * Creates DATA_DIR if it doesn't exist (but errors if it can't be created).
    * Prints a clear summary on success; prints errors and calls sys.exit(1) on
      failure; the app should never start with a bad config.
    * Idempotent: returns the cached singleton on subsequent calls.
    """
    global _settings
    if _settings is not None:
        return _settings

    errors: list[str] = []

    # ── DATA_DIR ─────────────────────────────────────────────────────────
    data_path: Path | None = None
    data_raw = os.environ.get("DATA_DIR", "").strip()
    if not data_raw:
        errors.append(
            "DATA_DIR is not set. "
            "Set it to a writable path for the folder database "
            "(e.g. ./data locally or /data inside Docker)."
        )
    else:
        data_path = Path(data_raw)
        if not data_path.exists():
            try:
                data_path.mkdir(parents=True, exist_ok=True)
                print(f"  ℹ  Created DATA_DIR: {data_path}")
            except OSError as exc:
                errors.append(
                    f"DATA_DIR={data_raw} does not exist and could not be created: {exc}"
                )
                data_path = None  # mark as invalid
        if data_path is not None and not data_path.is_dir():
            errors.append(f"DATA_DIR={data_raw} exists but is not a directory.")
            data_path = None

    # ── tree flags ───────────────────────────────────────────────────────
    flags = read_tree_flags(errors)

    # ── Abort on any error ───────────────────────────────────────────────
    if errors:
        print("\n❌  Folder tree: configuration error\n", file=sys.stderr)
        for e in errors:
            print(f"     • {e}", file=sys.stderr)
        print("", file=sys.stderr)
        sys.exit(1)

    assert data_path is not None

    _settings = Settings(data_dir=data_path.resolve(), **flags)

    print("✅  Folder tree: config loaded")
    print(f"     DATA_DIR  = {_settings.data_dir}")
    print(f"     strategy  = {_settings.tree_load_strategy}")
    print(f"     only accessible = {_settings.show_only_accessible_folders}")
    print(f"     counters  = {_settings.tree_counters}")
    return _settings


def get() -> Settings:
    """Return the already-loaded Settings.  Raises if load() hasn't run."""
    if _settings is None:
        raise RuntimeError("Config not initialised; call config.load() at startup.")
    return _settings
