#!/usr/bin/env python3
"""Shared utilities for the RLM hook guards.

This module provides what both hooks need:
- Built-in policy tables (protected branches, authorized agents, command patterns)
- Configuration loading from config.json
- Dry-run mode support
- Logging

Config resolution chain (3-step):
  1. $CLAUDE_PROJECT_DIR/.claude/rlm/config.json (user custom)
  2. $CLAUDE_PLUGIN_ROOT/assets/rlm.default.json (plugin default)
  3. Hardcoded _FALLBACK_CONFIG

Configuration can only EXTEND the built-in tables. Built-in branches and
patterns are always applied, so no config file can unblock them.

Usage:
    from _rlm_utils import (
        load_rlm_config,
        get_protected_branches,
        get_level_patterns,
        is_dry_run,
        log_rlm,
    )

Note on log_rlm():
    - Silent fail if CLAUDE_PROJECT_DIR not set
    - Silent fail on file write errors
"""

import json
import os
from datetime import datetime
from pathlib import Path
from types import MappingProxyType
from typing import Any

# ============================================================
# Constants
# ============================================================

AGENT_ENV = "RLM_AGENT"
"""Environment variable holding the agent identity for the pre-push hook."""

LEVEL_ENV = "RLM_AGENT_LEVEL"
"""Environment variable holding the permission level for the bash validator."""

DRY_RUN_ENV = "CLAUDE_HOOK_DRY_RUN"
"""Environment variable to enable dry-run mode.
Set to "1", "true", or "yes" to enable."""

UNKNOWN_AGENT = "unknown"
DEFAULT_LEVEL = "standard"

EXIT_ALLOW = 0
EXIT_PUSH_BLOCKED = 1
EXIT_COMMAND_BLOCKED = 2

MAX_COMMAND_PREVIEW_LENGTH = 80
"""Maximum command length for log display. Commands longer than this are truncated."""

MAX_LOG_SIZE_BYTES = 1_000_000
"""Maximum log file size before rotation (1 MB)."""

VALID_ON_ERROR = ("allow", "block")

# ============================================================
# Built-in Policy Tables
# ============================================================

PROTECTED_BRANCHES = ("main", "master")

AUTHORIZED_AGENTS = ("devops", "orchestrator", "human")
"""Agents allowed to push to protected branches. Case-sensitive, not configurable."""

PERMISSION_LEVELS = ("readonly", "standard", "privileged")

ALWAYS_BLOCKED = (
    "rm -rf /",
    "sudo ",
    "chmod 777",
    "mkfs",
    "> /dev/",
)

LEVEL_BLOCKED = MappingProxyType(
    {
        # Never mutates repository state
        "readonly": (
            "git add",
            "git commit",
            "git push",
            "git pull",
            "git merge",
            "git rebase",
            "git cherry-pick",
            "git reset",
            "git checkout -b",
            "git switch -c",
        ),
        "standard": (
            "git merge",
            "git rebase",
            "git push origin main",
            "git push origin master",
            "git push upstream main",
            "git push upstream master",
        ),
        # Privilege does not cover irreversible operations
        "privileged": (
            "git push --force",
            "git push -f ",
            "git branch -D main",
            "git branch -D master",
            "git branch -d main",
            "git branch -d master",
            "git push origin --delete main",
            "git push origin --delete master",
        ),
    }
)

LEVEL_BLOCK_MESSAGES = MappingProxyType(
    {
        "readonly": "Read-only agent cannot execute: {pattern}",
        "standard": "Standard agent cannot execute: {pattern} (use devops or orchestrator)",
        "privileged": "Even privileged agents cannot execute: {pattern}",
    }
)

ALWAYS_BLOCKED_MESSAGE = "Command contains dangerous pattern: {pattern}"

# Hardcoded fallback config for when config.json is missing/corrupted.
# Empty extensions: the built-in tables above still apply.
_FALLBACK_CONFIG = {
    "pushGuard": {"protectedBranches": [], "onError": "block"},
    "bashValidator": {
        "alwaysBlocked": [],
        "levels": {"readonly": [], "standard": [], "privileged": []},
        "onError": "allow",
    },
}

# ============================================================
# Configuration
# ============================================================

_config_cache: dict | None = None
_using_fallback_config: bool = False
_active_config_path: str | None = None


def get_project_dir() -> str:
    """Get project directory from environment variable.

    Returns:
        Project directory path, or empty string if not set or not a directory.
    """
    project_dir = os.environ.get("CLAUDE_PROJECT_DIR", "")
    if not project_dir:
        return ""
    # No logging here: log_rlm() calls get_project_dir()
    if not os.path.isdir(project_dir):
        return ""
    return project_dir


def _get_plugin_root() -> str:
    return os.environ.get("CLAUDE_PLUGIN_ROOT", "")


def _read_config_file(config_path: Path) -> dict | None:
    """Read and validate one config file.

    Returns:
        Parsed config dict, or None if the file cannot be used.
    """
    try:
        with open(config_path, encoding="utf-8") as f:
            config = json.load(f)
    except json.JSONDecodeError as e:
        log_rlm(
            "ERROR",
            f"[FALLBACK] Invalid JSON in {config_path}: {e}\n"
            "  Fix JSON syntax to restore custom RLM rules.",
        )
        return None
    except OSError as e:
        log_rlm("ERROR", f"[FALLBACK] Failed to read {config_path}: {e}")
        return None
    except Exception as e:
        # Undecodable bytes, runaway nesting
        log_rlm(
            "ERROR",
            f"[FALLBACK] Unexpected error loading {config_path}: {type(e).__name__}: {e}",
        )
        return None

    if not isinstance(config, dict):
        log_rlm("ERROR", f"[FALLBACK] {config_path} must contain a JSON object")
        return None

    for error in validate_rlm_config(config):
        log_rlm("WARN", f"Config validation: {error}")
    return config


def load_rlm_config() -> dict[str, Any]:
    """Load config.json with caching and fallback.

    The config is cached for the lifetime of the process.
    Since hooks run as separate processes, this is safe.

    Returns:
        Configuration dict, or fallback config on error.
        Never raises exceptions.
    """
    global _config_cache, _using_fallback_config, _active_config_path
    if _config_cache is not None:
        return _config_cache

    candidates = []
    project_dir = get_project_dir()
    if project_dir:
        candidates.append(Path(project_dir) / ".claude" / "rlm" / "config.json")
    plugin_root = _get_plugin_root()
    if plugin_root:
        candidates.append(Path(plugin_root) / "assets" / "rlm.default.json")

    for config_path in candidates:
        if not config_path.exists():
            continue
        config = _read_config_file(config_path)
        if config is not None:
            _config_cache = config
            _using_fallback_config = False
            _active_config_path = str(config_path)
            log_rlm("INFO", f"Loaded config from {config_path}")
            return _config_cache

    _config_cache = _FALLBACK_CONFIG
    _using_fallback_config = True
    _active_config_path = None
    return _config_cache


def is_using_fallback_config() -> bool:
    """Check if the hardcoded fallback config is in use."""
    if _config_cache is None:
        load_rlm_config()
    return _using_fallback_config


def get_active_config_path() -> str | None:
    """Path of the loaded config file, or None for the hardcoded fallback."""
    if _config_cache is None:
        load_rlm_config()
    return _active_config_path


def _is_string_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(v, str) and v for v in value)


def validate_rlm_config(config: dict) -> list[str]:
    """Validate RLM hook configuration.

    Checks:
    - Sections are objects
    - Pattern and branch lists contain only non-empty strings
    - Level names are known
    - onError values are "allow" or "block"

    Args:
        config: Loaded configuration dictionary.

    Returns:
        List of validation error messages (empty if valid).
    """
    errors = []

    push_guard = config.get("pushGuard", {})
    if not isinstance(push_guard, dict):
        errors.append("pushGuard must be an object")
        push_guard = {}
    if not _is_string_list(push_guard.get("protectedBranches", [])):
        errors.append("pushGuard.protectedBranches must be a list of non-empty strings")
    if push_guard.get("onError", "block") not in VALID_ON_ERROR:
        errors.append(
            f"Invalid pushGuard.onError: {push_guard.get('onError')} (must be: {VALID_ON_ERROR})"
        )

    validator = config.get("bashValidator", {})
    if not isinstance(validator, dict):
        errors.append("bashValidator must be an object")
        validator = {}
    if not _is_string_list(validator.get("alwaysBlocked", [])):
        errors.append("bashValidator.alwaysBlocked must be a list of non-empty strings")
    if validator.get("onError", "allow") not in VALID_ON_ERROR:
        errors.append(
            f"Invalid bashValidator.onError: {validator.get('onError')} (must be: {VALID_ON_ERROR})"
        )

    levels = validator.get("levels", {})
    if not isinstance(levels, dict):
        errors.append("bashValidator.levels must be an object")
    else:
        for level, patterns in levels.items():
            if level not in PERMISSION_LEVELS:
                errors.append(
                    f"Unknown level in bashValidator.levels: {level} (must be: {PERMISSION_LEVELS})"
                )
            elif not _is_string_list(patterns):
                errors.append(f"bashValidator.levels.{level} must be a list of non-empty strings")

    return errors


def _config_section(name: str) -> dict:
    section = load_rlm_config().get(name, {})
    return section if isinstance(section, dict) else {}


def _extend(builtin: tuple, extra: Any) -> tuple:
    """Append valid config entries to a built-in table, dropping duplicates."""
    merged = list(builtin)
    if isinstance(extra, list):
        for entry in extra:
            if isinstance(entry, str) and entry and entry not in merged:
                merged.append(entry)
    return tuple(merged)


def get_protected_branches() -> tuple:
    return _extend(PROTECTED_BRANCHES, _config_section("pushGuard").get("protectedBranches"))


def get_always_blocked() -> tuple:
    return _extend(ALWAYS_BLOCKED, _config_section("bashValidator").get("alwaysBlocked"))


def get_level_patterns(level: str) -> tuple:
    """Effective blocklist for a permission level (built-ins plus config additions).

    Unknown levels have no blocklist, even if the config names them.
    """
    if level not in LEVEL_BLOCKED:
        return ()
    levels = _config_section("bashValidator").get("levels", {})
    extra = levels.get(level) if isinstance(levels, dict) else None
    return _extend(LEVEL_BLOCKED.get(level, ()), extra)


def get_on_error(section: str, default: str) -> str:
    """Configured onError action for a hook section, falling back to its default."""
    try:
        action = _config_section(section).get("onError", default)
    except Exception:
        return default
    return action if action in VALID_ON_ERROR else default


# ============================================================
# Dry-Run Mode
# ============================================================


def is_dry_run() -> bool:
    """Check if running in dry-run (simulation) mode.

    In dry-run mode, hooks log what they WOULD block but always allow.

    Enable by setting environment variable:
        CLAUDE_HOOK_DRY_RUN=1
    """
    value = os.environ.get(DRY_RUN_ENV, "").lower()
    return value in ("1", "true", "yes")


# ============================================================
# Logging with Rotation
# ============================================================


def _rotate_log_if_needed(log_file: Path) -> None:
    """Rotate log file to .log.1 if it exceeds MAX_LOG_SIZE_BYTES."""
    try:
        if not log_file.exists():
            return
        if log_file.stat().st_size < MAX_LOG_SIZE_BYTES:
            return

        backup_file = log_file.with_suffix(".log.1")
        # Windows cannot rename onto an existing file
        if backup_file.exists():
            backup_file.unlink()
        log_file.rename(backup_file)
    except Exception:
        # Rotation is non-critical
        pass


def log_rlm(level: str, message: str) -> None:
    """Log a hook event to .claude/rlm/rlm.log.

    Log format:
        TIMESTAMP [LEVEL] [DRY-RUN] MESSAGE

    Silent fail on any error - never breaks hook execution.

    Args:
        level: Log level (INFO, WARN, ERROR, BLOCK, ALLOW, DRY-RUN)
        message: Message to log.
    """
    project_dir = get_project_dir()
    if not project_dir:
        return

    log_file = Path(project_dir) / ".claude" / "rlm" / "rlm.log"

    try:
        timestamp = datetime.now().isoformat(timespec="seconds")
        mode = "[DRY-RUN] " if is_dry_run() else ""
        line = f"{timestamp} [{level}] {mode}{message}\n"

        log_file.parent.mkdir(parents=True, exist_ok=True)
        _rotate_log_if_needed(log_file)

        with open(log_file, "a", encoding="utf-8") as f:
            f.write(line)
    except Exception:
        pass


def truncate_command(command: str, max_length: int = MAX_COMMAND_PREVIEW_LENGTH) -> str:
    """Truncate command for log display."""
    if len(command) <= max_length:
        return command
    return command[: max_length - 3] + "..."
