#!/usr/bin/env python3
"""RLM Bash Validator Hook - Per-Agent Command Restrictions.

Validates Bash tool commands against the agent's permission level.
Used as a PreToolUse hook.

Environment variables:
    RLM_AGENT_LEVEL - Permission level: "readonly", "standard", "privileged"
                      (default "standard"; unrecognized values also map to it)

Exit codes:
    0 - Allow command
    2 - Block command (with "BLOCKED: <reason>" on stderr)

Matching is plain substring containment, so a blocked pattern anywhere in the
command blocks it, including inside quoted arguments such as commit messages.
False positives are accepted over false negatives.

Payloads that cannot be parsed are allowed (fail-open): this hook sits on top
of the host's own permission system and must not break unrelated commands.
"""

import json
import os
import sys
from pathlib import Path
from typing import Iterable

# Add hooks directory to path
sys.path.insert(0, str(Path(__file__).parent))

try:
    from _rlm_utils import (
        ALWAYS_BLOCKED_MESSAGE,
        DEFAULT_LEVEL,
        EXIT_ALLOW,
        EXIT_COMMAND_BLOCKED,
        LEVEL_BLOCK_MESSAGES,
        LEVEL_ENV,
        PERMISSION_LEVELS,
        get_always_blocked,
        get_level_patterns,
        get_on_error,
        is_dry_run,
        log_rlm,
        truncate_command,
    )
except ImportError as e:
    # Fail-open: validator unavailable = allow, the host permission system still applies
    print(f"[RLM] Bash validator unavailable, allowing command: {e}", file=sys.stderr)
    sys.exit(0)


def extract_command(raw: str) -> str | None:
    """Extract the command from a PreToolUse payload.

    Accepts the host shape {"tool_name": "Bash", "tool_input": {"command": ...}}
    and the bare {"command": ...} shape.

    Returns:
        The command string, or None if the payload cannot be interpreted.
    """
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None
    if not isinstance(payload, dict):
        return None

    tool_name = payload.get("tool_name")
    if tool_name is not None and tool_name != "Bash":
        return None

    tool_input = payload.get("tool_input")
    if isinstance(tool_input, dict):
        command = tool_input.get("command")
    else:
        command = payload.get("command")

    if not isinstance(command, str) or not command:
        return None
    return command


def resolve_level(value: str | None) -> str:
    """Map a raw RLM_AGENT_LEVEL value to a known level."""
    if not value:
        return DEFAULT_LEVEL
    if value not in PERMISSION_LEVELS:
        log_rlm("WARN", f"Unknown {LEVEL_ENV}={value!r}, using {DEFAULT_LEVEL}")
        return DEFAULT_LEVEL
    return value


def find_pattern(command: str, patterns: Iterable[str]) -> str | None:
    """Return the first pattern contained in command, or None."""
    for pattern in patterns:
        if pattern in command:
            return pattern
    return None


def classify_command(command: str, level: str) -> tuple[str, str]:
    """Classify a command for a permission level.

    Always-blocked patterns are checked first, for every level.

    Args:
        command: The bash command to check.
        level: One of PERMISSION_LEVELS.

    Returns:
        (decision, reason) tuple where decision is "allow" or "block".
    """
    pattern = find_pattern(command, get_always_blocked())
    if pattern is not None:
        return "block", ALWAYS_BLOCKED_MESSAGE.format(pattern=pattern)

    pattern = find_pattern(command, get_level_patterns(level))
    if pattern is not None:
        return "block", LEVEL_BLOCK_MESSAGES[level].format(pattern=pattern)

    return "allow", ""


def validate(raw: str, level_value: str | None) -> tuple[int, str]:
    """Run the validator over a raw payload.

    Returns:
        (exit_code, stderr_message) tuple. The message is empty on allow.
    """
    command = extract_command(raw)
    if command is None:
        return EXIT_ALLOW, ""

    level = resolve_level(level_value)
    decision, reason = classify_command(command, level)
    cmd_preview = truncate_command(command)

    if decision == "allow":
        return EXIT_ALLOW, ""

    log_rlm("BLOCK", f"[{level}] {reason}: {cmd_preview}")
    message = f"BLOCKED: {reason}"
    if is_dry_run():
        log_rlm("DRY-RUN", f"Would BLOCK: {cmd_preview}")
        return EXIT_ALLOW, message
    return EXIT_COMMAND_BLOCKED, message


def main() -> None:
    """Main hook entry point."""
    try:
        exit_code, message = validate(sys.stdin.read(), os.environ.get(LEVEL_ENV))
    except Exception as e:
        # bashValidator.onError defaults to "allow" (fail-open)
        log_rlm("ERROR", f"Unhandled exception in bash validator: {e}")
        action = get_on_error("bashValidator", "allow")
        if action == "allow":
            exit_code, message = EXIT_ALLOW, ""
        else:
            exit_code = EXIT_COMMAND_BLOCKED
            message = f"BLOCKED: RLM validator error ({type(e).__name__})"

    if message:
        print(message, file=sys.stderr)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
