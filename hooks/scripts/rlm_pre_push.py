#!/usr/bin/env python3
"""RLM Pre-Push Hook - Branch Protection.

Blocks pushes to protected branches (main, master) unless the pushing agent
is authorized. The agent identity comes from RLM_AGENT; unset means "unknown".

Git passes one line per updated ref on stdin:
    <local ref> <local sha> <remote ref> <remote sha>

A single denied ref aborts the whole push: git applies the hook's exit code
to every ref in the batch.

Exit codes:
    0 - Allow push
    1 - Block push (message on stderr)

With CLAUDE_HOOK_DRY_RUN=1 a denied push still prints the denial banner but
exits 0, so the push goes through. Dry-run is opt-in and meant for trialing
the policy only.
"""

import os
import sys
from pathlib import Path
from typing import IO, Iterable, NamedTuple

import regex

# Add hooks directory to path
sys.path.insert(0, str(Path(__file__).parent))

try:
    from _rlm_utils import (
        AGENT_ENV,
        AUTHORIZED_AGENTS,
        EXIT_ALLOW,
        EXIT_PUSH_BLOCKED,
        UNKNOWN_AGENT,
        get_on_error,
        get_protected_branches,
        is_dry_run,
        log_rlm,
    )
except ImportError as e:
    # Fail-close: branch protection unavailable = block the push
    print(f"[RLM] Branch protection unavailable, blocking push: {e}", file=sys.stderr)
    sys.exit(1)


_BRANCH_REF = regex.compile(r"^refs/heads/(?P<branch>.+)$")

_RULE = "=" * 63


class PushRef(NamedTuple):
    """One ref update from the pre-push stdin stream."""

    local_ref: str
    local_sha: str
    remote_ref: str
    remote_sha: str

    @property
    def branch(self) -> str | None:
        return extract_branch(self.remote_ref)

    @property
    def is_delete(self) -> bool:
        return bool(self.local_sha) and set(self.local_sha) == {"0"}


def extract_branch(remote_ref: str) -> str | None:
    """Return the branch name of a refs/heads/ ref, or None for tags and other refs."""
    match = _BRANCH_REF.match(remote_ref)
    if match is None:
        return None
    return match.group("branch")


def parse_push_line(line: str) -> PushRef | None:
    """Parse one pre-push stdin line.

    Lines with fewer than 3 fields are malformed and return None; they are
    skipped rather than treated as errors.
    """
    fields = line.split()
    if len(fields) < 3:
        return None
    remote_sha = fields[3] if len(fields) > 3 else ""
    return PushRef(fields[0], fields[1], fields[2], remote_sha)


def get_agent_identity() -> str:
    return os.environ.get(AGENT_ENV) or UNKNOWN_AGENT


def classify_ref(
    ref: PushRef,
    agent: str,
    protected_branches: Iterable[str],
    authorized_agents: Iterable[str] = AUTHORIZED_AGENTS,
) -> tuple[str, str]:
    """Decide whether one ref update may be pushed.

    Args:
        ref: The ref update.
        agent: Agent identity (compared case-sensitively).
        protected_branches: Branch names requiring authorization.
        authorized_agents: Identities allowed to push protected branches.

    Returns:
        (decision, branch) tuple where decision is "allow" (not a protected
        branch), "authorized" or "deny".
    """
    branch = ref.branch
    if branch is None or branch not in protected_branches:
        return "allow", branch or ""
    if agent in authorized_agents:
        return "authorized", branch
    return "deny", branch


def format_authorized(branch: str, agent: str) -> str:
    return f"[RLM] Push to '{branch}' authorized for agent '{agent}'"


def format_denial(branch: str, agent: str, remote: str = "origin") -> str:
    """Build the multi-line denial banner shown by git when a push is blocked."""
    authorized = ", ".join(AUTHORIZED_AGENTS)
    return "\n".join(
        [
            _RULE,
            "[BLOCKED] RLM branch protection: push rejected",
            _RULE,
            "",
            f"  Branch:             {branch}",
            f"  Agent:              {agent}",
            f"  Authorized agents:  {authorized}",
            "",
            f"Direct pushes to '{branch}' are restricted to authorized agents.",
            "",
            "To push as an authorized agent:",
            f"    export {AGENT_ENV}=devops",
            f"    git push {remote} {branch}",
            "",
            "Manual override for human developers (use sparingly):",
            f"    {AGENT_ENV}=human git push {remote} {branch}",
            "",
            "Recommended workflow:",
            "  1. Work on a feature branch",
            "  2. Open a pull request",
            "  3. Let devops/orchestrator merge to the protected branch",
            _RULE,
        ]
    )


def run_guard(lines: Iterable[str], agent: str, out: IO[str], remote: str = "origin") -> int:
    """Evaluate every ref update and return the hook exit code.

    Stops at the first denied ref; nothing after it is read.
    """
    protected_branches = get_protected_branches()

    for line in lines:
        ref = parse_push_line(line)
        if ref is None:
            continue

        decision, branch = classify_ref(ref, agent, protected_branches)
        if decision == "allow":
            continue

        action = "delete" if ref.is_delete else "push"
        if decision == "authorized":
            log_rlm("ALLOW", f"Protected {action} of '{branch}' by agent '{agent}'")
            print(format_authorized(branch, agent), file=out)
            continue

        log_rlm("BLOCK", f"Protected {action} of '{branch}' by agent '{agent}'")
        print(format_denial(branch, agent, remote), file=out)
        if is_dry_run():
            log_rlm("DRY-RUN", f"Would BLOCK push to '{branch}'")
            return EXIT_ALLOW
        return EXIT_PUSH_BLOCKED

    return EXIT_ALLOW


def main() -> None:
    """Main hook entry point.

    Git invokes the hook as `pre-push <remote name> <remote url>`.
    """
    remote = sys.argv[1] if len(sys.argv) > 1 else "origin"
    try:
        exit_code = run_guard(sys.stdin, get_agent_identity(), sys.stderr, remote)
    except Exception as e:
        # pushGuard.onError defaults to "block" (fail-closed)
        log_rlm("ERROR", f"Unhandled exception in pre-push: {e}")
        action = get_on_error("pushGuard", "block")
        print(
            f"[RLM] Branch protection error ({type(e).__name__}), onError={action}",
            file=sys.stderr,
        )
        exit_code = EXIT_ALLOW if action == "allow" else EXIT_PUSH_BLOCKED
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
