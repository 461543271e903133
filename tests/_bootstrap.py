"""Bootstrap module for RLM hook tests.

Discovers the repo root and adds hooks/scripts/ to sys.path.
Also clears environment variables that would change hook decisions.

Usage at top of any test file:
    import _bootstrap  # noqa: F401 (side-effect import)
    from rlm_pre_push import run_guard, ...
"""
import os
import sys
from pathlib import Path

def _find_repo_root():
    """Walk up from this file to find the repo root (contains hooks/scripts/)."""
    current = Path(__file__).resolve().parent
    while current != current.parent:
        if (current / "hooks" / "scripts" / "rlm_pre_push.py").exists():
            return current
        current = current.parent
    raise RuntimeError("Cannot find repo root from tests/_bootstrap.py")

_REPO_ROOT = _find_repo_root()
_SCRIPTS_DIR = str(_REPO_ROOT / "hooks" / "scripts")

if _SCRIPTS_DIR not in sys.path:
    sys.path.insert(0, _SCRIPTS_DIR)

# Hook decisions must not depend on the developer's shell
for _name in ("RLM_AGENT", "RLM_AGENT_LEVEL", "CLAUDE_HOOK_DRY_RUN", "CLAUDE_PLUGIN_ROOT"):
    os.environ.pop(_name, None)
os.environ.setdefault("CLAUDE_PROJECT_DIR", "/tmp/rlm-test-project")
