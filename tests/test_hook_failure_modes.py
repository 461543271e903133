#!/usr/bin/env python3
"""Tests for how both hooks behave when something goes wrong.

The push guard fails closed and the bash validator fails open, unless
onError in config says otherwise. A broken config file must never reach
either error path: it falls back to the built-in policy.

Run: python -m pytest tests/test_hook_failure_modes.py -v
"""
import json
import os
import shutil
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))
import _bootstrap  # noqa: F401, E402

SCRIPTS_DIR = _bootstrap._REPO_ROOT / "hooks" / "scripts"
PRE_PUSH_PATH = str(SCRIPTS_DIR / "rlm_pre_push.py")
VALIDATOR_PATH = str(SCRIPTS_DIR / "rlm_bash_validator.py")

UNDECODABLE_CONFIG = b'{"pushGuard": {"protectedBranches": ["\xff"]}}'
UNDECODABLE_STDIN = b"\xff\xfe refs/heads/main \x80\n"


def _make_bash_hook_input(command):
    return json.dumps({
        "tool_name": "Bash",
        "tool_input": {"command": command},
    })


def _push_line(branch):
    return f"refs/heads/{branch} {'a' * 40} refs/heads/{branch} {'b' * 40}\n"


def _run_hook_subprocess(script_path, stdin_data, project_dir, env_override=None):
    """Run a hook script as a subprocess with bytes on stdin.

    stdin is decoded strictly as UTF-8 so undecodable input raises inside
    the hook instead of being escaped.
    """
    env = {
        k: v
        for k, v in os.environ.items()
        if k not in ("RLM_AGENT", "RLM_AGENT_LEVEL", "CLAUDE_HOOK_DRY_RUN", "CLAUDE_PLUGIN_ROOT")
    }
    env["CLAUDE_PROJECT_DIR"] = project_dir
    env["PYTHONIOENCODING"] = "utf-8:strict"
    if env_override:
        env.update(env_override)
    if isinstance(stdin_data, str):
        stdin_data = stdin_data.encode("utf-8")
    result = subprocess.run(
        [sys.executable, script_path, "origin", "git@example.com:org/repo.git"],
        input=stdin_data,
        capture_output=True,
        env=env,
        timeout=10,
    )
    return result.returncode, result.stderr.decode("utf-8", errors="replace")


class _ProjectDirTestCase(unittest.TestCase):

    def setUp(self):
        self.project_dir = tempfile.mkdtemp(prefix="rlm_failure_")
        self.config_path = Path(self.project_dir) / ".claude" / "rlm" / "config.json"
        self.config_path.parent.mkdir(parents=True)

    def tearDown(self):
        shutil.rmtree(self.project_dir, ignore_errors=True)

    def write_config(self, config):
        self.config_path.write_text(json.dumps(config), encoding="utf-8")

    def read_log(self):
        log_file = self.config_path.parent / "rlm.log"
        return log_file.read_text(encoding="utf-8") if log_file.exists() else ""


# ============================================================
# Broken config falls back to built-in policy
# ============================================================


class TestUndecodableConfig(_ProjectDirTestCase):

    def setUp(self):
        super().setUp()
        self.config_path.write_bytes(UNDECODABLE_CONFIG)

    def test_validator_still_blocks_always_blocked(self):
        code, stderr = _run_hook_subprocess(
            VALIDATOR_PATH,
            _make_bash_hook_input("rm -rf /"),
            self.project_dir,
            {"RLM_AGENT_LEVEL": "privileged"},
        )
        self.assertEqual(code, 2)
        self.assertEqual(stderr.strip(), "BLOCKED: Command contains dangerous pattern: rm -rf /")
        self.assertIn("[FALLBACK] Unexpected error loading", self.read_log())

    def test_validator_still_allows_safe_command(self):
        code, stderr = _run_hook_subprocess(
            VALIDATOR_PATH, _make_bash_hook_input("git status"), self.project_dir
        )
        self.assertEqual((code, stderr), (0, ""))

    def test_pre_push_allows_feature_branch(self):
        code, stderr = _run_hook_subprocess(PRE_PUSH_PATH, _push_line("feature"), self.project_dir)
        self.assertEqual(code, 0, stderr)
        self.assertEqual(stderr, "")

    def test_pre_push_still_protects_main(self):
        code, stderr = _run_hook_subprocess(PRE_PUSH_PATH, _push_line("main"), self.project_dir)
        self.assertEqual(code, 1)
        self.assertIn("[BLOCKED]", stderr)
        self.assertNotIn("Branch protection error", stderr)


# ============================================================
# Unhandled exceptions follow onError
# ============================================================


class TestValidatorOnError(_ProjectDirTestCase):

    def test_default_fails_open(self):
        code, stderr = _run_hook_subprocess(VALIDATOR_PATH, UNDECODABLE_STDIN, self.project_dir)
        self.assertEqual((code, stderr), (0, ""))
        self.assertIn("Unhandled exception in bash validator", self.read_log())

    def test_configured_block(self):
        self.write_config({"bashValidator": {"onError": "block"}})
        code, stderr = _run_hook_subprocess(VALIDATOR_PATH, UNDECODABLE_STDIN, self.project_dir)
        self.assertEqual(code, 2)
        self.assertEqual(stderr.strip(), "BLOCKED: RLM validator error (UnicodeDecodeError)")


class TestPrePushOnError(_ProjectDirTestCase):

    def test_default_fails_closed(self):
        code, stderr = _run_hook_subprocess(PRE_PUSH_PATH, UNDECODABLE_STDIN, self.project_dir)
        self.assertEqual(code, 1)
        self.assertIn("Branch protection error (UnicodeDecodeError), onError=block", stderr)
        self.assertIn("Unhandled exception in pre-push", self.read_log())

    def test_configured_allow(self):
        self.write_config({"pushGuard": {"onError": "allow"}})
        code, stderr = _run_hook_subprocess(PRE_PUSH_PATH, UNDECODABLE_STDIN, self.project_dir)
        self.assertEqual(code, 0)
        self.assertIn("onError=allow", stderr)


# ============================================================
# Shared utilities unavailable
# ============================================================


class TestUtilsUnavailable(_ProjectDirTestCase):
    """Hook scripts copied next to a _rlm_utils.py that cannot be imported."""

    def setUp(self):
        super().setUp()
        self.scripts_dir = tempfile.mkdtemp(prefix="rlm_scripts_")
        shutil.copy(PRE_PUSH_PATH, self.scripts_dir)
        shutil.copy(VALIDATOR_PATH, self.scripts_dir)
        # The script's own directory comes first on sys.path
        Path(self.scripts_dir, "_rlm_utils.py").write_text(
            'raise ImportError("rlm utilities missing")\n', encoding="utf-8"
        )

    def tearDown(self):
        shutil.rmtree(self.scripts_dir, ignore_errors=True)
        super().tearDown()

    def test_pre_push_fails_closed(self):
        code, stderr = _run_hook_subprocess(
            str(Path(self.scripts_dir, "rlm_pre_push.py")), _push_line("feature"), self.project_dir
        )
        self.assertEqual(code, 1)
        self.assertIn("Branch protection unavailable, blocking push", stderr)
        self.assertIn("rlm utilities missing", stderr)

    def test_validator_fails_open(self):
        code, stderr = _run_hook_subprocess(
            str(Path(self.scripts_dir, "rlm_bash_validator.py")),
            _make_bash_hook_input("git push origin main"),
            self.project_dir,
        )
        self.assertEqual(code, 0)
        self.assertIn("Bash validator unavailable, allowing command", stderr)


if __name__ == "__main__":
    unittest.main()
