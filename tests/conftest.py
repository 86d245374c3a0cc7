"""Pytest configuration for tests.

External tools are simulated by small Python scripts written into tmp_path
and wired in through BuildConfig.tools, so nothing here needs node, npm,
pkg or patchelf installed.
"""

import shutil
import subprocess
import sys
import textwrap
from pathlib import Path

import pytest

from pinbuild.config import ENV_VARS, TOOLCHAIN_ENV_VARS, BuildConfig
from pinbuild.ui.console import Console, set_console

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


@pytest.fixture(autouse=True)
def isolated(tmp_path, monkeypatch):
    """Every test runs in its own cwd with no pinbuild variables set."""
    monkeypatch.chdir(tmp_path)
    for var in (*ENV_VARS, *TOOLCHAIN_ENV_VARS):
        monkeypatch.delenv(var, raising=False)
    set_console(Console())


@pytest.fixture
def make_tool(tmp_path):
    """make_tool(name, body) -> absolute path of an executable Python script."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)

    def make(name: str, body: str) -> str:
        path = bin_dir / name
        path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body), encoding="utf-8")
        path.chmod(0o755)
        return str(path)

    return make


FAKE_TOOL = """
import json
import os
import sys
import time
from pathlib import Path

cmd, *args = sys.argv[1:]
with open(os.environ["FAKE_CALLS"], "a", encoding="utf-8") as f:
    f.write(" ".join(sys.argv[1:]) + "\\n")

if cmd == "write":        # write OUT TEXT...
    out = Path(args[0])
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(" ".join(args[1:]) + "\\n")
elif cmd == "concat":     # concat OUT IN...
    out = Path(args[0])
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text("".join(Path(p).read_text() for p in args[1:]))
elif cmd == "fail":       # fail CODE MESSAGE...
    sys.stderr.write(" ".join(args[1:]) + "\\n")
    sys.exit(int(args[0]))
elif cmd == "flaky":      # flaky FAILURES STATE OUT
    state = Path(args[1])
    seen = int(state.read_text()) if state.exists() else 0
    state.write_text(str(seen + 1))
    if seen < int(args[0]):
        sys.stderr.write("fatal: unable to access 'https://example.invalid/': Could not resolve host\\n")
        sys.exit(128)
    Path(args[2]).write_text("ok\\n")
elif cmd == "sleep":      # sleep SECONDS
    time.sleep(float(args[0]))
elif cmd == "meet":       # meet MINE OTHER TIMEOUT: both must be running at once
    Path(args[0]).touch()
    deadline = time.monotonic() + float(args[2])
    while not Path(args[1]).exists():
        if time.monotonic() > deadline:
            sys.exit(f"{args[1]} never appeared")
        time.sleep(0.02)
elif cmd == "track":      # track DIR SECONDS LOG: log how many are running
    running = Path(args[0])
    running.mkdir(parents=True, exist_ok=True)
    mine = running / str(os.getpid())
    mine.touch()
    with open(args[2], "a", encoding="utf-8") as f:
        f.write(f"{len(list(running.iterdir()))}\\n")
    time.sleep(float(args[1]))
    mine.unlink()
elif cmd == "env":        # env OUT
    out = Path(args[0])
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(json.dumps(dict(os.environ)))
elif cmd == "noop":
    pass
else:
    sys.exit(f"unknown fake command {cmd}")
"""


@pytest.fixture
def calls_file(tmp_path) -> Path:
    return tmp_path / "calls.log"


@pytest.fixture
def fake_tool(make_tool):
    return make_tool("fake", FAKE_TOOL)


@pytest.fixture
def make_config(tmp_path, fake_tool, calls_file):
    """BuildConfig rooted in tmp_path with the `fake` tool alias wired in."""

    def make(**kw) -> BuildConfig:
        kw.setdefault("cache_root", tmp_path / "cache")
        kw.setdefault("work_root", tmp_path / "work")
        kw.setdefault("jobs", 2)
        kw.setdefault("backoff_base", 0.01)
        kw.setdefault("backoff_cap", 0.05)
        kw["tools"] = {"fake": fake_tool, **kw.get("tools", {})}
        kw["env"] = {"FAKE_CALLS": str(calls_file), **kw.get("env", {})}
        return BuildConfig(**kw)

    return make


def calls(calls_file: Path) -> list:
    if not calls_file.exists():
        return []
    return calls_file.read_text(encoding="utf-8").splitlines()


def git(*args, cwd):
    return subprocess.run(
        ["git", "-c", "user.name=pinbuild", "-c", "user.email=pinbuild@example.invalid", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    ).stdout.strip()


@pytest.fixture
def upstream_repo(tmp_path):
    """A local git repository shaped like the upstream source, tagged v4.0.6."""
    repo = tmp_path / "upstream"
    (repo / "standalone-cli").mkdir(parents=True)
    (repo / "package.json").write_text('{"name": "tailwindcss"}\n')
    (repo / "standalone-cli" / "package.json").write_text('{"name": "standalone"}\n')
    git("init", "-q", cwd=repo)
    git("add", ".", cwd=repo)
    git("commit", "-q", "-m", "initial", cwd=repo)
    git("tag", "v4.0.6", cwd=repo)
    sha = git("rev-parse", "HEAD", cwd=repo)
    return repo, sha
