# config.py
from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigError

DEFAULT_BUILD_FILE = "pinbuild.toml"

DEFAULT_VERSION = "4.0.6"
DEFAULT_REVISION = "d045aaa75edb8ee6b69c4b1e2551c2a844377927"
DEFAULT_REPOSITORY = "https://github.com/tailwindlabs/tailwindcss.git"

DEFAULT_TOOLCHAIN = {
    "node": "22",
    "gcc": "12",
    "pkg": "5.8.1",
    "python": "3.10",
}

DEFAULT_MIN_VERSIONS = {
    "node": "22.9.0",
}

# the packager is installed into the standalone CLI by the compile step
DEFAULT_TOOLS = {
    "pkg": "./node_modules/.bin/pkg",
}

DEFAULT_PLUGINS = (
    "@tailwindcss/typography@latest",
    "@tailwindcss/forms@latest",
    "@tailwindcss/aspect-ratio@latest",
    "@tailwindcss/line-clamp@latest",
    "postcss@latest",
    "autoprefixer@latest",
)

DEFAULT_SYSTEM_PACKAGES = (
    "devel/gmake",
    "lang/gcc{gcc}",
    "lang/python310",
    "sysutils/patchelf",
    "devel/git@tiny",
    "www/node{node}",
    "www/npm-node{node}",
    "perl5",
)

_HEX = re.compile(r"^[0-9a-fA-F]{7,40}$")


# ---------------------------------------------------------------------
# Build file schema (pinbuild.toml)
# ---------------------------------------------------------------------

class BuildFile(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version: Optional[str] = None
    revision: Optional[str] = None
    repository: Optional[str] = None
    ref: Optional[str] = None
    jobs: Optional[int] = Field(default=None, ge=1)
    max_attempts: Optional[int] = Field(default=None, ge=1)
    backoff_base: Optional[float] = Field(default=None, ge=0)
    backoff_cap: Optional[float] = Field(default=None, ge=0)
    step_timeout: Optional[float] = Field(default=None, gt=0)
    payload_offset: Optional[int] = None
    target: Optional[str] = None
    artifact_name: Optional[str] = None
    standalone_dir: Optional[str] = None
    install_system_packages: Optional[bool] = None
    system_packages: Optional[list[str]] = None
    plugins: Optional[list[str]] = None
    cache_root: Optional[str] = None
    work_root: Optional[str] = None

    toolchain: dict[str, str] = Field(default_factory=dict)
    min_versions: dict[str, str] = Field(default_factory=dict)
    tools: dict[str, str] = Field(default_factory=dict)
    env: dict[str, str] = Field(default_factory=dict)

    @field_validator("revision")
    @classmethod
    def _revision_is_hex(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not _HEX.match(v):
            raise ValueError("revision must be a 7-40 character hex commit id")
        return v


# ---------------------------------------------------------------------
# Resolved configuration
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class BuildConfig:
    """
    Immutable inputs of one build. A Plan captures one of these; changing
    anything means building a new Plan.
    """
    version: str = DEFAULT_VERSION
    revision: str = DEFAULT_REVISION
    repository: str = DEFAULT_REPOSITORY
    ref: str = "v{version}"

    # read-only once constructed; see __post_init__
    toolchain: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_TOOLCHAIN))
    min_versions: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_MIN_VERSIONS))
    tools: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_TOOLS))
    env: Mapping[str, str] = field(default_factory=dict)

    jobs: int = field(default_factory=lambda: os.cpu_count() or 1)
    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_cap: float = 30.0
    step_timeout: float | None = None

    payload_offset: int = 4096
    target: str = "node{node}-freebsd-x64"
    artifact_name: str = "tailwindcss-freebsd-x64"
    standalone_dir: str = "standalone-cli"
    install_system_packages: bool = False
    system_packages: Tuple[str, ...] = DEFAULT_SYSTEM_PACKAGES
    plugins: Tuple[str, ...] = DEFAULT_PLUGINS

    cache_root: Path = field(default_factory=lambda: Path("~/.cache/pinbuild").expanduser())
    work_root: Optional[Path] = None

    def __post_init__(self) -> None:
        if not _HEX.match(self.revision):
            raise ConfigError(f"revision must be a 7-40 character hex commit id, got {self.revision!r}")
        if self.jobs < 1:
            raise ConfigError(f"jobs must be >= 1, got {self.jobs}")
        if self.max_attempts < 1:
            raise ConfigError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.work_root is None:
            object.__setattr__(self, "work_root", Path(".pinbuild") / self.version)
        # fingerprints are computed from these throughout a run
        for name in ("toolchain", "min_versions", "tools", "env"):
            object.__setattr__(self, name, MappingProxyType(dict(getattr(self, name))))
        object.__setattr__(self, "system_packages", tuple(self.system_packages))
        object.__setattr__(self, "plugins", tuple(self.plugins))

    # -- derived values -------------------------------------------------

    def render(self, template: str) -> str:
        """Expand {version}, {revision} and toolchain names in a template."""
        return template.format(version=self.version, revision=self.revision, **self.toolchain)

    @property
    def resolved_ref(self) -> str:
        return self.render(self.ref)

    @property
    def resolved_target(self) -> str:
        return self.render(self.target)

    @property
    def rpath(self) -> str:
        return f"/usr/local/lib/gcc{self.toolchain.get('gcc', '')}"

    @property
    def packages(self) -> Tuple[str, ...]:
        return tuple(self.render(p) for p in self.system_packages)

    @property
    def artifact_path(self) -> Path:
        return Path(self.work_root) / "dist" / self.artifact_name

    def tool(self, alias: str) -> str:
        return self.tools.get(alias, alias)

    def toolchain_env(self) -> Dict[str, str]:
        """Explicit toolchain environment handed to every external step."""
        gcc = self.toolchain.get("gcc", "")
        env = {
            "CC": f"/usr/local/bin/gcc{gcc}",
            "CXX": f"/usr/local/bin/g++{gcc}",
            "LD": "/usr/local/bin/ld",
            "MAKE": "/usr/local/bin/gmake",
            "NODE_PATH": "/usr/local/bin",
            "MAKEFLAGS": f"-j{self.jobs}",
            "LDFLAGS": f"-Wl,-rpath={self.rpath}",
        }
        env.update(self.env)
        return env

    def identity(self) -> Dict[str, Any]:
        """The part of the config that changes what gets built."""
        return {
            "version": self.version,
            "revision": self.revision.lower(),
            "repository": self.repository,
            "toolchain": dict(sorted(self.toolchain.items())),
        }


# ---------------------------------------------------------------------
# Resolution: defaults < build file < environment < CLI
# ---------------------------------------------------------------------

ENV_VARS = {
    "PINBUILD_VERSION": "version",
    "PINBUILD_REVISION": "revision",
    "PINBUILD_CACHE_DIR": "cache_root",
    "PINBUILD_WORK_DIR": "work_root",
    "PINBUILD_JOBS": "jobs",
}

TOOLCHAIN_ENV_VARS = ("CC", "CXX", "LD", "MAKE", "NODE_PATH")


def read_build_file(path: str | Path) -> BuildFile:
    p = Path(path)
    try:
        data = tomllib.loads(p.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigError(f"Build file not found: {p}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Build file is not valid TOML: {p}: {e}") from e

    try:
        return BuildFile.model_validate(data)
    except ValidationError as e:
        problems = [
            f"{'.'.join(str(x) for x in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ]
        raise ConfigError(f"Invalid build file {p}:\n  " + "\n  ".join(problems)) from e


def _from_env(env: Mapping[str, str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for var, key in ENV_VARS.items():
        value = env.get(var)
        if value:
            out[key] = value
    if "jobs" in out:
        try:
            out["jobs"] = int(out["jobs"])
        except ValueError as e:
            raise ConfigError(f"PINBUILD_JOBS must be an integer, got {out['jobs']!r}") from e
    toolchain_env = {v: env[v] for v in TOOLCHAIN_ENV_VARS if env.get(v)}
    if toolchain_env:
        out["env"] = toolchain_env
    return out


def load_config(
    path: str | Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> BuildConfig:
    """
    Resolve a BuildConfig.

    `path` defaults to ./pinbuild.toml when it exists. `env` defaults to
    os.environ and is only read, never written.
    """
    env = os.environ if env is None else env
    values: Dict[str, Any] = {}

    if path is None and Path(DEFAULT_BUILD_FILE).exists():
        path = DEFAULT_BUILD_FILE
    if path is not None:
        bf = read_build_file(path)
        values.update(bf.model_dump(exclude_none=True, exclude={"toolchain", "min_versions", "tools", "env"}))
        values["toolchain"] = {**DEFAULT_TOOLCHAIN, **bf.toolchain}
        values["min_versions"] = {**DEFAULT_MIN_VERSIONS, **bf.min_versions}
        values["tools"] = {**DEFAULT_TOOLS, **bf.tools}
        values["env"] = dict(bf.env)
        for key in ("system_packages", "plugins"):
            if key in values:
                values[key] = tuple(values[key])

    env_values = _from_env(env)
    if "env" in env_values:
        values["env"] = {**values.get("env", {}), **env_values.pop("env")}
    values.update(env_values)

    for k, v in (overrides or {}).items():
        if v is not None:
            values[k] = v

    for key in ("cache_root", "work_root"):
        if key in values:
            values[key] = Path(values[key]).expanduser()

    return BuildConfig(**values)
