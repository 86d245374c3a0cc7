# templates.py
from __future__ import annotations

from .config import BuildConfig
from .dag import Plan
from .dsl import cmd, script
from .step_workflows.check import verify_step
from .step_workflows.fetch import fetch_step
from .step_workflows.patch import patch_step

PACKAGER_OUTPUT = "dist/tailwindcss-standalone"


def standalone_plan(config: BuildConfig) -> Plan:
    """
    The standalone-binary build, one template for every version:

        [system_packages] -> fetch -> install_deps -> compile
            -> package -> patch -> verify

    Everything version-specific comes from `config`; the step arguments
    keep their {placeholders} so fingerprints stay readable.
    """
    sa = f"src/{config.standalone_dir}"
    artifact = f"dist/{config.artifact_name}"
    plan = Plan(config, artifact=artifact)

    first: list[str] = []
    if config.install_system_packages:
        plan.add_step(cmd(
            "system_packages",
            "doas", "pkg", "install", "-yr", "FreeBSD", *config.packages,
            requires=("doas",),
            network=True,
            description="install the FreeBSD build toolchain",
        ))
        first = ["system_packages"]

    plan.add_step(fetch_step(url=config.repository), first)

    plan.add_step(cmd(
        "install_deps",
        "npm", "install", "--omit=dev",
        cwd="src",
        inputs=("src/package.json",),
        outputs=("src/node_modules",),
        requires=("node", "npm"),
        network=True,
        description="install the library's runtime dependencies",
    ), ["fetch"])

    # native addons are built here, with CC/CXX/MAKE from the toolchain env;
    # the packager is pinned to toolchain["pkg"] and lands in node_modules/.bin
    plan.add_step(script(
        "compile",
        ("npm", "ci"),
        ("npm", "install", "--no-save", "tailwindcss@{version}", *config.plugins, "pkg@{pkg}"),
        cwd=sa,
        inputs=(f"{sa}/package.json", "src/node_modules"),
        outputs=(f"{sa}/node_modules",),
        requires=("node", "npm"),
        network=True,
        description="install and compile the standalone CLI",
    ), ["install_deps"])

    plan.add_step(cmd(
        "package",
        "pkg", ".",
        "--target", "{target}",
        "--compress", "Brotli",
        "--no-bytecode",
        "--public-packages", "*",
        "--public",
        "--python", "/usr/local/bin/python{python}",
        "--output", PACKAGER_OUTPUT,
        cwd=sa,
        inputs=(f"{sa}/node_modules",),
        outputs=(f"{sa}/{PACKAGER_OUTPUT}",),
        requires=("node", "pkg"),
        network=True,
        description="bundle node and the CLI into one executable",
    ), ["compile"])

    plan.add_step(patch_step(source=f"{sa}/{PACKAGER_OUTPUT}", output=artifact), ["package"])
    plan.add_step(verify_step(artifact=artifact), ["patch"])
    return plan
