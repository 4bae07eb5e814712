"""
Command builder.

Pure functions shared by both sandbox strategies: they turn an entry-command
template, detected dependencies, an optional install command and optional
setup code into the source text to write and the shell command to run.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass
from typing import Sequence

# Marks where the source path goes in templates such as
# ``rustc {source} -O -o /tmp/main && /tmp/main``.
SOURCE_PLACEHOLDER = "{source}"

SOURCE_BASENAME = "code"


@dataclass(frozen=True)
class BuiltCommand:
    """Output of the command builder."""

    source: str
    command: str


def source_filename(extension: str) -> str:
    ext = extension.lstrip(".")
    return f"{SOURCE_BASENAME}.{ext}" if ext else SOURCE_BASENAME


def build_source(source_code: str, setup_code: str | None = None) -> str:
    """Prefix the user's code with the runtime setup code, if any."""
    if not setup_code or not setup_code.strip():
        return source_code
    return f"{setup_code.rstrip()}\n\n{source_code}"


def build_run_command(
    entry_command: str,
    source_path: str,
    dependencies: Sequence[str] = (),
    install_command: str | None = None,
) -> str:
    entry = entry_command.strip()
    if SOURCE_PLACEHOLDER in entry:
        run = entry.replace(SOURCE_PLACEHOLDER, shlex.quote(source_path), 1)
    else:
        run = f"{entry} {shlex.quote(source_path)}"

    if install_command and install_command.strip() and dependencies:
        packages = " ".join(shlex.quote(dep) for dep in dependencies)
        return f"{install_command.strip()} {packages} && {run}"
    return run


def build_command(
    entry_command: str,
    source_code: str,
    source_path: str,
    dependencies: Sequence[str] = (),
    install_command: str | None = None,
    setup_code: str | None = None,
) -> BuiltCommand:
    return BuiltCommand(
        source=build_source(source_code, setup_code),
        command=build_run_command(
            entry_command,
            source_path,
            dependencies=dependencies,
            install_command=install_command,
        ),
    )
