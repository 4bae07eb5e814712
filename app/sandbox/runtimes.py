"""Catalog of cloud runtimes the playground offers out of the box."""

from __future__ import annotations

from dataclasses import asdict, dataclass

# Forces a headless matplotlib backend and redirects ``plt.show`` to a file
# the artifact extractor knows about.
PYTHON_SETUP_CODE = """\
try:
    import matplotlib
    matplotlib.use('Agg')
    import matplotlib.pyplot as plt

    def _playground_show(*args, **kwargs):
        plt.savefig('output.png')
        print("Saved plot to output.png")

    plt.show = _playground_show
except ImportError:
    pass
"""


@dataclass(frozen=True)
class RuntimeProfile:
    """Defaults for one language's sandbox runtime."""

    language: str
    name: str
    image: str
    extension: str
    entry_command: str
    install_command: str | None = None
    setup_code: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


RUNTIMES: dict[str, RuntimeProfile] = {
    profile.language: profile
    for profile in (
        RuntimeProfile(
            language="javascript",
            name="Node.js 20",
            image="node:20-alpine",
            extension="js",
            entry_command="node",
            install_command="npm install --no-save",
        ),
        RuntimeProfile(
            language="python",
            name="Python 3.11",
            image="python:3.11-slim",
            extension="py",
            entry_command="python3",
            install_command="python3 -m pip install",
            setup_code=PYTHON_SETUP_CODE,
        ),
        RuntimeProfile(
            language="go",
            name="Go 1.21",
            image="golang:1.21-alpine",
            extension="go",
            entry_command="go run",
            install_command="go mod tidy",
        ),
        RuntimeProfile(
            language="rust",
            name="Rust 1.75",
            image="rust:1.75-alpine",
            extension="rs",
            entry_command="rustc {source} -O -o /tmp/main && /tmp/main",
        ),
        RuntimeProfile(
            language="ruby",
            name="Ruby 3.2",
            image="ruby:3.2-alpine",
            extension="rb",
            entry_command="ruby",
            install_command="gem install",
        ),
        RuntimeProfile(
            language="php",
            name="PHP 8.2",
            image="php:8.2-cli-alpine",
            extension="php",
            entry_command="php",
        ),
    )
}


def get_runtime(language: str | None) -> RuntimeProfile | None:
    if not language:
        return None
    return RUNTIMES.get(language.lower())
