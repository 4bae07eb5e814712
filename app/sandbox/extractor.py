"""
Result artifact extraction.

After a program exits, a fixed set of well-known files is looked up in the
sandbox workspace, classified by extension, surfaced as output events and
deleted so nothing leaks into the next run.

Containers can hand the files over in two ways: the runtime's archive API
(one out-of-band call per file) or a generated shell script that base64
encodes every file between sentinel lines.  The script format is produced and
parsed here; picking one is the container backend's business.
"""

from __future__ import annotations

import posixpath
import shlex
from typing import TYPE_CHECKING, Sequence

from structlog import get_logger

from app.sandbox.codec import decode_b64, to_data_uri
from app.sandbox.models import OutputEvent, ResultArtifact, StreamName

if TYPE_CHECKING:
    from app.sandbox.base import Sandbox

logger = get_logger()

WELL_KNOWN_ARTIFACTS: tuple[str, ...] = (
    "output.png",
    "output.svg",
    "output.html",
    "output.json",
    "output.txt",
)

MIME_TYPES: dict[str, str] = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
    ".html": "text/html",
    ".json": "application/json",
    ".txt": "text/plain",
}

BEGIN_MARKER = "@@PLAYGROUND_ARTIFACT_BEGIN@@"
END_MARKER = "@@PLAYGROUND_ARTIFACT_END@@"


def classify(filename: str) -> tuple[str, bool]:
    """Return ``(mime, is_binary)``; images travel as data URIs, the rest as text."""
    ext = posixpath.splitext(filename.lower())[1]
    mime = MIME_TYPES.get(ext, "application/octet-stream")
    is_binary = mime.startswith("image/") or mime == "application/octet-stream"
    return mime, is_binary


def build_extraction_script(paths: Sequence[str]) -> str:
    """Shell script printing each existing file base64-encoded between sentinels."""
    quoted = " ".join(shlex.quote(path) for path in paths)
    return (
        f"for f in {quoted}; do\n"
        '  if [ -f "$f" ]; then\n'
        f'    echo "{BEGIN_MARKER} $(basename "$f")"\n'
        '    base64 "$f"\n'
        f'    echo "{END_MARKER} $(basename "$f")"\n'
        "  fi\n"
        "done\n"
    )


def parse_extraction_output(text: str) -> dict[str, bytes]:
    """Line-oriented scanner for the output of :func:`build_extraction_script`."""
    found: dict[str, bytes] = {}
    current: str | None = None
    buffer: list[str] = []

    for raw in text.splitlines():
        line = raw.strip()
        if current is None:
            if line.startswith(BEGIN_MARKER):
                current = line[len(BEGIN_MARKER):].strip()
                buffer = []
            continue
        if line.startswith(END_MARKER):
            name = line[len(END_MARKER):].strip()
            if name != current:
                logger.warning("Mismatched artifact sentinel", expected=current, got=name)
            else:
                try:
                    found[current] = decode_b64("".join(buffer))
                except ValueError as exc:
                    logger.warning("Skipping undecodable artifact", file=current, error=str(exc))
            current = None
            continue
        buffer.append(line)

    if current is not None:
        logger.warning("Truncated artifact block", file=current)
    return found


def artifact_to_event(artifact: ResultArtifact) -> OutputEvent:
    if artifact.is_binary:
        payload = to_data_uri(artifact.mime_kind, artifact.payload)
    else:
        payload = artifact.payload.decode("utf-8", errors="replace")
    return OutputEvent(stream=StreamName.STDOUT, payload=payload)


class ArtifactExtractor:
    """Collects (and then deletes) well-known result files from a sandbox."""

    def __init__(self, filenames: Sequence[str] = WELL_KNOWN_ARTIFACTS) -> None:
        self.filenames = tuple(filenames)

    async def collect(self, sandbox: Sandbox) -> list[ResultArtifact]:
        contents = await sandbox.read_files(self.filenames)
        artifacts: list[ResultArtifact] = []
        for name in self.filenames:
            if name not in contents:
                continue
            mime, is_binary = classify(name)
            artifacts.append(
                ResultArtifact(
                    filename=name,
                    mime_kind=mime,
                    is_binary=is_binary,
                    payload=contents[name],
                )
            )
        if contents:
            await sandbox.remove_files(list(contents))
            logger.debug("Artifacts collected", sandbox_id=sandbox.id, files=list(contents))
        return artifacts
