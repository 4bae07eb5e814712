"""Base64 helpers for moving file bytes across a text-only exec channel."""

from __future__ import annotations

import base64
import binascii
import shlex
from typing import Iterator

# Linux caps a single argv string at 128 KiB; stay well below and keep
# chunks a multiple of 4 so every chunk decodes on its own.
CHUNK_SIZE = 65536


def encode_b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def decode_b64(text: str) -> bytes:
    """Strictly decode base64 text, tolerating embedded line breaks."""
    cleaned = "".join(text.split())
    try:
        return base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"Invalid base64 payload: {exc}") from exc


def to_data_uri(mime: str, data: bytes) -> str:
    return f"data:{mime};base64,{encode_b64(data)}"


def iter_b64_chunks(encoded: str, size: int = CHUNK_SIZE) -> Iterator[str]:
    if size % 4:
        raise ValueError("chunk size must be a multiple of 4")
    if not encoded:
        yield ""
        return
    for start in range(0, len(encoded), size):
        yield encoded[start:start + size]


def build_write_commands(path: str, data: bytes) -> list[str]:
    """
    Shell commands that materialise ``data`` at ``path`` via base64 redirection.

    The first command truncates the target, later ones append.
    """
    target = shlex.quote(path)
    commands = []
    for index, chunk in enumerate(iter_b64_chunks(encode_b64(data))):
        redirect = ">" if index == 0 else ">>"
        commands.append(f"printf '%s' '{chunk}' | base64 -d {redirect} {target}")
    return commands
