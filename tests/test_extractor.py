import base64
import shutil
import subprocess

import pytest

from app.sandbox.extractor import (
    BEGIN_MARKER,
    END_MARKER,
    ArtifactExtractor,
    artifact_to_event,
    build_extraction_script,
    classify,
    parse_extraction_output,
)
from app.sandbox.models import ResultArtifact, StreamName

from conftest import FakeSandbox


@pytest.mark.parametrize("name, mime, is_binary", [
    ("output.png", "image/png", True),
    ("output.svg", "image/svg+xml", True),
    ("output.html", "text/html", False),
    ("output.json", "application/json", False),
    ("output.txt", "text/plain", False),
    ("output.bin", "application/octet-stream", True),
])
def test_classify(name, mime, is_binary):
    assert classify(name) == (mime, is_binary)


def test_binary_artifacts_become_data_uris():
    event = artifact_to_event(ResultArtifact("output.png", "image/png", True, b"\x89PNG\r\n"))
    assert event.stream == StreamName.STDOUT
    assert event.payload == "data:image/png;base64," + base64.b64encode(b"\x89PNG\r\n").decode()


def test_text_artifacts_are_sent_raw():
    event = artifact_to_event(ResultArtifact("output.html", "text/html", False, b"<p>hi</p>"))
    assert event.payload == "<p>hi</p>"


def test_parse_ignores_noise_and_truncated_blocks():
    text = (
        "noise before\n"
        f"{BEGIN_MARKER} output.txt\n"
        "aGVs\n"
        "bG8=\n"
        f"{END_MARKER} output.txt\n"
        f"{BEGIN_MARKER} output.png\n"
        "iVBO\n"
    )
    assert parse_extraction_output(text) == {"output.txt": b"hello"}


def test_parse_skips_mismatched_sentinels():
    text = f"{BEGIN_MARKER} a.txt\naGVsbG8=\n{END_MARKER} b.txt\n"
    assert parse_extraction_output(text) == {}


@pytest.mark.skipif(shutil.which("base64") is None, reason="needs coreutils base64")
def test_script_output_round_trips(tmp_path):
    png = bytes(range(256)) * 300
    (tmp_path / "output.png").write_bytes(png)
    (tmp_path / "output.txt").write_text("done")
    script = build_extraction_script([
        str(tmp_path / "output.png"),
        str(tmp_path / "output.txt"),
        str(tmp_path / "output.json"),
    ])

    result = subprocess.run(["/bin/sh", "-c", script], check=True, capture_output=True)

    assert parse_extraction_output(result.stdout.decode()) == {"output.png": png, "output.txt": b"done"}


@pytest.mark.asyncio
async def test_collect_returns_and_removes_known_files():
    sandbox = FakeSandbox()
    sandbox.files["/tmp/output.json"] = b'{"a": 1}'
    sandbox.files["/tmp/output.png"] = b"\x89PNG"
    sandbox.files["/tmp/notes.md"] = b"# kept"

    artifacts = await ArtifactExtractor().collect(sandbox)

    assert [a.filename for a in artifacts] == ["output.png", "output.json"]
    assert artifacts[0].is_binary and not artifacts[1].is_binary
    assert sandbox.files == {"/tmp/notes.md": b"# kept"}


@pytest.mark.asyncio
async def test_collect_with_nothing_to_find():
    assert await ArtifactExtractor().collect(FakeSandbox()) == []
