import asyncio
import io
import tarfile
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock, Mock, patch

import pytest
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from app.sandbox.docker_backend import (
    KEEP_ALIVE_COMMAND,
    KILL_ALL_COMMAND,
    DockerSandbox,
    DockerSandboxBackend,
)
from app.sandbox.engine import ExecutionEngine
from app.sandbox.errors import (
    ProvisioningError,
    ReadError,
    SandboxLostError,
    StartError,
    WriteError,
)
from app.sandbox.models import ExecutionRequest, ExitEvent
from app.sandbox.selection import select_backend


def _container(status="running"):
    container = MagicMock()
    container.id = "c0ffee1234567890"
    container.status = status
    container.exec_run.return_value = Mock(exit_code=0, output=b"")
    return container


def _tar_bytes(name: str, data: bytes) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        info = tarfile.TarInfo(name=name)
        info.size = len(data)
        tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


@pytest.mark.asyncio
async def test_create_applies_limits_and_labels(sandbox_config):
    client = MagicMock()
    container = _container()
    client.containers.create.return_value = container
    backend = DockerSandboxBackend(sandbox_config, client)

    sandbox = await backend.create("session-1", "python:3.11-slim", "python")

    kwargs = client.containers.create.call_args.kwargs
    assert kwargs["image"] == "python:3.11-slim"
    assert kwargs["command"] == KEEP_ALIVE_COMMAND
    assert kwargs["mem_limit"] == "512m"
    assert kwargs["cpu_period"] == 100000
    assert kwargs["cpu_quota"] == 50000
    assert kwargs["network_mode"] == "none"
    assert kwargs["auto_remove"] is True
    assert kwargs["labels"] == {"playground.session": "session-1"}
    container.start.assert_called_once()
    assert sandbox.id == container.id
    assert sandbox.mode.value == "Container"


@pytest.mark.asyncio
async def test_dependency_installation_enables_network(sandbox_config):
    sandbox_config.install_dependencies = True
    client = MagicMock()
    client.containers.create.return_value = _container()

    await DockerSandboxBackend(sandbox_config, client).create("s", "node:20-alpine")

    assert client.containers.create.call_args.kwargs["network_mode"] == "bridge"


@pytest.mark.asyncio
async def test_missing_image_is_pulled_once(sandbox_config):
    client = MagicMock()
    container = _container()
    client.containers.create.side_effect = [ImageNotFound("no such image"), container]

    sandbox = await DockerSandboxBackend(sandbox_config, client).create("s", "golang:1.21-alpine")

    client.images.pull.assert_called_once_with("golang:1.21-alpine")
    assert sandbox.container is container


@pytest.mark.asyncio
async def test_create_failure_is_provisioning_error(sandbox_config):
    sandbox_config.pull_missing_images = False
    client = MagicMock()
    client.containers.create.side_effect = ImageNotFound("No such image: nope:1")

    with pytest.raises(ProvisioningError) as excinfo:
        await DockerSandboxBackend(sandbox_config, client).create("s", "nope:1")

    message = str(excinfo.value)
    assert message.startswith("[Container] Failed to initialize sandbox")
    assert "nope:1" in message


@pytest.mark.asyncio
async def test_connect_failure_is_provisioning_error(sandbox_config):
    with patch("app.sandbox.docker_backend.docker.from_env", side_effect=DockerException("socket missing")):
        with pytest.raises(ProvisioningError) as excinfo:
            await DockerSandboxBackend.connect(sandbox_config)

    assert "socket missing" in str(excinfo.value)


@pytest.mark.asyncio
async def test_auto_selection_falls_back_to_local(sandbox_config):
    with patch("app.sandbox.docker_backend.docker.from_env", side_effect=DockerException("down")):
        backend = await select_backend(sandbox_config)

    assert backend.mode.value == "Local"


@pytest.mark.asyncio
async def test_container_selection_does_not_fall_back(sandbox_config):
    sandbox_config.backend = "container"
    with patch("app.sandbox.docker_backend.docker.from_env", side_effect=DockerException("down")):
        with pytest.raises(ProvisioningError):
            await select_backend(sandbox_config)


@pytest.mark.asyncio
async def test_write_file_uses_base64_redirection(sandbox_config):
    container = _container()
    sandbox = DockerSandbox(container, sandbox_config)

    await sandbox.write_file("/tmp/code.py", b"print('hi')")

    cmd = container.exec_run.call_args.args[0]
    assert cmd[:2] == ["/bin/sh", "-c"]
    assert cmd[2] == "printf '%s' 'cHJpbnQoJ2hpJyk=' | base64 -d > /tmp/code.py"


@pytest.mark.asyncio
async def test_write_failure_raises_write_error(sandbox_config):
    container = _container()
    container.exec_run.return_value = Mock(exit_code=1, output=b"read-only file system")
    sandbox = DockerSandbox(container, sandbox_config)

    with pytest.raises(WriteError) as excinfo:
        await sandbox.write_file("/tmp/code.py", b"x")

    assert "read-only file system" in str(excinfo.value)


@pytest.mark.asyncio
async def test_exec_demultiplexes_and_polls_for_exit(sandbox_config):
    container = _container()
    api = container.client.api
    api.exec_create.return_value = {"Id": "exec-1"}
    api.exec_start.return_value = iter([(b"out", None), (None, b"err"), (None, None), (b"more", None)])
    api.exec_inspect.side_effect = [{"Running": True}, {"Running": False, "ExitCode": 3}]
    sandbox = DockerSandbox(container, sandbox_config)

    handle = await sandbox.exec("python3 /tmp/code.py")
    frames = [frame async for frame in handle.frames()]
    exit_code = await handle.wait()

    assert frames == [(b"out", None), (None, b"err"), (b"more", None)]
    assert exit_code == 3
    assert api.exec_create.call_args.args[1] == ["/bin/sh", "-c", "python3 /tmp/code.py"]
    api.exec_start.assert_called_once_with("exec-1", stream=True, demux=True)


@pytest.mark.asyncio
async def test_exec_on_vanished_container_is_lost(sandbox_config):
    container = _container()
    container.client.api.exec_create.side_effect = NotFound("No such container")
    sandbox = DockerSandbox(container, sandbox_config)

    with pytest.raises(SandboxLostError):
        await sandbox.exec("true")


@pytest.mark.asyncio
async def test_exec_api_error_is_start_error(sandbox_config):
    container = _container()
    container.client.api.exec_create.side_effect = APIError("conflict")
    sandbox = DockerSandbox(container, sandbox_config)

    with pytest.raises(StartError):
        await sandbox.exec("true")


@pytest.mark.asyncio
async def test_wait_on_vanished_exec_is_lost(sandbox_config):
    container = _container()
    api = container.client.api
    api.exec_create.return_value = {"Id": "exec-1"}
    api.exec_start.return_value = iter([])
    api.exec_inspect.side_effect = NotFound("no such exec")
    handle = await DockerSandbox(container, sandbox_config).exec("true")

    with pytest.raises(SandboxLostError):
        await handle.wait()


@pytest.mark.asyncio
async def test_kill_stops_programs_but_not_container(sandbox_config):
    container = _container()
    api = container.client.api
    api.exec_create.return_value = {"Id": "exec-1"}
    api.exec_start.return_value = iter([])
    handle = await DockerSandbox(container, sandbox_config).exec("sleep 100")

    await handle.kill()

    container.exec_run.assert_called_once_with(KILL_ALL_COMMAND)
    container.stop.assert_not_called()


@pytest.mark.asyncio
async def test_read_files_through_archive(sandbox_config):
    container = _container()
    png = bytes(range(256)) * 10

    def get_archive(path):
        if path == "/tmp/output.png":
            return iter([_tar_bytes("output.png", png)]), {}
        raise NotFound("no such file")

    container.get_archive.side_effect = get_archive
    sandbox = DockerSandbox(container, sandbox_config)

    found = await sandbox.read_files(["output.png", "output.txt"])

    assert found == {"output.png": png}


@pytest.mark.asyncio
async def test_read_files_through_script(sandbox_config):
    sandbox_config.artifact_retrieval = "script"
    container = _container()
    container.exec_run.return_value = Mock(
        exit_code=0,
        output=b"@@PLAYGROUND_ARTIFACT_BEGIN@@ output.txt\naGVsbG8=\n@@PLAYGROUND_ARTIFACT_END@@ output.txt\n",
    )
    sandbox = DockerSandbox(container, sandbox_config)

    found = await sandbox.read_files(["output.png", "output.txt"])

    assert found == {"output.txt": b"hello"}
    container.get_archive.assert_not_called()


@pytest.mark.asyncio
async def test_ensure_alive_detects_stopped_container(sandbox_config):
    container = _container(status="exited")
    sandbox = DockerSandbox(container, sandbox_config)

    with pytest.raises(SandboxLostError) as excinfo:
        await sandbox.ensure_alive()

    assert "exited" in str(excinfo.value)
    assert not sandbox.is_alive


@pytest.mark.asyncio
async def test_destroy_is_idempotent(sandbox_config):
    container = _container()
    sandbox = DockerSandbox(container, sandbox_config)

    await sandbox.destroy()
    await sandbox.destroy()

    container.stop.assert_called_once_with(timeout=1)


@pytest.mark.asyncio
async def test_destroy_tolerates_vanished_container(sandbox_config):
    container = _container()
    container.stop.side_effect = NotFound("gone")
    sandbox = DockerSandbox(container, sandbox_config)

    await sandbox.destroy()

    container.remove.assert_not_called()
    assert not sandbox.is_alive


@pytest.mark.asyncio
async def test_cleanup_orphans_by_label(sandbox_config):
    client = MagicMock()
    orphans = [_container(), _container()]
    client.containers.list.return_value = orphans

    removed = await DockerSandboxBackend(sandbox_config, client).cleanup_orphans()

    assert removed == 2
    client.containers.list.assert_called_once_with(all=True, filters={"label": "playground.session"})
    for orphan in orphans:
        orphan.remove.assert_called_once_with(force=True)


@pytest.mark.asyncio
async def test_archive_api_error_is_read_error(sandbox_config):
    container = _container()
    container.get_archive.side_effect = APIError("archive endpoint unavailable")
    sandbox = DockerSandbox(container, sandbox_config)

    with pytest.raises(ReadError) as excinfo:
        await sandbox.read_files(["output.png"])

    assert "archive endpoint unavailable" in str(excinfo.value)


@pytest.mark.asyncio
async def test_archive_on_vanished_container_is_lost(sandbox_config):
    container = _container()
    container.get_archive.side_effect = NotFound("No such container: c0ffee1234567890")
    sandbox = DockerSandbox(container, sandbox_config)

    with pytest.raises(SandboxLostError):
        await sandbox.read_files(["output.png"])


@pytest.mark.asyncio
async def test_run_still_exits_when_artifact_read_fails(sandbox_config):
    container = _container()
    api = container.client.api
    api.exec_create.return_value = {"Id": "exec-1"}
    api.exec_start.return_value = iter([(b"hi\n", None)])
    api.exec_inspect.return_value = {"Running": False, "ExitCode": 0}
    container.get_archive.side_effect = APIError("boom")
    events = []

    async def emit(event):
        events.append(event)

    request = ExecutionRequest(
        source_code="print('hi')", file_extension="py", entry_command="python3", language="python"
    )
    outcome = await ExecutionEngine(DockerSandbox(container, sandbox_config), emit, sandbox_config).run(request)

    assert outcome.exit_code == 0
    assert events[-1] == ExitEvent(code=0)


@pytest.mark.asyncio
async def test_concurrent_hanging_runs_do_not_starve_the_executor(sandbox_config):
    # Fewer default-executor workers than hanging runs: every kill, poll and
    # archive read still has to get through.
    asyncio.get_running_loop().set_default_executor(ThreadPoolExecutor(max_workers=2))
    sandbox_config.execution_timeout = 0.2

    def _hanging_sandbox():
        killed = threading.Event()
        container = _container()
        api = container.client.api

        def exec_run(cmd, *args, **kwargs):
            if cmd == KILL_ALL_COMMAND:
                killed.set()
            return Mock(exit_code=0, output=b"")

        def stream():
            yield b"started\n", None
            killed.wait(10)

        container.exec_run.side_effect = exec_run
        container.get_archive.side_effect = NotFound("no such file")
        api.exec_create.return_value = {"Id": "exec-hang"}
        api.exec_start.side_effect = lambda *args, **kwargs: stream()
        api.exec_inspect.side_effect = lambda exec_id: {"Running": not killed.is_set(), "ExitCode": 137}
        return DockerSandbox(container, sandbox_config)

    async def emit(event):
        pass

    request = ExecutionRequest(
        source_code="while True: pass", file_extension="py", entry_command="python3", language="python"
    )
    runs = [
        ExecutionEngine(_hanging_sandbox(), emit, sandbox_config).run(request)
        for _ in range(4)
    ]

    outcomes = await asyncio.wait_for(asyncio.gather(*runs), 10)

    assert all(outcome.timed_out for outcome in outcomes)
    assert all(outcome.exit_code == 137 for outcome in outcomes)
