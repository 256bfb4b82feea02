"""Integration tests running the conversion service against stub engines."""

import asyncio
import json
import time
from pathlib import Path

import pytest

from conftest import COPY_ENGINE, CWD_ENGINE, FAILING_ENGINE, FORKING_ENGINE, SILENT_ENGINE, SLEEPING_ENGINE
from pandoc_service.conversion import ConversionRequest, ConversionService, PandocConverter, build_invocation
from pandoc_service.conversion.workspace import create_workspace
from pandoc_service.errors import ExecutionError, PathTraversalError, ValidationError, WorkspaceError


def _service(engine, temp_root, timeout=10.0, **kwargs):
    converter = PandocConverter(str(engine), "/srv/pandoc-data", timeout)
    return ConversionService(converter, temp_root=temp_root, **kwargs)


def _request(document=b"# Hello", resources=None, template="default"):
    return ConversionRequest(document=document, resources=resources or {}, template=template)


def _is_running(pid: int) -> bool:
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except OSError:
        return False
    return stat.rsplit(")", 1)[1].split()[0] != "Z"


@pytest.mark.unit
def test_build_invocation(temp_root):
    ws = create_workspace(temp_root)

    invocation = build_invocation("/usr/bin/pandoc", "/.pandoc", ws, "eisvogel")

    assert invocation.argv == [
        "/usr/bin/pandoc",
        str(ws.input_path),
        f"--output={ws.output_path}",
        "--data-dir=/.pandoc",
        "--from=markdown+yaml_metadata_block+raw_html+emoji",
        "--sandbox",
        "--template=eisvogel",
    ]
    assert invocation.cwd == ws.root


@pytest.mark.unit
def test_build_invocation_without_template(temp_root):
    ws = create_workspace(temp_root)

    invocation = build_invocation("/usr/bin/pandoc", "/.pandoc", ws)

    assert not any(arg.startswith("--template") for arg in invocation.args)


@pytest.mark.integration
def test_convert_returns_engine_output(make_engine, temp_root, tmp_path):
    engine = make_engine(COPY_ENGINE)
    service = _service(engine, temp_root)

    content = asyncio.run(service.convert(_request(resources={"img/logo.png": b"png"})))

    assert content == b"# Hello"
    args = json.loads((tmp_path / "engine.args").read_text())
    assert args[0].endswith(".md")
    assert "--data-dir=/srv/pandoc-data" in args
    assert "--sandbox" in args
    assert "--template=default" in args
    assert list(temp_root.iterdir()) == []


@pytest.mark.integration
def test_engine_runs_inside_workspace(make_engine, temp_root):
    """Resources are resolvable relative to the engine's working directory."""
    engine = make_engine(CWD_ENGINE)
    service = _service(engine, temp_root)

    cwd = asyncio.run(service.convert(_request())).decode()

    assert cwd.startswith(str(temp_root.resolve()))
    assert "pandocserver_" in cwd


@pytest.mark.integration
def test_concurrent_conversions_use_distinct_workspaces(make_engine, temp_root):
    engine = make_engine(CWD_ENGINE)
    service = _service(engine, temp_root)

    async def scenario():
        return await asyncio.gather(*(service.convert(_request()) for _ in range(8)))

    results = asyncio.run(scenario())

    assert len(set(results)) == 8
    assert list(temp_root.iterdir()) == []


@pytest.mark.integration
def test_path_traversal_writes_nothing(make_engine, temp_root, tmp_path):
    engine = make_engine(COPY_ENGINE)
    service = _service(engine, temp_root)

    with pytest.raises(PathTraversalError):
        asyncio.run(service.convert(_request(resources={"ok.txt": b"1", "../secret.txt": b"x"})))

    assert not (temp_root / "secret.txt").exists()
    assert list(temp_root.iterdir()) == []
    assert not list(tmp_path.rglob("secret.txt"))
    # the engine never ran
    assert not (tmp_path / "engine.args").exists()


@pytest.mark.integration
def test_engine_failure_carries_stderr(make_engine, temp_root):
    engine = make_engine(FAILING_ENGINE)
    service = _service(engine, temp_root)

    with pytest.raises(ExecutionError) as excinfo:
        asyncio.run(service.convert(_request()))

    assert excinfo.value.stderr == "boom"
    assert "boom" in excinfo.value.detail
    assert "exit status 1" in excinfo.value.detail
    assert list(temp_root.iterdir()) == []


@pytest.mark.integration
def test_missing_engine_is_execution_error(tmp_path, temp_root):
    service = _service(tmp_path / "no-such-pandoc", temp_root)

    with pytest.raises(ExecutionError, match="could not execute command"):
        asyncio.run(service.convert(_request()))

    assert list(temp_root.iterdir()) == []


@pytest.mark.integration
def test_engine_without_output_is_workspace_error(make_engine, temp_root):
    engine = make_engine(SILENT_ENGINE)
    service = _service(engine, temp_root)

    with pytest.raises(WorkspaceError):
        asyncio.run(service.convert(_request()))

    assert list(temp_root.iterdir()) == []


@pytest.mark.integration
def test_deadline_kills_hung_engine(make_engine, temp_root):
    engine = make_engine(SLEEPING_ENGINE)
    service = _service(engine, temp_root, timeout=0.5)

    start = time.monotonic()
    with pytest.raises(ExecutionError, match="timed out"):
        asyncio.run(service.convert(_request()))
    elapsed = time.monotonic() - start

    assert elapsed < 5
    assert list(temp_root.iterdir()) == []


@pytest.mark.integration
@pytest.mark.skipif(not Path("/proc/self/stat").exists(), reason="needs /proc")
def test_deadline_kills_engine_helpers(make_engine, temp_root, tmp_path):
    """Helpers holding the engine's pipes do not stretch the deadline and do not outlive it."""
    engine = make_engine(FORKING_ENGINE)
    service = _service(engine, temp_root, timeout=1.0)

    start = time.monotonic()
    with pytest.raises(ExecutionError, match="timed out"):
        asyncio.run(service.convert(_request()))
    elapsed = time.monotonic() - start

    assert elapsed < 5
    helper_pid = int((tmp_path / "helper.pid").read_text())
    deadline = time.monotonic() + 3
    while _is_running(helper_pid) and time.monotonic() < deadline:
        time.sleep(0.05)
    assert not _is_running(helper_pid)
    assert list(temp_root.iterdir()) == []


@pytest.mark.integration
def test_cancellation_cleans_up(make_engine, temp_root, tmp_path):
    engine = make_engine(SLEEPING_ENGINE)
    service = _service(engine, temp_root, timeout=30)

    async def scenario():
        task = asyncio.create_task(service.convert(_request()))
        for _ in range(100):
            if (tmp_path / "engine.args").exists():
                break
            await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    start = time.monotonic()
    asyncio.run(scenario())

    assert time.monotonic() - start < 10
    assert list(temp_root.iterdir()) == []


@pytest.mark.unit
@pytest.mark.parametrize(
    "request_kwargs",
    [{"document": b""}, {"template": ""}],
)
def test_missing_fields_rejected_before_workspace(temp_root, tmp_path, request_kwargs):
    service = _service(tmp_path / "unused", temp_root)

    with pytest.raises(ValidationError):
        asyncio.run(service.convert(_request(**request_kwargs)))

    assert list(temp_root.iterdir()) == []


@pytest.mark.unit
def test_resource_limits(temp_root, tmp_path):
    service = _service(tmp_path / "unused", temp_root, max_resources=2, max_request_bytes=16)

    with pytest.raises(ValidationError, match="too many resources"):
        asyncio.run(service.convert(_request(resources={"a": b"", "b": b"", "c": b""})))
    with pytest.raises(ValidationError, match="too large"):
        asyncio.run(service.convert(_request(resources={"a": b"x" * 32})))
