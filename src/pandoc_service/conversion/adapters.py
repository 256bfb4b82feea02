import asyncio
import contextlib
import os
import signal

from loguru import logger

from ..errors import ExecutionError
from .interfaces import ConverterGateway, EngineInvocation, WorkspacePaths
from .workspace import read_output

INPUT_FORMAT = "--from=markdown+yaml_metadata_block+raw_html+emoji"
KILL_GRACE_SECONDS = 2.0


def build_invocation(
    pandoc_path: str, data_dir: str, workspace: WorkspacePaths, template: str = ""
) -> EngineInvocation:
    # pandoc looks for templates in ~/.pandoc; the service may run as another
    # user, so the data dir is always passed explicitly.
    args = [
        str(workspace.input_path),
        f"--output={workspace.output_path}",
        f"--data-dir={data_dir}",
        INPUT_FORMAT,
        "--sandbox",
    ]
    if template:
        args.append(f"--template={template}")
    return EngineInvocation(executable=pandoc_path, args=args, cwd=workspace.root)


class PandocConverter(ConverterGateway):
    def __init__(self, pandoc_path: str, data_dir: str, command_timeout: float) -> None:
        self._pandoc_path = pandoc_path
        self._data_dir = data_dir
        self._timeout = command_timeout

    async def convert(self, workspace: WorkspacePaths, template: str) -> bytes:
        invocation = build_invocation(self._pandoc_path, self._data_dir, workspace, template)
        logger.debug("going to call pandoc", args=",".join(invocation.args))

        stdout, stderr = await run_engine(invocation, self._timeout)
        logger.debug("STDOUT", out=stdout.decode("utf-8", errors="replace"))
        logger.debug("STDERR", out=stderr.decode("utf-8", errors="replace"))

        return read_output(workspace)


async def run_engine(invocation: EngineInvocation, timeout: float) -> tuple[bytes, bytes]:
    """Run the engine and return its (stdout, stderr).

    The engine runs in its own process group. When ``timeout`` expires or the
    awaiting task is cancelled the whole group is killed, so helpers the
    engine spawned (pdflatex and friends) go with it; stdin is closed so the
    engine never waits on the client.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *invocation.argv,
            cwd=str(invocation.cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as e:
        raise ExecutionError(f"could not execute command {invocation.executable}: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await _kill(proc)
        raise ExecutionError(f"could not execute command: timed out after {timeout:g}s") from None
    except BaseException:
        await _kill(proc)
        raise

    # helpers left behind by an engine that exited on its own
    _kill_group(proc.pid)

    if proc.returncode != 0:
        raise ExecutionError(
            f"could not execute command: exit status {proc.returncode}",
            stderr=stderr.decode("utf-8", errors="replace"),
        )
    return stdout, stderr


def _kill_group(pid: int) -> None:
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(pid, signal.SIGKILL)


async def _kill(proc: asyncio.subprocess.Process) -> None:
    # The process has usually exited already.
    _kill_group(proc.pid)
    with contextlib.suppress(ProcessLookupError):
        proc.kill()
    try:
        await asyncio.wait_for(asyncio.shield(proc.wait()), timeout=KILL_GRACE_SECONDS)
    except asyncio.TimeoutError:
        logger.warning("engine did not exit after kill", pid=proc.pid)
