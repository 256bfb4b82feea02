"""Ephemeral per-request workspaces.

A workspace is a uniquely named directory under the temp root holding the
Markdown input, an ``output`` directory and the caller's resource files.
Resource paths are untrusted: every destination is normalized and checked to
stay inside the workspace before anything is written.
"""

import errno
import os
import secrets
import shutil
import string
import tempfile
from pathlib import Path
from typing import Mapping

from loguru import logger

from ..errors import PathTraversalError, ServiceError, ValidationError, WorkspaceError
from .interfaces import WorkspacePaths

WORKSPACE_PREFIX = "pandocserver_"
NAME_LENGTH = 10
_LETTERS = string.ascii_letters
OUTPUT_DIR_NAME = "output"


def random_name(length: int = NAME_LENGTH) -> str:
    # secrets uses the OS CSPRNG; no shared seed between concurrent requests.
    return "".join(secrets.choice(_LETTERS) for _ in range(length))


def create_workspace(temp_root: str | os.PathLike | None = None) -> WorkspacePaths:
    """Create the workspace directory tree and return its paths.

    The output file is only named here; the engine creates it.
    """
    base = Path(temp_root or tempfile.gettempdir()).resolve()
    root = base / f"{WORKSPACE_PREFIX}{random_name()}"
    try:
        root.mkdir(mode=0o750)
    except OSError as e:
        raise WorkspaceError(f"could not create dir {root}: {e}") from e

    try:
        output_dir = root / OUTPUT_DIR_NAME
        output_dir.mkdir(mode=0o750)
    except OSError as e:
        remove_workspace(root)
        raise WorkspaceError(f"could not create output directory: {e}") from e

    return WorkspacePaths(
        root=root,
        input_path=root / f"{random_name()}.md",
        output_dir=output_dir,
        output_path=output_dir / f"{random_name()}.pdf",
    )


def write_input(paths: WorkspacePaths, document: bytes) -> None:
    try:
        _write_private(paths.input_path, document)
    except OSError as e:
        raise WorkspaceError(f"could not create inputfile: {e}") from e


def resolve_resource_path(root: Path, relative_path: str) -> Path:
    """Join ``relative_path`` onto ``root`` and ensure the result stays inside it.

    Normalization is lexical: ``..`` segments are collapsed without touching
    the filesystem, and absolute inputs replace the root and are rejected.
    """
    root_str = os.path.normpath(str(root))
    candidate = os.path.normpath(os.path.join(root_str, relative_path))
    if "\x00" in relative_path or candidate == root_str or os.path.commonpath([root_str, candidate]) != root_str:
        raise PathTraversalError(
            f"tried to access file {candidate} which is outside the current working directory ({root_str})"
        )
    return Path(candidate)


def write_resources(root: Path, resources: Mapping[str, bytes]) -> list[Path]:
    """Materialize resource files inside the workspace.

    All destinations are checked before the first write, so a single escaping
    or conflicting key aborts the request without writing any resource.
    """
    destinations = [(resolve_resource_path(root, name), content) for name, content in resources.items()]
    _check_layout(root, [destination for destination, _ in destinations])

    written: list[Path] = []
    for destination, content in destinations:
        try:
            destination.parent.mkdir(mode=0o750, parents=True, exist_ok=True)
        except OSError as e:
            raise _resource_error(f"could not create dir path for {destination}", e) from e
        try:
            _write_private(destination, content)
        except OSError as e:
            raise _resource_error(f"could not create resource file {destination}", e) from e
        logger.debug("created resource file", filename=str(destination))
        written.append(destination)
    return written


def _check_layout(root: Path, destinations: list[Path]) -> None:
    base = Path(os.path.normpath(str(root)))
    files = set(destinations)
    for destination in destinations:
        parts = destination.relative_to(base).parts
        if parts == (OUTPUT_DIR_NAME,):
            raise ValidationError(f"resource {destination} collides with the output directory")
        for parent in list(destination.parents)[: len(parts) - 1]:
            if parent in files:
                raise ValidationError(f"resource {parent} is used both as a file and as a directory")


def _resource_error(message: str, e: OSError) -> ServiceError:
    if e.errno == errno.ENAMETOOLONG:
        return ValidationError(f"{message}: name too long")
    return WorkspaceError(f"{message}: {e}")


def read_output(paths: WorkspacePaths) -> bytes:
    try:
        return paths.output_path.read_bytes()
    except OSError as e:
        raise WorkspaceError(f"could not read output file: {e}") from e


def remove_workspace(root: Path) -> None:
    shutil.rmtree(root, ignore_errors=True)
    if root.exists():
        logger.warning("could not remove workspace", workspace=str(root))


def _write_private(path: Path, content: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(content)
