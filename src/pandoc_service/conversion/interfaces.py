from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Protocol


@dataclass(frozen=True)
class ConversionRequest:
    document: bytes
    resources: Mapping[str, bytes] = field(default_factory=dict)
    template: str = ""


@dataclass(frozen=True)
class WorkspacePaths:
    root: Path
    input_path: Path
    output_dir: Path
    output_path: Path


@dataclass(frozen=True)
class EngineInvocation:
    executable: str
    args: list[str]
    cwd: Path

    @property
    def argv(self) -> list[str]:
        return [self.executable, *self.args]


class ConverterGateway(Protocol):
    async def convert(self, workspace: WorkspacePaths, template: str) -> bytes:
        """Render ``workspace.input_path`` into bytes.

        The workspace is already populated; callers own its lifetime.
        """


class Notifier(Protocol):
    def send(self, subject: str, message: str) -> None:
        """Deliver an operator notification. Blocking; raise on failure."""
