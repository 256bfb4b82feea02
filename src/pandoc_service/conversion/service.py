from pathlib import Path

from loguru import logger

from ..errors import ValidationError
from .interfaces import ConversionRequest, ConverterGateway
from .workspace import create_workspace, remove_workspace, write_input, write_resources


class ConversionService:
    """Core domain service running one conversion per call.

    This service is framework-agnostic. Each call owns a fresh workspace
    that is removed before the call returns, whatever the outcome, so
    concurrent calls share nothing but the temp root.
    """

    def __init__(
        self,
        converter: ConverterGateway,
        *,
        temp_root: str | Path | None = None,
        max_resources: int = 1000,
        max_request_bytes: int = 50 * 1024 * 1024,
    ) -> None:
        self._converter = converter
        self._temp_root = temp_root or None
        self._max_resources = max_resources
        self._max_request_bytes = max_request_bytes

    def validate(self, request: ConversionRequest) -> None:
        if not request.document or not request.template:
            raise ValidationError("input and template are required")
        if len(request.resources) > self._max_resources:
            raise ValidationError(f"too many resources: {len(request.resources)} > {self._max_resources}")
        total = len(request.document) + sum(len(v) for v in request.resources.values())
        if total > self._max_request_bytes:
            raise ValidationError(f"request too large: {total} > {self._max_request_bytes} bytes")

    async def convert(self, request: ConversionRequest) -> bytes:
        self.validate(request)

        workspace = create_workspace(self._temp_root)
        logger.debug("created workspace", workspace=str(workspace.root))
        try:
            write_input(workspace, request.document)
            # pandoc's pdf writer ignores --resource-path, so resources live
            # relative to the workspace root, which is the engine's cwd.
            write_resources(workspace.root, request.resources)
            return await self._converter.convert(workspace, request.template)
        finally:
            remove_workspace(workspace.root)
