"""Error variants shared by the conversion core and the HTTP boundary.

Every failure carries the status code and the message a client is allowed to
see. ``detail`` is for server-side logs only and may contain paths or engine
output.
"""


CONVERT_FAILED_MESSAGE = "error converting markdown"


class ServiceError(Exception):
    kind = "internal"
    status_code = 500
    user_message = "internal server error"

    def __init__(self, detail: str = "", *, user_message: str | None = None) -> None:
        super().__init__(detail or self.user_message)
        self.detail = detail
        if user_message is not None:
            self.user_message = user_message

    @property
    def is_server_fault(self) -> bool:
        return self.status_code >= 500

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind!r}, status_code={self.status_code}, detail={self.detail!r})"


class ValidationError(ServiceError):
    """A required request field is missing or the request is malformed."""

    kind = "validation"
    status_code = 400
    user_message = "invalid input"


class PathTraversalError(ServiceError):
    """A resource path resolves outside of the conversion workspace."""

    kind = "path_traversal"
    status_code = 400
    user_message = CONVERT_FAILED_MESSAGE


class WorkspaceError(ServiceError):
    """Filesystem failure inside the workspace that the caller did not cause."""

    kind = "workspace"
    status_code = 500
    user_message = CONVERT_FAILED_MESSAGE


class ExecutionError(ServiceError):
    """The engine could not be launched, exited non-zero or ran past its deadline."""

    kind = "execution"
    status_code = 500
    user_message = CONVERT_FAILED_MESSAGE

    def __init__(self, detail: str = "", *, stderr: str = "") -> None:
        super().__init__(f"{detail}: {stderr}" if stderr else detail)
        self.stderr = stderr


class AuthorizationError(ServiceError):
    """Raised (and logged) when a TLS peer is refused at the transport layer."""

    kind = "authorization"
    status_code = 403
    user_message = "access denied"

    def __init__(self, subjects: frozenset[str] | set[str] = frozenset()) -> None:
        self.subjects = frozenset(subjects)
        listing = ", ".join(sorted(self.subjects))
        super().__init__(f"access denied, no valid certificate provided. Got the following subjects: {listing}")


class ConfigError(ServiceError):
    """Invalid configuration; the service refuses to start."""

    kind = "config"
