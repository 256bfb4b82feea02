import asyncio
import base64
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import Base64Bytes, BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from pandoc_service import __version__
from pandoc_service.config import Settings, load_settings
from pandoc_service.conversion import ConversionRequest, ConversionService, Notifier, PandocConverter
from pandoc_service.errors import ServiceError, ValidationError
from pandoc_service.notify import NotificationDispatcher, build_notifier

CLOUDFLARE_IP_HEADER = "CF-Connecting-IP"
INTERNAL_ERROR_MESSAGE = "internal server error"
# nginx convention for a request the client abandoned
CLIENT_CLOSED_REQUEST = 499
SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "X-XSS-Protection": "1; mode=block",
}


class ConvertPayload(BaseModel):
    # byte fields travel as standard base64 strings
    input: Base64Bytes | None = None
    resources: dict[str, Base64Bytes] | None = None
    template: str | None = None


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


async def _wait_for_disconnect(request: Request) -> None:
    # the body has been read already, so the next message is the disconnect
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return


def create_app(
    settings: Settings | None = None,
    *,
    service: ConversionService | None = None,
    notifier: Notifier | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    ``service`` and ``notifier`` default to the pandoc-backed service and the
    notifiers configured in ``settings``.
    """
    settings = settings or Settings()
    if service is None:
        converter = PandocConverter(settings.pandoc_path, settings.pandoc_data_dir, settings.command_timeout)
        service = ConversionService(
            converter,
            temp_root=settings.temp_dir or None,
            max_resources=settings.max_resources,
            max_request_bytes=settings.max_request_bytes,
        )
    dispatcher = NotificationDispatcher(
        notifier if notifier is not None else build_notifier(settings.notifications),
        timeout=settings.notifications.timeout,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await dispatcher.start()
        try:
            yield
        finally:
            await dispatcher.stop()

    app = FastAPI(
        title="Pandoc Conversion Service",
        version=__version__,
        description="Renders Markdown plus resource files into PDF using pandoc.",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.service = service
    app.state.dispatcher = dispatcher

    def client_ip(request: Request) -> str:
        if settings.cloudflare:
            real_ip = request.headers.get(CLOUDFLARE_IP_HEADER)
            if real_ip:
                return real_ip
        return request.client.host if request.client else ""

    @app.middleware("http")
    async def _request_guard(request: Request, call_next):
        # Outermost boundary: logs every request and turns unexpected faults
        # into a generic 500 plus an operator notification.
        start = time.perf_counter()
        err = ""
        try:
            response = await call_next(request)
        except Exception as e:
            logger.opt(exception=e).error("PANIC! unexpected error on request")
            err = f"{type(e).__name__}: {e}"
            dispatcher.enqueue("ERROR", f"PANIC! {request.method} {request.url.path}: {err}")
            response = _error(status.HTTP_500_INTERNAL_SERVER_ERROR, INTERNAL_ERROR_MESSAGE)

        response.headers.update(SECURITY_HEADERS)

        level = "ERROR" if response.status_code > 499 else "INFO"
        logger.log(
            level,
            "REQUEST",
            ip=client_ip(request),
            method=request.method,
            uri=str(request.url.path),
            status=response.status_code,
            user_agent=request.headers.get("user-agent", ""),
            request_duration=round(time.perf_counter() - start, 6),
            request_length=request.headers.get("content-length", ""),
            response_size=response.headers.get("content-length", ""),
            err=err if response.status_code > 499 else "",
        )
        return response

    @app.exception_handler(ServiceError)
    async def _service_error(request: Request, exc: ServiceError) -> JSONResponse:
        if exc.is_server_fault:
            logger.error(f"error on request {request.url.path}: [{exc.kind}] {exc.detail}")
            dispatcher.enqueue("ERROR", f"{request.method} {request.url.path}: [{exc.kind}] {exc.detail}")
        else:
            logger.info(f"rejected request {request.url.path}: [{exc.kind}] {exc.detail}")
        return _error(exc.status_code, exc.user_message)

    @app.exception_handler(RequestValidationError)
    async def _invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.info(f"invalid request body on {request.url.path}: {exc.errors()}")
        return _error(status.HTTP_400_BAD_REQUEST, ValidationError.user_message)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        message = "page not found" if exc.status_code == 404 else str(exc.detail).lower()
        return _error(exc.status_code, message)

    @app.get("/health")
    def health() -> dict[str, str]:
        """Basic health check endpoint."""
        return {"status": "ok"}

    @app.post("/convert")
    async def convert(payload: ConvertPayload, http_request: Request) -> Response:
        """Render the base64 encoded Markdown ``input`` into a PDF.

        ``resources`` maps paths relative to the document to base64 file
        contents; ``template`` names a pandoc template from the data dir.
        Returns ``{"content": <base64 pdf>}``. A client that disconnects
        cancels its conversion, which kills the engine.
        """
        if not payload.input or not payload.template:
            raise ValidationError("input and template are required")

        request = ConversionRequest(
            document=payload.input,
            resources=payload.resources or {},
            template=payload.template,
        )
        conversion = asyncio.ensure_future(service.convert(request))
        watcher = asyncio.ensure_future(_wait_for_disconnect(http_request))
        try:
            await asyncio.wait({conversion, watcher}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            watcher.cancel()
            if not conversion.done():
                conversion.cancel()
        if not conversion.done() or conversion.cancelled():
            # let the cancelled conversion kill the engine and remove its workspace
            await asyncio.gather(conversion, return_exceptions=True)
            logger.info("client disconnected, conversion cancelled", uri=str(http_request.url.path))
            return Response(status_code=CLIENT_CLOSED_REQUEST)
        content = conversion.result()
        return JSONResponse(content={"content": base64.b64encode(content).decode("ascii")})

    return app


def build_server(settings: Settings, app: FastAPI | None = None):
    """Wire the app, TLS context and authorizing protocol into a uvicorn server."""
    import uvicorn

    from pandoc_service.tls import TrustPolicy, authorizing_protocol, build_server_ssl_context

    server = settings.server
    policy = TrustPolicy.load(server.root_ca, server.cert_subject)
    ssl_context = build_server_ssl_context(settings, policy)

    config = uvicorn.Config(
        app or create_app(settings),
        host=server.host,
        port=server.port,
        http=authorizing_protocol(policy),
        timeout_graceful_shutdown=int(server.graceful_timeout) or None,
        access_log=False,
        log_config=None,
    )
    config.load()
    # uvicorn cannot set a minimum TLS version, so the context is built here
    config.ssl = ssl_context
    return uvicorn.Server(config)


def run() -> None:
    """Run the service using uvicorn.

    Reads configuration from ``PANDOC_*`` environment variables and the
    optional JSON file named by ``PANDOC_CONFIG``. Serves TLS when a server
    certificate is configured and enforces client certificates when a root
    CA is configured.
    """
    from pandoc_service.logger import setup_logger

    settings = load_settings()
    setup_logger(settings.debug, settings.json_logs)

    server = settings.server
    logger.info("Starting pandocserver with the following parameters:")
    logger.info(f"listen: {server.host}:{server.port}")
    logger.info(f"tls: {server.tls_enabled}, client root ca: {server.root_ca or '-'}, cert subject: {server.cert_subject or '-'}")
    logger.info(f"graceful timeout: {server.graceful_timeout:g}s")
    logger.info(f"command timeout: {settings.command_timeout:g}s")
    logger.info(f"pandoc path: {settings.pandoc_path}")
    logger.info(f"pandoc data dir: {settings.pandoc_data_dir}")

    build_server(settings).run()
    logger.info("shutting down")


if __name__ == "__main__":
    run()
