"""
de-explorer MCP Server.

Serves one interactive differential expression report over the Model
Context Protocol (MCP). The dataset comes from the ``DE_EXPLORER_*``
variables read by :class:`de_explorer.config.ReportConfig` and is loaded by
the first tool call that needs it.

Server settings (all optional):

==============================  =============================================
``DE_EXPLORER_MCP_TRANSPORT``   ``stdio`` (default), ``streamable-http``, ``sse``
``DE_EXPLORER_MCP_HOST``        bind address for HTTP transports (0.0.0.0)
``DE_EXPLORER_MCP_PORT``        port for HTTP transports (8000)
``DE_EXPLORER_MCP_API_KEY``     Bearer token required on HTTP transports
``DE_EXPLORER_MCP_LOG_FILE``    log file (~/.de_explorer/mcp_server.log)
``DE_EXPLORER_MCP_LOG_LEVEL``   log level (INFO)
==============================  =============================================

Usage:
    python -m de_explorer.mcp_server
    DE_EXPLORER_MCP_TRANSPORT=streamable-http de-explorer-mcp
"""

import contextlib
import logging
import logging.handlers
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from mcp.server.fastmcp import FastMCP
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from de_explorer import __version__
from de_explorer.config import DEFAULT_CACHE_DIR, ReportConfig

logger = logging.getLogger(__name__)

SERVER_NAME = "de-explorer Report Server"
TRANSPORTS = ("stdio", "streamable-http", "sse")
LOG_MAX_BYTES = 5 * 1024 * 1024
LOG_BACKUPS = 3


@dataclass
class ServerSettings:
    transport: str = "stdio"
    host: str = "0.0.0.0"
    port: int = 8000
    api_key: Optional[str] = None
    log_file: Path = DEFAULT_CACHE_DIR / "mcp_server.log"
    log_level: str = "INFO"

    def __post_init__(self):
        self.transport = self.transport.lower()
        if self.transport not in TRANSPORTS:
            raise ValueError(
                f"Unknown transport {self.transport!r}. Use one of: {', '.join(TRANSPORTS)}"
            )
        self.log_level = self.log_level.upper()

    @classmethod
    def from_env(cls) -> "ServerSettings":
        defaults = cls()
        port = os.environ.get("DE_EXPLORER_MCP_PORT")
        log_file = os.environ.get("DE_EXPLORER_MCP_LOG_FILE")
        try:
            port_number = int(port) if port else defaults.port
        except ValueError:
            raise ValueError(f"DE_EXPLORER_MCP_PORT must be an integer, got {port!r}") from None
        return cls(
            transport=os.environ.get("DE_EXPLORER_MCP_TRANSPORT", defaults.transport),
            host=os.environ.get("DE_EXPLORER_MCP_HOST", defaults.host),
            port=port_number,
            api_key=os.environ.get("DE_EXPLORER_MCP_API_KEY") or None,
            log_file=Path(log_file) if log_file else defaults.log_file,
            log_level=os.environ.get("DE_EXPLORER_MCP_LOG_LEVEL", defaults.log_level),
        )


def _configure_logging(settings: ServerSettings) -> None:
    """Send package logs to a rotating file; stdout belongs to JSON-RPC."""
    settings.log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        settings.log_file, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUPS,
    )
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(name)s %(levelname)s %(message)s")
    )

    package_logger = logging.getLogger("de_explorer")
    package_logger.setLevel(getattr(logging, settings.log_level, logging.INFO))
    package_logger.addHandler(handler)
    package_logger.info("MCP server starting (version %s)", __version__)


@contextlib.contextmanager
def redirect_prints():
    """Redirect stdout to stderr while analysis code runs."""
    old = sys.stdout
    sys.stdout = sys.stderr
    try:
        yield
    finally:
        sys.stdout = old


mcp = FastMCP(SERVER_NAME)


@mcp.tool()
def health_check() -> dict:
    """Server version, configured inputs and whether a report is loaded.

    ``capabilities`` tells whether the count matrix, sample sheet and
    enrichment reference directory exist and whether the DESeq2 backend
    is importable. ``report_loaded`` is true once a tool has built the
    shared report session.
    """
    from de_explorer.mcp_server import tools_report

    config = ReportConfig.from_env()
    try:
        import pydeseq2  # noqa: F401
        has_pydeseq2 = True
    except ImportError:
        has_pydeseq2 = False

    return {
        "server": SERVER_NAME,
        "version": __version__,
        "report_loaded": tools_report._session is not None,
        "capabilities": {
            "counts": config.counts_path is not None and config.counts_path.is_file(),
            "samples": config.samples_path is not None and config.samples_path.is_file(),
            "enrichment_reference": (
                config.reference_dir is not None and config.reference_dir.is_dir()
            ),
            "pydeseq2": has_pydeseq2,
        },
    }


class BearerKeyMiddleware(BaseHTTPMiddleware):
    """Reject requests without ``Authorization: Bearer <api_key>``.

    CORS preflight requests pass through.
    """

    def __init__(self, app, api_key: str):
        super().__init__(app)
        self.expected = f"Bearer {api_key}"

    async def dispatch(self, request, call_next):
        if request.method == "OPTIONS":
            return await call_next(request)
        if request.headers.get("Authorization", "") == self.expected:
            return await call_next(request)
        return JSONResponse(
            {"error": "Unauthorized"},
            status_code=401,
            headers={"WWW-Authenticate": "Bearer"},
        )


def build_http_app(settings: ServerSettings):
    """Starlette app for an HTTP transport, guarded when an API key is set."""
    mcp.settings.host = settings.host
    mcp.settings.port = settings.port
    if settings.transport == "streamable-http":
        app = mcp.streamable_http_app()
    else:
        app = mcp.sse_app()

    if settings.api_key:
        logger.info("API-key authentication enabled")
        app.add_middleware(BearerKeyMiddleware, api_key=settings.api_key)
    return app


def main():
    try:
        settings = ServerSettings.from_env()
    except ValueError as exc:
        print(f"de-explorer-mcp: {exc}", file=sys.stderr)
        sys.exit(1)

    _configure_logging(settings)
    from de_explorer.mcp_server.tools_report import register_tools
    register_tools(mcp)

    if settings.transport == "stdio":
        logger.info("Starting with stdio transport")
        mcp.run(transport="stdio")
        return

    import uvicorn

    logger.info(
        "Starting with %s transport on %s:%d", settings.transport, settings.host, settings.port
    )
    print(
        f"de-explorer MCP server listening on http://{settings.host}:{settings.port}",
        file=sys.stderr,
    )
    uvicorn.run(build_http_app(settings), host=settings.host, port=settings.port, log_level="info")
