"""Single-use loopback listener that receives the OAuth redirect."""

from __future__ import annotations

import asyncio
import html
import logging
import socket
from typing import Callable, Optional, Tuple

import uvicorn
from starlette.applications import Starlette
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import HTMLResponse, PlainTextResponse, Response
from starlette.routing import Route

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/auth-callback"

SUCCESS_PAGE = (
    "<html><body><h1>Authorization Success</h1>"
    "<p>Processing complete. You can close this window.</p>"
    "<script>window.close();</script></body></html>"
)
FAILURE_PAGE = (
    "<html><body><h1>Authorization Failed</h1><p>Error: {error}</p>"
    "<p>You can close this window.</p></body></html>"
)
INVALID_PAGE = "<html><body><h1>Invalid Callback</h1><p>Required parameters missing.</p></body></html>"


def bind_free_port(host: str, start: int, end: int) -> Tuple[socket.socket, int]:
    """Bind the first free port in [start, end] and keep the socket."""
    for port in range(start, end + 1):
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind((host, port))
        except OSError:
            sock.close()
            continue
        return sock, port
    raise RuntimeError(f"No free ports available in {start}-{end}")


class CallbackListener:
    """
    Serves exactly one callback request on an ephemeral loopback port.

    A request carrying `error` renders a failure page; `code`+`state` renders
    a success page and hands the pair to `on_code` once the response has been
    sent. Either way the listener shuts itself down afterwards.
    """

    def __init__(
        self,
        on_code: Callable[[str, str], None],
        on_error: Optional[Callable[[str], None]] = None,
        host: str = "127.0.0.1",
        port_base: int = 10000,
        port_max: int = 10999,
    ):
        self._on_code = on_code
        self._on_error = on_error
        self.host = host
        self.port_base = port_base
        self.port_max = port_max
        self.port: Optional[int] = None
        self._socket: Optional[socket.socket] = None
        self._server: Optional[uvicorn.Server] = None
        self._serve_task: Optional[asyncio.Task] = None
        self._handled = False

    @property
    def redirect_uri(self) -> str:
        if self.port is None:
            raise RuntimeError("Callback listener is not running")
        return f"http://{self.host}:{self.port}{CALLBACK_PATH}"

    @property
    def is_running(self) -> bool:
        return self._serve_task is not None and not self._serve_task.done()

    def build_app(self) -> Starlette:
        async def handle_callback(request: Request) -> Response:
            if self._handled:
                return PlainTextResponse("Callback already handled", status_code=410)
            self._handled = True

            code = request.query_params.get("code")
            state = request.query_params.get("state")
            error = request.query_params.get("error")

            if error:
                logger.error(f"Authorization callback returned error: {error}")
                if self._on_error:
                    self._on_error(error)
                return HTMLResponse(
                    FAILURE_PAGE.format(error=html.escape(error)),
                    status_code=400,
                    background=BackgroundTask(self._finish),
                )

            if code and state:
                logger.info("Received authorization code via loopback listener")
                return HTMLResponse(SUCCESS_PAGE, background=BackgroundTask(self._finish, code, state))

            logger.warning("Callback request without code/state/error")
            if self._on_error:
                self._on_error("missing_parameters")
            return HTMLResponse(INVALID_PAGE, status_code=400, background=BackgroundTask(self._finish))

        async def not_found(request: Request) -> Response:
            return PlainTextResponse("Not Found", status_code=404)

        return Starlette(
            routes=[
                Route(CALLBACK_PATH, handle_callback, methods=["GET"]),
                Route("/{path:path}", not_found),
            ]
        )

    async def _finish(self, code: Optional[str] = None, state: Optional[str] = None) -> None:
        # Runs after the page has been flushed to the browser
        if code and state:
            self._on_code(code, state)
        self.request_shutdown()

    def request_shutdown(self) -> None:
        if self._server is not None:
            self._server.should_exit = True

    async def start(self) -> int:
        if self.is_running:
            raise RuntimeError("Callback listener already running")

        self._socket, self.port = bind_free_port(self.host, self.port_base, self.port_max)
        config = uvicorn.Config(self.build_app(), log_level="warning", lifespan="off", access_log=False)
        self._server = uvicorn.Server(config)
        self._serve_task = asyncio.create_task(self._server.serve(sockets=[self._socket]))

        while not self._server.started:
            if self._serve_task.done():
                error = self._serve_task.exception()
                await self.stop()
                raise RuntimeError(f"Callback listener failed to start: {error}")
            await asyncio.sleep(0.01)

        logger.info(f"Callback listener on {self.redirect_uri}")
        return self.port

    async def stop(self, timeout: float = 5.0) -> None:
        self.request_shutdown()
        if self._serve_task is not None and not self._serve_task.done():
            try:
                await asyncio.wait_for(self._serve_task, timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Callback listener on port {self.port} did not stop in time; cancelling")
                self._serve_task.cancel()
            except Exception as e:
                logger.warning(f"Callback listener on port {self.port} stopped with error: {e}")
        if self._socket is not None:
            self._socket.close()
            self._socket = None
        if self._serve_task is not None:
            logger.info(f"Callback listener on port {self.port} stopped")
        self._serve_task = None
        self._server = None
