"""
Live connection to one tool server.

A Connection owns everything that has to be released when the server goes
away: the session-runner task holding the transport contexts, the stderr
reader, the health monitor and the log buffer. close() is the only routine
that releases them.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import IO, TYPE_CHECKING, Any, Callable, Dict, List, Optional

from mcp import ClientSession

from toolbridge.errors import ServerNotConnectedError, TransportError
from toolbridge.external.config import ServerConnectionConfig
from toolbridge.logbuffer import LogBuffer
from toolbridge.registry import ToolDescriptor

if TYPE_CHECKING:
    from toolbridge.external.health import HealthMonitor
    from toolbridge.external.transport import TransportSession

logger = logging.getLogger(__name__)

STDERR_CLOSED = "[stderr stream closed]"


class Connection:
    def __init__(
        self,
        server_id: str,
        config: ServerConnectionConfig,
        on_log: Optional[Callable[[str, str], None]] = None,
    ):
        self.server_id = server_id
        self.config = config
        self.created_at = time.time()
        self.last_error: Optional[str] = None
        self.session: Optional[ClientSession] = None
        self.tools: List[ToolDescriptor] = []
        self.logs = LogBuffer()
        self.health: Optional["HealthMonitor"] = None

        self._on_log = on_log
        self._runner: Optional[asyncio.Task] = None
        self._ready: Optional[asyncio.Future] = None
        self._closing = asyncio.Event()
        self._closed = False

        self._stderr_reader: Optional[IO[bytes]] = None
        self._stderr_writer: Optional[IO[bytes]] = None
        self._stderr_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self.session is not None and not self._closed

    @property
    def is_closed(self) -> bool:
        return self._closed

    # =========================
    # Session runner
    # =========================

    async def open(self, transport: "TransportSession", timeout: float) -> ClientSession:
        """
        Start the session runner and wait for the MCP handshake.

        Raises:
            asyncio.TimeoutError: If the handshake does not finish in time
            TransportError: If the connection was closed during the handshake
            Exception: Whatever the transport raised while opening
        """
        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()
        # Failures after a timeout are nobody's business but the log's
        self._ready.add_done_callback(lambda f: f.cancelled() or f.exception())
        self._runner = asyncio.create_task(self._run(transport), name=f"mcp-session-{self.server_id}")

        try:
            return await asyncio.wait_for(asyncio.shield(self._ready), timeout)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if self._ready.cancelled() and not (current and current.cancelling()):
                raise TransportError(self.server_id, f"Connection to {self.server_id} closed during handshake") from None
            raise

    async def _run(self, transport: "TransportSession") -> None:
        ready = self._ready
        try:
            async with transport.open() as session:
                self.session = session
                if ready is not None and not ready.done():
                    ready.set_result(session)
                await self._closing.wait()
        except asyncio.CancelledError:
            if ready is not None and not ready.done():
                ready.cancel()
            raise
        except Exception as e:
            self.last_error = str(e) or type(e).__name__
            if ready is not None and not ready.done():
                ready.set_exception(e)
                return
            if not self._closing.is_set():
                logger.warning(f"Session for {self.server_id} ended with error: {self.last_error}")
                self._report_exit(self.last_error)
            return
        finally:
            self.session = None

        if not self._closing.is_set():
            logger.warning(f"Session for {self.server_id} ended unexpectedly")
            self._report_exit("session ended")

    def _report_exit(self, reason: str) -> None:
        if self.health is not None:
            self.health.trigger_failure(reason)

    # =========================
    # Stderr capture
    # =========================

    def open_stderr_pipe(self) -> IO[bytes]:
        """Create the pipe a subprocess writes its stderr into. Returns the write end."""
        read_fd, write_fd = os.pipe()
        self._stderr_reader = os.fdopen(read_fd, "rb", buffering=0)
        self._stderr_writer = os.fdopen(write_fd, "wb", buffering=0)
        return self._stderr_writer

    def release_stderr_writer(self) -> None:
        """Drop our copy of the write end once the child has inherited it."""
        if self._stderr_writer is not None:
            self._stderr_writer.close()
            self._stderr_writer = None

    def attach_stderr(self, on_eof: Optional[Callable[[], None]] = None) -> None:
        if self._stderr_reader is None or self._stderr_task is not None:
            return
        self._stderr_task = asyncio.create_task(
            self._read_stderr(self._stderr_reader, on_eof),
            name=f"mcp-stderr-{self.server_id}",
        )

    async def _read_stderr(self, pipe: IO[bytes], on_eof: Optional[Callable[[], None]]) -> None:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        pipe_transport, _ = await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), pipe)
        try:
            while True:
                chunk = await reader.read(4096)
                if not chunk:
                    break
                self.append_log(chunk.decode("utf-8", errors="replace"))
        except Exception as e:
            self.append_log(f"[stderr error: {e}]")
        else:
            self.append_log(STDERR_CLOSED)
            if on_eof is not None:
                on_eof()
        finally:
            pipe_transport.close()
            self._stderr_reader = None

    def append_log(self, chunk: str) -> None:
        lines = self.logs.append(chunk)
        if lines and self._on_log is not None:
            self._on_log(self.server_id, "\n".join(lines))

    # =========================
    # MCP operations
    # =========================

    async def list_tools(self, timeout: Optional[float] = None) -> List[ToolDescriptor]:
        session = self.session
        if session is None:
            raise ServerNotConnectedError(self.server_id)
        result = await asyncio.wait_for(session.list_tools(), timeout)
        return [ToolDescriptor.from_mcp(self.server_id, tool) for tool in result.tools]

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """
        Execute a tool on the server.

        Returns:
            {"content": [...], "isError": bool}; call failures become an
            error result rather than an exception
        """
        session = self.session
        if session is None:
            raise ServerNotConnectedError(self.server_id, name)

        logger.debug(f"Calling {self.server_id}:{name} with {arguments}")

        try:
            result = await session.call_tool(name, arguments)

            content = []
            for item in result.content:
                if hasattr(item, "text"):
                    content.append({"type": "text", "text": item.text})
                elif hasattr(item, "data"):
                    content.append({"type": "data", "data": item.data, "mimeType": getattr(item, "mimeType", None)})
                else:
                    content.append({"type": "unknown", "value": str(item)})

            return {
                "content": content,
                "isError": bool(getattr(result, "isError", False)),
            }

        except Exception as e:
            logger.error(f"Tool call failed for {self.server_id}:{name}: {e}")
            return {
                "content": [{"type": "text", "text": f"Error: {e}"}],
                "isError": True,
            }

    # =========================
    # Teardown
    # =========================

    async def close(self, timeout: float = 5.0) -> None:
        """
        Release everything this connection owns. Idempotent; never raises.

        The health monitor is stopped first so no probe fires against a
        half-closed session.
        """
        if self._closed:
            return
        self._closed = True

        if self.health is not None:
            self.health.stop()

        current = asyncio.current_task()
        if self._stderr_task is not None and self._stderr_task is not current:
            self._stderr_task.cancel()

        self._closing.set()
        runner = self._runner
        if runner is not None and runner is not current and not runner.done() and self.session is None:
            # Still handshaking; nothing to shut down gracefully
            runner.cancel()
            await asyncio.gather(runner, return_exceptions=True)
        elif runner is not None and runner is not current and not runner.done():
            try:
                await asyncio.wait_for(asyncio.shield(runner), timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Session for {self.server_id} did not close in {timeout:g}s; cancelling")
                runner.cancel()
                await asyncio.gather(runner, return_exceptions=True)
            except asyncio.CancelledError:
                runner.cancel()
                raise
            except Exception as e:
                logger.warning(f"Error closing session for {self.server_id}: {e}")

        if self._stderr_task is not None and self._stderr_task is not current:
            await asyncio.gather(self._stderr_task, return_exceptions=True)
        self._stderr_task = None

        self.release_stderr_writer()
        if self._stderr_reader is not None:
            self._stderr_reader.close()
            self._stderr_reader = None

        self.session = None
        self.tools = []
        logger.info(f"Closed connection to {self.server_id}")
