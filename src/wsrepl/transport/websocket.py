"""WebSocket server transport implementation."""

import asyncio
import concurrent.futures
import logging
import threading
import time

import uvicorn
from starlette.applications import Starlette
from starlette.routing import WebSocketRoute
from starlette.websockets import WebSocket, WebSocketState

from wsrepl.transport.server import Connection, ServerTransport, TransportCallbacks

logger = logging.getLogger(__name__)


class WebSocketConnection(Connection):
    """One accepted websocket, bound to the event loop that serves it."""

    def __init__(
        self,
        websocket: WebSocket,
        loop: asyncio.AbstractEventLoop,
        send_timeout: float = 10.0,
    ) -> None:
        self._websocket = websocket
        self._loop = loop
        self._send_timeout = send_timeout
        self._open = True
        self.remote = websocket.client

    def __repr__(self) -> str:
        if self.remote is None:
            return "<WebSocketConnection>"
        return f"<WebSocketConnection {self.remote.host}:{self.remote.port}>"

    @property
    def is_open(self) -> bool:
        return self._open

    def mark_closed(self) -> None:
        self._open = False

    def send(self, frame: str) -> None:
        """Send a text frame, hopping onto the connection's event loop.

        Called from host threads, so the coroutine is scheduled on the serving
        loop and awaited with a deadline. Calls made on the loop itself are
        scheduled without waiting.

        Raises:
            ConnectionError: If the connection is closed or the send fails.
        """
        if not self._open:
            raise ConnectionError(f"Cannot send to {self}: connection closed")

        try:
            running_loop = asyncio.get_running_loop()
        except RuntimeError:
            running_loop = None

        if running_loop is self._loop:
            task = self._loop.create_task(self._websocket.send_text(frame))
            task.add_done_callback(self._log_send_failure)
            return

        try:
            future = asyncio.run_coroutine_threadsafe(
                self._websocket.send_text(frame), self._loop
            )
            future.result(self._send_timeout)
        except concurrent.futures.TimeoutError as e:
            future.cancel()
            raise ConnectionError(f"Timed out sending to {self}") from e
        except Exception as e:
            raise ConnectionError(f"Failed to send message: {e}") from e

    def _log_send_failure(self, task: asyncio.Task[None]) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Failed to send to {self}: {task.exception()}")


class WebSocketServerTransport(ServerTransport):
    """WebSocket server transport supporting many concurrent clients.

    Serves a starlette application with a single websocket route through
    uvicorn, on a dedicated daemon thread with its own event loop. Connection
    events are reported through the callbacks on that thread.
    """

    def __init__(
        self,
        host: str,
        port: int,
        callbacks: TransportCallbacks,
        path: str = "/",
        send_timeout: float = 10.0,
        startup_timeout: float = 5.0,
    ) -> None:
        super().__init__(host, port, callbacks)
        self.path = path
        self.send_timeout = send_timeout
        self.startup_timeout = startup_timeout

        self.app = Starlette(routes=[WebSocketRoute(path, self._handle_websocket)])
        self._server: uvicorn.Server | None = None
        self._thread: threading.Thread | None = None

    @property
    def is_open(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start serving in the background.

        Returns once uvicorn is accepting connections.

        Raises:
            OSError: If the server could not bind or died during startup.
            TimeoutError: If startup did not finish within `startup_timeout`.
        """
        if self.is_open:
            return

        config = uvicorn.Config(
            app=self.app,
            host=self.host,
            port=self.port,
            log_level="warning",
            lifespan="off",
        )
        server = uvicorn.Server(config)
        thread = threading.Thread(
            target=server.run,
            name=f"wsrepl-server-{self.port}",
            daemon=True,
        )
        self._server = server
        self._thread = thread
        thread.start()

        # uvicorn exits the serving thread when it can't bind.
        deadline = time.monotonic() + self.startup_timeout
        while not server.started:
            if not thread.is_alive():
                self._server = None
                self._thread = None
                raise OSError(
                    f"WebSocket server failed to start on {self.host}:{self.port}"
                )
            if time.monotonic() >= deadline:
                self.stop()
                raise TimeoutError(
                    f"WebSocket server on {self.host}:{self.port} did not start "
                    f"within {self.startup_timeout}s"
                )
            thread.join(0.01)

        logger.info(
            f"WebSocket server started on ws://{self.host}:{self.port}{self.path}"
        )

    def stop(self) -> None:
        """Ask uvicorn to exit and wait for the serving thread."""
        if self._server is None:
            return

        self._server.should_exit = True
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=5.0)
            if self._thread.is_alive():
                logger.warning("WebSocket server thread did not exit in time")

        self._server = None
        self._thread = None
        logger.info("WebSocket server stopped")

    async def _handle_websocket(self, websocket: WebSocket) -> None:
        """Accept a client and pump its frames into the callbacks until it leaves.

        Failures while handling a single frame are logged and don't interrupt
        the connection, but receive failures end it.
        """
        await websocket.accept()
        connection = WebSocketConnection(
            websocket, asyncio.get_running_loop(), self.send_timeout
        )
        self.callbacks.on_open(connection)

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break

                frame = message.get("text")
                if frame is None:
                    frame = message.get("bytes")
                if frame is None:
                    continue

                try:
                    self.callbacks.on_message(connection, frame)
                except Exception:
                    logger.exception(f"Error handling message from {connection}")
        except Exception as e:
            self.callbacks.on_error(connection, e)
            await self._close_quietly(websocket)
        finally:
            connection.mark_closed()
            self.callbacks.on_close(connection)

    async def _close_quietly(self, websocket: WebSocket) -> None:
        if websocket.application_state != WebSocketState.CONNECTED:
            return
        try:
            await websocket.close()
        except RuntimeError as e:
            logger.debug(f"Error closing websocket: {e}")
