"""Start/stop lifecycle for the REPL server and wiring of transport events.

The server moves Stopped -> Starting -> Running -> Stopped. Starting resets
all shared state, so ids restart at 1 and no client survives a restart.
"""

import logging
import threading
from collections.abc import Callable
from typing import TextIO

from wsrepl.exceptions import ServerAlreadyRunning, ServerStopped
from wsrepl.protocol.messages import ClientId, ClientMessage
from wsrepl.protocol.parser import MessageParser
from wsrepl.server.coordinator import EvalCoordinator
from wsrepl.server.dispatcher import MessageDispatcher
from wsrepl.server.output import OutputRouter
from wsrepl.server.state import SessionState
from wsrepl.transport.server import Connection, TransportCallbacks, TransportFactory
from wsrepl.transport.websocket import WebSocketServerTransport

logger = logging.getLogger(__name__)

MessageHandler = Callable[[ClientId | None, ClientMessage], None]

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 9001


class ReplServer:
    """Owns the transport and all session state for one listening socket.

    Transport events arrive on transport threads: `open` registers the client
    and announces it to every session, `close` unregisters it and rebinds the
    sessions that targeted it, `message` decodes the frame and hands it to the
    message handler, and `error` is logged without affecting other clients.
    """

    def __init__(
        self,
        transport_factory: TransportFactory = WebSocketServerTransport,
        default_output: TextIO | None = None,
    ):
        self.transport_factory = transport_factory
        self.state = SessionState()
        self.parser = MessageParser()
        self.output = OutputRouter(self.state, default_output)
        self.coordinator = EvalCoordinator(self.state, self.parser)
        self.dispatcher = MessageDispatcher(self.state, self.coordinator, self.output)
        self._message_handler: MessageHandler = self.dispatcher.dispatch
        self._listeners = 0
        # Serializes start, stop and listener changes. Kept apart from the state
        # lock, which transport callbacks take while the transport shuts down.
        self._lifecycle_lock = threading.RLock()

    # ================================
    # Lifecycle
    # ================================

    @property
    def running(self) -> bool:
        return self.state.server is not None

    def start(
        self,
        message_handler: MessageHandler | None = None,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
    ) -> None:
        """Reset all state and start listening.

        Args:
            message_handler: Receives every decoded client message. Defaults to
                the server's dispatcher.
            host: Address to bind.
            port: Port to bind.

        Raises:
            ServerAlreadyRunning: If the server is already running.
            OSError: If the transport fails to start. State is left stopped.
        """
        with self._lifecycle_lock:
            with self.state.lock:
                if self.state.server is not None:
                    raise ServerAlreadyRunning(
                        f"Server already running on {self.state.server.host}:"
                        f"{self.state.server.port}"
                    )

                self.state.reset()
                self._message_handler = message_handler or self.dispatcher.dispatch
                callbacks = TransportCallbacks(
                    on_open=self._on_open,
                    on_close=self._on_close,
                    on_message=self._on_message,
                    on_error=self._on_error,
                )
                transport = self.transport_factory(host, port, callbacks)
                self.state.server = transport

            try:
                transport.start()
            except Exception:
                self.state.reset()
                raise

        logger.info(f"REPL server listening on {host}:{port}")

    def ensure_started(
        self, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT
    ) -> bool:
        """Start the server unless it is already running.

        Returns:
            True if this call started it.
        """
        with self._lifecycle_lock:
            if self.running:
                return False
            self.start(host=host, port=port)
            return True

    def stop(self) -> None:
        """Stop the transport and reset all state. Safe to call when stopped.

        Evaluations still waiting fail with `ServerStopped`, and so does any
        `wait_for_start` blocked on this run.
        """
        with self._lifecycle_lock:
            with self.state.lock:
                transport = self.state.server
                if transport is None:
                    return
                self.state.server = None

            transport.stop()
            self.coordinator.fail_all()
            with self.state.lock:
                started = self.state.started
                self.state.reset()
            started.set()
            self._listeners = 0

        logger.info("REPL server stopped")

    def wait_for_start(self, timeout: float | None = None) -> bool:
        """Block until the first client of this run connects.

        Returns:
            True once a client has connected, False if the timeout expired.

        Raises:
            ServerStopped: If the server is not running, or stops while waiting.
        """
        with self.state.lock:
            if self.state.server is None:
                raise ServerStopped("Server is not running")
            started = self.state.started

        if not started.wait(timeout):
            return False

        with self.state.lock:
            if self.state.started is not started:
                raise ServerStopped("Server stopped before a client connected")
        return True

    # ================================
    # Listener reference counting
    # ================================

    @property
    def listeners(self) -> int:
        return self._listeners

    def retain(self) -> int:
        """Register one more session sharing this server."""
        with self._lifecycle_lock:
            self._listeners += 1
            return self._listeners

    def release(self) -> int:
        """Drop one session's reference, returning how many remain."""
        with self._lifecycle_lock:
            self._listeners = max(0, self._listeners - 1)
            return self._listeners

    def acquire(self, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT) -> bool:
        """Start the server if needed and retain it, as one step.

        Returns:
            True if this call started the server.
        """
        with self._lifecycle_lock:
            started = self.ensure_started(host, port)
            self.retain()
            return started

    def release_and_stop(self) -> bool:
        """Release one reference and stop the server if it was the last, as one step.

        A session attaching concurrently either keeps the server alive or
        starts a fresh run after this one has fully stopped.

        Returns:
            True if this call stopped the server.
        """
        with self._lifecycle_lock:
            if self.release() > 0 or not self.running:
                return False
            self.stop()
            return True

    # ================================
    # Transport events
    # ================================

    def _on_open(self, connection: Connection) -> None:
        client_id = self.state.register_client(connection)
        logger.info(f"Client {client_id} connected: {connection}")
        self.output.announce_client(client_id)

    def _on_close(self, connection: Connection) -> None:
        client_id, orphaned = self.state.unregister_client(connection)
        if client_id is None:
            return
        logger.info(f"Client {client_id} disconnected: {connection}")
        self.coordinator.fail_disconnected(client_id, orphaned)

    def _on_message(self, connection: Connection, frame: str | bytes) -> None:
        message = self.parser.parse(frame)
        if message is None:
            return
        self._message_handler(self.state.client_id_for(connection), message)

    def _on_error(self, connection: Connection, error: Exception) -> None:
        client_id = self.state.client_id_for(connection)
        logger.warning(
            f"Transport error from client {client_id} ({connection}): {error}"
        )
