"""Server transport protocol - 1:many connections reported through callbacks."""

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass


class Connection(ABC):
    """A single client connection as seen by the session layer.

    Connections are opaque handles: the session layer only compares them for
    identity and sends frames through them.
    """

    @abstractmethod
    def send(self, frame: str) -> None:
        """Send one text frame to the client.

        Must be safe to call from any thread.

        Raises:
            ConnectionError: If the connection is closed or the send failed.
        """
        ...

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """True until the client disconnects."""
        ...


@dataclass
class TransportCallbacks:
    """Connection events the transport reports to its owner.

    All callbacks run on a transport thread, never on the thread that started
    the transport.
    """

    on_open: Callable[[Connection], None]
    on_close: Callable[[Connection], None]
    on_message: Callable[[Connection, str | bytes], None]
    on_error: Callable[[Connection, Exception], None]


class ServerTransport(ABC):
    """Transport for a server accepting connections from many clients.

    Focuses purely on accepting connections and moving frames. Client ids,
    bindings and message semantics belong to the session layer, which learns
    about connections through the callbacks it passes in.
    """

    def __init__(self, host: str, port: int, callbacks: TransportCallbacks):
        self.host = host
        self.port = port
        self.callbacks = callbacks

    @abstractmethod
    def start(self) -> None:
        """Start accepting connections in the background and return."""
        ...

    @abstractmethod
    def stop(self) -> None:
        """Stop accepting connections and disconnect all clients."""
        ...

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """True if the server is accepting connections."""
        ...


TransportFactory = Callable[[str, int, TransportCallbacks], ServerTransport]
