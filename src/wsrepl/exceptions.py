"""Errors surfaced to the host driving a websocket REPL session."""


class WsReplError(Exception):
    """Base class for all wsrepl errors."""


class NoClientConnected(WsReplError):
    """Raised when an evaluation is attempted with no live client to target."""


class EvaluationTimeout(WsReplError):
    """Raised when a client does not answer an evaluation before the deadline."""

    def __init__(self, request_id: str, timeout: float):
        super().__init__(f"No result for evaluation {request_id} after {timeout}s")
        self.request_id = request_id
        self.timeout = timeout


class ClientDisconnected(WsReplError):
    """Raised when the client an evaluation was sent to goes away mid-flight."""

    def __init__(self, client_id: int):
        super().__init__(f"Client {client_id} disconnected before returning a result")
        self.client_id = client_id


class ServerAlreadyRunning(WsReplError):
    """Raised when starting a server that is already running."""


class ServerStopped(WsReplError):
    """Raised to callers still waiting on a server that has been stopped."""
