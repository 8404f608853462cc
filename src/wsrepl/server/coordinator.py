"""Request/response correlation for remote evaluation.

Turns the asynchronous socket exchange into a synchronous call: the host's
thread sends an `eval-js` request and blocks, and the transport thread releases
it when the matching `result` arrives.
"""

import concurrent.futures
import logging
import uuid
from typing import Any

from wsrepl.exceptions import (
    ClientDisconnected,
    EvaluationTimeout,
    NoClientConnected,
    ServerStopped,
)
from wsrepl.protocol.messages import ClientId, EvalJsMessage, SessionId
from wsrepl.protocol.parser import MessageParser
from wsrepl.server.state import PendingEvaluation, SessionState

logger = logging.getLogger(__name__)


class EvalCoordinator:
    """Sends evaluation requests to clients and waits for their results.

    Each call gets its own correlation id, so evaluations from different
    sessions can be in flight at the same time without colliding.
    """

    def __init__(self, state: SessionState, parser: MessageParser | None = None):
        self.state = state
        self.parser = parser or MessageParser()

    def evaluate(
        self, session: SessionId, code: str, timeout: float | None = None
    ) -> Any:
        """Evaluate code on the client the session targets and wait for the value.

        Args:
            session: Session the evaluation runs on behalf of.
            code: JavaScript source to evaluate.
            timeout: Seconds to wait for the result. None waits forever.

        Returns:
            The value carried by the client's `result`, or `READY` if the
            client answered with `ready`.

        Raises:
            NoClientConnected: If no live client can be resolved.
            EvaluationTimeout: If no result arrives before the deadline.
            ClientDisconnected: If the client disconnects before answering.
            ServerStopped: If the server stops before the client answers.
            ConnectionError: If the request could not be sent.
        """
        request_id = uuid.uuid4().hex
        with self.state.lock:
            client_id = self.state.current_client(session)
            connection = (
                self.state.connection_for(client_id) if client_id is not None else None
            )
            if connection is None:
                raise NoClientConnected(
                    f"No client connected to evaluate for session {session}"
                )
            pending = self.state.track_pending(request_id, client_id, session)

        request = EvalJsMessage(code=code, session=session, id=request_id)

        try:
            connection.send(self.parser.serialize(request))
            return pending.future.result(timeout)
        except concurrent.futures.TimeoutError as e:
            logger.warning(
                f"Evaluation {request_id} on client {client_id} "
                f"timed out after {timeout}s"
            )
            raise EvaluationTimeout(request_id, timeout) from e
        finally:
            self.state.untrack_pending(request_id)

    def resolve(
        self, client_id: ClientId | None, request_id: str | None, value: Any
    ) -> bool:
        """Fulfill the evaluation an inbound answer belongs to.

        Answers with nothing outstanding are stale (duplicates, or late
        answers to evaluations that already timed out) and are dropped.

        Returns:
            True if a waiting evaluation was fulfilled.
        """
        pending = self.state.take_pending(client_id, request_id)
        if pending is None:
            logger.debug(
                f"Dropping stale result from client {client_id} (request {request_id})"
            )
            return False

        return _settle(pending, value=value)

    def fail_disconnected(
        self, client_id: ClientId, orphaned: list[PendingEvaluation]
    ) -> None:
        """Fail evaluations whose client went away so their callers stop waiting."""
        for pending in orphaned:
            _settle(pending, error=ClientDisconnected(client_id))

    def fail_all(self) -> None:
        """Fail every outstanding evaluation, used when the server stops."""
        for pending in self.state.drain_pending():
            _settle(
                pending,
                error=ServerStopped(
                    f"Server stopped before evaluation {pending.request_id} returned"
                ),
            )


def _settle(
    pending: PendingEvaluation, value: Any = None, error: Exception | None = None
) -> bool:
    if pending.future.done():
        return False
    try:
        if error is not None:
            pending.future.set_exception(error)
        else:
            pending.future.set_result(value)
    except concurrent.futures.InvalidStateError:
        return False
    return True
