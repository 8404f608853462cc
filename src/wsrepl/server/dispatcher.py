"""Dispatch of decoded client messages to the coordinator and output router."""

import logging

from wsrepl.protocol.messages import (
    READY,
    ClientId,
    ClientMessage,
    PrintMessage,
    ReadyMessage,
    ResultMessage,
    SessionId,
)
from wsrepl.server.coordinator import EvalCoordinator
from wsrepl.server.output import OutputRouter
from wsrepl.server.state import SessionState

logger = logging.getLogger(__name__)


class MessageDispatcher:
    """Routes inbound client messages by tag.

    Answers fulfill pending evaluations through the coordinator, and printed
    output goes to the session the client tagged it with. Anything else is
    logged and dropped so a misbehaving client can't break dispatch.
    """

    def __init__(
        self, state: SessionState, coordinator: EvalCoordinator, output: OutputRouter
    ):
        self.state = state
        self.coordinator = coordinator
        self.output = output

    def dispatch(self, client_id: ClientId | None, message: ClientMessage) -> None:
        """Handle one message from a client.

        Args:
            client_id: Registry id of the sending client, if still registered.
            message: The parsed message.
        """
        match message:
            case ReadyMessage(id=request_id):
                self.coordinator.resolve(client_id, request_id, READY)
            case ResultMessage(id=request_id, value=value):
                self.coordinator.resolve(client_id, request_id, value)
            case PrintMessage(session=session, value=value):
                self._handle_print(client_id, session, value)
            case _:
                logger.warning(
                    f"Dropping message with unknown op {message.op!r} "
                    f"from client {client_id}"
                )

    def _handle_print(
        self, client_id: ClientId | None, session: SessionId, value: str
    ) -> None:
        # Output for a session this server doesn't know must not leak elsewhere.
        if not self.state.has_session(session):
            logger.debug(
                f"Dropping print from client {client_id} for unknown session {session}"
            )
            return
        self.output.write(session, value)
