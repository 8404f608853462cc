"""Per-session output routing for text printed by clients and by the server."""

import logging
import sys
from typing import TextIO

from wsrepl.protocol.messages import ClientId, SessionId
from wsrepl.server.state import SessionState

logger = logging.getLogger(__name__)

SWITCH_COMMAND_PREFIX = ":repl.ws/=>"


class OutputRouter:
    """Routes output to the sink registered for each session.

    Several sessions share one server, so output produced on behalf of a
    session must land in that session's sink and nowhere else. Sessions
    without a sink fall back to the default output.
    """

    def __init__(self, state: SessionState, default: TextIO | None = None):
        self.state = state
        self._default = default

    @property
    def default(self) -> TextIO:
        # Resolved late so a replaced sys.stdout is honoured.
        return self._default if self._default is not None else sys.stdout

    def sink_for(self, session: SessionId) -> TextIO:
        with self.state.lock:
            sink = self.state.session_outputs.get(session)
        return sink if sink is not None else self.default

    def set_sink(self, session: SessionId, sink: TextIO) -> None:
        with self.state.lock:
            self.state.session_outputs[session] = sink

    def write(self, session: SessionId, text: str) -> None:
        """Write text to a session's sink and flush it."""
        self.write_to(self.sink_for(session), text)

    def announce_client(self, client_id: ClientId) -> None:
        """Tell every session a new client connected and how to switch to it."""
        with self.state.lock:
            sinks = list(self.state.session_outputs.values())

        message = f"\nnew repl client: {SWITCH_COMMAND_PREFIX}{client_id}\n"
        for sink in sinks:
            self.write_to(sink, message)

    def write_to(self, sink: TextIO, text: str) -> None:
        try:
            sink.write(text)
            sink.flush()
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to write REPL output: {e}")
