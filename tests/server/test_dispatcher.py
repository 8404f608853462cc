import io
import logging

from wsrepl.protocol.messages import (
    READY,
    PrintMessage,
    ReadyMessage,
    ResultMessage,
    UnknownMessage,
)
from wsrepl.server.coordinator import EvalCoordinator
from wsrepl.server.dispatcher import MessageDispatcher
from wsrepl.server.output import OutputRouter
from wsrepl.server.state import SessionState


class TestDispatch:
    def setup_method(self):
        self.state = SessionState()
        self.default = io.StringIO()
        self.output = OutputRouter(self.state, default=self.default)
        self.coordinator = EvalCoordinator(self.state)
        self.dispatcher = MessageDispatcher(self.state, self.coordinator, self.output)

    def test_result_fulfills_matching_evaluation(self):
        # Arrange
        pending = self.state.track_pending("req-1", 1, "session")

        # Act
        self.dispatcher.dispatch(1, ResultMessage(value="2", id="req-1"))

        # Assert
        assert pending.future.result(0) == "2"
        assert self.state.pending == {}

    def test_untagged_result_fulfills_oldest_evaluation_of_sender(self):
        # Arrange
        pending = self.state.track_pending("req-1", 1, "session")

        # Act
        self.dispatcher.dispatch(1, ResultMessage(value="2"))

        # Assert
        assert pending.future.result(0) == "2"

    def test_ready_fulfills_with_ready_sentinel(self):
        # Arrange
        pending = self.state.track_pending("req-1", 1, "session")

        # Act
        self.dispatcher.dispatch(1, ReadyMessage())

        # Assert
        assert pending.future.result(0) is READY

    def test_stale_result_is_a_no_op(self):
        # Act & Assert - should not raise
        self.dispatcher.dispatch(1, ResultMessage(value="2"))
        self.dispatcher.dispatch(1, ResultMessage(value="2", id="gone"))
        self.dispatcher.dispatch(1, ReadyMessage())

    def test_duplicate_result_only_fulfills_once(self):
        # Arrange
        pending = self.state.track_pending("req-1", 1, "session")

        # Act
        self.dispatcher.dispatch(1, ResultMessage(value="first", id="req-1"))
        self.dispatcher.dispatch(1, ResultMessage(value="second", id="req-1"))

        # Assert
        assert pending.future.result(0) == "first"

    def test_print_reaches_sink_of_tagged_session(self):
        # Arrange
        sink = io.StringIO()
        self.output.set_sink("session", sink)

        # Act
        self.dispatcher.dispatch(1, PrintMessage(value="hello\n", session="session"))

        # Assert
        assert sink.getvalue() == "hello\n"

    def test_print_for_bound_session_without_sink_uses_default(self):
        # Arrange
        self.state.bind("session", 1)

        # Act
        self.dispatcher.dispatch(1, PrintMessage(value="hello", session="session"))

        # Assert
        assert self.default.getvalue() == "hello"

    def test_print_for_unknown_session_is_dropped(self):
        # Arrange
        sink = io.StringIO()
        self.output.set_sink("mine", sink)

        # Act
        self.dispatcher.dispatch(1, PrintMessage(value="leak", session="theirs"))

        # Assert
        assert sink.getvalue() == ""
        assert self.default.getvalue() == ""

    def test_unknown_op_is_logged_and_dropped(self, caplog):
        # Arrange
        pending = self.state.track_pending("req-1", 1, "session")

        # Act
        with caplog.at_level(logging.WARNING):
            self.dispatcher.dispatch(1, UnknownMessage(op="shutdown"))

        # Assert
        assert "shutdown" in caplog.text
        assert not pending.future.done()
