from wsrepl.server.state import SessionState

from mocks import MockConnection


class TestRegistration:
    def test_ids_are_assigned_in_connection_order_starting_at_one(self):
        # Arrange
        state = SessionState()
        connections = [MockConnection(f"c{i}") for i in range(5)]

        # Act
        ids = [state.register_client(connection) for connection in connections]

        # Assert
        assert ids == [1, 2, 3, 4, 5]
        assert state.client_ids() == [1, 2, 3, 4, 5]

    def test_ids_are_never_reused_after_disconnect(self):
        # Arrange
        state = SessionState()
        first = MockConnection("first")
        state.register_client(first)
        state.register_client(MockConnection("second"))

        # Act
        state.unregister_client(first)
        third_id = state.register_client(MockConnection("third"))

        # Assert
        assert third_id == 3
        assert state.client_ids() == [2, 3]

    def test_registering_same_connection_twice_keeps_one_id(self):
        # Arrange
        state = SessionState()
        connection = MockConnection()

        # Act
        first_id = state.register_client(connection)
        second_id = state.register_client(connection)

        # Assert
        assert first_id == second_id == 1
        assert state.client_ids() == [1]

    def test_first_registration_sets_started(self):
        # Arrange
        state = SessionState()
        assert not state.started.is_set()

        # Act
        state.register_client(MockConnection())

        # Assert
        assert state.started.is_set()

    def test_unregister_unknown_connection_is_a_no_op(self):
        # Arrange
        state = SessionState()
        state.register_client(MockConnection("known"))

        # Act
        client_id, orphaned = state.unregister_client(MockConnection("unknown"))

        # Assert
        assert client_id is None
        assert orphaned == []
        assert state.client_ids() == [1]

    def test_unregister_twice_is_tolerated(self):
        # Arrange
        state = SessionState()
        connection = MockConnection()
        state.register_client(connection)

        # Act
        first = state.unregister_client(connection)
        second = state.unregister_client(connection)

        # Assert
        assert first == (1, [])
        assert second == (None, [])

    def test_lookups_by_connection_and_id(self):
        # Arrange
        state = SessionState()
        connection = MockConnection()

        # Act
        client_id = state.register_client(connection)

        # Assert
        assert state.client_id_for(connection) == client_id
        assert state.connection_for(client_id) is connection
        assert state.connection_for(99) is None


class TestBindings:
    def test_unbound_session_defaults_to_lowest_live_client(self):
        # Arrange
        state = SessionState()
        state.register_client(MockConnection("a"))
        state.register_client(MockConnection("b"))

        # Act & Assert
        assert state.current_client("session") == 1

    def test_unbound_session_with_no_clients_has_no_target(self):
        assert SessionState().current_client("session") is None

    def test_bind_overwrites_previous_binding(self):
        # Arrange
        state = SessionState()
        state.register_client(MockConnection("a"))
        state.register_client(MockConnection("b"))

        # Act
        state.bind("session", 1)
        state.bind("session", 2)

        # Assert
        assert state.current_client("session") == 2

    def test_stale_binding_resolves_to_live_client(self):
        # Arrange
        state = SessionState()
        state.register_client(MockConnection("a"))

        # Act - bind to an id that was never registered
        state.bind("session", 7)

        # Assert
        assert state.bound_client("session") == 7
        assert state.current_client("session") == 1

    def test_disconnecting_bound_client_rebinds_to_lowest_remaining(self):
        # Arrange
        state = SessionState()
        a = MockConnection("a")
        state.register_client(a)
        state.register_client(MockConnection("b"))
        state.register_client(MockConnection("c"))
        state.bind("session", 1)

        # Act
        state.unregister_client(a)

        # Assert
        assert state.bound_client("session") == 2

    def test_disconnecting_last_client_leaves_session_unbound(self):
        # Arrange
        state = SessionState()
        a = MockConnection("a")
        state.register_client(a)
        state.bind("session", 1)

        # Act
        state.unregister_client(a)

        # Assert
        assert state.bound_client("session") is None
        assert state.current_client("session") is None

    def test_disconnecting_other_client_leaves_binding_alone(self):
        # Arrange
        state = SessionState()
        state.register_client(MockConnection("a"))
        b = MockConnection("b")
        state.register_client(b)
        state.register_client(MockConnection("c"))
        state.bind("first", 1)
        state.bind("third", 3)

        # Act
        state.unregister_client(b)

        # Assert
        assert state.bound_client("first") == 1
        assert state.bound_client("third") == 3

    def test_forget_session_drops_binding_and_output(self):
        # Arrange
        state = SessionState()
        state.bind("session", 1)
        state.session_outputs["session"] = object()

        # Act
        state.forget_session("session")

        # Assert
        assert not state.has_session("session")


class TestPendingEvaluations:
    def test_take_by_correlation_id(self):
        # Arrange
        state = SessionState()
        first = state.track_pending("req-1", 1, "s")
        second = state.track_pending("req-2", 1, "s")

        # Act
        taken = state.take_pending(1, "req-2")

        # Assert
        assert taken is second
        assert list(state.pending) == [first.request_id]

    def test_take_without_id_picks_oldest_for_that_client(self):
        # Arrange
        state = SessionState()
        state.track_pending("req-1", 2, "s")
        oldest_for_client = state.track_pending("req-2", 1, "s")
        state.track_pending("req-3", 1, "s")

        # Act
        taken = state.take_pending(1, None)

        # Assert
        assert taken is oldest_for_client

    def test_take_with_nothing_pending_returns_none(self):
        assert SessionState().take_pending(1, None) is None
        assert SessionState().take_pending(1, "req-1") is None

    def test_disconnect_detaches_pending_evaluations_of_that_client(self):
        # Arrange
        state = SessionState()
        a = MockConnection("a")
        state.register_client(a)
        state.register_client(MockConnection("b"))
        on_a = state.track_pending("req-1", 1, "s")
        on_b = state.track_pending("req-2", 2, "s")

        # Act
        client_id, orphaned = state.unregister_client(a)

        # Assert
        assert client_id == 1
        assert orphaned == [on_a]
        assert list(state.pending.values()) == [on_b]


class TestReset:
    def test_reset_clears_everything(self):
        # Arrange
        state = SessionState()
        old_started = state.started
        state.register_client(MockConnection())
        state.bind("session", 1)
        state.session_outputs["session"] = object()
        state.track_pending("req-1", 1, "session")

        # Act
        state.reset()

        # Assert
        assert state.server is None
        assert state.clients == {}
        assert state.next_client_id == 0
        assert state.session_outputs == {}
        assert state.session_clients == {}
        assert state.pending == {}
        assert state.started is not old_started
        assert not state.started.is_set()
