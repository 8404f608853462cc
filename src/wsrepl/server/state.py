"""Shared state for one REPL server: clients, sessions and pending evaluations.

Transport threads and host threads both mutate this state, and several fields
must change together (a disconnect removes a client, rebinds sessions and fails
its pending evaluations). Every mutation therefore happens under one lock as a
single step.
"""

import concurrent.futures
import threading
from dataclasses import dataclass, field
from typing import Any, TextIO

from wsrepl.protocol.messages import ClientId, SessionId
from wsrepl.transport.server import Connection, ServerTransport


@dataclass
class PendingEvaluation:
    """An evaluation request waiting for its result."""

    request_id: str
    client_id: ClientId
    session: SessionId
    future: concurrent.futures.Future[Any] = field(
        default_factory=concurrent.futures.Future
    )


class SessionState:
    """Owns all mutable state for a server run.

    Created empty, populated while the server runs and reset to empty on every
    start and stop, so a restarted server carries nothing over from its
    previous run.
    """

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.reset()

    def reset(self) -> None:
        """Return every field to its initial empty value."""
        with self.lock:
            self.server: ServerTransport | None = None
            self.clients: dict[ClientId, Connection] = {}
            self.next_client_id: ClientId = 0
            self.started = threading.Event()
            self.session_outputs: dict[SessionId, TextIO] = {}
            self.session_clients: dict[SessionId, ClientId] = {}
            self.pending: dict[str, PendingEvaluation] = {}

    # ================================
    # Client registry
    # ================================

    def register_client(self, connection: Connection) -> ClientId:
        """Assign the next client id to a connection and mark the server started.

        A connection maps to at most one id, so registering the same connection
        twice returns the id it already has.
        """
        with self.lock:
            existing = self.client_id_for(connection)
            if existing is not None:
                return existing

            self.next_client_id += 1
            client_id = self.next_client_id
            self.clients[client_id] = connection
            self.started.set()
            return client_id

    def unregister_client(
        self, connection: Connection
    ) -> tuple[ClientId | None, list[PendingEvaluation]]:
        """Remove a connection, rebind its sessions and detach its evaluations.

        Sessions bound to the departing client move to the lowest remaining
        client id, or become unbound if no client is left. Sessions bound to
        other clients are untouched.

        Returns:
            The removed client id (None if the connection was not registered)
            and the pending evaluations that were waiting on it. The caller
            fails those outside the lock.
        """
        with self.lock:
            client_id = self.client_id_for(connection)
            if client_id is None:
                return None, []

            del self.clients[client_id]

            replacement = min(self.clients, default=None)
            for session, bound_id in list(self.session_clients.items()):
                if bound_id != client_id:
                    continue
                if replacement is None:
                    del self.session_clients[session]
                else:
                    self.session_clients[session] = replacement

            orphaned = [
                pending
                for pending in self.pending.values()
                if pending.client_id == client_id
            ]
            for pending in orphaned:
                del self.pending[pending.request_id]

            return client_id, orphaned

    def client_id_for(self, connection: Connection) -> ClientId | None:
        with self.lock:
            for client_id, registered in self.clients.items():
                if registered is connection:
                    return client_id
            return None

    def connection_for(self, client_id: ClientId) -> Connection | None:
        with self.lock:
            return self.clients.get(client_id)

    def client_ids(self) -> list[ClientId]:
        with self.lock:
            return sorted(self.clients)

    # ================================
    # Session bindings
    # ================================

    def current_client(self, session: SessionId) -> ClientId | None:
        """Resolve the client a session targets.

        A binding to a client that is no longer live is treated as stale and
        resolved to the lowest live id instead.
        """
        with self.lock:
            bound = self.session_clients.get(session)
            if bound is not None and bound in self.clients:
                return bound
            return min(self.clients, default=None)

    def bind(self, session: SessionId, client_id: ClientId | None) -> None:
        """Point a session at a client. Liveness is checked lazily on send."""
        with self.lock:
            if client_id is None:
                self.session_clients.pop(session, None)
            else:
                self.session_clients[session] = client_id

    def bound_client(self, session: SessionId) -> ClientId | None:
        """The raw binding for a session, without stale-binding resolution."""
        with self.lock:
            return self.session_clients.get(session)

    def has_session(self, session: SessionId) -> bool:
        with self.lock:
            return session in self.session_outputs or session in self.session_clients

    def forget_session(self, session: SessionId) -> None:
        with self.lock:
            self.session_outputs.pop(session, None)
            self.session_clients.pop(session, None)

    # ================================
    # Pending evaluations
    # ================================

    def track_pending(
        self, request_id: str, client_id: ClientId, session: SessionId
    ) -> PendingEvaluation:
        with self.lock:
            pending = PendingEvaluation(request_id, client_id, session)
            self.pending[request_id] = pending
            return pending

    def untrack_pending(self, request_id: str) -> PendingEvaluation | None:
        with self.lock:
            return self.pending.pop(request_id, None)

    def take_pending(
        self, client_id: ClientId | None, request_id: str | None
    ) -> PendingEvaluation | None:
        """Remove and return the evaluation an inbound answer belongs to.

        With a correlation id the match is exact. Without one, the oldest
        evaluation sent to the answering client is taken.
        """
        with self.lock:
            if request_id is not None:
                return self.pending.pop(request_id, None)

            for pending in self.pending.values():
                if pending.client_id == client_id:
                    return self.pending.pop(pending.request_id)
            return None

    def drain_pending(self) -> list[PendingEvaluation]:
        with self.lock:
            drained = list(self.pending.values())
            self.pending.clear()
            return drained
