import io

import pytest

from mocks import MockServerTransport, wait_until
from wsrepl.server.lifecycle import ReplServer


@pytest.fixture
def transports() -> list[MockServerTransport]:
    """Every mock transport created by the server under test, oldest first."""
    return []


@pytest.fixture
def default_output():
    return io.StringIO()


@pytest.fixture
def server(transports, default_output):
    """ReplServer wired to mock transports, stopped after the test."""

    def factory(host, port, callbacks):
        transport = MockServerTransport(host, port, callbacks)
        transports.append(transport)
        return transport

    repl_server = ReplServer(transport_factory=factory, default_output=default_output)
    yield repl_server
    repl_server.stop()


@pytest.fixture
def transport(server, transports) -> MockServerTransport:
    """Mock transport of a started server."""
    server.start(host="localhost", port=9050)
    return transports[-1]


@pytest.fixture
def wait_for():
    """Helper to wait for state changed by another thread."""
    return wait_until
