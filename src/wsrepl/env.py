"""Host-facing REPL environment backed by websocket-connected JavaScript clients.

A `WebSocketReplEnv` is one logical REPL session. Environments created for the
same host and port share a single `ReplServer`, which stays up as long as at
least one environment is set up and is torn down with the last one.
"""

import functools
import json
import logging
import threading
import uuid
from collections.abc import Callable, Mapping
from typing import Any, TextIO

from pydantic import BaseModel, ConfigDict

from wsrepl.exceptions import NoClientConnected, ServerStopped
from wsrepl.protocol.messages import ClientId
from wsrepl.server.lifecycle import DEFAULT_HOST, DEFAULT_PORT, ReplServer
from wsrepl.transport.websocket import WebSocketServerTransport

logger = logging.getLogger(__name__)

StacktraceParser = Callable[[Any, Any, Mapping[str, Any]], Any]


class ReplEnvOptions(BaseModel):
    """Options for a websocket REPL environment."""

    model_config = ConfigDict(extra="ignore")

    host: str = DEFAULT_HOST
    """
    Address the server binds.
    """

    port: int = DEFAULT_PORT
    """
    Port the server binds.
    """

    path: str = "/"
    """
    URL path clients connect to.
    """

    eval_timeout: float | None = 60.0
    """
    Seconds to wait for an evaluation result. None waits forever.
    """

    connect_timeout: float | None = None
    """
    Seconds setup waits for the first client. None waits forever.
    """

    send_timeout: float = 10.0
    """
    Seconds to wait for a frame to be handed to the socket.
    """


_servers: dict[tuple[str, int], ReplServer] = {}
_servers_lock = threading.Lock()


def get_server(options: ReplEnvOptions) -> ReplServer:
    """Return the server shared by every environment on this host and port."""
    key = (options.host, options.port)
    with _servers_lock:
        server = _servers.get(key)
        if server is None:
            server = ReplServer(
                transport_factory=functools.partial(
                    WebSocketServerTransport,
                    path=options.path,
                    send_timeout=options.send_timeout,
                ),
            )
            _servers[key] = server
        return server


def munge(name: str) -> str:
    """Turn a namespace name into the name goog.require expects."""
    return name.replace("-", "_")


class WebSocketReplEnv:
    """One REPL session evaluating JavaScript on websocket-connected clients.

    Each environment has its own session id and output sink. Evaluations go to
    the client the session is bound to, which starts as the first connected
    client and can be switched with `switch_client`.
    """

    def __init__(
        self,
        options: ReplEnvOptions | None = None,
        *,
        server: ReplServer | None = None,
        out: TextIO | None = None,
        pre_connect: Callable[[], None] | None = None,
        stacktrace_parser: StacktraceParser | None = None,
    ):
        self.options = options or ReplEnvOptions()
        self._owns_server_choice = server is None
        self.server = server or get_server(self.options)
        self.session_id = uuid.uuid4().hex
        self.out = out
        self.pre_connect = pre_connect
        self.stacktrace_parser = stacktrace_parser
        self._set_up = False

    @property
    def running(self) -> bool:
        return self.server.running

    def setup(self, options: Mapping[str, Any] | ReplEnvOptions | None = None) -> None:
        """Start the shared server if needed and attach this session to it.

        Blocks until at least one client is connected, then binds the session
        to the first available client.

        Raises:
            NoClientConnected: If `connect_timeout` expires with no client. The
                session is detached again.
            ServerStopped: If the server is stopped while waiting.
            OSError: If the server could not start listening.
        """
        if options is not None:
            self._merge_options(options)

        if self._set_up and self.server.running:
            just_started = False
        else:
            just_started = self.server.acquire(self.options.host, self.options.port)
            self._set_up = True

        if just_started:
            self._print(
                f"Waiting for connection at "
                f"ws://{self.options.host}:{self.options.port}{self.options.path} ...\n"
            )
            if self.pre_connect:
                self.pre_connect()

        try:
            connected = self.server.wait_for_start(self.options.connect_timeout)
        except ServerStopped:
            self._set_up = False
            raise
        if not connected:
            self.tear_down()
            raise NoClientConnected(
                f"No client connected within {self.options.connect_timeout}s"
            )

        if self.out is not None:
            self.server.output.set_sink(self.session_id, self.out)

        client_ids = self.server.state.client_ids()
        client_id = client_ids[0] if client_ids else None
        self.server.state.bind(self.session_id, client_id)
        logger.info(f"Session {self.session_id} attached to client {client_id}")

    def evaluate(self, code: str) -> Any:
        """Evaluate JavaScript on this session's client and return the result."""
        return self.server.coordinator.evaluate(
            self.session_id, code, self.options.eval_timeout
        )

    def load(self, module_name: str) -> Any:
        """Ask the client to require a module."""
        return self.evaluate(f"goog.require('{munge(module_name)}')")

    def tear_down(self) -> None:
        """Detach this session, stopping the server once nobody uses it."""
        if not self._set_up:
            return
        self._set_up = False

        self.server.state.forget_session(self.session_id)
        logger.info(f"Session {self.session_id} detached")
        if self.server.release_and_stop():
            self._print("<< stopped server >>\n")

    def switch_client(self, client_id: ClientId) -> None:
        self.server.state.bind(self.session_id, client_id)

    def current_client(self) -> ClientId | None:
        return self.server.state.current_client(self.session_id)

    def parse_stacktrace(
        self, stacktrace: Any, error: Any, options: Mapping[str, Any] | None = None
    ) -> Any:
        """Hand a raw stacktrace to the configured parser, if any."""
        if self.stacktrace_parser is None:
            return stacktrace
        return self.stacktrace_parser(stacktrace, error, options or {})

    def get_error(self, error_expression: str) -> dict[str, Any] | None:
        """Fetch a description of a JavaScript error object from the client.

        Args:
            error_expression: JavaScript expression evaluating to the error.

        Returns:
            Dict with `ua_product`, `value` and `stacktrace`, or None if the
            expression is falsy on the client.
        """
        result = self.evaluate(
            "(function (e) {"
            " if (!e) { return 'null'; }"
            " return JSON.stringify({"
            "ua_product: (typeof navigator !== 'undefined'"
            " ? navigator.userAgent : null),"
            " value: String(e), stacktrace: e.stack}); })"
            f"({error_expression})"
        )
        if not isinstance(result, str):
            return None
        return json.loads(result)

    def _merge_options(self, options: Mapping[str, Any] | ReplEnvOptions) -> None:
        if isinstance(options, ReplEnvOptions):
            overrides = options.model_dump(exclude_unset=True)
        else:
            overrides = dict(options)
        self.options = ReplEnvOptions.model_validate(
            {**self.options.model_dump(), **overrides}
        )
        if self._owns_server_choice and not self._set_up:
            self.server = get_server(self.options)

    def _print(self, text: str) -> None:
        output = self.server.output
        output.write_to(self.out if self.out is not None else output.default, text)


def repl_env(**options: Any) -> WebSocketReplEnv:
    """Create a websocket-connected REPL environment.

    Options:

    host:            Address the server binds. Defaults to "localhost".
    port:            Port the server binds. Defaults to 9001.
    path:            URL path clients connect to. Defaults to "/".
    eval_timeout:    Seconds to wait for each evaluation. Defaults to 60.
    connect_timeout: Seconds setup waits for the first client. Defaults to
                     waiting forever.
    out:             Text sink for this session's output. Defaults to stdout.
    pre_connect:     Called after the server starts, before waiting for a
                     client, e.g. to launch a browser.
    """
    out = options.pop("out", None)
    pre_connect = options.pop("pre_connect", None)
    stacktrace_parser = options.pop("stacktrace_parser", None)
    return WebSocketReplEnv(
        ReplEnvOptions(**options),
        out=out,
        pre_connect=pre_connect,
        stacktrace_parser=stacktrace_parser,
    )


_envs: dict[tuple[str, int], WebSocketReplEnv] = {}
_envs_lock = threading.Lock()


def get_env(
    host: str = DEFAULT_HOST, port: int = DEFAULT_PORT, **options: Any
) -> WebSocketReplEnv:
    """Return the cached environment for a host and port.

    A cached environment whose server has stopped is stale and is replaced
    with a fresh one.
    """
    key = (host, port)
    with _envs_lock:
        env = _envs.get(key)
        if env is None or not env.running:
            env = repl_env(host=host, port=port, **options)
            _envs[key] = env
        return env
