"""Websocket-backed JavaScript REPL sessions."""

from wsrepl.env import ReplEnvOptions, WebSocketReplEnv, get_env, repl_env
from wsrepl.exceptions import (
    ClientDisconnected,
    EvaluationTimeout,
    NoClientConnected,
    ServerAlreadyRunning,
    ServerStopped,
    WsReplError,
)
from wsrepl.protocol.messages import READY
from wsrepl.server.lifecycle import ReplServer

__all__ = [
    "READY",
    "ClientDisconnected",
    "EvaluationTimeout",
    "NoClientConnected",
    "ReplEnvOptions",
    "ReplServer",
    "ServerAlreadyRunning",
    "ServerStopped",
    "WebSocketReplEnv",
    "WsReplError",
    "get_env",
    "repl_env",
]
