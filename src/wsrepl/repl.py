"""Line-oriented command loop on top of a websocket REPL environment.

Lines are evaluated as JavaScript on the session's current client. Two lines
are commands instead: `:repl.ws/=>N` switches the session to client N, and
`:cljs/quit` ends the loop.
"""

import re
import sys
from collections.abc import Callable
from typing import TextIO

from wsrepl.env import WebSocketReplEnv
from wsrepl.exceptions import WsReplError
from wsrepl.protocol.messages import READY
from wsrepl.server.output import SWITCH_COMMAND_PREFIX

QUIT_COMMAND = ":cljs/quit"
DEFAULT_NAMESPACE = "cljs.user"

_SWITCH_PATTERN = re.compile(rf"^{re.escape(SWITCH_COMMAND_PREFIX)}(\d+)$")


def repl_prompt(env: WebSocketReplEnv, namespace: str = DEFAULT_NAMESPACE) -> str:
    """Build the prompt, naming the client when it isn't the first one."""
    client = env.current_client()
    if client is not None and client > 1:
        return f"{namespace}:{client}=> "
    return f"{namespace}=> "


def parse_switch(line: str) -> int | None:
    """Return the client id if the line is a switch command."""
    match = _SWITCH_PATTERN.match(line.strip())
    if match is None:
        return None
    return int(match.group(1))


def run_repl(
    env: WebSocketReplEnv,
    read_line: Callable[[str], str] = input,
    out: TextIO | None = None,
    namespace: str = DEFAULT_NAMESPACE,
) -> None:
    """Run a read-eval-print loop until quit or end of input.

    Args:
        env: Environment to evaluate in. It is set up on entry and torn down
            on exit.
        read_line: Reads one line given a prompt; raises EOFError at the end.
        out: Where results and messages are printed. Defaults to stdout.
        namespace: Namespace shown in the prompt.
    """
    out = out or sys.stdout
    env.setup()
    try:
        while True:
            try:
                line = read_line(repl_prompt(env, namespace))
            except EOFError:
                break

            line = line.strip()
            if not line:
                continue
            if line == QUIT_COMMAND:
                break

            client_id = parse_switch(line)
            if client_id is not None:
                print(f"switching to client: {client_id}", file=out)
                env.switch_client(client_id)
                continue

            try:
                value = env.evaluate(line)
            except (WsReplError, ConnectionError) as e:
                print(f"Error: {e}", file=out)
                continue

            if value is not READY:
                print(value, file=out)
    finally:
        env.tear_down()
