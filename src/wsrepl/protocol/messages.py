"""
Messages exchanged between the REPL server and its JavaScript clients.

Every frame on the socket carries exactly one JSON object, tagged by its `op`
field. The server only ever sends one kind of message; clients answer with
three.

## Exchange Flow

1. **Server sends** - `eval-js` with the code to run, the session that asked
   for it and a correlation id
2. **Client prints** - any number of `print` messages tagged with that session
3. **Client answers** - a `result` carrying the encoded value, or `ready` when
   the exchange expects no real value (the connection handshake)

Clients that do not echo the correlation id are still supported: an untagged
answer resolves the oldest evaluation outstanding on that client.
"""

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict

SessionId = str
ClientId = int


class ReadyToken(Enum):
    READY = "ready"


READY = ReadyToken.READY
"""Value an evaluation resolves to when the client answers with `ready`."""


class ProtocolModel(BaseModel):
    """Base class for all wire messages."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the dict that is JSON-encoded onto the socket."""
        return self.model_dump(by_alias=True, exclude_none=True)


class EvalJsMessage(ProtocolModel):
    """
    Server request asking a client to evaluate a piece of JavaScript.
    """

    op: Literal["eval-js"] = "eval-js"

    code: str
    """
    Compiled JavaScript source to evaluate in the client.
    """

    session: SessionId
    """
    Session that requested the evaluation. Clients tag their `print` output
    with it so the output reaches the right REPL.
    """

    id: str | None = None
    """
    Correlation id for matching the eventual `result`.
    """


class ResultMessage(ProtocolModel):
    """
    Client answer carrying the encoded result of an evaluation.
    """

    op: Literal["result"] = "result"

    value: str
    """
    The evaluation result, already encoded as a string by the client.
    """

    id: str | None = None
    """
    Correlation id of the `eval-js` this answers, when the client echoes it.
    """


class PrintMessage(ProtocolModel):
    """
    Output printed by client code while evaluating on behalf of a session.
    """

    op: Literal["print"] = "print"

    value: str
    session: SessionId


class ReadyMessage(ProtocolModel):
    """
    Client signal that it is ready, used for handshakes expecting no value.
    """

    op: Literal["ready"] = "ready"

    id: str | None = None


class UnknownMessage(ProtocolModel):
    """
    A well-formed frame whose `op` is not part of the protocol.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    op: str | None = None


ClientMessage = ResultMessage | PrintMessage | ReadyMessage | UnknownMessage

CLIENT_MESSAGE_CLASSES: dict[str, type[ProtocolModel]] = {
    "result": ResultMessage,
    "print": PrintMessage,
    "ready": ReadyMessage,
}
