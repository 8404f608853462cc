"""Text frame parsing and serialization for the REPL wire protocol.

Turns raw frames from the transport into typed message objects and back. Used
by the server lifecycle to decode inbound frames before dispatch, and by the
eval coordinator to encode outbound requests.
"""

import json
import logging
from typing import Any

from pydantic import ValidationError

from wsrepl.protocol.messages import (
    CLIENT_MESSAGE_CLASSES,
    ClientMessage,
    ProtocolModel,
    UnknownMessage,
)

logger = logging.getLogger(__name__)


class MessageParser:
    """Parses text frames into typed client messages.

    Frames that are not JSON objects, or that fail validation for their tag,
    are logged and dropped. Frames with an unrecognized tag are returned as
    `UnknownMessage` so the dispatcher decides what to do with them.
    """

    def parse(self, frame: str | bytes) -> ClientMessage | None:
        """Parse one frame.

        Args:
            frame: A complete text (or UTF-8 binary) frame from a client.

        Returns:
            The typed message, or None if the frame could not be decoded.
        """
        payload = self.decode(frame)
        if payload is None:
            return None

        op = payload.get("op")
        message_class = CLIENT_MESSAGE_CLASSES.get(op) if isinstance(op, str) else None
        if message_class is None:
            return UnknownMessage.model_validate(
                {**payload, "op": None if op is None else str(op)}
            )

        try:
            return message_class.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Invalid {payload['op']} message: {e}")
            return None

    def decode(self, frame: str | bytes) -> dict[str, Any] | None:
        """Decode a frame into a JSON object, or None if it is not one."""
        if isinstance(frame, bytes):
            try:
                frame = frame.decode("utf-8")
            except UnicodeDecodeError:
                logger.warning("Dropping binary frame that is not UTF-8")
                return None

        try:
            payload = json.loads(frame)
        except json.JSONDecodeError:
            logger.warning(f"Dropping frame that is not JSON: {frame[:200]!r}")
            return None

        if not isinstance(payload, dict):
            logger.warning(f"Dropping frame that is not a JSON object: {frame[:200]!r}")
            return None

        return payload

    def serialize(self, message: ProtocolModel) -> str:
        """Encode a message as a single text frame."""
        return json.dumps(message.to_wire(), separators=(",", ":"))
