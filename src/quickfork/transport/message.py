"""Message model and its text-safe wire encoding."""

from __future__ import annotations

import base64
import binascii
import zlib
from uuid import uuid4

import msgspec
from msgspec import Struct, field

from ..enum import Topic
from ..exception import MessageDecodeError
from .payload import Payload

__all__ = (
    "Message",
    "MessageCodec",
)


def _message_id() -> str:
    return f"msg_{uuid4().hex}"


class Message(Struct, kw_only=True):
    """One discrete protocol event.

    Attributes:
        topic: Drives how the receiver interprets the message.
        payload: Optional payload, one of the closed `Payload` variants.
        fork_id: Correlation id of the sending fork.
        reply_to: Id of whatever this message answers, e.g. a task id.
        id: Unique message id.
    """

    topic: Topic
    payload: Payload | None = None
    fork_id: str | None = None
    reply_to: str | None = None
    id: str = field(default_factory=_message_id)


class MessageCodec:
    """Encode messages into single-line frames and back.

    A frame is ``base64(zlib(msgpack(message)))``; it never contains the
    newline delimiter, so frames can be concatenated on a byte stream.
    """

    def __init__(self, compression_level: int = 6) -> None:
        self._compression_level = compression_level
        self._encoder = msgspec.msgpack.Encoder()
        self._decoder = msgspec.msgpack.Decoder(Message)

    def encode(self, message: Message) -> bytes:
        """Encode a message into a frame, without delimiter."""

        serialized = self._encoder.encode(message)
        compressed = zlib.compress(serialized, self._compression_level)
        return base64.b64encode(compressed)

    def decode(self, frame: bytes) -> Message:
        """Decode a frame produced by `encode`.

        Raises:
            MessageDecodeError: Any stage of the decoding failed.
        """

        try:
            compressed = base64.b64decode(frame, validate=True)
            serialized = zlib.decompress(compressed)
            return self._decoder.decode(serialized)
        except (binascii.Error, zlib.error, msgspec.DecodeError) as exc:
            preview = bytes(frame[:32])
            raise MessageDecodeError(f"Malformed frame ({len(frame)} bytes, starts {preview!r}): {exc}") from exc
