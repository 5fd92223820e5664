"""Duplex message channel over one end of a socket pair."""

from __future__ import annotations

import selectors
import socket
from typing import Final

from ..config import ChannelConfig
from ..exception import MessageDecodeError
from ..log import get_logger
from .message import Message, MessageCodec

__all__ = ("Channel",)

logger = get_logger(__name__)


class Channel:
    """Frame, serialize and buffer discrete messages over a byte stream.

    Frames are newline-delimited. Bytes read from the stream are kept in a
    read buffer until a delimiter arrives, so a message split across several
    reads, or several messages coalesced into one read, decode the same way.
    Decoded messages wait in a queue until `receive` hands them out.
    """

    DELIMITER: Final[bytes] = b"\n"

    def __init__(
        self,
        sock: socket.socket,
        codec: MessageCodec | None = None,
        read_chunk_size: int = 65536,
    ) -> None:
        """Initialize channel.

        Args:
            sock: Connected stream socket, owned by the channel from now on
            codec: Frame codec
            read_chunk_size: Bytes requested per socket read
        """
        self._socket = sock
        self._codec = codec or MessageCodec()
        self._read_chunk_size = read_chunk_size

        self._read_buffer = bytearray()
        self._messages: list[Message] = []
        self._closed = False
        self._eof = False

    @classmethod
    def pair(cls, config: ChannelConfig | None = None) -> tuple[Channel, Channel]:
        """Create two connected channels.

        Raises:
            OSError: The socket pair could not be created.
        """
        config = config or ChannelConfig()
        left, right = socket.socketpair(socket.AF_UNIX, socket.SOCK_STREAM)

        return (
            cls(left, MessageCodec(config.compression_level), config.read_chunk_size),
            cls(right, MessageCodec(config.compression_level), config.read_chunk_size),
        )

    @property
    def closed(self) -> bool:
        """Whether `close` was called."""
        return self._closed

    @property
    def eof(self) -> bool:
        """Whether the peer closed its end."""
        return self._eof

    def fileno(self) -> int:
        """File descriptor of the underlying socket, -1 once closed."""
        return self._socket.fileno()

    def send(self, message: Message) -> bool:
        """Send one message.

        Returns:
            False if the channel is closed or the peer is gone, True otherwise
        """
        if self._closed:
            return False

        frame = self._codec.encode(message) + self.DELIMITER

        try:
            self._socket.sendall(frame)
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning("Channel peer is gone, message dropped", topic=message.topic, error=e)
            return False

        return True

    def receive(self, wait: bool = False, topic: str | None = None) -> list[Message]:
        """Read from the stream and return decoded messages.

        Args:
            wait: Block reading until the peer closes its end
            topic: Only return (and remove) messages with this topic,
                leaving the others queued

        Returns:
            Messages in arrival order

        Raises:
            MessageDecodeError: A frame could not be decoded
        """
        self._fill(wait)

        if topic is None:
            messages, self._messages = self._messages, []
            return messages

        matched = [m for m in self._messages if m.topic == topic]
        if matched:
            self._messages = [m for m in self._messages if m.topic != topic]

        return matched

    def pump(self) -> int:
        """Read whatever is available without handing messages out.

        Returns:
            Number of newly decoded messages
        """
        return self._fill(wait=False)

    def wait_readable(self, timeout: float | None) -> bool:
        """Block until the stream has data or the timeout elapses.

        Returns:
            True if data (or EOF) is ready to be read
        """
        if self._closed:
            return False

        if self._eof:
            return True

        with selectors.DefaultSelector() as selector:
            selector.register(self._socket, selectors.EVENT_READ)
            return bool(selector.select(timeout))

    def close(self, ignore_pending: bool = False) -> None:
        """Close the channel exactly once.

        Args:
            ignore_pending: Skip the final non-blocking read. Messages already
                queued stay available through `receive` either way.
        """
        if self._closed:
            return

        try:
            if not ignore_pending:
                self._fill(wait=False)
        finally:
            self._socket.close()
            self._closed = True

    def _fill(self, wait: bool) -> int:
        """Move bytes from the socket into the buffer and decode frames."""
        if self._closed or self._eof:
            return 0

        flags = 0 if wait else socket.MSG_DONTWAIT

        while True:
            try:
                chunk = self._socket.recv(self._read_chunk_size, flags)
            except BlockingIOError:
                break
            except ConnectionResetError:
                chunk = b""

            if not chunk:
                self._eof = True
                break

            self._read_buffer += chunk

        return self._decode_buffer()

    def _decode_buffer(self) -> int:
        """Decode every complete frame, keep the trailing fragment."""
        if not self._read_buffer:
            return 0

        *frames, rest = self._read_buffer.split(self.DELIMITER)
        self._read_buffer = bytearray(rest)

        decoded = 0
        for frame in frames:
            if not frame:
                continue

            self._messages.append(self._codec.decode(frame))
            decoded += 1

        if self._eof and self._read_buffer:
            truncated = len(self._read_buffer)
            self._read_buffer.clear()
            raise MessageDecodeError(f"Stream ended inside a frame ({truncated} bytes left)")

        return decoded
