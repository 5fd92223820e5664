"""Message transport between a parent and one forked child."""

from .channel import Channel
from .message import Message, MessageCodec
from .payload import Assignment, ErrorInfo, Output, Payload, TaskResult, Value, to_portable

__all__ = (
    "Assignment",
    "Channel",
    "ErrorInfo",
    "Message",
    "MessageCodec",
    "Output",
    "Payload",
    "TaskResult",
    "Value",
    "to_portable",
)
