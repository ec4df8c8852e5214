"""Task-status messaging: wire format, broker contract and consumer."""

from .broker import Delivery, InMemoryBroker, MessageBroker
from .consumer import STATUS_MAPPING, TaskStatusConsumer, is_retryable_error
from .messages import (
    ConsumerSettings,
    TaskStatus,
    TaskStatusMessage,
    decode_status_message,
    get_consumer_settings,
    parse_status_message,
    validate_status_message,
)

__all__ = [
    "ConsumerSettings",
    "Delivery",
    "InMemoryBroker",
    "MessageBroker",
    "STATUS_MAPPING",
    "TaskStatus",
    "TaskStatusConsumer",
    "TaskStatusMessage",
    "decode_status_message",
    "get_consumer_settings",
    "is_retryable_error",
    "parse_status_message",
    "validate_status_message",
]
