"""Message broker contract.

Concrete transports (AMQP, Kafka, ...) implement :class:`MessageBroker`
and :class:`Publisher`; the status messenger only depends on this module.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/json"


class BrokerError(Exception):
    """Raised by broker implementations when connecting or publishing fails."""

    def __init__(self, message: str, code: str = "broker_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class PublishOptions:
    """Routing and payload for one published message."""

    exchange_name: str
    queue_name: str
    content_type: str = JSON_CONTENT_TYPE
    body: bytes = b""


class Publisher(Protocol):
    """An open connection able to publish messages."""

    def publish(self, opts: PublishOptions) -> None: ...

    def close(self) -> None: ...


class MessageBroker(Protocol):
    """Factory of publisher connections."""

    def connect(self, url: str) -> Publisher: ...


@contextmanager
def closing_publisher(publisher: Publisher) -> Iterator[Publisher]:
    """Close a publisher when the block exits.

    The publisher is closed on every exit path. A failure to close is logged
    and does not mask the block's outcome.

    Args:
        publisher: Connected publisher.

    Yields:
        The same publisher.
    """
    try:
        yield publisher
    finally:
        logger.debug("Closing message publisher")
        try:
            publisher.close()
        except Exception:
            logger.exception("Failed to close message publisher")
        else:
            logger.debug("Message publisher closed")


__all__ = [
    "BrokerError",
    "JSON_CONTENT_TYPE",
    "MessageBroker",
    "PublishOptions",
    "Publisher",
    "closing_publisher",
]
