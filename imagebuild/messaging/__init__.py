"""Status messaging module.

This module handles:
- The broker publish/close contract
- Publishing ImageBuild phase transitions exactly once each
"""

from imagebuild.messaging.broker import MessageBroker, PublishOptions, Publisher
from imagebuild.messaging.status import MessagingConfig, StatusMessenger

__all__ = [
    "MessageBroker",
    "MessagingConfig",
    "PublishOptions",
    "Publisher",
    "StatusMessenger",
]
