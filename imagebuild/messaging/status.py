"""ImageBuild status transition messenger.

Publishes every unprocessed phase transition of an ImageBuild object to the
message broker, in stored order, and marks each one processed with a JSON
patch addressed at its index in ``/status/transitions``.

A transition is published before it is patched. If patching fails after a
successful publish, the next reconciliation publishes it again: consumers
may see duplicates but never miss a transition.

Reconciliations of the same object must be serialized by the caller; the
messenger keeps no state between calls.
"""

from __future__ import annotations

import json
import logging
import posixpath
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from pydantic_core import PydanticSerializationError

from imagebuild.imagebuilds.store import PatchError
from imagebuild.messaging.broker import (
    JSON_CONTENT_TYPE,
    BrokerError,
    PublishOptions,
    closing_publisher,
)
from imagebuild.reference import (
    InvalidReferenceError,
    parse_normalized_named,
    tag_name_only,
)
from imagebuild.schema import IMAGEBUILD_KIND, StatusTransitionMessage
from imagebuild.types import Phase

if TYPE_CHECKING:
    from imagebuild.config import Settings
    from imagebuild.imagebuilds.store import ObjectStore
    from imagebuild.messaging.broker import MessageBroker
    from imagebuild.schema import ImageBuild, PhaseTransition

logger = logging.getLogger(__name__)


class StatusMessengerError(Exception):
    """Raised when a status transition cannot be published or recorded."""

    def __init__(self, message: str, code: str = "status_messenger_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class MessagingConfig:
    """Broker settings for status messages.

    Attributes:
        enabled: Whether status messages are published at all.
        url: Broker URL.
        exchange: Default exchange.
        queue: Default queue.
    """

    enabled: bool = False
    url: str = ""
    exchange: str = ""
    queue: str = ""

    @classmethod
    def from_settings(cls, settings: Settings) -> MessagingConfig:
        """Create a messaging config from application settings."""
        return cls(
            enabled=settings.messaging_enabled,
            url=settings.amqp_url,
            exchange=settings.amqp_exchange,
            queue=settings.amqp_queue,
        )


def build_object_link(
    obj: ImageBuild,
    group: str,
    version: str,
    kind: str = IMAGEBUILD_KIND,
) -> str:
    """Render the API path of an object.

    Args:
        obj: Object to link to.
        group: API group (empty for the core group).
        version: API version.
        kind: Object kind.

    Returns:
        Path like ``/apis/<group>/<version>/namespaces/<ns>/<kind>/<name>``.

    Raises:
        StatusMessengerError: If the object or version is not addressable.
    """
    if not version or not obj.namespace or not obj.name:
        raise StatusMessengerError(
            f"cannot build link for {obj.namespace!r}/{obj.name!r} "
            f"with version {version!r}",
            code="object_link",
        )
    group_version = f"{group}/{version}" if group else version
    return posixpath.join(
        "/apis",
        group_version,
        "namespaces",
        obj.namespace,
        kind.lower(),
        obj.name,
    )


def image_urls(images: list[str]) -> list[str]:
    """Normalize image references for a status message.

    References without a tag or digest get the ``latest`` tag.

    Raises:
        StatusMessengerError: If a reference is malformed.
    """
    urls: list[str] = []
    for image in images:
        try:
            named = parse_normalized_named(image)
        except InvalidReferenceError as e:
            raise StatusMessengerError(
                f"parsing image name {image!r} failed: {e}", code="parse_image"
            ) from e
        urls.append(tag_name_only(named).familiar_string())
    return urls


def transition_patch(index: int, transition: PhaseTransition) -> bytes:
    """Generate the JSON patch replacing one entry of the transition log."""
    ops = [
        {
            "op": "replace",
            "path": f"/status/transitions/{index}",
            "value": transition.model_dump(
                mode="json", by_alias=True, exclude_none=True
            ),
        }
    ]
    return json.dumps(ops).encode("utf-8")


def as_utc(value: datetime) -> datetime:
    """Convert a timestamp to UTC, reading a naive value as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class StatusMessenger:
    """Publishes ImageBuild phase transitions exactly once each.

    Args:
        config: Broker settings.
        broker: Broker used to open one publisher per reconciliation.
        store: Store receiving the status patches.
        api_group: API group for object links.
        api_version: API version for object links.
        clock: Time source for transitions without a timestamp.
    """

    def __init__(
        self,
        config: MessagingConfig,
        broker: MessageBroker,
        store: ObjectStore,
        api_group: str = "imagebuild.dev",
        api_version: str = "v1",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config
        self.broker = broker
        self.store = store
        self.api_group = api_group
        self.api_version = api_version
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def publish_options(self, obj: ImageBuild) -> PublishOptions:
        """Resolve routing for an object, applying its overrides."""
        opts = PublishOptions(
            exchange_name=self.config.exchange,
            queue_name=self.config.queue,
            content_type=JSON_CONTENT_TYPE,
        )

        overrides = obj.spec.amqp_overrides
        if overrides is not None:
            if overrides.exchange_name:
                logger.info("Overriding target exchange: %s", overrides.exchange_name)
                opts.exchange_name = overrides.exchange_name
            if overrides.queue_name:
                logger.info("Overriding target queue: %s", overrides.queue_name)
                opts.queue_name = overrides.queue_name
        return opts

    def build_message(
        self, obj: ImageBuild, transition: PhaseTransition
    ) -> StatusTransitionMessage:
        """Construct the outbound message for one transition.

        Raises:
            StatusMessengerError: If the object link or an image URL cannot
                be derived.
        """
        object_link = build_object_link(obj, self.api_group, self.api_version)

        occurred_at = as_utc(transition.occurred_at or self.clock())
        message = StatusTransitionMessage(
            name=obj.name,
            annotations=dict(obj.annotations),
            object_link=object_link,
            previous_phase=transition.previous_phase,
            current_phase=transition.phase,
            occurred_at=occurred_at,
        )

        # Image URLs are only reported once the images have been pushed
        if transition.phase == Phase.SUCCEEDED:
            message.image_urls = image_urls(obj.spec.images)
        return message

    def reconcile(self, obj: ImageBuild) -> int:
        """Publish and mark every unprocessed transition of ``obj``.

        Args:
            obj: ImageBuild object; processed markers are updated in place
                as each patch succeeds.

        Returns:
            Number of transitions published during this call.

        Raises:
            StatusMessengerError: On the first failure. Transitions handled
                earlier in the call stay processed.
        """
        if not self.config.enabled:
            logger.debug("Messaging is not enabled, skipping %s", obj.key)
            return 0

        logger.info("Creating message publisher for %s", obj.key)
        try:
            publisher = self.broker.connect(self.config.url)
        except BrokerError as e:
            raise StatusMessengerError(
                f"broker connect failed: {e}", code="broker_connect"
            ) from e

        published = 0
        with closing_publisher(publisher):
            opts = self.publish_options(obj)

            for idx, transition in enumerate(obj.status.transitions):
                if transition.processed:
                    logger.debug(
                        "Transition %d of %s has been processed, skipping",
                        idx,
                        obj.key,
                    )
                    continue

                logger.info(
                    "Processing phase transition of %s from %r to %r",
                    obj.key,
                    transition.previous_phase.value,
                    transition.phase.value,
                )

                message = self.build_message(obj, transition)
                try:
                    opts.body = message.model_dump_json(
                        by_alias=True, exclude_none=True
                    ).encode("utf-8")
                except PydanticSerializationError as e:
                    raise StatusMessengerError(
                        f"marshalling status message failed: {e}", code="marshal"
                    ) from e

                logger.info("Publishing transition message for %s", obj.key)
                try:
                    publisher.publish(opts)
                except BrokerError as e:
                    raise StatusMessengerError(
                        f"message publish failed: {e}", code="message_publish"
                    ) from e
                published += 1

                processed = transition.model_copy(update={"processed": True})
                patch = transition_patch(idx, processed)
                logger.debug("Generated JSON patch: %s", patch.decode("utf-8"))

                logger.info(
                    "Patching processed status transition %r of %s",
                    processed.phase.value,
                    obj.key,
                )
                try:
                    self.store.patch_status(obj, patch)
                except PatchError as e:
                    raise StatusMessengerError(
                        f"applying transition patch failed: {e}", code="apply_patch"
                    ) from e
                obj.status.transitions[idx] = processed

        return published


__all__ = [
    "MessagingConfig",
    "StatusMessenger",
    "StatusMessengerError",
    "as_utc",
    "build_object_link",
    "image_urls",
    "transition_patch",
]
