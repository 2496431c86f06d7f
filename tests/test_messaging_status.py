"""Tests for the ImageBuild status transition messenger.

The broker and object store are in-memory fakes recording every call, so
the tests can check ordering between publishes and patches.
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from imagebuild.imagebuilds.store import PatchError
from imagebuild.messaging.broker import BrokerError, PublishOptions, closing_publisher
from imagebuild.messaging.status import (
    MessagingConfig,
    StatusMessenger,
    StatusMessengerError,
    build_object_link,
    image_urls,
    transition_patch,
)
from imagebuild.schema import (
    AMQPOverrides,
    ImageBuild,
    ImageBuildSpec,
    ImageBuildStatus,
    PhaseTransition,
)
from imagebuild.types import Phase

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)
NOW = datetime(2024, 5, 1, 13, 0, 0, tzinfo=timezone.utc)


class FakePublisher:
    def __init__(self, events, fail_on=None):
        self.events = events
        self.fail_on = fail_on
        self.published = []
        self.closed = False

    def publish(self, opts):
        if self.fail_on is not None and len(self.published) == self.fail_on:
            raise BrokerError("channel closed")
        # Copy, the messenger reuses one options object per reconciliation
        snapshot = PublishOptions(
            exchange_name=opts.exchange_name,
            queue_name=opts.queue_name,
            content_type=opts.content_type,
            body=opts.body,
        )
        self.published.append(snapshot)
        self.events.append(("publish", json.loads(opts.body)["currentPhase"]))

    def close(self):
        self.closed = True
        self.events.append(("close", None))


class FakeBroker:
    def __init__(self, events, fail_publish_on=None, fail_connect=False):
        self.events = events
        self.fail_publish_on = fail_publish_on
        self.fail_connect = fail_connect
        self.urls = []
        self.publishers = []

    def connect(self, url):
        self.urls.append(url)
        if self.fail_connect:
            raise BrokerError("connection refused")
        publisher = FakePublisher(self.events, fail_on=self.fail_publish_on)
        self.publishers.append(publisher)
        return publisher

    @property
    def messages(self):
        return [json.loads(p.body) for pub in self.publishers for p in pub.published]


class FakeStore:
    def __init__(self, events, fail_on=None):
        self.events = events
        self.fail_on = fail_on
        self.patches = []

    def patch_status(self, obj, patch):
        if self.fail_on is not None and len(self.patches) == self.fail_on:
            raise PatchError("conflict", code="db_error")
        ops = json.loads(patch)
        self.patches.append(ops)
        self.events.append(("patch", ops[0]["path"]))


def make_object(transitions, images=None, overrides=None):
    return ImageBuild(
        name="app",
        namespace="builds",
        annotations={"team": "platform"},
        spec=ImageBuildSpec(
            context="https://example.com/ctx.tgz",
            images=images or ["myrepo/app", "myrepo/app:v2"],
            amqp_overrides=overrides,
        ),
        status=ImageBuildStatus(phase=transitions[-1].phase, transitions=transitions),
    )


def lifecycle(processed=()):
    """Transitions of a build that went all the way to Succeeded."""
    phases = [
        (Phase.UNSET, Phase.INITIALIZING),
        (Phase.INITIALIZING, Phase.RUNNING),
        (Phase.RUNNING, Phase.SUCCEEDED),
    ]
    return [
        PhaseTransition(
            previous_phase=prev,
            phase=cur,
            occurred_at=T0,
            processed=idx in processed,
        )
        for idx, (prev, cur) in enumerate(phases)
    ]


@pytest.fixture
def events():
    return []


@pytest.fixture
def config():
    return MessagingConfig(
        enabled=True, url="amqp://broker/", exchange="events", queue="status"
    )


def make_messenger(config, broker, store):
    return StatusMessenger(config, broker, store, clock=lambda: NOW)


class TestBuildObjectLink:
    """Tests for build_object_link function."""

    def test_link(self):
        """Should render the namespaced API path of the object."""
        obj = make_object(lifecycle())

        assert build_object_link(obj, "imagebuild.dev", "v1") == (
            "/apis/imagebuild.dev/v1/namespaces/builds/imagebuild/app"
        )

    def test_core_group(self):
        """An empty group should render only the version."""
        obj = make_object(lifecycle())

        assert build_object_link(obj, "", "v1") == (
            "/apis/v1/namespaces/builds/imagebuild/app"
        )

    def test_missing_version(self):
        """A missing version should be an object_link error."""
        with pytest.raises(StatusMessengerError) as exc_info:
            build_object_link(make_object(lifecycle()), "imagebuild.dev", "")

        assert exc_info.value.code == "object_link"


class TestImageUrls:
    """Tests for image_urls function."""

    def test_default_tag(self):
        """Name-only references should get the latest tag."""
        assert image_urls(["myrepo/app", "myrepo/app:v2"]) == [
            "myrepo/app:latest",
            "myrepo/app:v2",
        ]

    def test_familiar_form(self):
        """URLs should use the familiar form of each reference."""
        assert image_urls(["docker.io/library/alpine", "ghcr.io/org/app:1"]) == [
            "alpine:latest",
            "ghcr.io/org/app:1",
        ]

    def test_invalid(self):
        """Malformed references should be a parse_image error."""
        with pytest.raises(StatusMessengerError) as exc_info:
            image_urls(["Not/Valid Image"])

        assert exc_info.value.code == "parse_image"


class TestTransitionPatch:
    """Tests for transition_patch function."""

    def test_patch_document(self):
        """Should replace exactly one entry of the transition log."""
        transition = PhaseTransition(
            previous_phase=Phase.RUNNING,
            phase=Phase.FAILED,
            occurred_at=T0,
            processed=True,
        )

        ops = json.loads(transition_patch(3, transition))

        assert ops == [
            {
                "op": "replace",
                "path": "/status/transitions/3",
                "value": {
                    "previousPhase": "Running",
                    "phase": "Failed",
                    "occurredAt": "2024-05-01T12:00:00Z",
                    "processed": True,
                },
            }
        ]


class TestStatusMessengerReconcile:
    """Tests for StatusMessenger.reconcile()."""

    def test_publishes_in_order_then_patches(self, events, config):
        """Each transition should be published before it is patched."""
        broker, store = FakeBroker(events), FakeStore(events)
        obj = make_object(lifecycle())

        published = make_messenger(config, broker, store).reconcile(obj)

        assert published == 3
        assert events == [
            ("publish", "Initializing"),
            ("patch", "/status/transitions/0"),
            ("publish", "Running"),
            ("patch", "/status/transitions/1"),
            ("publish", "Succeeded"),
            ("patch", "/status/transitions/2"),
            ("close", None),
        ]
        assert all(t.processed for t in obj.status.transitions)
        assert broker.urls == ["amqp://broker/"]

    def test_patch_marks_processed(self, events, config):
        """The patch value should be the transition with processed set."""
        store = FakeStore(events)
        obj = make_object(lifecycle()[:1])

        make_messenger(config, FakeBroker(events), store).reconcile(obj)

        [[op]] = store.patches
        assert op["value"]["processed"] is True
        assert op["value"]["phase"] == "Initializing"

    def test_idempotent(self, events, config):
        """A second reconciliation should publish nothing."""
        broker, store = FakeBroker(events), FakeStore(events)
        messenger = make_messenger(config, broker, store)
        obj = make_object(lifecycle())

        messenger.reconcile(obj)
        events.clear()

        assert messenger.reconcile(obj) == 0
        assert events == [("close", None)]

    def test_skips_processed(self, events, config):
        """Already processed transitions should be skipped."""
        broker, store = FakeBroker(events), FakeStore(events)
        obj = make_object(lifecycle(processed={0, 1}))

        assert make_messenger(config, broker, store).reconcile(obj) == 1
        assert [m["currentPhase"] for m in broker.messages] == ["Succeeded"]
        assert [p[0]["path"] for p in store.patches] == ["/status/transitions/2"]

    def test_message_body(self, events, config):
        """Messages should carry object identity and phases."""
        broker = FakeBroker(events)
        obj = make_object(lifecycle())

        make_messenger(config, broker, FakeStore(events)).reconcile(obj)

        first, _, last = broker.messages
        assert first == {
            "name": "app",
            "annotations": {"team": "platform"},
            "objectLink": "/apis/imagebuild.dev/v1/namespaces/builds/imagebuild/app",
            "previousPhase": "",
            "currentPhase": "Initializing",
            "occurredAt": "2024-05-01T12:00:00Z",
        }
        assert last["imageURLs"] == ["myrepo/app:latest", "myrepo/app:v2"]

    def test_image_urls_only_on_success(self, events, config):
        """Only the Succeeded transition should list image URLs."""
        broker = FakeBroker(events)
        obj = make_object(lifecycle())

        make_messenger(config, broker, FakeStore(events)).reconcile(obj)

        assert ["imageURLs" in m for m in broker.messages] == [False, False, True]

    def test_failed_has_no_image_urls(self, events, config):
        """A Failed transition should not list image URLs."""
        broker = FakeBroker(events)
        obj = make_object(
            [
                PhaseTransition(
                    previous_phase=Phase.RUNNING, phase=Phase.FAILED, occurred_at=T0
                )
            ]
        )

        make_messenger(config, broker, FakeStore(events)).reconcile(obj)

        assert "imageURLs" not in broker.messages[0]

    def test_missing_timestamp_uses_clock(self, events, config):
        """Transitions without a timestamp should be stamped with now."""
        broker = FakeBroker(events)
        obj = make_object([PhaseTransition(phase=Phase.INITIALIZING)])

        make_messenger(config, broker, FakeStore(events)).reconcile(obj)

        assert broker.messages[0]["occurredAt"] == "2024-05-01T13:00:00Z"

    @pytest.mark.parametrize(
        "occurred_at",
        [
            datetime(2024, 5, 1, 12, 0, 0),
            datetime(2024, 5, 1, 14, 0, 0, tzinfo=timezone(timedelta(hours=2))),
        ],
    )
    def test_timestamp_is_sent_in_utc(self, events, config, occurred_at):
        """Naive and offset timestamps should be sent as UTC with a Z suffix."""
        broker = FakeBroker(events)
        obj = make_object(
            [PhaseTransition(phase=Phase.INITIALIZING, occurred_at=occurred_at)]
        )

        make_messenger(config, broker, FakeStore(events)).reconcile(obj)

        assert broker.messages[0]["occurredAt"] == "2024-05-01T12:00:00Z"

    def test_publish_options(self, events, config):
        """Messages should be routed with the configured exchange and queue."""
        broker = FakeBroker(events)

        make_messenger(config, broker, FakeStore(events)).reconcile(
            make_object(lifecycle()[:1])
        )

        [opts] = broker.publishers[0].published
        assert opts.exchange_name == "events"
        assert opts.queue_name == "status"
        assert opts.content_type == "application/json"

    def test_overrides(self, events, config):
        """Per-object overrides should replace the configured routing."""
        broker = FakeBroker(events)
        obj = make_object(
            lifecycle()[:1],
            overrides=AMQPOverrides(exchange_name="team-x", queue_name="q-x"),
        )

        make_messenger(config, broker, FakeStore(events)).reconcile(obj)

        [opts] = broker.publishers[0].published
        assert (opts.exchange_name, opts.queue_name) == ("team-x", "q-x")

    def test_partial_override(self, events, config):
        """Empty override fields should keep the configured values."""
        broker = FakeBroker(events)
        obj = make_object(lifecycle()[:1], overrides=AMQPOverrides(queue_name="q-x"))

        make_messenger(config, broker, FakeStore(events)).reconcile(obj)

        [opts] = broker.publishers[0].published
        assert (opts.exchange_name, opts.queue_name) == ("events", "q-x")

    def test_disabled(self, events, config):
        """With messaging disabled nothing should be published or patched."""
        config.enabled = False
        broker, store = FakeBroker(events), FakeStore(events)
        obj = make_object(lifecycle())

        assert make_messenger(config, broker, store).reconcile(obj) == 0
        assert events == []
        assert broker.urls == []
        assert not any(t.processed for t in obj.status.transitions)

    def test_connect_error(self, events, config):
        """Connection failures should be a broker_connect error."""
        broker = FakeBroker(events, fail_connect=True)

        with pytest.raises(StatusMessengerError) as exc_info:
            make_messenger(config, broker, FakeStore(events)).reconcile(
                make_object(lifecycle())
            )

        assert exc_info.value.code == "broker_connect"
        assert events == []

    def test_publish_error_stops_and_closes(self, events, config):
        """A publish failure should stop processing and close the publisher."""
        broker, store = FakeBroker(events, fail_publish_on=1), FakeStore(events)
        obj = make_object(lifecycle())

        with pytest.raises(StatusMessengerError) as exc_info:
            make_messenger(config, broker, store).reconcile(obj)

        assert exc_info.value.code == "message_publish"
        assert isinstance(exc_info.value.__cause__, BrokerError)
        assert events == [
            ("publish", "Initializing"),
            ("patch", "/status/transitions/0"),
            ("close", None),
        ]
        assert [t.processed for t in obj.status.transitions] == [True, False, False]

    def test_publish_error_on_last_transition(self, events, config):
        """A publish failure at index 2 should leave 0 and 1 processed."""
        broker, store = FakeBroker(events, fail_publish_on=2), FakeStore(events)
        obj = make_object(lifecycle())

        with pytest.raises(StatusMessengerError):
            make_messenger(config, broker, store).reconcile(obj)

        assert [p[0]["path"] for p in store.patches] == [
            "/status/transitions/0",
            "/status/transitions/1",
        ]
        assert [t.processed for t in obj.status.transitions] == [True, True, False]

    def test_patch_error_keeps_earlier_progress(self, events, config):
        """A patch failure at index 2 should leave 0 and 1 processed."""
        broker, store = FakeBroker(events), FakeStore(events, fail_on=2)
        obj = make_object(lifecycle())

        with pytest.raises(StatusMessengerError) as exc_info:
            make_messenger(config, broker, store).reconcile(obj)

        assert exc_info.value.code == "apply_patch"
        assert [t.processed for t in obj.status.transitions] == [True, True, False]
        assert broker.publishers[0].closed

    def test_republishes_after_patch_failure(self, events, config):
        """A transition published but not patched should be published again."""
        broker = FakeBroker(events)
        obj = make_object(lifecycle())

        with pytest.raises(StatusMessengerError):
            make_messenger(config, broker, FakeStore(events, fail_on=2)).reconcile(obj)

        assert make_messenger(config, broker, FakeStore(events)).reconcile(obj) == 1
        phases = [m["currentPhase"] for m in broker.messages]
        assert phases == ["Initializing", "Running", "Succeeded", "Succeeded"]
        assert all(t.processed for t in obj.status.transitions)

    def test_invalid_image_fails_success_message(self, events, config):
        """A malformed image should fail the Succeeded message before publish."""
        broker = FakeBroker(events)
        obj = make_object(lifecycle(processed={0, 1}))
        obj.spec.images = ["Bad/Image Name"]

        with pytest.raises(StatusMessengerError) as exc_info:
            make_messenger(config, broker, FakeStore(events)).reconcile(obj)

        assert exc_info.value.code == "parse_image"
        assert events == [("close", None)]


class TestClosingPublisher:
    """Tests for closing_publisher context manager."""

    def test_close_error_is_logged(self, caplog):
        """A failing close should be logged, not raised."""

        class BrokenPublisher:
            def publish(self, opts):
                pass

            def close(self):
                raise BrokerError("already closed")

        with caplog.at_level("ERROR", logger="imagebuild.messaging.broker"):
            with closing_publisher(BrokenPublisher()):
                pass

        assert "Failed to close message publisher" in caplog.messages

    def test_close_error_does_not_mask_block_error(self):
        """The block's own error should propagate."""

        class BrokenPublisher:
            def publish(self, opts):
                pass

            def close(self):
                raise BrokerError("already closed")

        with pytest.raises(ValueError, match="boom"):
            with closing_publisher(BrokenPublisher()):
                raise ValueError("boom")
