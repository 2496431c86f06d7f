"""ImageBuild service for CRUD operations.

This module provides the high-level API for ImageBuild object management:
creating objects, looking them up, and appending phase transitions to
their status log.
"""

from collections.abc import Sequence
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from imagebuild.imagebuilds.models import ImageBuildRecord
from imagebuild.schema import (
    ImageBuild,
    ImageBuildSpec,
    ImageBuildStatus,
    PhaseTransition,
)
from imagebuild.types import Phase


class ImageBuildNotFoundError(Exception):
    """Raised when an ImageBuild is not found."""

    def __init__(self, namespace: str, name: str, code: str = "not_found") -> None:
        self.namespace = namespace
        self.name = name
        self.code = code
        super().__init__(f"ImageBuild not found: {namespace}/{name}")


class ImageBuildExistsError(Exception):
    """Raised when attempting to create an ImageBuild that already exists."""

    def __init__(self, namespace: str, name: str, code: str = "exists") -> None:
        self.namespace = namespace
        self.name = name
        self.code = code
        super().__init__(f"ImageBuild already exists: {namespace}/{name}")


def record_to_object(record: ImageBuildRecord) -> ImageBuild:
    """Convert an ImageBuildRecord ORM model to an ImageBuild.

    Args:
        record: ImageBuildRecord ORM instance.

    Returns:
        ImageBuild instance.
    """
    return ImageBuild(
        name=record.name,
        namespace=record.namespace,
        annotations=dict(record.annotations or {}),
        spec=ImageBuildSpec.model_validate(record.spec),
        status=ImageBuildStatus(
            phase=Phase(record.phase),
            transitions=[
                PhaseTransition.model_validate(t) for t in record.transitions or []
            ],
        ),
    )


def get_image_build_or_none(
    session: Session, namespace: str, name: str
) -> ImageBuildRecord | None:
    """Get an ImageBuild record by key, or None if it does not exist."""
    stmt = select(ImageBuildRecord).where(
        ImageBuildRecord.namespace == namespace,
        ImageBuildRecord.name == name,
    )
    return session.execute(stmt).scalar_one_or_none()


def get_image_build(session: Session, namespace: str, name: str) -> ImageBuildRecord:
    """Get an ImageBuild record by key.

    Raises:
        ImageBuildNotFoundError: If the object does not exist.
    """
    record = get_image_build_or_none(session, namespace, name)
    if record is None:
        raise ImageBuildNotFoundError(namespace, name)
    return record


def list_image_builds(
    session: Session, namespace: str | None = None
) -> Sequence[ImageBuildRecord]:
    """List ImageBuild records, optionally within one namespace.

    Args:
        session: Database session.
        namespace: Optional namespace filter.

    Returns:
        Records ordered by namespace and name.
    """
    stmt = select(ImageBuildRecord)
    if namespace is not None:
        stmt = stmt.where(ImageBuildRecord.namespace == namespace)
    stmt = stmt.order_by(ImageBuildRecord.namespace, ImageBuildRecord.name)
    return session.execute(stmt).scalars().all()


def create_image_build(session: Session, obj: ImageBuild) -> ImageBuildRecord:
    """Persist a new ImageBuild object.

    Args:
        session: Database session.
        obj: Object to create.

    Returns:
        Created ImageBuildRecord.

    Raises:
        ImageBuildExistsError: If an object with the same key exists.
    """
    if get_image_build_or_none(session, obj.namespace, obj.name) is not None:
        raise ImageBuildExistsError(obj.namespace, obj.name)

    record = ImageBuildRecord(
        namespace=obj.namespace,
        name=obj.name,
        annotations=dict(obj.annotations),
        spec=obj.spec.model_dump(mode="json", by_alias=True, exclude_none=True),
        phase=obj.status.phase.value,
        transitions=[
            t.model_dump(mode="json", by_alias=True, exclude_none=True)
            for t in obj.status.transitions
        ],
    )
    session.add(record)
    session.flush()
    return record


def record_phase_transition(
    session: Session,
    namespace: str,
    name: str,
    phase: Phase,
    occurred_at: datetime | None = None,
) -> PhaseTransition:
    """Move an ImageBuild to a new phase and log the transition.

    The transition is appended unprocessed, to be picked up by the status
    messenger.

    Args:
        session: Database session.
        namespace: Object namespace.
        name: Object name.
        phase: New phase.
        occurred_at: Time of the change; now (UTC) if omitted.

    Returns:
        The appended transition.

    Raises:
        ImageBuildNotFoundError: If the object does not exist.
    """
    record = get_image_build(session, namespace, name)

    transition = PhaseTransition(
        previous_phase=Phase(record.phase),
        phase=phase,
        occurred_at=occurred_at or datetime.now(timezone.utc),
    )
    # Assign a new list so the JSON column is flagged as modified
    record.transitions = [
        *(record.transitions or []),
        transition.model_dump(mode="json", by_alias=True, exclude_none=True),
    ]
    record.phase = phase.value
    session.flush()
    return transition


__all__ = [
    "ImageBuildExistsError",
    "ImageBuildNotFoundError",
    "create_image_build",
    "get_image_build",
    "get_image_build_or_none",
    "list_image_builds",
    "record_phase_transition",
    "record_to_object",
]
