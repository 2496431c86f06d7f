"""ImageBuild ORM models.

This module defines the ImageBuildRecord model persisting ImageBuild
objects, including their status transition log, in the database.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from imagebuild.db import Base
from imagebuild.types import Phase


class ImageBuildRecord(Base):
    """ORM model for ImageBuild objects.

    Attributes:
        id: Primary key.
        namespace: Object namespace.
        name: Object name, unique within its namespace.
        annotations: JSON mapping of annotations.
        spec: JSON representation of the ImageBuild spec (camelCase keys).
        phase: Current lifecycle phase.
        transitions: JSON array of phase transitions, oldest first.
        created_at: Timestamp of creation.
        updated_at: Timestamp of last update.
    """

    __tablename__ = "image_builds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Identity
    namespace: Mapped[str] = mapped_column(String(253), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(253), nullable=False)

    annotations: Mapped[dict[str, str] | None] = mapped_column(
        JSON, nullable=True, default=dict
    )
    spec: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    # Status
    phase: Mapped[str] = mapped_column(
        String(20), nullable=False, default=Phase.UNSET.value
    )
    transitions: Mapped[list[dict[str, Any]] | None] = mapped_column(
        JSON, nullable=True, default=list
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("namespace", "name", name="uq_image_builds_namespace_name"),
    )

    def __repr__(self) -> str:
        """Return string representation of ImageBuildRecord."""
        return (
            f"<ImageBuildRecord(id={self.id}, key='{self.namespace}/{self.name}', "
            f"phase='{self.phase}')>"
        )


__all__ = ["ImageBuildRecord"]
