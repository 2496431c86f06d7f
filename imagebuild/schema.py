"""Pydantic models for ImageBuild objects and status messages.

ImageBuild objects are owned by the controller; this package reads their
spec and status, and writes only the ``processed`` marker of individual
status transitions. Field aliases follow the camelCase wire format used by
the API server and by downstream message consumers.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from imagebuild.types import Phase

IMAGEBUILD_KIND = "ImageBuild"


class _CamelModel(BaseModel):
    """Base model accepting both snake_case names and camelCase aliases."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


class AMQPOverrides(_CamelModel):
    """Per-object broker routing overrides.

    Attributes:
        exchange_name: Exchange to publish to instead of the configured one.
        queue_name: Queue to publish to instead of the configured one.
    """

    exchange_name: str | None = Field(default=None)
    queue_name: str | None = Field(default=None)


class ImageBuildSpec(_CamelModel):
    """Desired build for an ImageBuild object.

    Attributes:
        context: Locator of the build context archive.
        images: Target image references, in push order.
        build_args: Build arguments as ``KEY=value`` strings.
        disable_cache_export: Skip exporting inline layer cache.
        disable_cache_import: Skip importing layer cache from the registry.
        amqp_overrides: Optional broker routing overrides.
    """

    context: str = Field(description="Build context archive locator")
    images: list[str] = Field(description="Image references to build and push")
    build_args: list[str] = Field(default_factory=list)
    disable_cache_export: bool = Field(default=False)
    disable_cache_import: bool = Field(default=False)
    amqp_overrides: AMQPOverrides | None = Field(default=None)

    @field_validator("images")
    @classmethod
    def validate_images(cls, v: list[str]) -> list[str]:
        """Validate at least one image is requested."""
        if not v:
            raise ValueError("images must contain at least one reference")
        return v


class PhaseTransition(_CamelModel):
    """A recorded phase change in an ImageBuild's lifecycle.

    ``processed`` flips from False to True once the transition has been
    published and is never reset.
    """

    previous_phase: Phase = Field(default=Phase.UNSET)
    phase: Phase
    occurred_at: datetime | None = Field(default=None)
    processed: bool = Field(default=False)


class ImageBuildStatus(_CamelModel):
    """Observed state of an ImageBuild object."""

    phase: Phase = Field(default=Phase.UNSET)
    transitions: list[PhaseTransition] = Field(default_factory=list)


class ImageBuild(_CamelModel):
    """An ImageBuild object as seen by the build core.

    Attributes:
        name: Object name.
        namespace: Object namespace.
        annotations: Free-form annotations copied onto status messages.
        spec: Desired build.
        status: Observed state, including the transition log.
    """

    name: str = Field(min_length=1)
    namespace: str = Field(default="default", min_length=1)
    annotations: dict[str, str] = Field(default_factory=dict)
    spec: ImageBuildSpec
    status: ImageBuildStatus = Field(default_factory=ImageBuildStatus)

    @property
    def key(self) -> str:
        """Return the ``namespace/name`` key of this object."""
        return f"{self.namespace}/{self.name}"


class StatusTransitionMessage(_CamelModel):
    """Outbound message describing one phase transition.

    ``image_urls`` is only set when the build reached ``Succeeded``.
    """

    name: str
    annotations: dict[str, str] = Field(default_factory=dict)
    object_link: str
    previous_phase: Phase
    current_phase: Phase
    occurred_at: datetime
    image_urls: list[str] | None = Field(default=None, alias="imageURLs")


__all__ = [
    "AMQPOverrides",
    "IMAGEBUILD_KIND",
    "ImageBuild",
    "ImageBuildSpec",
    "ImageBuildStatus",
    "PhaseTransition",
    "StatusTransitionMessage",
]
