"""Targeted status patches for ImageBuild objects.

The status messenger records progress through :class:`ObjectStore`, which
applies a JSON patch to the status of a single object. Only ``replace``
operations on ``/status/phase`` and ``/status/transitions/<index>`` are
accepted, so a patch can never grow, shrink or reorder the transition log.
"""

from __future__ import annotations

import json
import logging
import re
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from imagebuild.db import get_session
from imagebuild.imagebuilds.models import ImageBuildRecord
from imagebuild.schema import PhaseTransition
from imagebuild.types import Phase

if TYPE_CHECKING:
    from sqlalchemy.orm import Session, sessionmaker

    from imagebuild.schema import ImageBuild

logger = logging.getLogger(__name__)

TRANSITION_PATH_PATTERN = re.compile(r"^/status/transitions/(0|[1-9][0-9]*)$")
PHASE_PATH = "/status/phase"


class PatchError(Exception):
    """Raised when a status patch cannot be applied."""

    def __init__(self, message: str, code: str = "patch_error") -> None:
        super().__init__(message)
        self.code = code


class ObjectStore(Protocol):
    """Persisted ImageBuild objects supporting targeted status patches."""

    def patch_status(self, obj: ImageBuild, patch: bytes) -> None:
        """Apply a JSON patch to the status of ``obj``.

        Raises:
            PatchError: If the patch is invalid or cannot be persisted.
        """
        ...


def parse_patch(patch: bytes) -> list[dict[str, Any]]:
    """Decode a JSON patch document.

    Raises:
        PatchError: If the document is not a list of operations.
    """
    try:
        ops = json.loads(patch)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise PatchError(f"invalid JSON patch: {e}", code="invalid_patch") from e

    if not isinstance(ops, list) or not all(isinstance(op, dict) for op in ops):
        raise PatchError(
            "JSON patch must be a list of operations", code="invalid_patch"
        )
    return ops


def apply_status_patch(
    phase: str,
    transitions: list[dict[str, Any]],
    ops: list[dict[str, Any]],
) -> tuple[str, list[dict[str, Any]]]:
    """Apply status patch operations to a copy of an object's status.

    Args:
        phase: Current phase.
        transitions: Current transition log (JSON form).
        ops: Patch operations.

    Returns:
        Tuple of (new phase, new transition log).

    Raises:
        PatchError: If an operation is unsupported or out of range.
    """
    new_transitions = [dict(t) for t in transitions]

    for op in ops:
        if op.get("op") != "replace":
            raise PatchError(
                f"unsupported patch operation {op.get('op')!r}", code="unsupported_op"
            )
        path = op.get("path", "")

        if path == PHASE_PATH:
            try:
                phase = Phase(op.get("value")).value
            except ValueError as e:
                raise PatchError(str(e), code="invalid_value") from e
            continue

        match = TRANSITION_PATH_PATTERN.match(path)
        if match is None:
            raise PatchError(
                f"unsupported patch path {path!r}", code="unsupported_path"
            )

        index = int(match.group(1))
        if index >= len(new_transitions):
            raise PatchError(
                f"transition index {index} out of range "
                f"({len(new_transitions)} transitions)",
                code="out_of_range",
            )
        try:
            value = PhaseTransition.model_validate(op.get("value"))
        except ValidationError as e:
            raise PatchError(
                f"invalid transition value: {e}", code="invalid_value"
            ) from e
        new_transitions[index] = value.model_dump(
            mode="json", by_alias=True, exclude_none=True
        )

    return phase, new_transitions


class SqlObjectStore:
    """ObjectStore backed by the ImageBuild database tables.

    Args:
        session_factory: Session factory; each patch runs in its own
            transaction.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def patch_status(self, obj: ImageBuild, patch: bytes) -> None:
        """Apply a JSON patch to the stored status of ``obj``.

        Raises:
            PatchError: If the object is missing, the patch is invalid, or
                the database write fails.
        """
        ops = parse_patch(patch)

        try:
            with get_session(self.session_factory) as session:
                stmt = select(ImageBuildRecord).where(
                    ImageBuildRecord.namespace == obj.namespace,
                    ImageBuildRecord.name == obj.name,
                )
                record = session.execute(stmt).scalar_one_or_none()
                if record is None:
                    raise PatchError(
                        f"ImageBuild not found: {obj.key}", code="not_found"
                    )

                phase, transitions = apply_status_patch(
                    record.phase, list(record.transitions or []), ops
                )
                record.phase = phase
                record.transitions = transitions
        except SQLAlchemyError as e:
            raise PatchError(
                f"failed to persist status patch for {obj.key}: {e}",
                code="db_error",
            ) from e

        logger.debug("Applied %d status patch operation(s) to %s", len(ops), obj.key)


__all__ = [
    "ObjectStore",
    "PatchError",
    "SqlObjectStore",
    "apply_status_patch",
    "parse_patch",
]
