"""Container image reference parsing and normalization.

Implements the distribution reference grammar used by registries and the
build daemon:

    reference := name [ ":" tag ] [ "@" digest ]
    name      := [ domain "/" ] path-component [ "/" path-component ]*

Short Docker Hub names are normalized the way the docker CLI does it:
``app`` becomes ``docker.io/library/app`` and ``myrepo/app`` becomes
``docker.io/myrepo/app``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace

DEFAULT_DOMAIN = "docker.io"
LEGACY_DEFAULT_DOMAIN = "index.docker.io"
OFFICIAL_REPO_PREFIX = "library/"
DEFAULT_TAG = "latest"
NAME_TOTAL_LENGTH_MAX = 255

_ALPHANUMERIC = r"[a-z0-9]+"
_SEPARATOR = r"(?:[._]|__|[-]+)"
_PATH_COMPONENT = rf"{_ALPHANUMERIC}(?:{_SEPARATOR}{_ALPHANUMERIC})*"
_DOMAIN_COMPONENT = r"(?:[a-zA-Z0-9]|[a-zA-Z0-9][a-zA-Z0-9-]*[a-zA-Z0-9])"
_IPV6_ADDRESS = r"\[[a-fA-F0-9:]+\]"
_DOMAIN = (
    rf"(?:{_DOMAIN_COMPONENT}(?:\.{_DOMAIN_COMPONENT})*|{_IPV6_ADDRESS})(?::[0-9]+)?"
)
_TAG = r"[\w][\w.-]{0,127}"
_DIGEST = r"[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*:[0-9a-fA-F]{32,}"

REFERENCE_PATTERN = re.compile(
    rf"(?P<domain>{_DOMAIN})/(?P<path>{_PATH_COMPONENT}(?:/{_PATH_COMPONENT})*)"
    rf"(?::(?P<tag>{_TAG}))?(?:@(?P<digest>{_DIGEST}))?",
    re.ASCII,
)
IDENTIFIER_PATTERN = re.compile(r"[a-f0-9]{64}", re.ASCII)


class InvalidReferenceError(ValueError):
    """Raised when an image reference does not match the reference grammar."""

    def __init__(
        self, reference: str, reason: str, code: str = "invalid_reference"
    ) -> None:
        super().__init__(f"invalid reference {reference!r}: {reason}")
        self.reference = reference
        self.reason = reason
        self.code = code


@dataclass(frozen=True)
class Named:
    """A normalized, fully qualified image reference.

    Attributes:
        domain: Registry host (with optional port).
        path: Repository path within the registry.
        tag: Optional tag.
        digest: Optional content digest.
    """

    domain: str
    path: str
    tag: str | None = None
    digest: str | None = None

    @property
    def name(self) -> str:
        """Fully qualified repository name without tag or digest."""
        return f"{self.domain}/{self.path}"

    @property
    def familiar_name(self) -> str:
        """Repository name in the short form users type."""
        if self.domain != DEFAULT_DOMAIN:
            return self.name
        path = self.path
        remainder = path[len(OFFICIAL_REPO_PREFIX) :]
        if path.startswith(OFFICIAL_REPO_PREFIX) and "/" not in remainder:
            return remainder
        return path

    def _suffix(self) -> str:
        suffix = ""
        if self.tag:
            suffix += f":{self.tag}"
        if self.digest:
            suffix += f"@{self.digest}"
        return suffix

    def familiar_string(self) -> str:
        """Render the reference in its short familiar form."""
        return self.familiar_name + self._suffix()

    def is_name_only(self) -> bool:
        """Check whether the reference carries neither tag nor digest."""
        return self.tag is None and self.digest is None

    def __str__(self) -> str:
        return self.name + self._suffix()


def split_docker_domain(name: str) -> tuple[str, str]:
    """Split a raw reference into registry domain and remainder.

    The first path element is only treated as a registry when it looks like
    a host (contains ``.`` or ``:``, or is ``localhost``).

    Args:
        name: Raw reference string.

    Returns:
        Tuple of (domain, remainder).
    """
    first, sep, rest = name.partition("/")
    if not sep or (
        "." not in first
        and ":" not in first
        and first != "localhost"
        and first.lower() == first
    ):
        domain, remainder = DEFAULT_DOMAIN, name
    else:
        domain, remainder = first, rest

    if domain == LEGACY_DEFAULT_DOMAIN:
        domain = DEFAULT_DOMAIN
    if domain == DEFAULT_DOMAIN and "/" not in remainder:
        remainder = OFFICIAL_REPO_PREFIX + remainder
    return domain, remainder


def parse_normalized_named(reference: str) -> Named:
    """Parse an image reference and normalize it to a fully qualified name.

    Args:
        reference: Image reference such as ``myrepo/app:v2``.

    Returns:
        Named instance.

    Raises:
        InvalidReferenceError: If the reference is malformed.
    """
    if not reference:
        raise InvalidReferenceError(
            reference, "repository name must have at least one component"
        )
    if IDENTIFIER_PATTERN.fullmatch(reference):
        raise InvalidReferenceError(
            reference, "cannot specify 64-byte hexadecimal strings"
        )

    domain, remainder = split_docker_domain(reference)
    repo_path = remainder.split("@", 1)[0]
    tag_sep = repo_path.rfind(":")
    if tag_sep != -1:
        repo_path = repo_path[:tag_sep]
    if repo_path.lower() != repo_path:
        raise InvalidReferenceError(reference, "repository name must be lowercase")

    match = REFERENCE_PATTERN.fullmatch(f"{domain}/{remainder}")
    if match is None:
        raise InvalidReferenceError(reference, "invalid reference format")

    named = Named(
        domain=match.group("domain"),
        path=match.group("path"),
        tag=match.group("tag"),
        digest=match.group("digest"),
    )
    if len(named.name) > NAME_TOTAL_LENGTH_MAX:
        raise InvalidReferenceError(
            reference,
            f"repository name must not be more than {NAME_TOTAL_LENGTH_MAX} characters",
        )
    return named


def tag_name_only(named: Named) -> Named:
    """Add the default tag to a reference that has neither tag nor digest.

    Args:
        named: Parsed reference.

    Returns:
        The reference, tagged ``latest`` when it was name-only.
    """
    if named.is_name_only():
        return replace(named, tag=DEFAULT_TAG)
    return named


__all__ = [
    "DEFAULT_DOMAIN",
    "DEFAULT_TAG",
    "InvalidReferenceError",
    "Named",
    "parse_normalized_named",
    "split_docker_domain",
    "tag_name_only",
]
