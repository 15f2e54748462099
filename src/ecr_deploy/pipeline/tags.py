"""Image tag planning.

The primary image lives at ``<ecr_uri>/github/<owner>/<repo>/<branch>`` (lower
cased), tagged with ``latest`` and the commit SHA. Every extra registry gets
the same two labels under its own host. When an architecture is given, each
label is prefixed with ``<arch>-``.

Example usage:
    >>> base = container_base("123.dkr.ecr.us-east-1.amazonaws.com", "Org/Repo", "refs/heads/main")
    >>> tag_set = plan_tags(container_base=base, commit_sha="abcd123")
    >>> tag_set.references()
    ['123.dkr.ecr.us-east-1.amazonaws.com/github/org/repo/main:abcd123',
     '123.dkr.ecr.us-east-1.amazonaws.com/github/org/repo/main:latest']
"""

from __future__ import annotations

from collections.abc import Iterable

from pydantic import BaseModel, Field

from ecr_deploy.config import ExtraTagPolicy
from ecr_deploy.logging import get_logger
from ecr_deploy.pipeline.registries import cut_field

logger = get_logger(__name__)

LATEST = "latest"


class ImageTag(BaseModel):
    """One tag of the built image.

    Attributes:
        registry_host: Registry the tag is pushed to
        repository_path: Repository path below the registry host
        label: Tag label (latest or the commit SHA, optionally arch-prefixed)
    """

    model_config = {"frozen": True}

    registry_host: str = Field(description="Registry hostname")
    repository_path: str = Field(description="Repository path")
    label: str = Field(description="Tag label")

    @property
    def repository(self) -> str:
        """Fully qualified repository name."""
        return f"{self.registry_host}/{self.repository_path}"

    @property
    def reference(self) -> str:
        """Fully qualified image reference (repository:label)."""
        return f"{self.repository}:{self.label}"

    def __str__(self) -> str:
        return self.reference


class TagSet(BaseModel):
    """Ordered, duplicate-free collection of image tags."""

    model_config = {"frozen": True}

    tags: tuple[ImageTag, ...] = Field(default_factory=tuple)

    def __len__(self) -> int:
        return len(self.tags)

    def references(self) -> list[str]:
        return [tag.reference for tag in self.tags]

    def repositories(self) -> list[str]:
        """Distinct repositories in first-seen order."""
        seen: dict[str, None] = {}
        for tag in self.tags:
            seen.setdefault(tag.repository, None)
        return list(seen)

    def for_host(self, host: str) -> list[ImageTag]:
        return [tag for tag in self.tags if tag.registry_host == host]


def branch_from_ref(ref: str) -> str:
    """Return the third slash-delimited segment of a git ref.

    ``refs/heads/main`` yields ``main`` and ``refs/pull/42/merge`` yields
    ``42``. Refs with fewer than three segments yield an empty string, and
    branch names containing slashes are truncated to their first segment.
    A ref without any slash is returned unchanged.
    """
    return cut_field(ref, "/", 3)


def container_base(ecr_uri: str, repository: str, ref: str) -> str:
    """Build the lower-cased base image path ``<ecr_uri>/github/<repository>/<branch>``."""
    return f"{ecr_uri}/github/{repository}/{branch_from_ref(ref)}".lower()


def container_path(base: str) -> str:
    """Strip the registry host from a base image path."""
    return base.split("/", 1)[1] if "/" in base else base


def label_prefix(architecture: str) -> str:
    return f"{architecture}-" if architecture else ""


def plan_tags(
    *,
    container_base: str,
    commit_sha: str,
    architecture: str = "",
    extra_hosts: Iterable[str] = (),
    authenticated_hosts: Iterable[str] | None = None,
    policy: ExtraTagPolicy = ExtraTagPolicy.ALWAYS,
) -> TagSet:
    """Compute the primary and per-registry image tags.

    Args:
        container_base: Lower-cased primary base path (host/github/owner/repo/branch)
        commit_sha: Commit identifier used as the second label
        architecture: Optional prefix applied to every label
        extra_hosts: Hosts of the parsed extra registries, in input order
        authenticated_hosts: Hosts whose login succeeded (consulted by
            AUTHENTICATED_ONLY; None means unknown, which skips every extra host)
        policy: Whether extra hosts with a failed login still receive tags

    Returns:
        TagSet with the primary SHA and latest tags first, then two tags per
        extra registry
    """
    prefix = label_prefix(architecture)
    primary_host, _, path = container_base.partition("/")
    primary_labels = [f"{prefix}{commit_sha}", f"{prefix}{LATEST}"]
    extra_labels = [f"{prefix}{LATEST}", f"{prefix}{commit_sha}"]

    planned: list[ImageTag] = [
        ImageTag(registry_host=primary_host, repository_path=path, label=label)
        for label in primary_labels
    ]

    allowed = set(authenticated_hosts or ())
    for host in extra_hosts:
        if policy is ExtraTagPolicy.AUTHENTICATED_ONLY and host not in allowed:
            logger.warning("extra_registry_tags_skipped", host=host, reason="login_failed")
            continue
        planned.extend(
            ImageTag(registry_host=host, repository_path=path, label=label) for label in extra_labels
        )

    unique: dict[str, ImageTag] = {}
    for tag in planned:
        unique.setdefault(tag.reference, tag)

    tag_set = TagSet(tags=tuple(unique.values()))
    logger.info("tags_planned", tags=tag_set.references(), policy=policy.value)
    return tag_set
