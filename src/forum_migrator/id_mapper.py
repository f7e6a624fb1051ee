"""Persistent mapping from legacy integer IDs to generated UUIDs.

The mapping store is what makes re-running the transform stage deterministic:
once an ID has been mapped and the store saved, every later run reuses the same
UUID for it. Deleting the store (the cleanup stage does this) forces fresh IDs.

Slug helpers live here too, since slugs are the other piece of identity the
transform stage has to keep unique.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Final, Literal

from .utils import read_json, write_json_atomic

if TYPE_CHECKING:
    from pathlib import Path

logger: logging.Logger = logging.getLogger(__name__)

MappingKind = Literal["users", "categories", "discussions", "comments"]

MAPPING_KINDS: Final[tuple[MappingKind, ...]] = ("users", "categories", "discussions", "comments")
MAX_SLUG_LENGTH: Final[int] = 100

_NON_SLUG_CHARS = re.compile(r"[^a-z0-9]+")


@dataclass
class IdMappings:
    """Legacy ID -> new UUID, one table per entity kind."""

    users: dict[int, str] = field(default_factory=dict)
    categories: dict[int, str] = field(default_factory=dict)
    discussions: dict[int, str] = field(default_factory=dict)
    comments: dict[int, str] = field(default_factory=dict)

    def table(self, kind: MappingKind) -> dict[int, str]:
        if kind not in MAPPING_KINDS:
            msg = f"Unknown mapping kind: {kind}"
            raise ValueError(msg)
        return getattr(self, kind)

    def to_dict(self) -> dict[str, dict[str, str]]:
        return {kind: {str(k): v for k, v in self.table(kind).items()} for kind in MAPPING_KINDS}

    @classmethod
    def from_dict(cls, data: dict[str, dict[str, str]]) -> IdMappings:
        mappings = cls()
        for kind in MAPPING_KINDS:
            # JSON object keys are always strings
            mappings.table(kind).update({int(k): v for k, v in data.get(kind, {}).items()})
        return mappings


def load_mappings(path: Path) -> IdMappings:
    """Load the mapping store, or return an empty one if none has been saved."""
    if not path.exists():
        logger.info(f"No mapping store at {path}, starting with empty mappings")
        return IdMappings()
    mappings = IdMappings.from_dict(read_json(path))
    logger.info(
        "Loaded mappings: "
        + ", ".join(f"{len(mappings.table(kind))} {kind}" for kind in MAPPING_KINDS)
    )
    return mappings


def save_mappings(mappings: IdMappings, path: Path) -> None:
    """Persist the full mapping store, replacing the previous version atomically."""
    write_json_atomic(path, mappings.to_dict())
    logger.debug(f"Saved mappings to {path}")


def map_id(mappings: IdMappings, kind: MappingKind, legacy_id: int) -> str:
    """Return the UUID mapped to legacy_id, creating and recording one on first use."""
    table = mappings.table(kind)
    existing = table.get(legacy_id)
    if existing:
        return existing
    new_id = str(uuid.uuid4())
    table[legacy_id] = new_id
    return new_id


def get_mapped_id(mappings: IdMappings, kind: MappingKind, legacy_id: int) -> str | None:
    """Return the UUID mapped to legacy_id without creating one."""
    return mappings.table(kind).get(legacy_id)


def slugify(text: str) -> str:
    """Lowercase, collapse non-alphanumeric runs to '-', trim and cap the length."""
    slug = _NON_SLUG_CHARS.sub("-", text.lower()).strip("-")
    return slug[:MAX_SLUG_LENGTH].strip("-")


def generate_unique_slug(candidate: str, used_slugs: set[str], fallback: str = "thread") -> str:
    """Slugify candidate and suffix it with -1, -2, ... until it is not in used_slugs.

    used_slugs is updated with the returned slug. Keep one set per slug
    namespace (categories and threads are separate namespaces).
    """
    slug = slugify(candidate or "") or fallback

    unique_slug = slug
    counter = 1
    while unique_slug in used_slugs:
        unique_slug = f"{slug}-{counter}"
        counter += 1

    used_slugs.add(unique_slug)
    return unique_slug
