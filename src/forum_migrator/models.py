"""Data models exchanged between the pipeline stages.

Legacy models mirror the rows exported from the Vanilla Forums database. The
transformed models are the records the loader writes to the target store. Both
are serialized as plain JSON objects in the working directory, which is the only
state shared between stages.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Any, Literal, Self

Role = Literal["user", "admin"]


class _Record:
    """Dict (de)serialization shared by all records."""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        names = {f.name for f in fields(cls)}  # type: ignore[arg-type]
        return cls(**{k: v for k, v in data.items() if k in names})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)  # type: ignore[call-overload]


@dataclass
class LegacyUser(_Record):
    """A legacy account that authored at least one discussion or comment."""

    id: int
    username: str
    email: str | None
    avatar_url: str | None = None
    bio: str | None = None
    created_at: str = ""
    is_admin: bool = False

    def __post_init__(self) -> None:
        self.is_admin = bool(self.is_admin)


@dataclass
class LegacyCategory(_Record):
    """A node of the legacy category tree.

    Root categories have no parent (Vanilla stores -1 or NULL there).
    """

    id: int
    name: str
    parent_id: int | None = None
    description: str | None = None
    slug: str | None = None
    sort_order: int = 0
    depth: int = 0

    def __post_init__(self) -> None:
        if self.parent_id is not None and self.parent_id <= 0:
            self.parent_id = None
        self.sort_order = self.sort_order or 0
        self.depth = self.depth or 0


@dataclass
class LegacyDiscussion(_Record):
    """A legacy discussion: thread metadata plus the opening post body."""

    id: int
    category_id: int
    author_id: int
    title: str
    body: str = ""
    format: str = ""
    is_pinned: bool = False
    is_locked: bool = False
    created_at: str = ""
    last_comment_at: str | None = None

    def __post_init__(self) -> None:
        self.is_pinned = bool(self.is_pinned)
        self.is_locked = bool(self.is_locked)
        self.body = self.body or ""
        self.format = self.format or ""


@dataclass
class LegacyComment(_Record):
    """A reply within a legacy discussion."""

    id: int
    discussion_id: int
    author_id: int
    body: str = ""
    format: str = ""
    created_at: str = ""
    updated_at: str | None = None

    def __post_init__(self) -> None:
        self.body = self.body or ""
        self.format = self.format or ""


@dataclass
class TransformedUser(_Record):
    """A user ready for identity creation and profile update."""

    legacy_id: int
    new_id: str
    email: str | None
    username: str
    display_name: str | None
    avatar_url: str | None
    bio: str | None
    role: Role
    created_at: str


@dataclass
class TransformedCategory(_Record):
    """A category in the flattened (max two level) hierarchy."""

    legacy_id: int
    new_id: str
    name: str
    description: str | None
    slug: str
    sort_order: int
    parent_id: str | None
    created_at: str


@dataclass
class TransformedThread(_Record):
    legacy_id: int
    new_id: str
    category_id: str
    author_id: str
    title: str
    slug: str
    is_pinned: bool
    is_locked: bool
    created_at: str
    updated_at: str
    last_post_at: str


@dataclass
class TransformedPost(_Record):
    """A post. legacy_id is None for first posts synthesized from a discussion."""

    legacy_id: int | None
    new_id: str
    thread_id: str
    author_id: str
    content: str
    content_html: str
    is_edited: bool
    created_at: str
    updated_at: str
