"""Transform stage: turn legacy snapshots into records for the target schema.

This stage:
- maps every legacy integer ID to a UUID (through the persistent mapping store)
- makes usernames valid and unique
- flattens the category tree to at most two levels, dropping the archive
  container and folding intermediate levels into the category name
- converts post bodies to markdown and sanitized HTML
- turns each discussion into a thread plus its first post

Category flattening
-------------------
The target allows a category to have a parent only if that parent has none.
For each legacy category the ancestor chain (root first, self last) is built
and cut just below the archive node, if the archive is in it. Then, for the
remaining chain:

    []            -> the archive node itself, not migrated
    [A]           -> A is top level
    [A, B]        -> B is a child of A
    [A, B, C, D]  -> D is a child of A, named "B - C - D"
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final, NamedTuple, TypeVar

from . import extractor
from .config import DEFAULT_ARCHIVE_CATEGORY
from .content_converter import convert_content
from .id_mapper import generate_unique_slug, get_mapped_id, load_mappings, map_id, save_mappings
from .models import (
    LegacyCategory,
    LegacyComment,
    LegacyDiscussion,
    LegacyUser,
    TransformedCategory,
    TransformedPost,
    TransformedThread,
    TransformedUser,
)
from .utils import now_iso, read_json, to_iso_timestamp, write_json_atomic

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from .config import MigrationSettings
    from .id_mapper import IdMappings

logger: logging.Logger = logging.getLogger(__name__)

# Validation limits of the target forum
MAX_USERNAME_LENGTH: Final[int] = 30
MIN_USERNAME_LENGTH: Final[int] = 3
MAX_BIO_LENGTH: Final[int] = 500
MAX_TITLE_LENGTH: Final[int] = 200

CATEGORY_NAME_SEPARATOR: Final[str] = " - "

TRANSFORMED_USERS_FILE: Final[str] = "transformed-users.json"
TRANSFORMED_CATEGORIES_FILE: Final[str] = "transformed-categories.json"
TRANSFORMED_THREADS_FILE: Final[str] = "transformed-threads.json"
TRANSFORMED_POSTS_FILE: Final[str] = "transformed-posts.json"

_INVALID_USERNAME_CHARS = re.compile(r"[^a-zA-Z0-9_-]")

RecordT = TypeVar("RecordT", LegacyUser, LegacyCategory, LegacyDiscussion, LegacyComment)


@dataclass
class TransformStats:
    """Counts collected during a transform run."""

    users: int = 0
    categories: int = 0
    categories_skipped: int = 0
    threads: int = 0
    posts: int = 0
    discussions_skipped: int = 0
    comments_skipped: int = 0
    orphaned_comments: int = 0
    content_fallbacks: int = 0


class CategoryPosition(NamedTuple):
    """Where a legacy category ends up in the flattened hierarchy."""

    effective_depth: int
    """0 for top level, 1 for a subcategory, -1 if the category is not migrated."""
    effective_parent_id: int | None
    """Legacy ID of the new parent, if any."""
    name_prefix: list[str]
    """Names of the intermediate categories folded into this one's name."""


class ThreadsAndPosts(NamedTuple):
    threads: list[TransformedThread]
    posts: list[TransformedPost]


def _iso_or(value: str | None, default: str) -> str:
    if not value:
        return default
    try:
        return to_iso_timestamp(value)
    except ValueError:
        logger.warning(f"Unparseable timestamp {value!r}, using {default}")
        return default


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def sanitize_username(username: str) -> str:
    """Replace invalid characters with '_' and enforce the length limits."""
    clean = _INVALID_USERNAME_CHARS.sub("_", username or "")[:MAX_USERNAME_LENGTH]
    return clean.ljust(MIN_USERNAME_LENGTH, "_")


def _unique_username(username: str, used_usernames: set[str]) -> str:
    """Suffix username with 1, 2, ... until it is unique (case-insensitively)."""
    candidate = username
    counter = 1
    while candidate.lower() in used_usernames:
        suffix = str(counter)
        candidate = f"{username[: MAX_USERNAME_LENGTH - len(suffix)]}{suffix}"
        counter += 1
    used_usernames.add(candidate.lower())
    return candidate


def transform_users(legacy_users: Sequence[LegacyUser], mappings: IdMappings) -> list[TransformedUser]:
    """Transform legacy users, assigning UUIDs and unique usernames."""
    print("Transforming users...")
    used_usernames: set[str] = set()
    transformed: list[TransformedUser] = []
    fallback_time = now_iso()

    for user in legacy_users:
        original = user.username or ""
        username = _unique_username(sanitize_username(original), used_usernames)
        if username != original:
            logger.debug(f"User {user.id}: username {original!r} -> {username!r}")

        transformed.append(
            TransformedUser(
                legacy_id=user.id,
                new_id=map_id(mappings, "users", user.id),
                email=user.email,
                username=username,
                display_name=original if original and original != username else None,
                avatar_url=user.avatar_url or None,
                bio=user.bio[:MAX_BIO_LENGTH] if user.bio else None,
                role="admin" if user.is_admin else "user",
                created_at=_iso_or(user.created_at, fallback_time),
            )
        )

    return transformed


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------


def ancestor_chain(category_id: int, by_id: dict[int, LegacyCategory]) -> list[LegacyCategory]:
    """Return the chain of categories from the root down to category_id (inclusive)."""
    chain: list[LegacyCategory] = []
    seen: set[int] = set()
    current = by_id.get(category_id)
    while current is not None and current.id not in seen:
        seen.add(current.id)
        chain.insert(0, current)
        if current.parent_id is None:
            break
        current = by_id.get(current.parent_id)
    return chain


def effective_position(
    category: LegacyCategory,
    by_id: dict[int, LegacyCategory],
    archive_id: int | None,
) -> CategoryPosition:
    """Compute the position of a category once the archive is elided and depth flattened.

    The archive and anything above it are cut from the chain, so the archive's
    children become top level. Categories above the archive are discarded on purpose,
    never re-parented.
    """
    chain = ancestor_chain(category.id, by_id)
    archive_index = next((i for i, c in enumerate(chain) if c.id == archive_id), None)
    if archive_index is not None:
        chain = chain[archive_index + 1 :]

    if not chain:
        return CategoryPosition(effective_depth=-1, effective_parent_id=None, name_prefix=[])

    effective_depth = min(len(chain) - 1, 1)
    effective_parent_id = chain[0].id if len(chain) > 1 else None
    # Skip the new parent and the category itself, keep everything in between
    name_prefix = [c.name for c in chain[1:-1]]

    return CategoryPosition(
        effective_depth=effective_depth,
        effective_parent_id=effective_parent_id,
        name_prefix=name_prefix,
    )


def transform_categories(
    legacy_categories: Sequence[LegacyCategory],
    mappings: IdMappings,
    archive_name: str = DEFAULT_ARCHIVE_CATEGORY,
    stats: TransformStats | None = None,
) -> list[TransformedCategory]:
    """Flatten the legacy category tree into the two level target hierarchy."""
    print("Transforming categories...")

    by_id = {c.id: c for c in legacy_categories}
    used_slugs: set[str] = set()
    created_at = now_iso()

    archive = next((c for c in legacy_categories if c.name == archive_name), None)
    archive_id = archive.id if archive else None
    if archive:
        logger.info(f'Found "{archive_name}" archive (ID: {archive_id}) - promoting its children')
    else:
        logger.info(f'No "{archive_name}" archive category found')

    transformed: list[TransformedCategory] = []

    # Parents must be mapped before any of their children look them up
    for category in sorted(legacy_categories, key=lambda c: c.depth):
        position = effective_position(category, by_id, archive_id)

        if position.effective_depth < 0:
            logger.info(f"Skipping archive category: {category.name}")
            if stats is not None:
                stats.categories_skipped += 1
            continue

        full_name = CATEGORY_NAME_SEPARATOR.join([*position.name_prefix, category.name])

        parent_id: str | None = None
        if position.effective_parent_id is not None:
            parent_id = map_id(mappings, "categories", position.effective_parent_id)

        transformed.append(
            TransformedCategory(
                legacy_id=category.id,
                new_id=map_id(mappings, "categories", category.id),
                name=full_name,
                description=category.description or None,
                slug=generate_unique_slug(category.slug or full_name, used_slugs, fallback="category"),
                sort_order=category.sort_order,
                parent_id=parent_id,
                created_at=created_at,
            )
        )

    top_level = sum(1 for c in transformed if c.parent_id is None)
    print(f"  Top-level categories: {top_level}")
    print(f"  Sub-categories: {len(transformed) - top_level}")
    return transformed


# ---------------------------------------------------------------------------
# Discussions and comments
# ---------------------------------------------------------------------------


def first_post_legacy_id(discussion_id: int) -> int:
    """Comment key for the first post of a discussion.

    Vanilla has no comment row for the opening post, so a negative key is
    used; real comment IDs are always positive.
    """
    return -discussion_id


def transform_discussions_and_comments(
    legacy_discussions: Sequence[LegacyDiscussion],
    legacy_comments: Sequence[LegacyComment],
    mappings: IdMappings,
    stats: TransformStats | None = None,
) -> ThreadsAndPosts:
    """Convert discussions to threads with a first post, and comments to posts."""
    print("Transforming discussions and comments...")
    stats = stats if stats is not None else TransformStats()

    threads: list[TransformedThread] = []
    posts: list[TransformedPost] = []
    used_slugs: set[str] = set()
    fallback_time = now_iso()

    comments_by_discussion: dict[int, list[LegacyComment]] = {}
    for comment in legacy_comments:
        comments_by_discussion.setdefault(comment.discussion_id, []).append(comment)

    known_discussions = {d.id for d in legacy_discussions}
    orphaned = sum(len(c) for d_id, c in comments_by_discussion.items() if d_id not in known_discussions)
    if orphaned:
        logger.warning(f"{orphaned} comments reference discussions that were not exported")
    stats.orphaned_comments += orphaned

    total = len(legacy_discussions)
    for index, discussion in enumerate(legacy_discussions, start=1):
        if index % 100 == 0:
            print(f"  Processing discussion {index}/{total}...")

        author_id = get_mapped_id(mappings, "users", discussion.author_id)
        if not author_id:
            logger.warning(f"No author found for discussion {discussion.id}, skipping")
            stats.discussions_skipped += 1
            continue

        category_id = get_mapped_id(mappings, "categories", discussion.category_id)
        if not category_id:
            logger.warning(f"No category found for discussion {discussion.id}, skipping")
            stats.discussions_skipped += 1
            continue

        thread_id = map_id(mappings, "discussions", discussion.id)
        title = (discussion.title or "")[:MAX_TITLE_LENGTH]
        created_at = _iso_or(discussion.created_at, fallback_time)
        last_post_at = _iso_or(discussion.last_comment_at, created_at)

        threads.append(
            TransformedThread(
                legacy_id=discussion.id,
                new_id=thread_id,
                category_id=category_id,
                author_id=author_id,
                title=title,
                slug=generate_unique_slug(title, used_slugs),
                is_pinned=discussion.is_pinned,
                is_locked=discussion.is_locked,
                created_at=created_at,
                updated_at=created_at,
                last_post_at=last_post_at,
            )
        )

        first_post = convert_content(discussion.body, discussion.format)
        if first_post.fallback:
            stats.content_fallbacks += 1
        posts.append(
            TransformedPost(
                legacy_id=None,
                new_id=map_id(mappings, "comments", first_post_legacy_id(discussion.id)),
                thread_id=thread_id,
                author_id=author_id,
                content=first_post.markdown,
                content_html=first_post.html,
                is_edited=False,
                created_at=created_at,
                updated_at=created_at,
            )
        )

        for comment in comments_by_discussion.get(discussion.id, []):
            comment_author_id = get_mapped_id(mappings, "users", comment.author_id)
            if not comment_author_id:
                logger.warning(f"No author found for comment {comment.id}, skipping")
                stats.comments_skipped += 1
                continue

            converted = convert_content(comment.body, comment.format)
            if converted.fallback:
                stats.content_fallbacks += 1

            comment_created_at = _iso_or(comment.created_at, created_at)
            comment_updated_at = _iso_or(comment.updated_at, comment_created_at)

            posts.append(
                TransformedPost(
                    legacy_id=comment.id,
                    new_id=map_id(mappings, "comments", comment.id),
                    thread_id=thread_id,
                    author_id=comment_author_id,
                    content=converted.markdown,
                    content_html=converted.html,
                    is_edited=comment_updated_at != comment_created_at,
                    created_at=comment_created_at,
                    updated_at=comment_updated_at,
                )
            )

    return ThreadsAndPosts(threads=threads, posts=posts)


# ---------------------------------------------------------------------------
# Stage entry point
# ---------------------------------------------------------------------------


def _load_snapshot(data_dir: Path, filename: str, model: type[RecordT]) -> list[RecordT]:
    return [model.from_dict(row) for row in read_json(data_dir / filename)]


def run_transform(settings: MigrationSettings) -> TransformStats:
    """Transform the exported snapshots and write the transformed files."""
    data_dir = settings.data_dir
    print("Loading exported data...")

    legacy_users = _load_snapshot(data_dir, extractor.USERS_FILE, LegacyUser)
    legacy_categories = _load_snapshot(data_dir, extractor.CATEGORIES_FILE, LegacyCategory)
    legacy_discussions = _load_snapshot(data_dir, extractor.DISCUSSIONS_FILE, LegacyDiscussion)
    legacy_comments = _load_snapshot(data_dir, extractor.COMMENTS_FILE, LegacyComment)

    print(f"  Users: {len(legacy_users)}")
    print(f"  Categories: {len(legacy_categories)}")
    print(f"  Discussions: {len(legacy_discussions)}")
    print(f"  Comments: {len(legacy_comments)}")

    stats = TransformStats()
    mappings = load_mappings(settings.mappings_path)

    users = transform_users(legacy_users, mappings)
    categories = transform_categories(legacy_categories, mappings, settings.archive_category_name, stats)
    threads, posts = transform_discussions_and_comments(legacy_discussions, legacy_comments, mappings, stats)

    save_mappings(mappings, settings.mappings_path)

    write_json_atomic(data_dir / TRANSFORMED_USERS_FILE, [u.to_dict() for u in users])
    write_json_atomic(data_dir / TRANSFORMED_CATEGORIES_FILE, [c.to_dict() for c in categories])
    write_json_atomic(data_dir / TRANSFORMED_THREADS_FILE, [t.to_dict() for t in threads])
    write_json_atomic(data_dir / TRANSFORMED_POSTS_FILE, [p.to_dict() for p in posts])

    stats.users = len(users)
    stats.categories = len(categories)
    stats.threads = len(threads)
    stats.posts = len(posts)

    print("\nTransform summary:")
    print(f"  Users:      {stats.users}")
    print(f"  Categories: {stats.categories} ({stats.categories_skipped} skipped)")
    print(f"  Threads:    {stats.threads} ({stats.discussions_skipped} discussions skipped)")
    print(f"  Posts:      {stats.posts} (includes {stats.threads} first posts, {stats.comments_skipped} comments skipped)")
    if stats.orphaned_comments:
        print(f"  Orphaned comments: {stats.orphaned_comments}")
    if stats.content_fallbacks:
        print(f"  Posts kept unconverted: {stats.content_fallbacks}")
    print(f"\nID mappings saved to: {settings.mappings_path}")
    return stats
