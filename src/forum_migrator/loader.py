"""
Load stage: write the transformed records into the target store.

Entities are loaded in foreign key order: users, categories (parents before
children), threads, then posts. Before each dependent stage the IDs that
actually landed are read back, and records pointing at something that did not
land are skipped instead of failing the whole batch.

Identities are created through the admin API, which assigns its own IDs. The
mapping from the transform-time user ID to the real one is returned by
:func:`import_users` and applied to every author reference afterwards.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Final, TypeVar

from . import transformer
from .exceptions import TargetStoreError
from .models import TransformedCategory, TransformedPost, TransformedThread, TransformedUser
from .utils import parse_timestamp, read_json

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from .config import MigrationSettings
    from .target_store import TargetStore

logger: logging.Logger = logging.getLogger(__name__)

BATCH_SIZE: Final[int] = 100

TRIGGER_TABLES: Final[tuple[str, ...]] = ("threads", "posts", "categories", "profiles")

# Transform-time user ID -> identity ID assigned by the target
UserIdMap = dict[str, str]

RecordT = TypeVar("RecordT", TransformedThread, TransformedPost)


@dataclass
class LoadStats:
    """Outcome counts for one entity kind."""

    created: int = 0
    skipped: int = 0
    errors: int = 0

    def __str__(self) -> str:
        return f"{self.created} created, {self.skipped} skipped, {self.errors} errors"


@dataclass
class LoadReport:
    users: LoadStats = field(default_factory=LoadStats)
    categories: LoadStats = field(default_factory=LoadStats)
    threads: LoadStats = field(default_factory=LoadStats)
    posts: LoadStats = field(default_factory=LoadStats)
    triggers_disabled: bool = False


def set_triggers(store: TargetStore, *, enabled: bool) -> bool:
    """Enable or disable the triggers of the forum tables.

    Returns:
        True if the statement ran; False if raw SQL is unavailable
    """
    action = "ENABLE" if enabled else "DISABLE"
    sql = "\n".join(f"ALTER TABLE {table} {action} TRIGGER ALL;" for table in TRIGGER_TABLES)
    try:
        store.exec_sql(sql)
    except TargetStoreError as e:
        logger.warning(f"Could not {action.lower()} triggers: {e}")
        return False
    logger.info(f"Triggers {action.lower()}d on {', '.join(TRIGGER_TABLES)}")
    return True


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


def _profile_values(user: TransformedUser) -> dict[str, Any]:
    return {
        "username": user.username,
        "display_name": user.display_name,
        "avatar_url": user.avatar_url,
        "bio": user.bio,
        "role": user.role,
        "created_at": user.created_at,
        "updated_at": user.created_at,
        "post_count": 0,
        "thread_count": 0,
    }


def _adopt_existing_user(store: TargetStore, user: TransformedUser) -> str | None:
    """Find the identity that already holds this user's email."""
    if not user.email:
        return None
    try:
        existing = store.find_user_by_email(user.email)
    except TargetStoreError as e:
        logger.error(f"Lookup of existing user {user.email} failed: {e}")
        return None
    return existing["id"] if existing else None


def import_users(
    store: TargetStore,
    users: Sequence[TransformedUser],
    stats: LoadStats | None = None,
) -> UserIdMap:
    """Create an identity per user and fill in the auto-created profile.

    Each identity gets a random throw-away password; migrated users must go
    through password reset. A user whose email is already registered is
    mapped to the existing identity and counted as skipped.

    Returns:
        Mapping of transform-time user ID to the real identity ID
    """
    print(f"\nImporting {len(users)} users...")
    stats = stats if stats is not None else LoadStats()
    user_ids: UserIdMap = {}

    for user in users:
        if not user.email:
            logger.error(f"User {user.legacy_id} ({user.username}) has no email, cannot create identity")
            stats.errors += 1
            continue

        try:
            identity = store.create_user(
                user.email,
                secrets.token_hex(32),
                {
                    "username": user.username,
                    "migrated_from_vanilla": True,
                    "vanilla_user_id": user.legacy_id,
                },
            )
        except TargetStoreError as e:
            if e.is_duplicate:
                existing_id = _adopt_existing_user(store, user)
                if existing_id:
                    user_ids[user.new_id] = existing_id
                    logger.info(f"Mapped existing user {user.email} -> {existing_id}")
                    stats.skipped += 1
                    continue
            logger.error(f"Error creating user {user.email}: {e}")
            stats.errors += 1
            continue

        identity_id: str = identity["id"]
        user_ids[user.new_id] = identity_id

        try:
            store.update("profiles", _profile_values(user), {"id": f"eq.{identity_id}"})
        except TargetStoreError as e:
            # The identity exists, so the user still counts as created
            logger.error(f"Error updating profile for {user.email}: {e}")

        stats.created += 1
        if stats.created % 50 == 0:
            print(f"  Created {stats.created}/{len(users)} users...")

    print(f"  Users: {stats}")
    print(f"  User ID mappings: {len(user_ids)}")
    return user_ids


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------


def _category_row(category: TransformedCategory) -> dict[str, Any]:
    return {
        "id": category.new_id,
        "name": category.name,
        "description": category.description,
        "slug": category.slug,
        "sort_order": category.sort_order,
        "parent_id": category.parent_id,
        "thread_count": 0,
        "post_count": 0,
        "created_at": category.created_at,
    }


def _insert_category(store: TargetStore, category: TransformedCategory, stats: LoadStats) -> None:
    try:
        store.insert("categories", _category_row(category))
    except TargetStoreError as e:
        logger.error(f'Error inserting category "{category.name}" (slug: {category.slug}): {e}')
        stats.errors += 1
    else:
        stats.created += 1


def import_categories(
    store: TargetStore,
    categories: Sequence[TransformedCategory],
    stats: LoadStats | None = None,
) -> None:
    """Insert top-level categories, then the children whose parent landed.

    Categories are inserted one at a time so a single bad row is easy to spot.
    """
    print(f"\nImporting {len(categories)} categories...")
    stats = stats if stats is not None else LoadStats()

    parents = [c for c in categories if c.parent_id is None]
    children = [c for c in categories if c.parent_id is not None]

    print(f"  Importing {len(parents)} parent categories...")
    for category in parents:
        _insert_category(store, category, stats)

    landed = store.select_ids("categories")
    print(f"  Importing {len(children)} child categories...")
    for category in children:
        if category.parent_id not in landed:
            logger.warning(f'Skipping "{category.name}": parent {category.parent_id} not in target')
            stats.skipped += 1
            continue
        _insert_category(store, category, stats)

    print(f"  Categories: {stats}")


# ---------------------------------------------------------------------------
# Threads and posts
# ---------------------------------------------------------------------------


def _thread_row(thread: TransformedThread, author_id: str) -> dict[str, Any]:
    return {
        "id": thread.new_id,
        "category_id": thread.category_id,
        "author_id": author_id,
        "title": thread.title,
        "slug": thread.slug,
        "is_pinned": thread.is_pinned,
        "is_locked": thread.is_locked,
        "post_count": 0,
        "last_post_at": thread.last_post_at,
        "created_at": thread.created_at,
        "updated_at": thread.updated_at,
    }


def _post_row(post: TransformedPost, author_id: str) -> dict[str, Any]:
    return {
        "id": post.new_id,
        "thread_id": post.thread_id,
        "author_id": author_id,
        "content": post.content,
        "content_html": post.content_html,
        "is_edited": post.is_edited,
        "reaction_count": 0,
        "created_at": post.created_at,
        "updated_at": post.updated_at,
    }


def _insert_batches(
    store: TargetStore,
    table: str,
    records: Sequence[RecordT],
    to_row: Callable[[RecordT], dict[str, Any] | None],
    stats: LoadStats,
) -> None:
    """Insert records in batches; to_row returns None for records to skip."""
    total = len(records)
    for start in range(0, total, BATCH_SIZE):
        batch: list[dict[str, Any]] = []
        for record in records[start : start + BATCH_SIZE]:
            row = to_row(record)
            if row is None:
                stats.skipped += 1
            else:
                batch.append(row)

        if batch:
            try:
                store.insert(table, batch)
            except TargetStoreError as e:
                logger.error(f"Error inserting {table} batch at offset {start}: {e}")
                stats.errors += len(batch)
            else:
                stats.created += len(batch)

        done = min(start + BATCH_SIZE, total)
        if done % 1000 == 0 or done == total:
            print(f"  Processed {done}/{total} {table}...")


def import_threads(
    store: TargetStore,
    threads: Sequence[TransformedThread],
    user_ids: UserIdMap,
    category_ids: set[str],
    stats: LoadStats | None = None,
) -> None:
    """Insert threads whose author was created and whose category landed."""
    print(f"\nImporting {len(threads)} threads...")
    stats = stats if stats is not None else LoadStats()

    def to_row(thread: TransformedThread) -> dict[str, Any] | None:
        author_id = user_ids.get(thread.author_id)
        if author_id is None or thread.category_id not in category_ids:
            logger.debug(f"Skipping thread {thread.legacy_id}: author or category missing")
            return None
        return _thread_row(thread, author_id)

    _insert_batches(store, "threads", threads, to_row, stats)
    print(f"  Threads: {stats}")


def import_posts(
    store: TargetStore,
    posts: Sequence[TransformedPost],
    user_ids: UserIdMap,
    thread_ids: set[str],
    stats: LoadStats | None = None,
) -> None:
    """Insert posts, oldest first, whose author was created and whose thread landed."""
    print(f"\nImporting {len(posts)} posts...")
    stats = stats if stats is not None else LoadStats()
    ordered = sorted(posts, key=lambda p: parse_timestamp(p.created_at))

    def to_row(post: TransformedPost) -> dict[str, Any] | None:
        author_id = user_ids.get(post.author_id)
        if author_id is None or post.thread_id not in thread_ids:
            logger.debug(f"Skipping post {post.new_id}: author or thread missing")
            return None
        return _post_row(post, author_id)

    _insert_batches(store, "posts", ordered, to_row, stats)
    print(f"  Posts: {stats}")


# ---------------------------------------------------------------------------
# Stage entry point
# ---------------------------------------------------------------------------


def run_load(settings: MigrationSettings, store: TargetStore) -> LoadReport:
    """Load the transformed files into the target store."""
    data_dir = settings.data_dir
    users = [TransformedUser.from_dict(r) for r in read_json(data_dir / transformer.TRANSFORMED_USERS_FILE)]
    categories = [
        TransformedCategory.from_dict(r) for r in read_json(data_dir / transformer.TRANSFORMED_CATEGORIES_FILE)
    ]
    threads = [TransformedThread.from_dict(r) for r in read_json(data_dir / transformer.TRANSFORMED_THREADS_FILE)]
    posts = [TransformedPost.from_dict(r) for r in read_json(data_dir / transformer.TRANSFORMED_POSTS_FILE)]

    print("Data to import:")
    print(f"  Users:      {len(users)}")
    print(f"  Categories: {len(categories)}")
    print(f"  Threads:    {len(threads)}")
    print(f"  Posts:      {len(posts)}")

    report = LoadReport()
    print("Disabling triggers for bulk import...")
    report.triggers_disabled = set_triggers(store, enabled=False)

    try:
        user_ids = import_users(store, users, report.users)
        import_categories(store, categories, report.categories)

        category_ids = store.select_ids("categories")
        print(f"  Categories in target: {len(category_ids)}")
        import_threads(store, threads, user_ids, category_ids, report.threads)

        thread_ids = store.select_ids("threads")
        print(f"  Threads in target: {len(thread_ids)}")
        import_posts(store, posts, user_ids, thread_ids, report.posts)
    finally:
        if report.triggers_disabled:
            print("Re-enabling triggers...")
            if not set_triggers(store, enabled=True):
                print("  Could not re-enable triggers, re-enable them manually")

    print("\nLoad summary:")
    print(f"  Users:      {report.users}")
    print(f"  Categories: {report.categories}")
    print(f"  Threads:    {report.threads}")
    print(f"  Posts:      {report.posts}")
    return report
