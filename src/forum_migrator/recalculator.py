"""
Recalculate stage: rebuild the denormalized counters after a bulk load.

Triggers are disabled while loading, so thread, category and profile counters
are stale until this stage runs. Each entity kind is first updated with a
single SQL statement through the ``exec_sql`` RPC. If raw SQL is unavailable
the same values are computed in memory from paginated reads and written back
one record at a time.

Rules:
- thread: post_count = its posts; last_post_at = newest post, else its own created_at
- category (direct): counts over its own threads; last_post_at = newest post or null
- top-level category: direct values plus the direct values of its children
- profile: threads and posts authored
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import cached_property
from typing import TYPE_CHECKING, Any, Final, Literal, NamedTuple

from .exceptions import TargetStoreError
from .utils import parse_timestamp

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from .target_store import Row, TargetStore

logger: logging.Logger = logging.getLogger(__name__)

Method = Literal["sql", "fallback"]

THREADS_SQL: Final[str] = """
UPDATE threads t SET
  post_count = (SELECT COUNT(*) FROM posts p WHERE p.thread_id = t.id),
  last_post_at = COALESCE(
    (SELECT MAX(p.created_at) FROM posts p WHERE p.thread_id = t.id),
    t.created_at
  );
"""

CATEGORIES_SQL: Final[str] = """
UPDATE categories c SET
  thread_count = (SELECT COUNT(*) FROM threads t WHERE t.category_id = c.id),
  post_count = (
    SELECT COUNT(*) FROM posts p JOIN threads t ON p.thread_id = t.id
    WHERE t.category_id = c.id
  ),
  last_post_at = (
    SELECT MAX(p.created_at) FROM posts p JOIN threads t ON p.thread_id = t.id
    WHERE t.category_id = c.id
  );

UPDATE categories parent SET
  thread_count = parent.thread_count + COALESCE(
    (SELECT SUM(child.thread_count) FROM categories child WHERE child.parent_id = parent.id), 0
  ),
  post_count = parent.post_count + COALESCE(
    (SELECT SUM(child.post_count) FROM categories child WHERE child.parent_id = parent.id), 0
  ),
  last_post_at = GREATEST(
    parent.last_post_at,
    (SELECT MAX(child.last_post_at) FROM categories child WHERE child.parent_id = parent.id)
  )
WHERE parent.parent_id IS NULL;
"""

PROFILES_SQL: Final[str] = """
UPDATE profiles p SET
  thread_count = (SELECT COUNT(*) FROM threads t WHERE t.author_id = p.id),
  post_count = (SELECT COUNT(*) FROM posts po WHERE po.author_id = p.id);
"""


class ThreadAggregate(NamedTuple):
    post_count: int
    last_post_at: str


class CategoryAggregate(NamedTuple):
    thread_count: int
    post_count: int
    last_post_at: str | None


class UserAggregate(NamedTuple):
    thread_count: int
    post_count: int


def _latest(*timestamps: str | None) -> str | None:
    """Return the newest of the given timestamps, ignoring nulls."""
    present = [t for t in timestamps if t]
    if not present:
        return None
    return max(present, key=parse_timestamp)


# ---------------------------------------------------------------------------
# Pure aggregate computation
# ---------------------------------------------------------------------------


def compute_thread_aggregates(threads: Iterable[Row], posts: Iterable[Row]) -> dict[str, ThreadAggregate]:
    """Post count and newest post time per thread."""
    counts: dict[str, int] = {}
    newest: dict[str, str | None] = {}
    for post in posts:
        thread_id = post["thread_id"]
        counts[thread_id] = counts.get(thread_id, 0) + 1
        newest[thread_id] = _latest(newest.get(thread_id), post["created_at"])

    return {
        thread["id"]: ThreadAggregate(
            post_count=counts.get(thread["id"], 0),
            last_post_at=newest.get(thread["id"]) or thread["created_at"],
        )
        for thread in threads
    }


def compute_category_aggregates(
    categories: Iterable[Row],
    threads: Iterable[Row],
    posts: Iterable[Row],
) -> dict[str, CategoryAggregate]:
    """Thread count, post count and newest post time per category.

    Top-level categories include the direct values of their children. A
    category nested below another child keeps its own values and is not
    rolled up anywhere.
    """
    categories = list(categories)
    thread_category = {t["id"]: t["category_id"] for t in threads}

    direct: dict[str, CategoryAggregate] = {c["id"]: CategoryAggregate(0, 0, None) for c in categories}
    for category_id in thread_category.values():
        if category_id in direct:
            agg = direct[category_id]
            direct[category_id] = agg._replace(thread_count=agg.thread_count + 1)
    for post in posts:
        category_id = thread_category.get(post["thread_id"])
        if category_id in direct:
            agg = direct[category_id]
            direct[category_id] = agg._replace(
                post_count=agg.post_count + 1,
                last_post_at=_latest(agg.last_post_at, post["created_at"]),
            )

    top_level = {c["id"] for c in categories if c.get("parent_id") is None}
    result = dict(direct)
    for category in categories:
        parent_id = category.get("parent_id")
        if parent_id not in top_level:
            continue
        child = direct[category["id"]]
        parent = result[parent_id]
        result[parent_id] = CategoryAggregate(
            thread_count=parent.thread_count + child.thread_count,
            post_count=parent.post_count + child.post_count,
            last_post_at=_latest(parent.last_post_at, child.last_post_at),
        )
    return result


def compute_user_aggregates(
    profiles: Iterable[Row],
    threads: Iterable[Row],
    posts: Iterable[Row],
) -> dict[str, UserAggregate]:
    thread_counts: dict[str, int] = {}
    for thread in threads:
        thread_counts[thread["author_id"]] = thread_counts.get(thread["author_id"], 0) + 1
    post_counts: dict[str, int] = {}
    for post in posts:
        post_counts[post["author_id"]] = post_counts.get(post["author_id"], 0) + 1

    return {
        p["id"]: UserAggregate(thread_count=thread_counts.get(p["id"], 0), post_count=post_counts.get(p["id"], 0))
        for p in profiles
    }


# ---------------------------------------------------------------------------
# Target access
# ---------------------------------------------------------------------------


class _TargetRows:
    """Lazily read rows shared by the fallback computations."""

    def __init__(self, store: TargetStore) -> None:
        self.store: TargetStore = store

    @cached_property
    def threads(self) -> list[Row]:
        return self.store.select_all("threads", "id,category_id,author_id,created_at")

    @cached_property
    def posts(self) -> list[Row]:
        return self.store.select_all("posts", "id,thread_id,author_id,created_at")

    @cached_property
    def categories(self) -> list[Row]:
        return self.store.select_all("categories", "id,parent_id")

    @cached_property
    def profiles(self) -> list[Row]:
        return self.store.select_all("profiles", "id")


@dataclass
class RecalculationReport:
    """How each entity kind was updated, and how many fallback writes failed."""

    methods: dict[str, Method] = field(default_factory=dict)
    updated: dict[str, int] = field(default_factory=dict)
    errors: int = 0


def _write_back(
    store: TargetStore,
    table: str,
    aggregates: dict[str, Any],
    report: RecalculationReport,
) -> None:
    print(f"  Found {len(aggregates)} {table} to update...")
    updated = 0
    for record_id, aggregate in aggregates.items():
        try:
            store.update(table, aggregate._asdict(), {"id": f"eq.{record_id}"})
        except TargetStoreError as e:
            logger.error(f"Failed to update {table} {record_id}: {e}")
            report.errors += 1
            continue
        updated += 1
        if updated % 200 == 0:
            print(f"  Updated {updated}/{len(aggregates)} {table}...")
    report.updated[table] = updated


def _recalculate(
    store: TargetStore,
    table: str,
    sql: str,
    compute: Callable[[], dict[str, Any]],
    report: RecalculationReport,
) -> None:
    try:
        store.exec_sql(sql)
    except TargetStoreError as e:
        logger.info(f"SQL update of {table} unavailable ({e}), using fallback")
        print(f"  Using fallback method for {table}...")
        _write_back(store, table, compute(), report)
        report.methods[table] = "fallback"
    else:
        report.methods[table] = "sql"
    print(f"  {table.capitalize()} counts updated")


def recalculate_counts(store: TargetStore) -> RecalculationReport:
    """Recompute thread, category and profile counters in the target store."""
    print("Recalculating aggregate counts...")
    rows = _TargetRows(store)
    report = RecalculationReport()

    print("1. Updating thread counts...")
    _recalculate(
        store,
        "threads",
        THREADS_SQL,
        lambda: compute_thread_aggregates(rows.threads, rows.posts),
        report,
    )

    print("2. Updating category counts...")
    _recalculate(
        store,
        "categories",
        CATEGORIES_SQL,
        lambda: compute_category_aggregates(rows.categories, rows.threads, rows.posts),
        report,
    )

    print("3. Updating profile counts...")
    _recalculate(
        store,
        "profiles",
        PROFILES_SQL,
        lambda: compute_user_aggregates(rows.profiles, rows.threads, rows.posts),
        report,
    )

    print("\nCount recalculation complete")
    if report.errors:
        print(f"  {report.errors} records could not be updated, see the log")
    return report
