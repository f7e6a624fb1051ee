"""
Tests for counter recalculation.

The SQL statements cannot run against the in-memory store, so a subclass
applies their semantics statement by statement, in place, the way the
database would. Both paths must leave the same values behind.
"""

from typing import Any

import pytest
from conftest import FakeTargetStore

from forum_migrator.id_mapper import IdMappings, map_id
from forum_migrator.loader import import_posts, import_threads
from forum_migrator.models import LegacyComment, LegacyDiscussion
from forum_migrator.recalculator import (
    CATEGORIES_SQL,
    PROFILES_SQL,
    THREADS_SQL,
    CategoryAggregate,
    ThreadAggregate,
    UserAggregate,
    compute_category_aggregates,
    compute_thread_aggregates,
    compute_user_aggregates,
    recalculate_counts,
)
from forum_migrator.transformer import transform_discussions_and_comments


class SqlStatementStore(FakeTargetStore):
    """Applies the recalculation statements like the database does."""

    def __init__(self) -> None:
        super().__init__(sql_available=True)

    def exec_sql(self, sql: str) -> None:
        super().exec_sql(sql)
        threads = self.tables["threads"]
        posts = self.tables["posts"]
        categories = self.tables["categories"]

        if sql == THREADS_SQL:
            for thread in threads:
                times = [p["created_at"] for p in posts if p["thread_id"] == thread["id"]]
                thread["post_count"] = len(times)
                thread["last_post_at"] = max(times) if times else thread["created_at"]
        elif sql == CATEGORIES_SQL:
            for category in categories:
                own = {t["id"] for t in threads if t["category_id"] == category["id"]}
                times = [p["created_at"] for p in posts if p["thread_id"] in own]
                category["thread_count"] = len(own)
                category["post_count"] = len(times)
                category["last_post_at"] = max(times) if times else None
            for parent in categories:
                if parent["parent_id"] is not None:
                    continue
                children = [c for c in categories if c["parent_id"] == parent["id"]]
                parent["thread_count"] += sum(c["thread_count"] for c in children)
                parent["post_count"] += sum(c["post_count"] for c in children)
                candidates = [parent["last_post_at"], *(c["last_post_at"] for c in children)]
                present = [t for t in candidates if t is not None]
                parent["last_post_at"] = max(present) if present else None
        elif sql == PROFILES_SQL:
            for profile in self.tables["profiles"]:
                profile["thread_count"] = sum(1 for t in threads if t["author_id"] == profile["id"])
                profile["post_count"] = sum(1 for p in posts if p["author_id"] == profile["id"])
        else:
            msg = f"Unexpected statement: {sql}"
            raise AssertionError(msg)


def _ts(day: int) -> str:
    return f"2020-01-{day:02d}T10:00:00.000Z"


def _populate(store: FakeTargetStore) -> None:
    store.add_user("u1@example.org", "u1")
    store.add_user("u2@example.org", "u2")
    store.add_user("u3@example.org", "u3")
    store.tables["categories"] = [
        {"id": "P", "parent_id": None, "thread_count": 0, "post_count": 0, "last_post_at": None},
        {"id": "C1", "parent_id": "P", "thread_count": 0, "post_count": 0, "last_post_at": None},
        {"id": "C2", "parent_id": "P", "thread_count": 0, "post_count": 0, "last_post_at": None},
        {"id": "Q", "parent_id": None, "thread_count": 0, "post_count": 0, "last_post_at": None},
    ]
    store.tables["threads"] = [
        {"id": "tP", "category_id": "P", "author_id": "u1", "created_at": _ts(1), "post_count": 0, "last_post_at": _ts(1)},
        {"id": "tA", "category_id": "C1", "author_id": "u1", "created_at": _ts(2), "post_count": 0, "last_post_at": _ts(2)},
        {"id": "tB", "category_id": "C1", "author_id": "u2", "created_at": _ts(3), "post_count": 0, "last_post_at": _ts(3)},
        {"id": "tE", "category_id": "C2", "author_id": "u2", "created_at": _ts(4), "post_count": 0, "last_post_at": _ts(4)},
    ]
    store.tables["posts"] = [
        {"id": "p1", "thread_id": "tP", "author_id": "u1", "created_at": _ts(1)},
        {"id": "p2", "thread_id": "tP", "author_id": "u2", "created_at": _ts(9)},
        {"id": "p3", "thread_id": "tA", "author_id": "u1", "created_at": _ts(2)},
        {"id": "p4", "thread_id": "tB", "author_id": "u2", "created_at": _ts(3)},
        {"id": "p5", "thread_id": "tB", "author_id": "u1", "created_at": _ts(12)},
    ]


def _counters(store: FakeTargetStore) -> dict[str, Any]:
    return {
        "threads": {t["id"]: (t["post_count"], t["last_post_at"]) for t in store.tables["threads"]},
        "categories": {
            c["id"]: (c["thread_count"], c["post_count"], c["last_post_at"]) for c in store.tables["categories"]
        },
        "profiles": {p["id"]: (p["thread_count"], p["post_count"]) for p in store.tables["profiles"]},
    }


@pytest.mark.unit
class TestComputeAggregates:
    """Test the pure aggregate functions."""

    def test_threads(self) -> None:
        store = FakeTargetStore()
        _populate(store)
        result = compute_thread_aggregates(store.tables["threads"], store.tables["posts"])
        assert result["tP"] == ThreadAggregate(post_count=2, last_post_at=_ts(9))
        assert result["tB"] == ThreadAggregate(post_count=2, last_post_at=_ts(12))
        assert result["tE"] == ThreadAggregate(post_count=0, last_post_at=_ts(4))

    def test_categories_roll_up_direct_children(self) -> None:
        store = FakeTargetStore()
        _populate(store)
        result = compute_category_aggregates(
            store.tables["categories"], store.tables["threads"], store.tables["posts"]
        )
        assert result["C1"] == CategoryAggregate(thread_count=2, post_count=3, last_post_at=_ts(12))
        assert result["C2"] == CategoryAggregate(thread_count=1, post_count=0, last_post_at=None)
        assert result["P"] == CategoryAggregate(thread_count=4, post_count=5, last_post_at=_ts(12))
        assert result["Q"] == CategoryAggregate(thread_count=0, post_count=0, last_post_at=None)

    def test_users(self) -> None:
        store = FakeTargetStore()
        _populate(store)
        result = compute_user_aggregates(store.tables["profiles"], store.tables["threads"], store.tables["posts"])
        assert result["u1"] == UserAggregate(thread_count=2, post_count=3)
        assert result["u2"] == UserAggregate(thread_count=2, post_count=2)
        assert result["u3"] == UserAggregate(thread_count=0, post_count=0)

    def test_latest_compares_instants_not_strings(self) -> None:
        threads = [{"id": "t", "created_at": _ts(1)}]
        posts = [
            {"thread_id": "t", "created_at": "2020-01-05T23:00:00+00:00"},
            {"thread_id": "t", "created_at": "2020-01-06T00:30:00+02:00"},
        ]
        assert compute_thread_aggregates(threads, posts)["t"].last_post_at == "2020-01-05T23:00:00+00:00"


@pytest.mark.unit
class TestRecalculateCounts:
    def test_sql_path(self) -> None:
        store = SqlStatementStore()
        _populate(store)
        report = recalculate_counts(store)
        assert report.methods == {"threads": "sql", "categories": "sql", "profiles": "sql"}
        assert store.executed_sql == [THREADS_SQL, CATEGORIES_SQL, PROFILES_SQL]
        assert store.updates == []

    def test_fallback_path_matches_sql_path(self) -> None:
        sql_store = SqlStatementStore()
        _populate(sql_store)
        _ = recalculate_counts(sql_store)

        fallback_store = FakeTargetStore()
        _populate(fallback_store)
        report = recalculate_counts(fallback_store)

        assert report.methods == {"threads": "fallback", "categories": "fallback", "profiles": "fallback"}
        assert report.updated == {"threads": 4, "categories": 4, "profiles": 3}
        assert _counters(fallback_store) == _counters(sql_store)

    def test_fallback_never_touches_updated_at(self) -> None:
        store = FakeTargetStore()
        _populate(store)
        _ = recalculate_counts(store)
        assert store.updates
        assert all("updated_at" not in values for _, values, _ in store.updates)

    def test_thread_with_one_unmapped_comment_author(self) -> None:
        """Opening post plus the surviving comment give post_count 2."""
        mappings = IdMappings()
        author_id = map_id(mappings, "users", 1)
        category_id = map_id(mappings, "categories", 5)
        threads, posts = transform_discussions_and_comments(
            [
                LegacyDiscussion(
                    id=10, category_id=5, author_id=1, title="Hi", body="Hello", format="Text",
                    created_at="2020-01-01 10:00:00",
                )
            ],
            [
                LegacyComment(id=100, discussion_id=10, author_id=1, body="Reply", created_at="2020-01-02 10:00:00"),
                LegacyComment(id=101, discussion_id=10, author_id=2, body="Lost", created_at="2020-01-03 10:00:00"),
            ],
            mappings,
        )
        store = FakeTargetStore()
        store.add_user("u1@example.org", author_id)
        store.tables["categories"].append({"id": category_id, "parent_id": None})
        user_ids = {author_id: author_id}
        import_threads(store, threads, user_ids, {category_id})
        import_posts(store, posts, user_ids, store.select_ids("threads"))

        _ = recalculate_counts(store)

        (thread,) = store.tables["threads"]
        assert thread["post_count"] == 2
        assert thread["last_post_at"] == "2020-01-02T10:00:00.000Z"

    def test_nested_chain_only_rolls_up_into_top_level(self) -> None:
        """A category below a child keeps its values out of its parent's totals."""

        def populate(store: FakeTargetStore) -> None:
            store.add_user("u1@example.org", "u1")
            store.tables["categories"] = [
                {"id": "A", "parent_id": None, "thread_count": 0, "post_count": 0, "last_post_at": None},
                {"id": "B", "parent_id": "A", "thread_count": 0, "post_count": 0, "last_post_at": None},
                {"id": "C", "parent_id": "B", "thread_count": 0, "post_count": 0, "last_post_at": None},
            ]
            store.tables["threads"] = [
                {"id": "t", "category_id": "C", "author_id": "u1", "created_at": _ts(1), "post_count": 0,
                 "last_post_at": _ts(1)},
            ]
            store.tables["posts"] = [{"id": "p", "thread_id": "t", "author_id": "u1", "created_at": _ts(2)}]

        sql_store = SqlStatementStore()
        populate(sql_store)
        _ = recalculate_counts(sql_store)

        fallback_store = FakeTargetStore()
        populate(fallback_store)
        _ = recalculate_counts(fallback_store)

        assert _counters(fallback_store) == _counters(sql_store)
        assert _counters(fallback_store)["categories"] == {
            "A": (0, 0, None),
            "B": (0, 0, None),
            "C": (1, 1, _ts(2)),
        }
