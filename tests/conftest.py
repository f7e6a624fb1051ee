"""
Pytest configuration and fixtures.

This module configures pytest behavior for different test types:
- Integration tests: Fail on any warnings from the code under test
- Unit tests: Allow warnings

It also provides an in-memory stand-in for the target store, so the loader,
recalculator, verifier and cleanup stages can be exercised without a network.
"""

from __future__ import annotations

import copy
import logging
import uuid
from typing import TYPE_CHECKING, Any

from typing_extensions import override

import pytest

from forum_migrator.exceptions import TargetStoreError

if TYPE_CHECKING:
    from collections.abc import Generator, Iterator, Mapping

Row = dict[str, Any]

# Warnings logged per integration test, keyed by node id
_integration_test_warnings: dict[str, list[logging.LogRecord]] = {}


class _WarningCollector(logging.Handler):
    test_nodeid: str

    def __init__(self, test_nodeid: str) -> None:
        super().__init__()
        self.test_nodeid = test_nodeid
        self.setLevel(logging.WARNING)

    @override
    def emit(self, record: logging.LogRecord) -> None:
        _integration_test_warnings.setdefault(self.test_nodeid, []).append(record)


@pytest.fixture(autouse=True)
def fail_on_log_warnings_for_integration_tests(
    request: pytest.FixtureRequest,
) -> Generator[None]:
    """A clean run against real services logs nothing at WARNING or above."""
    if request.node.get_closest_marker("integration") is None:
        yield
        return

    test_nodeid = request.node.nodeid
    _integration_test_warnings[test_nodeid] = []

    handler = _WarningCollector(test_nodeid)
    root_logger = logging.getLogger()
    root_logger.addHandler(handler)

    try:
        yield
    finally:
        root_logger.removeHandler(handler)


@pytest.hookimpl(tryfirst=True, hookwrapper=True)
def pytest_runtest_makereport(
    item: pytest.Item, call: pytest.CallInfo[None]
) -> Generator[None]:  # type: ignore[misc]
    outcome = yield
    report = outcome.get_result()

    if call.when == "call" and report.outcome == "passed":
        test_nodeid = item.nodeid
        warning_records = _integration_test_warnings.get(test_nodeid, [])

        if warning_records:
            warning_messages = [
                f"{record.levelname}: {record.getMessage()} (in {record.name}:{record.lineno})"
                for record in warning_records
            ]
            report.outcome = "failed"
            report.longrepr = f"Logged {len(warning_records)} warning(s) against the real target:\n" + "\n".join(
                f"  - {msg}" for msg in warning_messages
            )

        _integration_test_warnings.pop(test_nodeid, None)


# ---------------------------------------------------------------------------
# In-memory target store
# ---------------------------------------------------------------------------


def _matches(row: Row, filters: Mapping[str, str] | None) -> bool:
    """Evaluate the PostgREST filter forms the pipeline uses."""
    for column, expression in (filters or {}).items():
        value = row.get(column)
        if expression == "is.null":
            ok = value is None
        elif expression == "not.is.null":
            ok = value is not None
        elif expression.startswith("eq."):
            ok = value is not None and str(value) == expression[3:]
        elif expression.startswith("neq."):
            ok = value is None or str(value) != expression[4:]
        else:
            msg = f"Unsupported filter {column}={expression}"
            raise AssertionError(msg)
        if not ok:
            return False
    return True


class FakeTargetStore:
    """A dict-backed stand-in for TargetStore.

    Creating an identity also creates its profile row, as the auth trigger does
    on the real platform.
    """

    def __init__(self, *, sql_available: bool = False) -> None:
        self.tables: dict[str, list[Row]] = {"profiles": [], "categories": [], "threads": [], "posts": []}
        self.users: list[Row] = []
        self.sql_available: bool = sql_available
        self.executed_sql: list[str] = []
        self.fail_emails: set[str] = set()
        self.fail_inserts: set[str] = set()
        self.updates: list[tuple[str, Row, dict[str, str]]] = []

    # Identities

    def add_user(self, email: str, user_id: str | None = None) -> str:
        user_id = user_id or str(uuid.uuid4())
        self.users.append({"id": user_id, "email": email})
        self.tables["profiles"].append({"id": user_id, "thread_count": 0, "post_count": 0})
        return user_id

    def create_user(self, email: str, password: str, user_metadata: Mapping[str, Any]) -> Row:
        assert password
        if email in self.fail_emails:
            msg = "Database error creating new user"
            raise TargetStoreError(msg, status=500)
        if any(u["email"].lower() == email.lower() for u in self.users):
            msg = "A user with this email address has already been registered email_exists"
            raise TargetStoreError(msg, status=422)
        user_id = self.add_user(email)
        user = self.users[-1]
        user["user_metadata"] = dict(user_metadata)
        return {"id": user_id, "email": email}

    def iter_users(self) -> Iterator[Row]:
        yield from list(self.users)

    def find_user_by_email(self, email: str) -> Row | None:
        return next((u for u in self.users if u["email"].lower() == email.lower()), None)

    def delete_user(self, user_id: str) -> None:
        self.users = [u for u in self.users if u["id"] != user_id]
        self.tables["profiles"] = [p for p in self.tables["profiles"] if p["id"] != user_id]

    # Tables

    def insert(self, table: str, rows: Row | list[Row]) -> None:
        if table in self.fail_inserts:
            msg = f"insert into {table} rejected"
            raise TargetStoreError(msg, status=400)
        batch = rows if isinstance(rows, list) else [rows]
        existing = {r["id"] for r in self.tables[table]}
        if any(r["id"] in existing for r in batch):
            msg = "duplicate key value violates unique constraint 23505"
            raise TargetStoreError(msg, status=409)
        self.tables[table].extend(copy.deepcopy(batch))

    def update(self, table: str, values: Row, filters: Mapping[str, str]) -> None:
        self.updates.append((table, dict(values), dict(filters)))
        for row in self.tables[table]:
            if _matches(row, filters):
                row.update(values)

    def delete(self, table: str, filters: Mapping[str, str]) -> None:
        self.tables[table] = [r for r in self.tables[table] if not _matches(r, filters)]

    def select(
        self,
        table: str,
        columns: str = "*",
        *,
        filters: Mapping[str, str] | None = None,
        order: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Row]:
        rows = [r for r in self.tables[table] if _matches(r, filters)]
        if order:
            rows.sort(key=lambda r: str(r.get(order)))
        rows = rows[offset or 0 :]
        if limit is not None:
            rows = rows[:limit]
        if columns == "*":
            return copy.deepcopy(rows)
        wanted = columns.split(",")
        return [{c: r.get(c) for c in wanted} for r in rows]

    def select_all(self, table: str, columns: str = "*", *, filters: Mapping[str, str] | None = None) -> list[Row]:
        return self.select(table, columns, filters=filters, order="id")

    def select_ids(self, table: str, *, filters: Mapping[str, str] | None = None) -> set[str]:
        return {r["id"] for r in self.select_all(table, "id", filters=filters)}

    def count(self, table: str, *, filters: Mapping[str, str] | None = None) -> int:
        return sum(1 for r in self.tables[table] if _matches(r, filters))

    def exec_sql(self, sql: str) -> None:
        if not self.sql_available:
            msg = "Could not find the function public.exec_sql(sql) in the schema cache"
            raise TargetStoreError(msg, status=404)
        self.executed_sql.append(sql)


@pytest.fixture
def fake_store() -> FakeTargetStore:
    return FakeTargetStore()
