"""
Verify stage: read-only reconciliation of the target store after a migration.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Final, Literal

from . import extractor
from .utils import read_json

if TYPE_CHECKING:
    from pathlib import Path

    from .target_store import TargetStore

logger: logging.Logger = logging.getLogger(__name__)

Status = Literal["pass", "warn", "fail"]

SAMPLE_SIZE: Final[int] = 10

_ICONS: Final[dict[Status, str]] = {"pass": "✓", "warn": "⚠", "fail": "✗"}


@dataclass
class CheckResult:
    check: str
    status: Status
    message: str

    def __str__(self) -> str:
        return f"{_ICONS[self.status]} {self.check}: {self.message}"


@dataclass
class VerificationReport:
    """All check results of one verification run."""

    results: list[CheckResult] = field(default_factory=list)

    def add(self, check: str, status: Status, message: str) -> CheckResult:
        result = CheckResult(check, status, message)
        self.results.append(result)
        print(f"  {result}")
        return result

    def _count(self, status: Status) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def passed(self) -> int:
        return self._count("pass")

    @property
    def warned(self) -> int:
        return self._count("warn")

    @property
    def failed(self) -> int:
        return self._count("fail")

    @property
    def exit_code(self) -> int:
        """1 if any check failed; warnings alone do not fail the run."""
        return 1 if self.failed else 0


def _snapshot_size(data_dir: Path, filename: str) -> int | None:
    path = data_dir / filename
    if not path.exists():
        return None
    return len(read_json(path))


def _parity(report: VerificationReport, check: str, expected: int | None, actual: int, detail: str) -> None:
    if expected is None:
        report.add(check, "pass", f"Target: {actual}")
    else:
        # Some rows are filtered on purpose, so a mismatch is only a warning
        report.add(check, "pass" if expected == actual else "warn", f"{detail}: {expected}, Target: {actual}")


def check_counts(report: VerificationReport, store: TargetStore, data_dir: Path) -> None:
    """Compare source snapshot sizes with target row counts."""
    users = _snapshot_size(data_dir, extractor.USERS_FILE)
    categories = _snapshot_size(data_dir, extractor.CATEGORIES_FILE)
    discussions = _snapshot_size(data_dir, extractor.DISCUSSIONS_FILE)
    comments = _snapshot_size(data_dir, extractor.COMMENTS_FILE)

    _parity(report, "Users", users, store.count("profiles"), "Legacy users")
    _parity(report, "Categories", categories, store.count("categories"), "Legacy categories")
    _parity(report, "Threads", discussions, store.count("threads"), "Legacy discussions")

    expected_posts = None if discussions is None or comments is None else discussions + comments
    _parity(report, "Posts", expected_posts, store.count("posts"), "Legacy discussions + comments")


def check_integrity(report: VerificationReport, store: TargetStore) -> None:
    """Structural invariants: threads have posts, posts have threads, depth is at most two."""
    thread_ids = store.select_ids("threads")
    posted = {row["thread_id"] for row in store.select_all("posts", "id,thread_id")}
    empty_threads = thread_ids - posted
    if empty_threads:
        report.add("Threads have posts", "fail", f"{len(empty_threads)} threads have no posts")
        logger.info(f"Threads without posts (first 5): {sorted(empty_threads)[:5]}")
    else:
        report.add("Threads have posts", "pass", "All threads have at least one post")

    orphaned = store.count("posts", filters={"thread_id": "is.null"})
    if orphaned:
        report.add("No orphaned posts", "fail", f"{orphaned} posts have no thread")
    else:
        report.add("No orphaned posts", "pass", "All posts belong to a thread")

    parents = {row["id"]: row.get("parent_id") for row in store.select_all("categories", "id,parent_id")}
    too_deep = [cid for cid, pid in parents.items() if pid is not None and parents.get(pid) is not None]
    if too_deep:
        report.add("Category depth", "fail", f"{len(too_deep)} categories are nested more than two levels")
    else:
        report.add("Category depth", "pass", "All categories are at most two levels deep")


def check_content(report: VerificationReport, store: TargetStore, sample_size: int = SAMPLE_SIZE) -> None:
    """Check a sample of posts for rendered and sanitized HTML."""
    sample = store.select("posts", "id,content_html", limit=sample_size)
    if not sample:
        report.add("Content HTML generated", "pass", "No posts to sample")
        return

    empty = [p for p in sample if not (p.get("content_html") or "").strip()]
    if empty:
        report.add("Content HTML generated", "warn", f"{len(empty)}/{len(sample)} sample posts have empty content_html")
    else:
        report.add("Content HTML generated", "pass", "All sample posts have content_html")

    scripted = [p for p in sample if "<script" in (p.get("content_html") or "").lower()]
    if scripted:
        report.add("Content sanitized", "fail", f"{len(scripted)}/{len(sample)} sample posts contain script tags")
    else:
        report.add("Content sanitized", "pass", "No script tags found in sample posts")


def verify_migration(store: TargetStore, data_dir: Path, sample_size: int = SAMPLE_SIZE) -> VerificationReport:
    """Run every check and print the categorized report."""
    report = VerificationReport()
    print("Verifying migration...")

    print("\n1. Count verification")
    check_counts(report, store, data_dir)

    print("\n2. Integrity checks")
    check_integrity(report, store)

    print("\n3. Content verification (sample)")
    check_content(report, store, sample_size)

    print("\nVerification summary:")
    print(f"  Passed:   {report.passed}")
    print(f"  Warnings: {report.warned}")
    print(f"  Failed:   {report.failed}")

    if report.failed:
        print("\nMigration has issues that should be investigated.")
    elif report.warned:
        print("\nMigration complete with warnings. Review the warnings above.")
    else:
        print("\nMigration verified successfully.")
    return report
