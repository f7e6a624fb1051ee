"""
Debug stage: compare the transformed files with what is in the target store.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from . import transformer
from .utils import read_json

if TYPE_CHECKING:
    from pathlib import Path

    from .target_store import TargetStore

logger: logging.Logger = logging.getLogger(__name__)

TARGET_TABLES = ("profiles", "categories", "threads", "posts")


@dataclass
class DanglingReferences:
    """Transformed records pointing at records absent from the transformed files."""

    threads_missing_author: int = 0
    threads_missing_category: int = 0
    posts_missing_thread: int = 0
    posts_missing_author: int = 0
    threads_missing_target_category: int | None = None

    @property
    def total(self) -> int:
        return (
            self.threads_missing_author
            + self.threads_missing_category
            + self.posts_missing_thread
            + self.posts_missing_author
        )


def _load(data_dir: Path, filename: str) -> list[dict[str, Any]] | None:
    path = data_dir / filename
    if not path.exists():
        print(f"{filename}: NOT FOUND")
        return None
    records: list[dict[str, Any]] = read_json(path)
    print(f"{filename}: {len(records)} records")
    return records


def find_dangling_references(
    users: list[dict[str, Any]],
    categories: list[dict[str, Any]],
    threads: list[dict[str, Any]],
    posts: list[dict[str, Any]],
) -> DanglingReferences:
    user_ids = {u["new_id"] for u in users}
    category_ids = {c["new_id"] for c in categories}
    thread_ids = {t["new_id"] for t in threads}

    return DanglingReferences(
        threads_missing_author=sum(1 for t in threads if t["author_id"] not in user_ids),
        threads_missing_category=sum(1 for t in threads if t["category_id"] not in category_ids),
        posts_missing_thread=sum(1 for p in posts if p["thread_id"] not in thread_ids),
        posts_missing_author=sum(1 for p in posts if p["author_id"] not in user_ids),
    )


def run_debug_check(store: TargetStore, data_dir: Path) -> DanglingReferences | None:
    """Print target row counts and check the transformed files for dangling references.

    Returns None if any transformed file is missing.
    """
    print("=== Target current state ===\n")
    counts = {table: store.count(table) for table in TARGET_TABLES}
    for table, count in counts.items():
        print(f"{table.capitalize() + ':':<12}{count}")

    print("\n=== Transformed data ===\n")
    users = _load(data_dir, transformer.TRANSFORMED_USERS_FILE)
    categories = _load(data_dir, transformer.TRANSFORMED_CATEGORIES_FILE)
    threads = _load(data_dir, transformer.TRANSFORMED_THREADS_FILE)
    posts = _load(data_dir, transformer.TRANSFORMED_POSTS_FILE)
    if users is None or categories is None or threads is None or posts is None:
        logger.warning("Transformed data incomplete, run the transform stage first")
        return None

    print("\n=== Checking for dangling references ===\n")
    dangling = find_dangling_references(users, categories, threads, posts)
    print(f"Threads with missing author:   {dangling.threads_missing_author}")
    print(f"Threads with missing category: {dangling.threads_missing_category}")
    print(f"Posts with missing thread:     {dangling.posts_missing_thread}")
    print(f"Posts with missing author:     {dangling.posts_missing_author}")

    if counts["threads"] == 0:
        print("\nNo threads in target, thread import may have failed.")
        target_categories = store.select_ids("categories")
        dangling.threads_missing_target_category = sum(1 for t in threads if t["category_id"] not in target_categories)
        print(f"Threads referencing categories absent from target: {dangling.threads_missing_target_category}")

    return dangling
