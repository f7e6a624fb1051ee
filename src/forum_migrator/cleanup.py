"""
Cleanup stage: remove all migrated data from the target store.

Run this before re-running the migration from scratch. Rows are deleted in
reverse dependency order, identities last, and the ID mapping store is removed
so the next transform generates fresh IDs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Final

from .exceptions import TargetStoreError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from .config import MigrationSettings
    from .target_store import TargetStore

logger: logging.Logger = logging.getLogger(__name__)

# PostgREST refuses unfiltered deletes; no row carries the nil UUID
MATCH_ALL: Final[dict[str, str]] = {"id": "neq.00000000-0000-0000-0000-000000000000"}

# Label, table, filter; children before parents
DELETE_STEPS: Final[tuple[tuple[str, str, dict[str, str]], ...]] = (
    ("posts", "posts", MATCH_ALL),
    ("threads", "threads", MATCH_ALL),
    ("child categories", "categories", {"parent_id": "not.is.null"}),
    ("parent categories", "categories", {"parent_id": "is.null"}),
)


@dataclass
class CleanupReport:
    deleted: dict[str, int] = field(default_factory=dict)
    users_deleted: int = 0
    users_kept: int = 0
    mappings_removed: bool = False
    errors: int = 0


def _delete_rows(store: TargetStore, label: str, table: str, filters: Mapping[str, str], report: CleanupReport) -> None:
    count = store.count(table, filters=filters)
    print(f"  Found {count} {label}")
    if not count:
        report.deleted[label] = 0
        return
    try:
        store.delete(table, filters)
    except TargetStoreError as e:
        logger.error(f"Error deleting {label}: {e}")
        report.errors += 1
        report.deleted[label] = 0
        return
    report.deleted[label] = count
    print(f"  Deleted {count} {label}")


def _delete_users(store: TargetStore, keep_emails: frozenset[str], report: CleanupReport) -> None:
    users = list(store.iter_users())
    to_delete = [u for u in users if (u.get("email") or "").lower() not in keep_emails]
    report.users_kept = len(users) - len(to_delete)
    kept = ", ".join(sorted(keep_emails)) or "none"
    print(f"  Found {len(to_delete)} users to delete (keeping: {kept})")

    for user in to_delete:
        try:
            store.delete_user(user["id"])
        except TargetStoreError as e:
            logger.error(f"Error deleting user {user.get('email')}: {e}")
            report.errors += 1
            continue
        report.users_deleted += 1
        if report.users_deleted % 50 == 0:
            print(f"  Deleted {report.users_deleted}/{len(to_delete)}...")
    print(f"  Deleted {report.users_deleted} users")


def cleanup_target(settings: MigrationSettings, store: TargetStore) -> CleanupReport:
    """Delete migrated rows, identities (except the keep-list) and the mapping store."""
    report = CleanupReport()
    print("Cleaning up migrated data...")

    for step, (label, table, filters) in enumerate(DELETE_STEPS, start=1):
        print(f"{step}. Deleting {label}...")
        _delete_rows(store, label, table, filters, report)

    print(f"{len(DELETE_STEPS) + 1}. Deleting auth users...")
    _delete_users(store, settings.keep_emails, report)

    print(f"{len(DELETE_STEPS) + 2}. Clearing ID mappings...")
    if settings.mappings_path.exists():
        settings.mappings_path.unlink()
        report.mappings_removed = True
        print(f"  Removed {settings.mappings_path.name}")
    else:
        print("  No mappings file found")

    print("\nCleanup complete")
    if report.errors:
        print(f"  {report.errors} steps reported errors, see the log")
    return report
