"""Export stage: read the legacy Vanilla Forums database into JSON snapshots."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final

import pymysql
import pymysql.cursors

from .exceptions import ExtractionError
from .utils import write_json_atomic

if TYPE_CHECKING:
    from pathlib import Path

    from pymysql.connections import Connection

    from .config import SourceConfig

logger: logging.Logger = logging.getLogger(__name__)

USERS_FILE: Final[str] = "vanilla-users.json"
CATEGORIES_FILE: Final[str] = "vanilla-categories.json"
DISCUSSIONS_FILE: Final[str] = "vanilla-discussions.json"
COMMENTS_FILE: Final[str] = "vanilla-comments.json"

# Only users who wrote something; this drops dormant and spam accounts
_USERS_QUERY = """
    SELECT
      UserID AS id,
      Name AS username,
      Email AS email,
      Photo AS avatar_url,
      About AS bio,
      DateInserted AS created_at,
      Admin AS is_admin
    FROM {prefix}User
    WHERE (Deleted = 0 OR Deleted IS NULL)
      AND (
        UserID IN (SELECT DISTINCT InsertUserID FROM {prefix}Discussion)
        OR UserID IN (SELECT DISTINCT InsertUserID FROM {prefix}Comment)
      )
"""

_CATEGORIES_QUERY = """
    SELECT
      CategoryID AS id,
      ParentCategoryID AS parent_id,
      Name AS name,
      Description AS description,
      UrlCode AS slug,
      Sort AS sort_order,
      Depth AS depth
    FROM {prefix}Category
    WHERE CategoryID > 0
    ORDER BY Depth ASC, Sort ASC
"""

_DISCUSSIONS_QUERY = """
    SELECT
      DiscussionID AS id,
      CategoryID AS category_id,
      InsertUserID AS author_id,
      Name AS title,
      Body AS body,
      Format AS format,
      Announce AS is_pinned,
      Closed AS is_locked,
      DateInserted AS created_at,
      DateLastComment AS last_comment_at
    FROM {prefix}Discussion
    ORDER BY DateInserted ASC
"""

_COMMENTS_QUERY = """
    SELECT
      CommentID AS id,
      DiscussionID AS discussion_id,
      InsertUserID AS author_id,
      Body AS body,
      Format AS format,
      DateInserted AS created_at,
      DateUpdated AS updated_at
    FROM {prefix}Comment
    ORDER BY DateInserted ASC
"""


@dataclass
class ExportResult:
    """Row counts of an export run."""

    users: int
    categories: int
    discussions: int
    comments: int

    @property
    def total_posts(self) -> int:
        return self.discussions + self.comments


def connect(config: SourceConfig) -> Connection[Any]:
    """Open a connection to the legacy database."""
    ssl: dict[str, Any] | None = None
    if config.use_ssl:
        # Managed MySQL hosts commonly present certificates we cannot verify
        ssl = {"check_hostname": False, "verify_mode": False}

    try:
        return pymysql.connect(
            host=config.host,
            port=config.port,
            user=config.user,
            password=config.password,
            database=config.database,
            ssl=ssl,
            charset="utf8mb4",
            cursorclass=pymysql.cursors.DictCursor,
        )
    except pymysql.MySQLError as e:
        msg = f"Could not connect to legacy database {config.database} on {config.host}: {e}"
        raise ExtractionError(msg) from e


def _fetch(connection: Connection[Any], name: str, query: str, prefix: str) -> list[dict[str, Any]]:
    print(f"Exporting {name}...")
    try:
        with connection.cursor() as cursor:
            cursor.execute(query.format(prefix=prefix))
            rows = list(cursor.fetchall())
    except pymysql.MySQLError as e:
        msg = f"Failed to export {name}: {e}"
        raise ExtractionError(msg) from e
    print(f"  Exported {len(rows)} {name}")
    return rows


def export_legacy_data(config: SourceConfig, data_dir: Path) -> ExportResult:
    """Run the four export queries and write each result set as a snapshot.

    All queries must succeed before anything is written, so a failed export
    never leaves a mix of old and new snapshots behind.

    Raises:
        ExtractionError: If the connection or any query fails
    """
    print("Connecting to Vanilla Forums database...")
    connection = connect(config)
    print("Connected! Starting export...")

    try:
        prefix = config.table_prefix
        users = _fetch(connection, "users", _USERS_QUERY, prefix)
        categories = _fetch(connection, "categories", _CATEGORIES_QUERY, prefix)
        discussions = _fetch(connection, "discussions", _DISCUSSIONS_QUERY, prefix)
        comments = _fetch(connection, "comments", _COMMENTS_QUERY, prefix)
    finally:
        connection.close()

    write_json_atomic(data_dir / USERS_FILE, users)
    write_json_atomic(data_dir / CATEGORIES_FILE, categories)
    write_json_atomic(data_dir / DISCUSSIONS_FILE, discussions)
    write_json_atomic(data_dir / COMMENTS_FILE, comments)
    logger.info(f"Snapshots written to {data_dir}")

    result = ExportResult(
        users=len(users),
        categories=len(categories),
        discussions=len(discussions),
        comments=len(comments),
    )

    print("\nExport summary:")
    print(f"  Users:       {result.users}")
    print(f"  Categories:  {result.categories}")
    print(f"  Discussions: {result.discussions}")
    print(f"  Comments:    {result.comments}")
    print(f"  Total posts: {result.total_posts}")
    return result
