"""
Service-role access to the target platform through the Supabase client.

Tables are reached through the PostgREST query builder, identities through the
auth admin API and raw SQL through an ``exec_sql`` RPC function, which may not
be installed on every project.

Filters are passed PostgREST style, as a mapping of column to ``op.value``::

    store.select("categories", filters={"parent_id": "is.null"})
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Final

import httpx
from supabase import AuthError, PostgrestAPIError, create_client

from .exceptions import TargetStoreError

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

    from supabase import Client

    from .config import TargetConfig

logger: logging.Logger = logging.getLogger(__name__)

PAGE_SIZE: Final[int] = 1000
USERS_PER_PAGE: Final[int] = 1000

Row = dict[str, Any]


def _apply_filters(query: Any, filters: Mapping[str, str] | None) -> Any:  # noqa: ANN401 - postgrest builder
    """Add ``column=op.value`` filters, including negated ones like ``not.is.null``."""
    for column, expression in (filters or {}).items():
        negated = expression.startswith("not.")
        operator, _, criteria = expression.removeprefix("not.").partition(".")
        query = query.filter(column, f"not.{operator}" if negated else operator, criteria)
    return query


def _postgrest_message(error: PostgrestAPIError) -> str:
    parts = [str(p) for p in (error.message, error.code, error.details) if p]
    return " ".join(parts) if parts else str(error)


def _auth_error(action: str, error: AuthError) -> TargetStoreError:
    # Only API errors carry an HTTP status
    code = getattr(error, "code", None)
    msg = f"{action} failed: {error.message}" + (f" {code}" if code else "")
    return TargetStoreError(msg, status=getattr(error, "status", None))


class TargetStore:
    """Service-role access to the target tables and identities."""

    def __init__(self, client: Client) -> None:
        self.client: Client = client

    @classmethod
    def connect(cls, url: str, service_key: str) -> TargetStore:
        return cls(create_client(url, service_key))

    @classmethod
    def from_config(cls, config: TargetConfig) -> TargetStore:
        return cls.connect(config.url, config.service_key)

    def _execute(self, action: str, query: Any) -> Any:  # noqa: ANN401 - postgrest builder and response
        """Execute a built query, mapping client errors to TargetStoreError."""
        try:
            return query.execute()
        except PostgrestAPIError as e:
            msg = f"{action} failed: {_postgrest_message(e)}"
            logger.debug(msg)
            raise TargetStoreError(msg) from e
        except httpx.HTTPError as e:
            msg = f"{action} failed: {e}"
            raise TargetStoreError(msg) from e

    # ------------------------------------------------------------------
    # Identities
    # ------------------------------------------------------------------

    def create_user(self, email: str, password: str, user_metadata: Mapping[str, Any]) -> Row:
        """Create a pre-confirmed identity and return its id and email."""
        try:
            response = self.client.auth.admin.create_user(
                {
                    "email": email,
                    "password": password,
                    "email_confirm": True,
                    "user_metadata": dict(user_metadata),
                }
            )
        except AuthError as e:
            raise _auth_error(f"Creating user {email}", e) from e
        except httpx.HTTPError as e:
            msg = f"Creating user {email} failed: {e}"
            raise TargetStoreError(msg) from e
        return {"id": response.user.id, "email": response.user.email}

    def list_users(self, page: int = 1, per_page: int = USERS_PER_PAGE) -> list[Row]:
        try:
            users = self.client.auth.admin.list_users(page=page, per_page=per_page)
        except AuthError as e:
            raise _auth_error(f"Listing users (page {page})", e) from e
        except httpx.HTTPError as e:
            msg = f"Listing users (page {page}) failed: {e}"
            raise TargetStoreError(msg) from e
        return [{"id": u.id, "email": u.email} for u in users]

    def iter_users(self) -> Iterator[Row]:
        """Yield every identity, one page at a time."""
        page = 1
        while True:
            users = self.list_users(page=page)
            yield from users
            if len(users) < USERS_PER_PAGE:
                return
            page += 1

    def find_user_by_email(self, email: str) -> Row | None:
        """Look an identity up by email, ignoring case."""
        wanted = email.lower()
        return next((u for u in self.iter_users() if (u.get("email") or "").lower() == wanted), None)

    def delete_user(self, user_id: str) -> None:
        try:
            self.client.auth.admin.delete_user(user_id)
        except AuthError as e:
            raise _auth_error(f"Deleting user {user_id}", e) from e
        except httpx.HTTPError as e:
            msg = f"Deleting user {user_id} failed: {e}"
            raise TargetStoreError(msg) from e

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    def insert(self, table: str, rows: Row | list[Row]) -> None:
        _ = self._execute(f"Insert into {table}", self.client.table(table).insert(rows))

    def update(self, table: str, values: Row, filters: Mapping[str, str]) -> None:
        if not filters:
            msg = f"Refusing to update every row of {table}"
            raise TargetStoreError(msg)
        query = _apply_filters(self.client.table(table).update(values), filters)
        _ = self._execute(f"Update of {table}", query)

    def delete(self, table: str, filters: Mapping[str, str]) -> None:
        # PostgREST rejects an unfiltered DELETE, callers must always narrow it
        if not filters:
            msg = f"Refusing to delete every row of {table}"
            raise TargetStoreError(msg)
        query = _apply_filters(self.client.table(table).delete(), filters)
        _ = self._execute(f"Delete from {table}", query)

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
        """Read one page of rows; offset only applies together with limit."""
        query = _apply_filters(self.client.table(table).select(columns), filters)
        if order:
            query = query.order(order)
        if limit is not None:
            start = offset or 0
            query = query.range(start, start + limit - 1)
        rows: list[Row] = self._execute(f"Select from {table}", query).data
        return rows

    def select_all(
        self,
        table: str,
        columns: str = "*",
        *,
        filters: Mapping[str, str] | None = None,
    ) -> list[Row]:
        """Read every matching row, paging through the server's row cap."""
        rows: list[Row] = []
        offset = 0
        while True:
            page = self.select(table, columns, filters=filters, order="id", limit=PAGE_SIZE, offset=offset)
            rows.extend(page)
            if len(page) < PAGE_SIZE:
                return rows
            offset += PAGE_SIZE

    def select_ids(self, table: str, *, filters: Mapping[str, str] | None = None) -> set[str]:
        return {row["id"] for row in self.select_all(table, "id", filters=filters)}

    def count(self, table: str, *, filters: Mapping[str, str] | None = None) -> int:
        query = _apply_filters(self.client.table(table).select("id", count="exact"), filters).limit(1)
        response = self._execute(f"Count of {table}", query)
        if response.count is None:
            msg = f"Count of {table} returned no exact count"
            raise TargetStoreError(msg)
        return int(response.count)

    # ------------------------------------------------------------------
    # Raw SQL
    # ------------------------------------------------------------------

    def exec_sql(self, sql: str) -> None:
        """Run a statement through the ``exec_sql`` RPC function.

        Raises:
            TargetStoreError: If the function is not installed or the statement fails
        """
        _ = self._execute("exec_sql RPC", self.client.rpc("exec_sql", {"sql": sql}))
