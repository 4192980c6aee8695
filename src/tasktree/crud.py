"""
Ownership-scoped CRUD engine.

A ``Resource`` describes one table: its columns, which of them a client may
create or patch, and the predicate that restricts rows to the caller. A
``CrudRepository`` runs list/get/create/patch/delete for any such resource,
always filtered by the owner id, so a row belonging to someone else is
indistinguishable from a missing one.
"""

import logging
import sqlite3
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .database import Database, storage_errors
from .exceptions import BadRequestError, NotFoundError
from .patch import Patch
from .statements import Statement, build_insert, build_update, has_changes, to_storage, utc_now_str

logger = logging.getLogger(__name__)

DEFAULT_PAGE_LIMIT = 1000
# Largest OFFSET SQLite accepts; every later page is empty
MAX_OFFSET = 2 ** 63 - 1


class PatchOutcome(Enum):
    UPDATED = "updated"
    NO_CHANGES = "no_changes"


@dataclass(frozen=True)
class Resource:
    """
    Table description consumed by ``CrudRepository``.

    ``owner_scope`` is a SQL predicate over the table with exactly one ``?``,
    bound to the caller's user id. ``owner_column`` is stamped with that id
    on create; resources owned through another table leave it unset.
    """

    table: str
    columns: Tuple[str, ...]
    creatable: Tuple[str, ...] = ()
    patchable: Tuple[str, ...] = ()
    owner_scope: str = "user_id = ?"
    owner_column: Optional[str] = "user_id"
    created_column: Optional[str] = None
    touch_column: Optional[str] = None
    bool_columns: Tuple[str, ...] = ()
    label: str = "Item"


class CrudRepository:
    """Generic list/get/create/patch/delete over one owner-scoped table."""

    def __init__(self, db: Database, resource: Resource,
                 page_limit: int = DEFAULT_PAGE_LIMIT, max_page_limit: int = DEFAULT_PAGE_LIMIT):
        self.db = db
        self.resource = resource
        self.page_limit = page_limit
        self.max_page_limit = max_page_limit

    # Query fragments

    @property
    def _select(self) -> str:
        return f"SELECT {', '.join(self.resource.columns)} FROM {self.resource.table}"

    @property
    def _owned_by_id(self) -> str:
        return f"WHERE id = ? AND ({self.resource.owner_scope})"

    def _not_found(self) -> NotFoundError:
        return NotFoundError(f"{self.resource.label} not found.")

    def _to_item(self, row: sqlite3.Row) -> Dict[str, Any]:
        item = dict(row)
        for column in self.resource.bool_columns:
            if item.get(column) is not None:
                item[column] = bool(item[column])
        return item

    # Hooks for extensions

    def _decorate(self, conn: sqlite3.Connection, owner_id: str,
                  items: List[Dict[str, Any]]) -> None:
        """Attach derived fields to fetched items."""

    def _validate_create(self, conn: sqlite3.Connection, owner_id: str,
                         values: Dict[str, Any]) -> None:
        """Reject a create payload that breaks a business rule."""

    def _validate_patch(self, conn: sqlite3.Connection, owner_id: str, item_id: str,
                        patches: Dict[str, Patch[Any]]) -> None:
        """Reject a patch that breaks a business rule."""

    def _fetch_owned(self, conn: sqlite3.Connection, owner_id: str,
                     item_id: str) -> Optional[sqlite3.Row]:
        return conn.execute(
            f"{self._select} {self._owned_by_id}", (str(item_id), owner_id)
        ).fetchone()

    def exists(self, conn: sqlite3.Connection, owner_id: str, item_id: Any) -> bool:
        row = conn.execute(
            f"SELECT 1 FROM {self.resource.table} {self._owned_by_id}",
            (to_storage(item_id), owner_id),
        ).fetchone()
        return row is not None

    # Operations

    def list(self, owner_id: str, limit: Optional[int] = None, page: int = 0) -> Dict[str, Any]:
        """
        Return one page of the caller's items.

        Args:
            owner_id: Authenticated user id
            limit: Page size, defaults to the configured page limit
            page: Zero-based page number

        Returns:
            Dict with ``items``, ``limit`` and ``page``

        Raises:
            BadRequestError: limit outside 1..max_page_limit or negative page
        """
        if limit is None:
            limit = self.page_limit
        if limit < 1 or limit > self.max_page_limit:
            raise BadRequestError(f"Limit must be between 1 and {self.max_page_limit}.")
        if page < 0:
            raise BadRequestError("Page must not be negative.")
        offset = page * limit
        if offset > MAX_OFFSET:
            return {"items": [], "limit": limit, "page": page}

        with self.db.connection() as conn:
            with storage_errors(f"fetch {self.resource.table}"):
                rows = conn.execute(
                    f"{self._select} WHERE {self.resource.owner_scope} "
                    f"ORDER BY rowid LIMIT ? OFFSET ?",
                    (owner_id, limit, offset),
                ).fetchall()
                items = [self._to_item(row) for row in rows]
                self._decorate(conn, owner_id, items)

        return {"items": items, "limit": limit, "page": page}

    def get(self, owner_id: str, item_id: Any) -> Dict[str, Any]:
        """Return the item iff it exists and belongs to the caller."""
        with self.db.connection() as conn:
            with storage_errors(f"fetch {self.resource.table}"):
                row = self._fetch_owned(conn, owner_id, to_storage(item_id))
                if row is None:
                    raise self._not_found()
                item = self._to_item(row)
                self._decorate(conn, owner_id, [item])
        return item

    def create(self, owner_id: str, payload: Mapping[str, Any]) -> str:
        """
        Insert a new item stamped with the owner id.

        Only the resource's creatable fields are read from ``payload``;
        ``None`` values are left to column defaults.

        Returns:
            The new item's id
        """
        values = {name: payload.get(name) for name in self.resource.creatable}
        item_id = str(uuid.uuid4())

        columns: List[Tuple[str, Any]] = [("id", item_id)]
        if self.resource.owner_column:
            columns.append((self.resource.owner_column, owner_id))
        if self.resource.created_column:
            now = utc_now_str()
            columns.append((self.resource.created_column, now))
            if self.resource.touch_column:
                columns.append((self.resource.touch_column, now))
        columns.extend(values.items())

        statement = build_insert(self.resource.table, columns)
        with self.db.transaction() as conn:
            self._validate_create(conn, owner_id, values)
            self._run(conn, statement, "create")
            self._after_create(conn, owner_id, item_id, values)

        logger.info(f"Created {self.resource.table} {item_id} for user {owner_id}")
        return item_id

    def _run(self, conn: sqlite3.Connection, statement: Statement, action: str) -> sqlite3.Cursor:
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"{action} {self.resource.table}: {statement.inline()}")
        with storage_errors(f"{action} {self.resource.table}"):
            return conn.execute(statement.sql, statement.params)

    def _after_create(self, conn: sqlite3.Connection, owner_id: str, item_id: str,
                      values: Dict[str, Any]) -> None:
        """Apply follow-up statements inside the create transaction."""

    def _patch_changes(self, patches: Mapping[str, Patch[Any]]) -> List[Tuple[str, Patch[Any]]]:
        return [(name, patches.get(name, Patch.absent())) for name in self.resource.patchable]

    def patch(self, owner_id: str, item_id: Any, patches: Mapping[str, Patch[Any]]) -> PatchOutcome:
        """
        Apply a partial update scoped to (id, owner).

        Raises:
            NotFoundError: no such item for this owner
            BadRequestError: a business rule or constraint rejected the change
        """
        item_id = to_storage(item_id)
        changes = self._patch_changes(patches)

        with self.db.transaction() as conn:
            # Ownership first so a foreign id never reaches the business rules
            with storage_errors(f"patch {self.resource.table}"):
                if not self.exists(conn, owner_id, item_id):
                    raise self._not_found()
            self._validate_patch(conn, owner_id, item_id, dict(patches))

            if not has_changes(changes):
                return PatchOutcome.NO_CHANGES

            if self.resource.touch_column:
                changes.append((self.resource.touch_column, Patch.of(utc_now_str())))
            statement = build_update(
                self.resource.table, changes, self._owned_by_id, (item_id, owner_id)
            )
            cursor = self._run(conn, statement, "patch")
            if cursor.rowcount == 0:
                raise self._not_found()

        logger.info(f"Patched {self.resource.table} {item_id}")
        return PatchOutcome.UPDATED

    def delete(self, owner_id: str, item_id: Any) -> None:
        """Delete the item scoped to (id, owner)."""
        with self.db.transaction() as conn:
            with storage_errors(f"delete {self.resource.table}"):
                cursor = conn.execute(
                    f"DELETE FROM {self.resource.table} {self._owned_by_id}",
                    (to_storage(item_id), owner_id),
                )
            if cursor.rowcount == 0:
                raise self._not_found()
        logger.info(f"Deleted {self.resource.table} {item_id}")
