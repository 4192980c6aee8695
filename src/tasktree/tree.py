"""
Tree hierarchy extension for self-parented resources.

Adds a nullable ``parent_id`` to a CRUD resource. Children are never stored:
``child_ids`` is derived on read from a parent-to-children index built over
the fetched items. Reparenting rejects self-reference, foreign or missing
parents, and any parent that would close a cycle.
"""

import logging
import sqlite3
from collections import defaultdict
from typing import Any, Dict, List, Mapping

from .crud import CrudRepository, PatchOutcome
from .database import storage_errors
from .exceptions import BadRequestError
from .patch import Patch
from .statements import build_update, to_storage, utc_now_str

logger = logging.getLogger(__name__)

PARENT_FIELD = "parent_id"


class TreeRepository(CrudRepository):
    """CRUD repository whose items form a forest through ``parent_id``."""

    def _child_index(self, conn: sqlite3.Connection, owner_id: str,
                     parent_ids: List[str]) -> Dict[str, List[str]]:
        """Map each parent id to its children's ids, in insertion order."""
        index: Dict[str, List[str]] = defaultdict(list)
        if not parent_ids:
            return index
        placeholders = ", ".join("?" for _ in parent_ids)
        rows = conn.execute(
            f"SELECT id, parent_id FROM {self.resource.table} "
            f"WHERE parent_id IN ({placeholders}) AND ({self.resource.owner_scope}) "
            f"ORDER BY rowid",
            (*parent_ids, owner_id),
        ).fetchall()
        for row in rows:
            index[row["parent_id"]].append(row["id"])
        return index

    def _decorate(self, conn: sqlite3.Connection, owner_id: str,
                  items: List[Dict[str, Any]]) -> None:
        super()._decorate(conn, owner_id, items)
        index = self._child_index(conn, owner_id, [item["id"] for item in items])
        for item in items:
            item["child_ids"] = list(index.get(item["id"], []))

    def _creates_cycle(self, conn: sqlite3.Connection, item_id: str, parent_id: str) -> bool:
        # UNION stops the walk if the stored data already loops
        row = conn.execute(
            f"""
            WITH RECURSIVE ancestors(id, parent_id) AS (
                SELECT id, parent_id FROM {self.resource.table} WHERE id = ?
                UNION
                SELECT t.id, t.parent_id FROM {self.resource.table} t
                    JOIN ancestors a ON t.id = a.parent_id
            )
            SELECT 1 FROM ancestors WHERE id = ? LIMIT 1
            """,
            (parent_id, item_id),
        ).fetchone()
        return row is not None

    def _check_parent(self, conn: sqlite3.Connection, owner_id: str, parent_id: Any) -> None:
        with storage_errors(f"validate {self.resource.table} parent"):
            if not self.exists(conn, owner_id, parent_id):
                logger.info(f"Rejected dangling parent {parent_id} on {self.resource.table}")
                raise BadRequestError("Invalid parent.")

    def _validate_create(self, conn: sqlite3.Connection, owner_id: str,
                         values: Dict[str, Any]) -> None:
        super()._validate_create(conn, owner_id, values)
        if values.get(PARENT_FIELD) is not None:
            self._check_parent(conn, owner_id, values[PARENT_FIELD])

    def _validate_patch(self, conn: sqlite3.Connection, owner_id: str, item_id: str,
                        patches: Dict[str, Patch[Any]]) -> None:
        super()._validate_patch(conn, owner_id, item_id, patches)
        parent = patches.get(PARENT_FIELD, Patch.absent())
        if not parent.is_present:
            return
        parent_id = to_storage(parent.value)
        if parent_id == item_id:
            raise BadRequestError("An item cannot be its own parent.")
        self._check_parent(conn, owner_id, parent_id)
        with storage_errors(f"validate {self.resource.table} parent"):
            if self._creates_cycle(conn, item_id, parent_id):
                raise BadRequestError("Parent would create a cycle.")

    def _patch_changes(self, patches: Mapping[str, Patch[Any]]):
        # The parent link is applied separately, after the scalar fields
        return [
            (name, patch) for name, patch in super()._patch_changes(patches)
            if name != PARENT_FIELD
        ]

    def patch(self, owner_id: str, item_id: Any, patches: Mapping[str, Patch[Any]]) -> PatchOutcome:
        """
        Patch scalar fields, then set or clear the parent, in one transaction.

        ``parent_id`` absent leaves the link alone, null detaches the item,
        a value reparents it.
        """
        item_id = to_storage(item_id)
        parent = patches.get(PARENT_FIELD, Patch.absent())

        with self.db.transaction():
            outcome = super().patch(owner_id, item_id, patches)
            if not parent.is_absent:
                self._set_parent(owner_id, item_id, parent)
                outcome = PatchOutcome.UPDATED
        return outcome

    def _set_parent(self, owner_id: str, item_id: str, parent: Patch[Any]) -> None:
        changes = [(PARENT_FIELD, parent)]
        if self.resource.touch_column:
            changes.append((self.resource.touch_column, Patch.of(utc_now_str())))
        statement = build_update(
            self.resource.table, changes,
            self._owned_by_id, (item_id, owner_id),
        )
        with self.db.transaction() as conn:
            cursor = self._run(conn, statement, "patch")
            if cursor.rowcount == 0:
                raise self._not_found()
        logger.info(f"Set parent of {self.resource.table} {item_id} to {parent!r}")

