"""
Resource definitions: lists, tasks, labels and sessions.
"""

import re
import sqlite3
from typing import Any, Dict, List

from .crud import CrudRepository, Resource
from .database import Database, storage_errors
from .exceptions import BadRequestError
from .labels import TaskLabels
from .patch import Patch
from .tree import TreeRepository

COLOR_PATTERN = re.compile(r"^#[A-Fa-f0-9]{6}$")

LISTS = Resource(
    table="lists",
    columns=("id", "user_id", "title", "description", "color", "parent_id"),
    creatable=("title", "description", "color", "parent_id"),
    patchable=("title", "description", "color", "parent_id"),
    label="List",
)

TASKS = Resource(
    table="tasks",
    columns=(
        "id", "list_id", "parent_id", "created_at", "updated_at",
        "due_at", "due_text", "completed", "title", "description",
    ),
    creatable=("list_id", "parent_id", "due_at", "due_text", "completed", "title", "description"),
    patchable=("list_id", "parent_id", "due_at", "due_text", "completed", "title", "description"),
    owner_scope="list_id IN (SELECT id FROM lists WHERE user_id = ?)",
    owner_column=None,
    created_column="created_at",
    touch_column="updated_at",
    bool_columns=("completed",),
    label="Task",
)

LABELS = Resource(
    table="labels",
    columns=("id", "user_id", "title", "description", "color"),
    creatable=("title", "description", "color"),
    patchable=("title", "description", "color"),
    label="Label",
)

SESSIONS = Resource(
    table="sessions",
    columns=("id", "user_id", "ip", "platform", "user_agent", "created_at", "expire_at"),
    label="Session",
)


def validate_color(color: str) -> None:
    if not COLOR_PATTERN.match(color):
        raise BadRequestError("Color must follow the 6 digit hex format (#ffffff).")


def validate_patch_color(color: Patch[str]) -> None:
    if color.is_null:
        raise BadRequestError("Color cannot be cleared.")
    if color.is_present:
        validate_color(color.value)


class ColoredMixin:
    """Validates the ``color`` field on create and patch."""

    def _validate_create(self, conn, owner_id, values):
        super()._validate_create(conn, owner_id, values)
        if values.get("color") is not None:
            validate_color(values["color"])

    def _validate_patch(self, conn, owner_id, item_id, patches):
        super()._validate_patch(conn, owner_id, item_id, patches)
        validate_patch_color(patches.get("color", Patch.absent()))


class ListRepository(ColoredMixin, TreeRepository):
    pass


class LabelRepository(ColoredMixin, CrudRepository):
    pass


class TaskRepository(TreeRepository):
    """Tasks are owned through their list and carry derived ``label_ids``."""

    def _check_list(self, conn: sqlite3.Connection, owner_id: str, list_id: Any) -> None:
        with storage_errors("validate task list"):
            row = conn.execute(
                "SELECT 1 FROM lists WHERE id = ? AND user_id = ?",
                (str(list_id), owner_id),
            ).fetchone()
        if row is None:
            raise BadRequestError("Invalid list.")

    def _validate_create(self, conn, owner_id, values):
        super()._validate_create(conn, owner_id, values)
        if values.get("list_id") is not None:
            self._check_list(conn, owner_id, values["list_id"])

    def _validate_patch(self, conn, owner_id, item_id, patches):
        super()._validate_patch(conn, owner_id, item_id, patches)
        list_patch = patches.get("list_id", Patch.absent())
        if list_patch.is_present:
            self._check_list(conn, owner_id, list_patch.value)

    def _decorate(self, conn: sqlite3.Connection, owner_id: str,
                  items: List[Dict[str, Any]]) -> None:
        super()._decorate(conn, owner_id, items)
        index = TaskLabels.label_index(conn, [item["id"] for item in items])
        for item in items:
            item["label_ids"] = list(index.get(item["id"], []))


class SessionRepository(CrudRepository):
    """Sessions are listed, read and deleted through the CRUD engine."""

    def create(self, owner_id, payload):
        raise BadRequestError("Sessions are created by logging in.")

    def patch(self, owner_id, item_id, patches):
        raise BadRequestError("Sessions cannot be patched.")


def repositories(db: Database, page_limit: int, max_page_limit: int) -> Dict[str, CrudRepository]:
    """Build one repository per resource, keyed by table name."""
    return {
        "lists": ListRepository(db, LISTS, page_limit, max_page_limit),
        "tasks": TaskRepository(db, TASKS, page_limit, max_page_limit),
        "labels": LabelRepository(db, LABELS, page_limit, max_page_limit),
        "sessions": SessionRepository(db, SESSIONS, page_limit, max_page_limit),
    }
