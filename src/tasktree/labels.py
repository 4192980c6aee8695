"""
Task/label association.

Attaching and detaching labels touches the ``task_labels`` join table only
after both ends have been resolved under the caller's ownership: tasks
through their list, labels directly.
"""

import logging
import sqlite3
from collections import defaultdict
from typing import Any, Dict, List

from .database import Database, storage_errors
from .exceptions import BadRequestError, NotFoundError
from .statements import to_storage

logger = logging.getLogger(__name__)

OWNED_TASKS = "SELECT tasks.id FROM tasks JOIN lists ON lists.id = tasks.list_id WHERE lists.user_id = ?"
OWNED_LABELS = "SELECT id FROM labels WHERE user_id = ?"


class TaskLabels:
    """Many-to-many link between a caller's tasks and labels."""

    def __init__(self, db: Database):
        self.db = db

    def attach(self, owner_id: str, task_id: Any, label_id: Any) -> None:
        """
        Attach a label to a task.

        Raises:
            NotFoundError: task or label missing or owned by someone else
            BadRequestError: label already attached
        """
        task_id, label_id = to_storage(task_id), to_storage(label_id)
        with self.db.transaction() as conn:
            with storage_errors("attach label"):
                task = conn.execute(
                    f"SELECT 1 FROM tasks WHERE id = ? AND id IN ({OWNED_TASKS})",
                    (task_id, owner_id),
                ).fetchone()
                if task is None:
                    raise NotFoundError("Task not found.")
                label = conn.execute(
                    f"SELECT 1 FROM labels WHERE id = ? AND id IN ({OWNED_LABELS})",
                    (label_id, owner_id),
                ).fetchone()
                if label is None:
                    raise NotFoundError("Label not found.")
                try:
                    conn.execute(
                        "INSERT INTO task_labels (task_id, label_id) VALUES (?, ?)",
                        (task_id, label_id),
                    )
                except sqlite3.IntegrityError:
                    raise BadRequestError("Label is already attached to this task.")
        logger.info(f"Attached label {label_id} to task {task_id}")

    def detach(self, owner_id: str, task_id: Any, label_id: Any) -> None:
        """Detach a label; NotFoundError when no such owned attachment exists."""
        task_id, label_id = to_storage(task_id), to_storage(label_id)
        with self.db.transaction() as conn:
            with storage_errors("detach label"):
                cursor = conn.execute(
                    f"""
                    DELETE FROM task_labels
                    WHERE task_id = ? AND label_id = ?
                      AND task_id IN ({OWNED_TASKS})
                      AND label_id IN ({OWNED_LABELS})
                    """,
                    (task_id, label_id, owner_id, owner_id),
                )
            if cursor.rowcount == 0:
                raise NotFoundError("Label attachment not found.")
        logger.info(f"Detached label {label_id} from task {task_id}")

    @staticmethod
    def label_index(conn: sqlite3.Connection, task_ids: List[str]) -> Dict[str, List[str]]:
        """Map each task id to its attached label ids."""
        index: Dict[str, List[str]] = defaultdict(list)
        if not task_ids:
            return index
        placeholders = ", ".join("?" for _ in task_ids)
        rows = conn.execute(
            f"SELECT task_id, label_id FROM task_labels WHERE task_id IN ({placeholders}) "
            f"ORDER BY rowid",
            tuple(task_ids),
        ).fetchall()
        for row in rows:
            index[row["task_id"]].append(row["label_id"])
        return index
