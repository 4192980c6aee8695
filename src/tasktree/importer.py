"""
YAML Bulk Importer

Imports a user's labels and nested lists/tasks from a YAML document in one
transaction. Every row goes through the same repositories and request models
as the API, so colors, parents and list ownership are validated identically;
any failure rolls back the whole import.

Document layout::

    labels:
      - title: Urgent
        color: "#ff0000"
    lists:
      - title: Home
        color: "#00aa00"
        lists: [...]            # child lists
        tasks:
          - title: Clean
            due_at: 2026-01-01T10:00:00Z
            due_text: new year
            labels: [Urgent]    # label titles
            subtasks: [...]
"""

import logging
from typing import Any, Dict, List, Optional

import yaml

from .crud import DEFAULT_PAGE_LIMIT
from .database import Database
from .labels import TaskLabels
from .models import LabelCreate, ListCreate, TaskCreate
from .resources import repositories

logger = logging.getLogger(__name__)


def _as_list(data: Dict[str, Any], key: str, where: str) -> List[Any]:
    value = data.get(key, [])
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"'{key}' in {where} must be a list")
    return value


def _as_mapping(value: Any, what: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise ValueError(f"{what} data must be a dictionary")
    return value


class _TreeImport:
    """State of one import: repositories, label titles and counters."""

    def __init__(self, db: Database, owner_id: str):
        repos = repositories(db, DEFAULT_PAGE_LIMIT, DEFAULT_PAGE_LIMIT)
        self.owner_id = owner_id
        self.lists = repos["lists"]
        self.tasks = repos["tasks"]
        self.labels = repos["labels"]
        self.task_labels = TaskLabels(db)
        self.label_ids: Dict[str, str] = {}
        self.stats = {
            "labels_created": 0,
            "lists_created": 0,
            "tasks_created": 0,
            "labels_attached": 0,
        }

    def label(self, data: Any) -> None:
        data = _as_mapping(data, "Label")
        payload = LabelCreate.model_validate(
            {k: data.get(k) for k in ("title", "description", "color") if k in data}
        )
        if payload.title in self.label_ids:
            raise ValueError(f"Duplicate label title '{payload.title}'")
        self.label_ids[payload.title] = self.labels.create(self.owner_id, payload.model_dump())
        self.stats["labels_created"] += 1

    def list(self, data: Any, parent_id: Optional[str] = None) -> None:
        data = _as_mapping(data, "List")
        fields = {k: data[k] for k in ("title", "description", "color") if k in data}
        payload = ListCreate.model_validate({**fields, "parent_id": parent_id})
        list_id = self.lists.create(self.owner_id, payload.model_dump())
        self.stats["lists_created"] += 1

        where = f"list '{payload.title}'"
        for task in _as_list(data, "tasks", where):
            self.task(task, list_id)
        for child in _as_list(data, "lists", where):
            self.list(child, list_id)

    def task(self, data: Any, list_id: str, parent_id: Optional[str] = None) -> None:
        data = _as_mapping(data, "Task")
        fields = {
            k: data[k]
            for k in ("title", "description", "due_at", "due_text", "completed")
            if k in data
        }
        payload = TaskCreate.model_validate({**fields, "list_id": list_id, "parent_id": parent_id})
        task_id = self.tasks.create(self.owner_id, payload.model_dump())
        self.stats["tasks_created"] += 1

        where = f"task '{payload.title}'"
        for title in _as_list(data, "labels", where):
            if title not in self.label_ids:
                raise ValueError(f"Unknown label '{title}' on {where}")
            self.task_labels.attach(self.owner_id, task_id, self.label_ids[title])
            self.stats["labels_attached"] += 1
        for subtask in _as_list(data, "subtasks", where):
            self.task(subtask, list_id, task_id)


def import_tree(db: Database, owner_id: str, data: Dict[str, Any]) -> Dict[str, int]:
    """
    Import labels and nested lists/tasks for ``owner_id``.

    Args:
        db: Database pool
        owner_id: User that will own every imported row
        data: Parsed document, see module docstring

    Returns:
        Counts of created labels, lists, tasks and label attachments

    Raises:
        ValueError: malformed document structure or field values
        TaskTreeError: a row was rejected by a business rule
    """
    run = _TreeImport(db, owner_id)
    with db.transaction() as conn:
        user = conn.execute("SELECT 1 FROM users WHERE id = ?", (owner_id,)).fetchone()
        if user is None:
            raise ValueError(f"User not found: {owner_id}")
        # Labels first so tasks can reference them by title
        for label in _as_list(data, "labels", "document"):
            run.label(label)
        for item in _as_list(data, "lists", "document"):
            run.list(item)

    logger.info(f"Imported tree for user {owner_id}: {run.stats}")
    return run.stats


def import_tree_from_file(db: Database, owner_id: str, yaml_file_path: str) -> Dict[str, int]:
    """
    Import a tree from a YAML file.

    Raises:
        FileNotFoundError: the file does not exist
        ValueError: invalid YAML or a root that is not a mapping
    """
    try:
        with open(yaml_file_path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
    except FileNotFoundError:
        raise FileNotFoundError(f"YAML file not found: {yaml_file_path}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML format: {str(e)}")

    if not isinstance(yaml_data, dict):
        raise ValueError("YAML file must contain a dictionary at root level")
    return import_tree(db, owner_id, yaml_data)
