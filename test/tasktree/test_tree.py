"""
Tests for the tree hierarchy extension on lists and tasks.
"""

import sqlite3

import pytest

from tasktree.crud import PatchOutcome
from tasktree.exceptions import BadRequestError, InternalError, NotFoundError
from tasktree.patch import Patch
from tasktree.resources import repositories


@pytest.fixture
def repos(db):
    return repositories(db, page_limit=1000, max_page_limit=1000)


@pytest.fixture
def owner(make_user):
    return make_user()


def _new_list(repos, owner, title, parent_id=None):
    return repos["lists"].create(
        owner, {"title": title, "color": "#ffaa00", "parent_id": parent_id}
    )


def _new_task(repos, owner, list_id, title, parent_id=None):
    return repos["tasks"].create(owner, {
        "list_id": list_id,
        "parent_id": parent_id,
        "title": title,
        "due_at": "2026-11-01T09:00:00.000000Z",
        "due_text": "soon",
    })


class TestCreate:
    def test_child_ids_are_derived(self, repos, owner):
        root = _new_list(repos, owner, "root")
        a = _new_list(repos, owner, "a", root)
        b = _new_list(repos, owner, "b", root)

        assert repos["lists"].get(owner, root)["child_ids"] == [a, b]
        assert repos["lists"].get(owner, a)["parent_id"] == root
        listing = {i["id"]: i for i in repos["lists"].list(owner)["items"]}
        assert listing[root]["child_ids"] == [a, b]
        assert listing[a]["child_ids"] == []

    def test_dangling_parent(self, repos, owner):
        with pytest.raises(BadRequestError, match="Invalid parent."):
            _new_list(repos, owner, "orphan", "00000000-0000-0000-0000-000000000000")
        assert repos["lists"].list(owner)["items"] == []

    def test_foreign_parent(self, repos, owner, make_user):
        bob = make_user("bob")
        bobs = _new_list(repos, bob, "bob's")

        with pytest.raises(BadRequestError, match="Invalid parent."):
            _new_list(repos, owner, "mine", bobs)
        assert repos["lists"].get(bob, bobs)["child_ids"] == []

    def test_subtasks(self, repos, owner):
        list_id = _new_list(repos, owner, "list")
        parent = _new_task(repos, owner, list_id, "parent")
        child = _new_task(repos, owner, list_id, "child", parent)

        assert repos["tasks"].get(owner, parent)["child_ids"] == [child]
        assert repos["tasks"].get(owner, child)["parent_id"] == parent


class TestReparent:
    @pytest.mark.parametrize("resource", ["lists", "tasks"])
    def test_self_parent_is_rejected(self, repos, owner, resource):
        list_id = _new_list(repos, owner, "list")
        item_id = list_id if resource == "lists" else _new_task(repos, owner, list_id, "t")

        with pytest.raises(BadRequestError, match="cannot be its own parent"):
            repos[resource].patch(owner, item_id, {"parent_id": Patch.of(item_id)})

    def test_deeper_cycle_is_rejected(self, repos, owner):
        a = _new_list(repos, owner, "a")
        b = _new_list(repos, owner, "b", a)
        c = _new_list(repos, owner, "c", b)

        with pytest.raises(BadRequestError, match="cycle"):
            repos["lists"].patch(owner, a, {"parent_id": Patch.of(c)})
        assert repos["lists"].get(owner, a)["parent_id"] is None

    def test_reparent_and_detach(self, repos, owner):
        a = _new_list(repos, owner, "a")
        b = _new_list(repos, owner, "b")
        c = _new_list(repos, owner, "c", a)

        assert repos["lists"].patch(owner, c, {"parent_id": Patch.of(b)}) is PatchOutcome.UPDATED
        assert repos["lists"].get(owner, a)["child_ids"] == []
        assert repos["lists"].get(owner, b)["child_ids"] == [c]

        repos["lists"].patch(owner, c, {"parent_id": Patch.null()})
        assert repos["lists"].get(owner, c)["parent_id"] is None
        assert repos["lists"].get(owner, b)["child_ids"] == []

    def test_absent_parent_is_left_alone(self, repos, owner):
        a = _new_list(repos, owner, "a")
        b = _new_list(repos, owner, "b", a)

        repos["lists"].patch(owner, b, {"title": Patch.of("renamed")})

        item = repos["lists"].get(owner, b)
        assert item["title"] == "renamed"
        assert item["parent_id"] == a

    def test_foreign_parent_on_patch(self, repos, owner, make_user):
        bob = make_user("bob")
        bobs = _new_list(repos, bob, "bob's")
        mine = _new_list(repos, owner, "mine")

        with pytest.raises(BadRequestError, match="Invalid parent."):
            repos["lists"].patch(owner, mine, {"parent_id": Patch.of(bobs)})

    def test_reparent_foreign_item_is_not_found(self, repos, owner, make_user):
        bob = make_user("bob")
        bobs = _new_list(repos, bob, "bob's")
        mine = _new_list(repos, owner, "mine")

        with pytest.raises(NotFoundError):
            repos["lists"].patch(owner, bobs, {"parent_id": Patch.of(mine)})
        with pytest.raises(NotFoundError):
            repos["lists"].patch(owner, bobs, {"parent_id": Patch.null()})

    def test_scalar_and_parent_change_apply_together(self, repos, owner):
        a = _new_list(repos, owner, "a")
        b = _new_list(repos, owner, "b")

        repos["lists"].patch(owner, b, {"title": Patch.of("moved"), "parent_id": Patch.of(a)})

        item = repos["lists"].get(owner, b)
        assert (item["title"], item["parent_id"]) == ("moved", a)

    def test_failed_parent_step_rolls_back_scalar_fields(self, repos, owner, monkeypatch):
        a = _new_list(repos, owner, "a")
        b = _new_list(repos, owner, "b")
        lists = repos["lists"]

        def fail_midway(*args, **kwargs):
            with lists.db.transaction() as conn:
                # The scalar UPDATE has already run in this transaction
                assert conn.execute("SELECT title FROM lists WHERE id = ?", (b,)).fetchone()[0] == "moved"
            raise InternalError("Failed to patch lists in database.") from sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(lists, "_set_parent", fail_midway)

        with pytest.raises(InternalError):
            lists.patch(owner, b, {"title": Patch.of("moved"), "parent_id": Patch.of(a)})

        item = lists.get(owner, b)
        assert item["title"] == "b"
        assert item["parent_id"] is None

    def test_invalid_parent_rolls_back_scalar_fields(self, repos, owner):
        b = _new_list(repos, owner, "b")

        with pytest.raises(BadRequestError):
            repos["lists"].patch(owner, b, {"title": Patch.of("x"), "parent_id": Patch.of(b)})
        assert repos["lists"].get(owner, b)["title"] == "b"


class TestDeleteDetachesChildren:
    def test_children_of_deleted_list_become_roots(self, repos, owner):
        parent = _new_list(repos, owner, "parent")
        child = _new_list(repos, owner, "child", parent)

        repos["lists"].delete(owner, parent)

        item = repos["lists"].get(owner, child)
        assert item["parent_id"] is None

    def test_subtasks_of_deleted_task_survive(self, repos, owner):
        list_id = _new_list(repos, owner, "list")
        parent = _new_task(repos, owner, list_id, "parent")
        child = _new_task(repos, owner, list_id, "child", parent)

        repos["tasks"].delete(owner, parent)

        assert repos["tasks"].get(owner, child)["parent_id"] is None
