"""
Tests for the ownership-scoped CRUD engine through the concrete resources.
"""

import logging

import pytest

from tasktree.crud import PatchOutcome
from tasktree.exceptions import BadRequestError, NotFoundError
from tasktree.patch import Patch
from tasktree.resources import repositories


@pytest.fixture
def repos(db):
    return repositories(db, page_limit=1000, max_page_limit=1000)


def _list_payload(title="Groceries", color="#ffaa00", **extra):
    return {"title": title, "color": color, **extra}


def _task_payload(list_id, title="Buy milk", **extra):
    return {
        "list_id": list_id,
        "title": title,
        "due_at": "2026-11-01T09:00:00.000000Z",
        "due_text": "next week",
        **extra,
    }


class TestCreateAndGet:
    def test_create_stamps_owner(self, repos, make_user):
        alice = make_user()
        list_id = repos["lists"].create(alice, _list_payload())

        item = repos["lists"].get(alice, list_id)
        assert item["id"] == list_id
        assert item["user_id"] == alice
        assert item["title"] == "Groceries"
        assert item["description"] is None
        assert item["parent_id"] is None
        assert item["child_ids"] == []

    def test_create_ignores_fields_outside_the_creatable_set(self, repos, make_user):
        alice = make_user()
        bob = make_user("bob")
        list_id = repos["lists"].create(alice, _list_payload(user_id=bob, id="forged"))

        assert list_id != "forged"
        assert repos["lists"].get(alice, list_id)["user_id"] == alice

    def test_other_owner_sees_not_found(self, repos, make_user):
        alice, bob = make_user(), make_user("bob")
        list_id = repos["lists"].create(alice, _list_payload())

        with pytest.raises(NotFoundError, match="List not found."):
            repos["lists"].get(bob, list_id)

    def test_missing_item(self, repos, make_user):
        with pytest.raises(NotFoundError):
            repos["labels"].get(make_user(), "00000000-0000-0000-0000-000000000000")

    def test_invalid_color(self, repos, make_user):
        with pytest.raises(BadRequestError, match="6 digit hex"):
            repos["labels"].create(make_user(), {"title": "Urgent", "color": "red"})

    def test_task_defaults_and_types(self, repos, make_user):
        alice = make_user()
        list_id = repos["lists"].create(alice, _list_payload())
        task_id = repos["tasks"].create(alice, _task_payload(list_id))

        task = repos["tasks"].get(alice, task_id)
        assert task["completed"] is False
        assert task["list_id"] == list_id
        assert task["created_at"] == task["updated_at"]
        assert task["label_ids"] == []
        assert task["child_ids"] == []

    def test_task_in_foreign_list_is_rejected(self, repos, make_user):
        alice, bob = make_user(), make_user("bob")
        bobs_list = repos["lists"].create(bob, _list_payload())

        with pytest.raises(BadRequestError, match="Invalid list."):
            repos["tasks"].create(alice, _task_payload(bobs_list))

    def test_tasks_are_owned_through_their_list(self, repos, make_user):
        alice, bob = make_user(), make_user("bob")
        list_id = repos["lists"].create(alice, _list_payload())
        task_id = repos["tasks"].create(alice, _task_payload(list_id))

        with pytest.raises(NotFoundError, match="Task not found."):
            repos["tasks"].get(bob, task_id)
        assert repos["tasks"].list(bob)["items"] == []


class TestList:
    def test_pages_are_in_insertion_order(self, repos, make_user):
        alice = make_user()
        ids = [repos["labels"].create(alice, {"title": f"L{i}", "color": "#000000"}) for i in range(5)]

        first = repos["labels"].list(alice, limit=2, page=0)
        second = repos["labels"].list(alice, limit=2, page=1)
        third = repos["labels"].list(alice, limit=2, page=2)
        empty = repos["labels"].list(alice, limit=2, page=3)

        assert [i["id"] for i in first["items"]] == ids[:2]
        assert [i["id"] for i in second["items"]] == ids[2:4]
        assert [i["id"] for i in third["items"]] == ids[4:]
        assert empty["items"] == []
        assert first["limit"] == 2 and second["page"] == 1

    def test_default_limit(self, repos, make_user):
        page = repos["labels"].list(make_user())
        assert page == {"items": [], "limit": 1000, "page": 0}

    @pytest.mark.parametrize("limit", [0, -1, 1001])
    def test_limit_out_of_range(self, repos, make_user, limit):
        with pytest.raises(BadRequestError, match="Limit must be between 1 and 1000."):
            repos["lists"].list(make_user(), limit=limit)

    def test_negative_page(self, repos, make_user):
        with pytest.raises(BadRequestError):
            repos["lists"].list(make_user(), page=-1)

    @pytest.mark.parametrize("page", [2 ** 62, 2 ** 63, 10 ** 30])
    def test_page_past_any_offset_is_empty(self, repos, make_user, page):
        alice = make_user()
        repos["lists"].create(alice, _list_payload())

        result = repos["lists"].list(alice, limit=1000, page=page)

        assert result == {"items": [], "limit": 1000, "page": page}

    def test_only_owned_items(self, repos, make_user):
        alice, bob = make_user(), make_user("bob")
        repos["labels"].create(alice, {"title": "mine", "color": "#000000"})
        repos["labels"].create(bob, {"title": "theirs", "color": "#000000"})

        assert [i["title"] for i in repos["labels"].list(alice)["items"]] == ["mine"]


class TestPatch:
    def test_absent_untouched_null_cleared_value_set(self, repos, make_user):
        alice = make_user()
        list_id = repos["lists"].create(alice, _list_payload(description="weekly"))

        outcome = repos["lists"].patch(
            alice, list_id, {"title": Patch.of("Food"), "description": Patch.null()}
        )

        item = repos["lists"].get(alice, list_id)
        assert outcome is PatchOutcome.UPDATED
        assert item["title"] == "Food"
        assert item["description"] is None
        assert item["color"] == "#ffaa00"

    def test_empty_patch_is_a_no_op(self, repos, make_user):
        alice = make_user()
        label_id = repos["labels"].create(alice, {"title": "x", "color": "#000000"})

        assert repos["labels"].patch(alice, label_id, {}) is PatchOutcome.NO_CHANGES
        assert repos["labels"].patch(
            alice, label_id, {"title": Patch.absent()}
        ) is PatchOutcome.NO_CHANGES

    def test_empty_patch_on_foreign_item_is_not_found(self, repos, make_user):
        alice, bob = make_user(), make_user("bob")
        label_id = repos["labels"].create(alice, {"title": "x", "color": "#000000"})

        with pytest.raises(NotFoundError):
            repos["labels"].patch(bob, label_id, {})

    def test_foreign_item_is_not_found_before_business_rules(self, repos, make_user):
        alice, bob = make_user(), make_user("bob")
        label_id = repos["labels"].create(alice, {"title": "x", "color": "#000000"})

        with pytest.raises(NotFoundError):
            repos["labels"].patch(bob, label_id, {"color": Patch.of("not a color")})

    def test_color_cannot_be_cleared_or_malformed(self, repos, make_user):
        alice = make_user()
        label_id = repos["labels"].create(alice, {"title": "x", "color": "#000000"})

        with pytest.raises(BadRequestError):
            repos["labels"].patch(alice, label_id, {"color": Patch.null()})
        with pytest.raises(BadRequestError):
            repos["labels"].patch(alice, label_id, {"color": Patch.of("#12345")})
        assert repos["labels"].get(alice, label_id)["color"] == "#000000"

    def test_required_column_cleared_is_bad_request(self, repos, make_user):
        alice = make_user()
        label_id = repos["labels"].create(alice, {"title": "x", "color": "#000000"})

        with pytest.raises(BadRequestError):
            repos["labels"].patch(alice, label_id, {"title": Patch.null()})

    def test_task_patch_refreshes_updated_at(self, repos, make_user):
        alice = make_user()
        list_id = repos["lists"].create(alice, _list_payload())
        task_id = repos["tasks"].create(alice, _task_payload(list_id))
        before = repos["tasks"].get(alice, task_id)

        repos["tasks"].patch(alice, task_id, {"completed": Patch.of(True)})

        after = repos["tasks"].get(alice, task_id)
        assert after["completed"] is True
        assert after["updated_at"] >= before["updated_at"]
        assert after["created_at"] == before["created_at"]

    def test_task_moves_only_to_owned_list(self, repos, make_user):
        alice, bob = make_user(), make_user("bob")
        list_id = repos["lists"].create(alice, _list_payload())
        other = repos["lists"].create(alice, _list_payload("Other"))
        bobs = repos["lists"].create(bob, _list_payload())
        task_id = repos["tasks"].create(alice, _task_payload(list_id))

        repos["tasks"].patch(alice, task_id, {"list_id": Patch.of(other)})
        assert repos["tasks"].get(alice, task_id)["list_id"] == other

        with pytest.raises(BadRequestError, match="Invalid list."):
            repos["tasks"].patch(alice, task_id, {"list_id": Patch.of(bobs)})


class TestDelete:
    def test_delete(self, repos, make_user):
        alice = make_user()
        label_id = repos["labels"].create(alice, {"title": "x", "color": "#000000"})

        repos["labels"].delete(alice, label_id)

        with pytest.raises(NotFoundError):
            repos["labels"].get(alice, label_id)

    def test_delete_foreign_or_missing(self, repos, make_user):
        alice, bob = make_user(), make_user("bob")
        label_id = repos["labels"].create(alice, {"title": "x", "color": "#000000"})

        with pytest.raises(NotFoundError):
            repos["labels"].delete(bob, label_id)
        with pytest.raises(NotFoundError):
            repos["labels"].delete(alice, "missing")
        assert repos["labels"].get(alice, label_id)["title"] == "x"

    def test_deleting_list_deletes_its_tasks(self, repos, make_user):
        alice = make_user()
        list_id = repos["lists"].create(alice, _list_payload())
        task_id = repos["tasks"].create(alice, _task_payload(list_id))

        repos["lists"].delete(alice, list_id)

        with pytest.raises(NotFoundError):
            repos["tasks"].get(alice, task_id)


def test_sessions_are_not_created_or_patched_through_crud(repos, make_user):
    with pytest.raises(BadRequestError, match="created by logging in"):
        repos["sessions"].create(make_user(), {})
    with pytest.raises(BadRequestError, match="cannot be patched"):
        repos["sessions"].patch(make_user("bob"), "x", {})


class TestStatementLogging:
    def test_debug_log_shows_literal_statements(self, repos, make_user, caplog):
        caplog.set_level(logging.DEBUG, logger="tasktree.crud")
        alice = make_user()

        list_id = repos["lists"].create(alice, _list_payload(title="O'Brien's"))
        repos["lists"].patch(alice, list_id, {"description": Patch.null()})

        assert "'O''Brien''s'" in caplog.text
        assert "description = NULL" in caplog.text

    def test_no_statement_rendering_above_debug(self, repos, make_user, caplog):
        caplog.set_level(logging.INFO, logger="tasktree.crud")
        repos["lists"].create(make_user(), _list_payload(title="O'Brien's"))

        assert "O''Brien" not in caplog.text
