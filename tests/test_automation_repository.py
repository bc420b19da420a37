from __future__ import annotations

import pytest

from homedash.automations.errors import ChildNotOwned, DuplicateName, NotFound, ParentNotFound
from homedash.automations.repository import AutomationRepository
from homedash.automations.store import SqliteAutomationStore, decode_tags


@pytest.fixture
def store() -> SqliteAutomationStore:
    return SqliteAutomationStore(":memory:")


@pytest.fixture
def repository(store: SqliteAutomationStore) -> AutomationRepository:
    return AutomationRepository(store, default_enabled=True)


def _automation_with_children(repository: AutomationRepository, name: str = "Evening"):
    automation = repository.create({"name": name, "tags": ["lights"]})
    repository.create_trigger(automation.id, {"type": "time", "time": "19:00"})
    repository.create_condition(
        automation.id, {"type": "entity_state", "entityId": "person.ana", "operator": "equals", "value": "home"}
    )
    repository.create_action(automation.id, {"type": "scene", "sceneId": "scene.evening"})
    return repository.get(automation.id)


def test_create_and_get_returns_full_aggregate(repository: AutomationRepository) -> None:
    automation = _automation_with_children(repository)

    body = automation.to_dict()
    assert body["name"] == "Evening"
    assert body["enabled"] is True
    assert body["tags"] == ["lights"]
    assert body["lastRun"] is None
    assert [item["type"] for item in body["triggers"]] == ["time"]
    assert body["triggers"][0]["time"] == "19:00"
    assert body["conditions"][0]["entityId"] == "person.ana"
    assert body["actions"][0]["sceneId"] == "scene.evening"


def test_duplicate_name_is_rejected(repository: AutomationRepository) -> None:
    repository.create({"name": "Evening"})

    with pytest.raises(DuplicateName) as exc_info:
        repository.create({"name": " Evening "})
    assert exc_info.value.status_code == 409


def test_rename_to_existing_name_is_rejected(repository: AutomationRepository) -> None:
    repository.create({"name": "A"})
    second = repository.create({"name": "B"})

    with pytest.raises(DuplicateName):
        repository.update(second.id, {"name": "A"})
    assert repository.update(second.id, {"name": "B"}).name == "B"


def test_list_filters_sorts_and_clamps(repository: AutomationRepository) -> None:
    repository.create({"name": "Porch light", "source": "ha"})
    repository.create({"name": "Garden water", "enabled": False})
    repository.create({"name": "Porch fan"})

    names = [item.name for item in repository.list(search="porch", sort="name", order="asc")]
    assert names == ["Porch fan", "Porch light"]
    assert [item.name for item in repository.list(enabled=False)] == ["Garden water"]
    assert [item.name for item in repository.list(source="ha")] == ["Porch light"]
    assert len(repository.list(limit=1)) == 1
    assert len(repository.list(limit=500)) == 3
    assert all(item.triggers == () for item in repository.list())


def test_delete_cascades_to_children(repository: AutomationRepository, store: SqliteAutomationStore) -> None:
    automation = _automation_with_children(repository)

    deleted = repository.delete(automation.id)

    assert deleted.id == automation.id
    assert len(deleted.actions) == 1
    assert store.list_children("trigger", automation.id) == []
    assert store.list_children("action", automation.id) == []
    with pytest.raises(NotFound):
        repository.get(automation.id)


def test_duplicate_copies_children_disabled_with_copy_names(repository: AutomationRepository) -> None:
    original = _automation_with_children(repository)
    repository.mark_run(original.id, "2024-05-01T06:30:00+00:00")

    first = repository.duplicate(original.id)
    second = repository.duplicate(original.id)

    assert first.name == "Evening (Copy)"
    assert second.name == "Evening (Copy 2)"
    assert first.enabled is False
    assert first.last_run is None
    assert first.tags == ("lights",)
    assert [item.spec for item in first.triggers] == [item.spec for item in original.triggers]
    assert [item.spec for item in first.actions] == [item.spec for item in original.actions]
    assert first.actions[0].id != original.actions[0].id


def test_nested_operations_require_parent(repository: AutomationRepository) -> None:
    with pytest.raises(ParentNotFound) as exc_info:
        repository.create_trigger(999, {"type": "time", "time": "07:00"})
    assert exc_info.value.code == "AUTOMATION_NOT_FOUND"

    with pytest.raises(ParentNotFound):
        repository.list_actions(999)


def test_parent_check_runs_before_payload_validation(repository: AutomationRepository) -> None:
    with pytest.raises(ParentNotFound):
        repository.create_action(999, {"type": "nonsense"})


@pytest.mark.parametrize("kind", ["trigger", "condition", "action"])
def test_child_ownership_is_enforced(repository: AutomationRepository, kind: str) -> None:
    owner = _automation_with_children(repository, "Owner")
    other = repository.create({"name": "Other"})
    child_id = getattr(owner, f"{kind}s")[0].id

    for call in (
        lambda: getattr(repository, f"get_{kind}")(other.id, child_id),
        lambda: getattr(repository, f"update_{kind}")(other.id, child_id, {}),
        lambda: getattr(repository, f"delete_{kind}")(other.id, child_id),
    ):
        with pytest.raises(ChildNotOwned) as exc_info:
            call()
        assert exc_info.value.code == f"{kind.upper()}_NOT_OWNED"
        assert exc_info.value.status_code == 404

    assert getattr(repository, f"get_{kind}")(owner.id, child_id).id == child_id


def test_missing_child_reports_kind_code(repository: AutomationRepository) -> None:
    automation = repository.create({"name": "Empty"})

    with pytest.raises(NotFound) as exc_info:
        repository.get_condition(automation.id, 12345)
    assert exc_info.value.code == "CONDITION_NOT_FOUND"


def test_child_update_merges_partial_payload(repository: AutomationRepository) -> None:
    automation = repository.create({"name": "Thermostat"})
    condition = repository.create_condition(
        automation.id,
        {"type": "numeric", "entityId": "sensor.temp", "operator": "greater", "value": "21"},
    )

    updated = repository.update_condition(automation.id, condition.id, {"value": "23.5"})

    assert updated.to_dict()["value"] == "23.5"
    assert updated.to_dict()["entityId"] == "sensor.temp"
    assert updated.to_dict()["operator"] == "greater"


def test_action_data_roundtrips_as_object(repository: AutomationRepository) -> None:
    automation = repository.create({"name": "Dim"})
    action = repository.create_action(
        automation.id,
        {"type": "service_call", "service": "light.turn_on", "entityId": "light.desk", "data": {"brightness": 40}},
    )

    assert repository.get_action(automation.id, action.id).to_dict()["data"] == {"brightness": 40}


def test_undecodable_tags_read_as_empty(repository: AutomationRepository, store: SqliteAutomationStore) -> None:
    automation = repository.create({"name": "Tagged", "tags": ["x"]})
    with store._transaction() as conn:
        conn.execute("UPDATE automations SET tags = ? WHERE id = ?", ("not-json", automation.id))

    assert repository.get(automation.id).tags == ()
    assert decode_tags('["a", 3, "b"]') == ("a", "b")


def test_change_listener_receives_ids_and_failures_are_contained(repository: AutomationRepository) -> None:
    seen: list[int] = []

    def _boom(_automation_id: int) -> None:
        raise RuntimeError("listener failed")

    repository.subscribe(_boom)
    repository.subscribe(seen.append)

    automation = repository.create({"name": "Listener"})
    repository.create_trigger(automation.id, {"type": "mqtt", "topic": "home/door"})

    assert seen == [automation.id, automation.id]


def test_insert_child_refuses_missing_parent(store: SqliteAutomationStore) -> None:
    assert store.insert_child("trigger", 404, "time", {"time": "07:00"}) is None


def test_parent_deleted_during_child_create_raises_parent_not_found(
    repository: AutomationRepository, store: SqliteAutomationStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    automation = repository.create({"name": "Short lived"})
    insert_child = store.insert_child

    def _delete_then_insert(kind, automation_id, child_type, values):
        store.delete_automation(automation_id)
        return insert_child(kind, automation_id, child_type, values)

    monkeypatch.setattr(store, "insert_child", _delete_then_insert)

    with pytest.raises(ParentNotFound) as exc_info:
        repository.create_trigger(automation.id, {"type": "time", "time": "07:00"})

    assert exc_info.value.code == "AUTOMATION_NOT_FOUND"
    assert store.list_children("trigger", automation.id) == []
