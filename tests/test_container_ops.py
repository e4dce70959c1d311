import pytest

import container_ops
from container_ops import transition_container
from errors import ConflictError, NotFoundError, ValidationError
from schemas import ContainerState


@pytest.fixture
def container(db):
    return container_ops.intake_container(
        db,
        container_id="C-1001",
        farmer_order_id="fo-1",
        item_id="tomato",
        logistic_center_id="lc-1",
        actor_id="clerk-1",
    )


def walk_to_sorted(db, ops_id):
    transition_container(db, ops_id, "cleaning", "op-1")
    transition_container(db, ops_id, "cleaned", "op-1", notes="clean")
    transition_container(db, ops_id, "weighing", "op-1")
    transition_container(db, ops_id, "weighed", "op-1", weight_kg=18.5)
    transition_container(db, ops_id, "sorting", "op-1")
    return transition_container(db, ops_id, "sorted", "op-1", meta={"grade": "A", "bins": 2})


def test_intake_creates_arrived_container(container):
    assert container["state"] == "arrived"
    assert container["location"]["area"] == "warehouse"
    assert container["weight_history"] == []
    assert [e["action"] for e in container["audit_trail"]] == ["intake"]


def test_duplicate_live_intake_conflicts(db, container):
    with pytest.raises(ConflictError):
        container_ops.intake_container(db, "C-1001", "fo-2", "tomato", "lc-1", "clerk-1")


def test_from_arrived_only_reject_or_clean(db, container):
    assert container_ops.allowed_transitions("arrived") == ["cleaning", "rejected"]
    for target in ContainerState:
        if target in (ContainerState.CLEANING, ContainerState.REJECTED):
            continue
        with pytest.raises(ValidationError):
            transition_container(db, container["id"], target, "op-1")


def test_rejected_is_terminal(db, container):
    rejected = transition_container(db, container["id"], "rejected", "qa-1", notes="mould")
    assert rejected["state"] == "rejected"
    with pytest.raises(ValidationError):
        transition_container(db, container["id"], "cleaning", "qa-1")


def test_happy_path_to_dispatch(db, container, make_shelf):
    shelf = make_shelf(zone="B")
    ops_id = container["id"]
    sorted_doc = walk_to_sorted(db, ops_id)
    assert sorted_doc["cleaning"]["by"] == "op-1"
    assert sorted_doc["cleaning"]["notes"] == "clean"
    assert sorted_doc["cleaning"]["finished_at"] is not None
    assert sorted_doc["sorting"]["details"] == {"grade": "A", "bins": 2}
    assert [w["value_kg"] for w in sorted_doc["weight_history"]] == [18.5]

    shelved = transition_container(db, ops_id, "shelved", "op-2", location={"shelf_id": shelf, "slot_id": "S1"})
    assert shelved["location"]["area"] == "shelf"
    assert shelved["location"]["shelf_id"] == shelf
    assert shelved["location"]["slot_id"] == "S1"
    assert shelved["location"]["zone"] == "B"

    picked = transition_container(db, ops_id, "picked", "picker-1")
    assert picked["state"] == "picked"
    assert picked["location"]["area"] == "shelf"
    assert picked["audit_trail"][-1]["action"] == "picked"
    assert len(picked["audit_trail"]) == len(shelved["audit_trail"]) + 1

    packaged = transition_container(db, ops_id, "packaged", "packer-1")
    assert packaged["location"]["area"] == "out"
    assert packaged["location"]["shelf_id"] is None

    dispatched = transition_container(db, ops_id, "dispatched", "driver-1")
    assert dispatched["state"] == "dispatched"
    assert container_ops.allowed_transitions("dispatched") == []
    for target in ContainerState:
        with pytest.raises(ValidationError):
            transition_container(db, ops_id, target, "driver-1")


def test_shelving_requires_slot_and_existing_shelf(db, container):
    walk_to_sorted(db, container["id"])
    with pytest.raises(ValidationError):
        transition_container(db, container["id"], "shelved", "op-2", location={"slot_id": "S1"})
    with pytest.raises(NotFoundError):
        transition_container(
            db, container["id"], "shelved", "op-2",
            location={"shelf_id": "5f0000000000000000000000", "slot_id": "S1"},
        )
    assert container_ops.get_container(db, container["id"])["state"] == "sorted"


def test_store_then_restock_to_shelf(db, container, make_shelf):
    shelf = make_shelf()
    walk_to_sorted(db, container["id"])
    with pytest.raises(ValidationError):
        transition_container(db, container["id"], "stored", "op-2")

    stored = transition_container(db, container["id"], "stored", "op-2", location={"zone": "OVF", "aisle": "3"})
    assert stored["location"]["area"] == "warehouse"
    assert stored["location"]["zone"] == "OVF"
    assert stored["location"]["shelf_id"] is None

    shelved = transition_container(db, container["id"], "shelved", "op-2", location={"shelf_id": shelf, "slot_id": "S4"})
    assert shelved["location"]["area"] == "shelf"


def test_weighed_needs_a_weighing(db, container):
    ops_id = container["id"]
    for state in ("cleaning", "cleaned", "weighing"):
        transition_container(db, ops_id, state, "op-1")
    with pytest.raises(ValidationError):
        transition_container(db, ops_id, "weighed", "op-1")

    container_ops.record_weight(db, ops_id, 20.0, "op-1")
    weighed = transition_container(db, ops_id, "weighed", "op-1")
    assert weighed["state"] == "weighed"


def test_weight_history_is_additive(db, container):
    ops_id = container["id"]
    container_ops.record_weight(db, ops_id, 21.0, "op-1")
    transition_container(db, ops_id, "cleaning", "op-1")
    transition_container(db, ops_id, "cleaned", "op-1")
    doc = container_ops.record_weight(db, ops_id, 19.4, "op-3")
    assert [(w["value_kg"], w["by"]) for w in doc["weight_history"]] == [(21.0, "op-1"), (19.4, "op-3")]
    assert doc["state"] == "cleaned"
    with pytest.raises(ValidationError):
        container_ops.record_weight(db, ops_id, -1, "op-1")
    with pytest.raises(ValidationError):
        container_ops.record_weight(db, ops_id, float("nan"), "op-1")
    assert len(container_ops.get_container(db, ops_id)["weight_history"]) == 2


def test_record_picked_only_from_shelf(db, container, make_shelf):
    with pytest.raises(ValidationError):
        container_ops.record_picked(db, container["id"], 2.0, "picker-1")

    walk_to_sorted(db, container["id"])
    transition_container(db, container["id"], "shelved", "op-2", location={"shelf_id": make_shelf(), "slot_id": "S1"})
    doc = container_ops.record_picked(db, container["id"], 2.5, "picker-1")
    assert doc["state"] == "shelved"
    assert doc["audit_trail"][-1]["meta"] == {"amount_kg": 2.5}
    with pytest.raises(ValidationError):
        container_ops.record_picked(db, container["id"], 0, "picker-1")


def test_invalid_meta_is_rejected(db, container):
    with pytest.raises(ValidationError):
        transition_container(db, container["id"], "cleaning", "op-1", meta={"nested": {"a": 1}})


def test_stale_transition_conflicts(db, container, monkeypatch):
    stale = db["containerops"].find_one()
    db["containerops"].update_one({"_id": stale["_id"]}, {"$inc": {"version": 1}})
    monkeypatch.setattr(container_ops, "_load", lambda _db, _id: stale)
    with pytest.raises(ConflictError):
        transition_container(db, container["id"], "cleaning", "op-1")


def test_lookups(db, container):
    assert container_ops.get_by_container_id(db, "C-1001")["id"] == container["id"]
    with pytest.raises(NotFoundError):
        container_ops.get_by_container_id(db, "C-404")
    with pytest.raises(ValidationError):
        container_ops.get_container(db, "bogus")
    assert len(container_ops.list_containers(db, logistic_center_id="lc-1", state="arrived")) == 1
    assert container_ops.list_containers(db, state="shelved") == []
