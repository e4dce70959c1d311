"""
Container operations: the journey of one physical container through the
logistics centre, from the intake scan to dispatch.

    arrived -> rejected                                  (failed inspection)
    arrived -> cleaning -> cleaned -> weighing -> weighed
            -> sorting -> sorted -> stored | shelved
    stored  -> shelved                                   (restock from overflow)
    shelved -> picked -> packaged -> dispatched

`location` moves in lockstep with `state`. Every change appends to the
audit trail; weighings accumulate in `weight_history`.
"""
import logging
from typing import Any, Dict, List, Optional, Union

from pymongo.database import Database

from audit import audit_entry
from database import create_document, now, oid, serialize_doc
from errors import ConflictError, NotFoundError, ValidationError
from schemas import ContainerOps, ContainerState, LocationArea, WeightEntry

logger = logging.getLogger(__name__)

COLLECTION = "containerops"

TRANSITIONS = {
    ContainerState.ARRIVED: {ContainerState.REJECTED, ContainerState.CLEANING},
    ContainerState.REJECTED: set(),
    ContainerState.CLEANING: {ContainerState.CLEANED},
    ContainerState.CLEANED: {ContainerState.WEIGHING},
    ContainerState.WEIGHING: {ContainerState.WEIGHED},
    ContainerState.WEIGHED: {ContainerState.SORTING},
    ContainerState.SORTING: {ContainerState.SORTED},
    ContainerState.SORTED: {ContainerState.STORED, ContainerState.SHELVED},
    ContainerState.STORED: {ContainerState.SHELVED},
    ContainerState.SHELVED: {ContainerState.PICKED},
    ContainerState.PICKED: {ContainerState.PACKAGED},
    ContainerState.PACKAGED: {ContainerState.DISPATCHED},
    ContainerState.DISPATCHED: set(),
}

TERMINAL_STATES = {s for s, targets in TRANSITIONS.items() if not targets}


def _parse_state(state: Union[str, ContainerState]) -> ContainerState:
    try:
        return ContainerState(state)
    except ValueError:
        raise ValidationError(f"Invalid container state: {state!r}")


def allowed_transitions(state: Union[str, ContainerState]) -> List[str]:
    return sorted(s.value for s in TRANSITIONS[_parse_state(state)])


def _load(db: Database, ops_id: str) -> Dict[str, Any]:
    doc = db[COLLECTION].find_one({"_id": oid(ops_id, "containerOps id")})
    if not doc:
        raise NotFoundError(f"ContainerOps not found: {ops_id}")
    return doc


def _next_location(
    db: Database, target: ContainerState, location: Optional[Dict[str, Any]]
) -> Optional[Dict[str, Any]]:
    """Location for the target state, or None when it stays where it is."""
    location = location or {}
    if target == ContainerState.SHELVED:
        shelf_id, slot_id = location.get("shelf_id"), location.get("slot_id")
        if not shelf_id or not slot_id:
            raise ValidationError("Shelving a container requires shelf_id and slot_id")
        shelf = db["shelf"].find_one({"_id": oid(shelf_id, "shelf id")})
        if not shelf:
            raise NotFoundError(f"Shelf not found: {shelf_id}")
        return {
            "area": LocationArea.SHELF.value,
            "zone": location.get("zone") or shelf.get("zone"),
            "aisle": location.get("aisle") or shelf.get("aisle"),
            "shelf_id": str(shelf_id),
            "slot_id": str(slot_id),
        }
    if target == ContainerState.STORED:
        if not location.get("zone"):
            raise ValidationError("Storing a container requires a warehouse zone")
        return {
            "area": LocationArea.WAREHOUSE.value,
            "zone": location["zone"],
            "aisle": location.get("aisle"),
            "shelf_id": None,
            "slot_id": None,
        }
    if target in (ContainerState.PACKAGED, ContainerState.DISPATCHED):
        return {"area": LocationArea.OUT.value, "zone": None, "aisle": None, "shelf_id": None, "slot_id": None}
    # picked stays on its shelf slot until packaged
    return None


def _save(db: Database, doc: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
    update.setdefault("$set", {})["updated_at"] = now()
    update["$inc"] = {"version": 1}
    res = db[COLLECTION].update_one({"_id": doc["_id"], "version": doc.get("version", 0)}, update)
    if res.matched_count == 0:
        logger.warning("Concurrent update on container %s", doc.get("container_id"))
        raise ConflictError(f"Container {doc.get('container_id')} changed concurrently; retry")
    return serialize_doc(db[COLLECTION].find_one({"_id": doc["_id"]}))


# ----------------------
# Intake & lookups
# ----------------------
def intake_container(
    db: Database,
    container_id: str,
    farmer_order_id: str,
    item_id: str,
    logistic_center_id: str,
    actor_id: str,
    qr_id: Optional[str] = None,
) -> Dict[str, Any]:
    if not container_id or not container_id.strip():
        raise ValidationError("container_id is required")
    container_id = container_id.strip()
    live = db[COLLECTION].find_one({
        "container_id": container_id,
        "state": {"$nin": [s.value for s in TERMINAL_STATES]},
    })
    if live:
        raise ConflictError(f"Container {container_id} is already in the centre")

    ops = ContainerOps(
        container_id=container_id,
        farmer_order_id=farmer_order_id,
        item_id=item_id,
        logistic_center_id=logistic_center_id,
        qr_id=qr_id,
    )
    data = ops.model_dump()
    data["location"]["updated_at"] = now()
    data["audit_trail"] = [audit_entry("intake", actor_id, "Scanned at intake")]
    inserted = create_document(db, COLLECTION, data)
    logger.info("Container %s arrived at centre %s", container_id, logistic_center_id)
    return serialize_doc(db[COLLECTION].find_one({"_id": inserted}))


def get_container(db: Database, ops_id: str) -> Dict[str, Any]:
    return serialize_doc(_load(db, ops_id))


def get_by_container_id(db: Database, container_id: str) -> Dict[str, Any]:
    if not container_id or not container_id.strip():
        raise ValidationError("container_id is required")
    doc = db[COLLECTION].find_one({"container_id": container_id.strip()}, sort=[("created_at", -1)])
    if not doc:
        raise NotFoundError(f"ContainerOps not found: {container_id}")
    return serialize_doc(doc)


def list_containers(
    db: Database,
    logistic_center_id: Optional[str] = None,
    state: Optional[Union[str, ContainerState]] = None,
    limit: int = 100,
) -> List[Dict[str, Any]]:
    filt: Dict[str, Any] = {}
    if logistic_center_id:
        filt["logistic_center_id"] = logistic_center_id
    if state:
        filt["state"] = _parse_state(state).value
    docs = db[COLLECTION].find(filt).sort("created_at", -1).limit(limit)
    return [serialize_doc(d) for d in docs]


# ----------------------
# Transitions
# ----------------------
def transition_container(
    db: Database,
    ops_id: str,
    to_state: Union[str, ContainerState],
    actor_id: str,
    location: Optional[Dict[str, Any]] = None,
    weight_kg: Optional[float] = None,
    notes: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Advance a container to `to_state`, updating location and descriptors."""
    target = _parse_state(to_state)
    doc = _load(db, ops_id)
    current = ContainerState(doc["state"])
    if target not in TRANSITIONS[current]:
        raise ValidationError(
            f"Illegal container transition: {current.value} -> {target.value}"
            f" (allowed: {', '.join(allowed_transitions(current)) or 'none'})"
        )

    stamp = now()
    sets: Dict[str, Any] = {"state": target.value}
    pushes: Dict[str, Any] = {}

    new_location = _next_location(db, target, location)
    if new_location is not None:
        new_location["updated_at"] = stamp
        sets["location"] = new_location

    if target == ContainerState.CLEANING:
        sets["cleaning.started_at"] = stamp
        sets["cleaning.by"] = actor_id
    elif target == ContainerState.CLEANED:
        sets["cleaning.finished_at"] = stamp
        if notes is not None:
            sets["cleaning.notes"] = notes
    elif target == ContainerState.WEIGHED:
        if weight_kg is not None:
            pushes["weight_history"] = _weight_entry(weight_kg, actor_id)
        elif not doc.get("weight_history"):
            raise ValidationError("A container must be weighed before it is marked weighed")
    elif target == ContainerState.SORTED:
        sets["sorting.sorted_at"] = stamp
        sets["sorting.by"] = actor_id
        sets["sorting.details"] = dict(meta or {})

    pushes["audit_trail"] = audit_entry(
        target.value, actor_id, notes or f"{current.value} -> {target.value}", meta
    )
    updated = _save(db, doc, {"$set": sets, "$push": pushes})
    logger.info("Container %s: %s -> %s by %s", doc["container_id"], current.value, target.value, actor_id)
    return updated


def _weight_entry(value_kg: float, actor_id: str) -> Dict[str, Any]:
    if value_kg is None or not value_kg >= 0:
        raise ValidationError("weight must be >= 0 kg")
    return WeightEntry(value_kg=value_kg, by=actor_id, at=now()).model_dump()


def record_weight(db: Database, ops_id: str, value_kg: float, actor_id: str) -> Dict[str, Any]:
    """Append a weighing without changing state; containers may be weighed repeatedly."""
    entry = _weight_entry(value_kg, actor_id)
    doc = _load(db, ops_id)
    if ContainerState(doc["state"]) in TERMINAL_STATES:
        raise ValidationError(f"Cannot weigh a container in state {doc['state']}")
    return _save(db, doc, {
        "$push": {
            "weight_history": entry,
            "audit_trail": audit_entry("weighed", actor_id, f"Weighed {value_kg}kg", {"value_kg": value_kg}),
        },
    })


def record_picked(db: Database, ops_id: str, amount_kg: float, actor_id: str) -> Dict[str, Any]:
    """Audit a partial pick from a shelved container; its state is left alone."""
    if amount_kg is None or amount_kg <= 0:
        raise ValidationError("amount_kg must be > 0")
    doc = _load(db, ops_id)
    if doc["state"] not in (ContainerState.SHELVED.value, ContainerState.PICKED.value):
        raise ValidationError(f"Cannot pick from a container in state {doc['state']}")
    return _save(db, doc, {
        "$push": {
            "audit_trail": audit_entry("picked", actor_id, f"Picked {amount_kg}kg from container", {"amount_kg": amount_kg}),
        },
    })
