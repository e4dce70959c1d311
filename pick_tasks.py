"""
Pick tasks: gathering the items of one customer order from shelf slots.

    pending -> in_progress -> completed
    pending | in_progress -> canceled

Shelf assignments come from the slot locator upstream. At creation the
crowd score of every assigned shelf is snapshotted into `target_slots` and
`aggregate_crowd_score`; the snapshot is not re-derived later. While a
task is in progress it holds one pick counter on each assigned shelf.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError as SchemaError
from pymongo.database import Database

import crowd
from audit import audit_entry
from database import create_document, now, oid, serialize_doc
from errors import ConflictError, NotFoundError, ValidationError
from schemas import CrowdKind, PickItem, PickTask, PickTaskState, ShelfAssignment, TargetSlot

logger = logging.getLogger(__name__)

COLLECTION = "picktask"
QTY_EPSILON = 1e-9

TRANSITIONS = {
    PickTaskState.PENDING: {PickTaskState.IN_PROGRESS, PickTaskState.CANCELED},
    PickTaskState.IN_PROGRESS: {PickTaskState.COMPLETED, PickTaskState.CANCELED},
    PickTaskState.COMPLETED: set(),
    PickTaskState.CANCELED: set(),
}


def _parse_state(state: Union[str, PickTaskState]) -> PickTaskState:
    try:
        return PickTaskState(state)
    except ValueError:
        raise ValidationError(f"Invalid pick task state: {state!r}")


def _assert_transition(doc: Dict[str, Any], target: PickTaskState) -> PickTaskState:
    current = PickTaskState(doc["state"])
    if target not in TRANSITIONS[current]:
        raise ValidationError(f"Illegal pick task transition: {current.value} -> {target.value}")
    return current


def _load(db: Database, task_id: str) -> Dict[str, Any]:
    doc = db[COLLECTION].find_one({"_id": oid(task_id, "pick task id")})
    if not doc:
        raise NotFoundError(f"Pick task not found: {task_id}")
    return doc


def _save(db: Database, doc: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
    update.setdefault("$set", {})["updated_at"] = now()
    update["$inc"] = {"version": 1}
    res = db[COLLECTION].update_one({"_id": doc["_id"], "version": doc.get("version", 0)}, update)
    if res.matched_count == 0:
        logger.warning("Concurrent update on pick task %s", doc["_id"])
        raise ConflictError(f"Pick task {doc['_id']} changed concurrently; retry")
    return db[COLLECTION].find_one({"_id": doc["_id"]})


def _parse_items(items: Iterable[Any]) -> List[PickItem]:
    try:
        parsed = [i if isinstance(i, PickItem) else PickItem(**i) for i in items or []]
    except SchemaError as e:
        raise ValidationError(f"Invalid pick item: {e.errors()[0]['msg']}")
    if not parsed:
        raise ValidationError("A pick task needs at least one item")
    for item in parsed:
        if item.quantity_kg <= 0 and item.quantity_units <= 0:
            raise ValidationError(f"Item {item.item_id} needs a positive kg or unit quantity")
    return parsed


def _parse_assignment(raw: Any, item_ids: Iterable[str]) -> ShelfAssignment:
    try:
        assignment = raw if isinstance(raw, ShelfAssignment) else ShelfAssignment(**raw)
    except SchemaError as e:
        raise ValidationError(f"Invalid shelf assignment: {e.errors()[0]['msg']}")
    if assignment.item_id not in set(item_ids):
        raise ValidationError(f"Shelf assignment references item {assignment.item_id} not in the task")
    return assignment


def coverage_gaps(items: List[Dict[str, Any]], assignments: List[Dict[str, Any]]) -> List[str]:
    """Item ids whose requested kg/units are not covered by the shelf assignments."""
    requested: Dict[str, List[float]] = {}
    for it in items:
        kg_units = requested.setdefault(it["item_id"], [0.0, 0.0])
        kg_units[0] += it.get("quantity_kg") or 0
        kg_units[1] += it.get("quantity_units") or 0

    assigned: Dict[str, List[float]] = {}
    for a in assignments:
        kg_units = assigned.setdefault(a["item_id"], [0.0, 0.0])
        kg_units[0] += a.get("quantity_kg") or 0
        kg_units[1] += a.get("quantity_units") or 0

    gaps = []
    for item_id, (kg, units) in requested.items():
        got = assigned.get(item_id)
        if got is None or got[0] + QTY_EPSILON < kg or got[1] + QTY_EPSILON < units:
            gaps.append(item_id)
    return gaps


# ----------------------
# Shelf pick counters
# ----------------------
def _hold_shelves(db: Database, shelf_ids: Iterable[str], actor_id: Optional[str]) -> List[str]:
    held = []
    for shelf_id in shelf_ids:
        try:
            crowd.mark_shelf_task_start(db, shelf_id, CrowdKind.PICK, actor_id)
        except (ConflictError, NotFoundError) as e:
            logger.warning("Pick counter on shelf %s not raised: %s", shelf_id, e)
            continue
        held.append(shelf_id)
    return held


def _release_shelves(db: Database, doc: Dict[str, Any], actor_id: Optional[str]) -> None:
    for shelf_id in doc.get("active_shelves") or []:
        try:
            crowd.mark_shelf_task_end(db, shelf_id, CrowdKind.PICK, actor_id)
        except (ConflictError, NotFoundError) as e:
            logger.warning("Pick counter on shelf %s not released: %s", shelf_id, e)


# ----------------------
# Creation & lookups
# ----------------------
def create_pick_task(
    db: Database,
    order_id: str,
    logistic_center_id: str,
    items: Iterable[Any],
    shelf_assignments: Optional[Iterable[Any]] = None,
    actor_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a pending task and snapshot the crowd score of every shelf it will visit."""
    if not order_id:
        raise ValidationError("order_id is required")
    parsed_items = _parse_items(items)
    item_ids = [i.item_id for i in parsed_items]
    assignments = [_parse_assignment(a, item_ids) for a in shelf_assignments or []]

    scores: Dict[str, float] = {}
    for a in assignments:
        if a.shelf_id not in scores:
            scores[a.shelf_id] = crowd.compute_shelf_crowd(db, a.shelf_id)["score"]

    task = PickTask(
        order_id=order_id,
        logistic_center_id=logistic_center_id,
        suggested_at=now(),
        items=parsed_items,
        shelf_assignments=assignments,
        target_slots=[
            TargetSlot(
                item_id=a.item_id,
                shelf_id=a.shelf_id,
                slot_id=a.slot_id,
                planned_kg=a.quantity_kg,
                crowd_score=scores[a.shelf_id],
            )
            for a in assignments
        ],
        aggregate_crowd_score=sum(scores.values()) if scores else None,
    )
    data = task.model_dump()
    data["audit_trail"] = [audit_entry("create", actor_id, "Task created", {"items": len(parsed_items)})]
    inserted = create_document(db, COLLECTION, data)
    logger.info("Pick task %s created for order %s", inserted, order_id)
    return serialize_doc(db[COLLECTION].find_one({"_id": inserted}))


def get_pick_task(db: Database, task_id: str) -> Dict[str, Any]:
    return serialize_doc(_load(db, task_id))


def list_pick_tasks(
    db: Database,
    logistic_center_id: Optional[str] = None,
    state: Optional[Union[str, PickTaskState]] = None,
    limit: int = 100,
) -> List[Dict[str, Any]]:
    filt: Dict[str, Any] = {}
    if logistic_center_id:
        filt["logistic_center_id"] = logistic_center_id
    if state:
        filt["state"] = _parse_state(state).value
    docs = db[COLLECTION].find(filt).sort("created_at", -1).limit(limit)
    return [serialize_doc(d) for d in docs]


def suggest_pick_task(db: Database, logistic_center_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """The pending task whose shelves were least crowded at planning time."""
    filt: Dict[str, Any] = {"state": PickTaskState.PENDING.value}
    if logistic_center_id:
        filt["logistic_center_id"] = logistic_center_id
    pending = list(db[COLLECTION].find(filt))
    if not pending:
        return None
    pending.sort(key=lambda d: (
        d.get("aggregate_crowd_score") is None,
        d.get("aggregate_crowd_score") or 0.0,
        d.get("created_at"),
    ))
    return serialize_doc(pending[0])


# ----------------------
# Transitions
# ----------------------
def assign_pick_task(db: Database, task_id: str, picker_id: str, actor_id: Optional[str] = None) -> Dict[str, Any]:
    if not picker_id:
        raise ValidationError("picker_id is required")
    doc = _load(db, task_id)
    if doc["state"] != PickTaskState.PENDING.value:
        raise ValidationError(f"Only pending tasks can be assigned (state is {doc['state']})")
    saved = _save(db, doc, {
        "$set": {"assigned_to": picker_id},
        "$push": {"audit_trail": audit_entry("assign", actor_id, f"assigned to {picker_id}")},
    })
    return serialize_doc(saved)


def start_pick_task(db: Database, task_id: str, picker_id: Optional[str] = None) -> Dict[str, Any]:
    """A picker claims the task: pending -> in_progress."""
    doc = _load(db, task_id)
    _assert_transition(doc, PickTaskState.IN_PROGRESS)
    picker = picker_id or doc.get("assigned_to")
    if not picker:
        raise ValidationError("A pick task must be assigned to a picker before it starts")

    shelves = list(dict.fromkeys(a["shelf_id"] for a in doc.get("shelf_assignments") or []))
    held = _hold_shelves(db, shelves, picker)
    try:
        saved = _save(db, doc, {
            "$set": {
                "state": PickTaskState.IN_PROGRESS.value,
                "assigned_to": picker,
                "started_at": now(),
                "active_shelves": held,
            },
            "$push": {"audit_trail": audit_entry("start", picker, "Picking started")},
        })
    except ConflictError:
        _release_shelves(db, {"active_shelves": held}, picker)
        raise
    logger.info("Pick task %s started by %s", saved["_id"], picker)
    return serialize_doc(saved)


def add_shelf_assignment(db: Database, task_id: str, assignment: Any, actor_id: Optional[str] = None) -> Dict[str, Any]:
    """Record where (part of) an item is taken from."""
    doc = _load(db, task_id)
    if doc["state"] not in (PickTaskState.PENDING.value, PickTaskState.IN_PROGRESS.value):
        raise ValidationError(f"Cannot add assignments to a {doc['state']} task")
    parsed = _parse_assignment(assignment, [i["item_id"] for i in doc.get("items") or []])
    crowd.compute_shelf_crowd(db, parsed.shelf_id)  # shelf must exist

    sets: Dict[str, Any] = {}
    if doc["state"] == PickTaskState.IN_PROGRESS.value and parsed.shelf_id not in (doc.get("active_shelves") or []):
        held = _hold_shelves(db, [parsed.shelf_id], actor_id)
        if held:
            sets["active_shelves"] = (doc.get("active_shelves") or []) + held

    try:
        saved = _save(db, doc, {
            "$set": sets,
            "$push": {
                "shelf_assignments": parsed.model_dump(),
                "audit_trail": audit_entry(
                    "assignment", actor_id, f"{parsed.item_id} from {parsed.shelf_id}/{parsed.slot_id}",
                    {"shelf_id": parsed.shelf_id, "slot_id": parsed.slot_id, "quantity_kg": parsed.quantity_kg},
                ),
            },
        })
    except ConflictError:
        if sets:
            _release_shelves(db, {"active_shelves": [parsed.shelf_id]}, actor_id)
        raise
    return serialize_doc(saved)


def complete_pick_task(db: Database, task_id: str, actor_id: Optional[str] = None) -> Dict[str, Any]:
    doc = _load(db, task_id)
    _assert_transition(doc, PickTaskState.COMPLETED)
    gaps = coverage_gaps(doc.get("items") or [], doc.get("shelf_assignments") or [])
    if gaps:
        raise ValidationError(f"Items not covered by shelf assignments: {', '.join(gaps)}")

    actor = actor_id or doc.get("assigned_to")
    saved = _save(db, doc, {
        "$set": {"state": PickTaskState.COMPLETED.value, "completed_at": now(), "active_shelves": []},
        "$push": {"audit_trail": audit_entry("complete", actor, "All items gathered")},
    })
    _release_shelves(db, doc, actor)
    logger.info("Pick task %s completed", doc["_id"])
    return serialize_doc(saved)


def cancel_pick_task(db: Database, task_id: str, reason: str = "", actor_id: Optional[str] = None) -> Dict[str, Any]:
    """Cancel because the order was canceled or stock disappeared."""
    doc = _load(db, task_id)
    _assert_transition(doc, PickTaskState.CANCELED)
    saved = _save(db, doc, {
        "$set": {"state": PickTaskState.CANCELED.value, "canceled_at": now(), "active_shelves": []},
        "$push": {"audit_trail": audit_entry("cancel", actor_id, reason or "Task canceled")},
    })
    _release_shelves(db, doc, actor_id)
    logger.info("Pick task %s canceled: %s", doc["_id"], reason or "-")
    return serialize_doc(saved)
