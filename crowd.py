"""
Shelf crowd scoring.

Per-shelf pick/sort/audit counters live in the `crowdstate` collection so
they survive restarts. Every mutation recomputes the busy score:

    score = pick*1.0 + sort*0.7 + audit*0.3 + live_containers*0.5

where live_containers is the shelf's `occupied_slots`. A shelf is crowded
when score >= threshold.
"""
import logging
from typing import Any, Dict, List, Union

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from pymongo.database import Database

from database import now, oid, serialize_doc
from errors import ConflictError, NotFoundError, ValidationError
from schemas import CrowdKind, CrowdState

logger = logging.getLogger(__name__)

PICK_WEIGHT = 1.0
SORT_WEIGHT = 0.7
AUDIT_WEIGHT = 0.3
LIVE_CONTAINER_WEIGHT = 0.5
DEFAULT_THRESHOLD = 2.0

COUNTER_FIELDS = {
    CrowdKind.PICK: "pick_count",
    CrowdKind.SORT: "sort_count",
    CrowdKind.AUDIT: "audit_count",
}


# ----------------------
# Scoring
# ----------------------
def busy_score(pick: int, sort: int, audit: int, live_containers: int) -> float:
    return (
        pick * PICK_WEIGHT
        + sort * SORT_WEIGHT
        + audit * AUDIT_WEIGHT
        + live_containers * LIVE_CONTAINER_WEIGHT
    )


def is_crowded(score: float, threshold: float = DEFAULT_THRESHOLD) -> bool:
    return score >= threshold


def _parse_kind(kind: Union[str, CrowdKind]) -> CrowdKind:
    try:
        return CrowdKind(kind)
    except ValueError:
        raise ValidationError(f"Invalid crowd kind: {kind!r} (expected pick, sort or audit)")


def _check_threshold(threshold: float) -> float:
    if threshold is None or threshold < 0:
        raise ValidationError("threshold must be >= 0")
    return float(threshold)


# ----------------------
# Persistence
# ----------------------
def _get_shelf(db: Database, shelf_id: str) -> Dict[str, Any]:
    shelf = db["shelf"].find_one({"_id": oid(shelf_id, "shelf id")})
    if not shelf:
        raise NotFoundError(f"Shelf not found: {shelf_id}")
    return shelf


def _live_containers(shelf: Dict[str, Any]) -> int:
    return int(shelf.get("occupied_slots") or 0)


def _load_state(db: Database, shelf_id: str) -> Dict[str, Any]:
    """Fetch the crowd state for a shelf, creating a zeroed one on first touch."""
    defaults = CrowdState(shelf_id=shelf_id).model_dump(exclude={"shelf_id"})
    stamp = now()
    defaults["created_at"] = stamp
    defaults["updated_at"] = stamp
    upsert = dict(
        filter={"shelf_id": shelf_id},
        update={"$setOnInsert": defaults},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    try:
        return db["crowdstate"].find_one_and_update(**upsert)
    except DuplicateKeyError:
        # a concurrent first touch inserted the row; the unique index kept it single
        return db["crowdstate"].find_one_and_update(**upsert)


def _score_state(state: Dict[str, Any], live_containers: int) -> float:
    return busy_score(
        state.get("pick_count") or 0,
        state.get("sort_count") or 0,
        state.get("audit_count") or 0,
        live_containers,
    )


def _refresh_score(db: Database, state: Dict[str, Any], score: float) -> None:
    """Store a recomputed score when occupancy moved since the last write."""
    if state.get("busy_score") == score:
        return
    res = db["crowdstate"].update_one(
        {"_id": state["_id"], "version": state["version"]},
        {"$set": {"busy_score": score, "updated_at": now()}, "$inc": {"version": 1}},
    )
    if res.matched_count == 0:
        logger.debug("Skipped busy score refresh for shelf %s; a newer write exists", state["shelf_id"])


def bump(db: Database, shelf_id: str, delta: int, kind: Union[str, CrowdKind]) -> Dict[str, Any]:
    """
    Move one counter of a shelf by `delta` and refresh its busy score.

    Decrements below zero clamp at zero. The write is guarded by the
    document version; a concurrent writer makes this call fail with
    ConflictError instead of losing its update.
    """
    kind = _parse_kind(kind)
    if isinstance(delta, bool) or not isinstance(delta, int):
        raise ValidationError("delta must be an integer")

    shelf = _get_shelf(db, shelf_id)
    state = _load_state(db, shelf_id)

    field = COUNTER_FIELDS[kind]
    value = (state.get(field) or 0) + delta
    if value < 0:
        logger.warning("Clamping %s for shelf %s at 0 (would be %s)", field, shelf_id, value)
        value = 0
    state[field] = value

    score = _score_state(state, _live_containers(shelf))
    stamp = now()
    res = db["crowdstate"].update_one(
        {"_id": state["_id"], "version": state["version"]},
        {"$set": {field: value, "busy_score": score, "updated_at": stamp}, "$inc": {"version": 1}},
    )
    if res.matched_count == 0:
        logger.warning("Concurrent crowd update on shelf %s", shelf_id)
        raise ConflictError(f"Crowd state for shelf {shelf_id} changed concurrently; retry")

    state.update(busy_score=score, updated_at=stamp, version=state["version"] + 1)
    logger.debug("Bumped %s by %s on shelf %s -> score %.2f", kind.value, delta, shelf_id, score)
    return serialize_doc(state)


def compute_shelf_crowd(db: Database, shelf_id: str, threshold: float = DEFAULT_THRESHOLD) -> Dict[str, Any]:
    threshold = _check_threshold(threshold)
    shelf = _get_shelf(db, shelf_id)
    state = _load_state(db, shelf_id)
    live = _live_containers(shelf)
    score = _score_state(state, live)

    _refresh_score(db, state, score)

    return {
        "shelf_id": shelf_id,
        "crowded": is_crowded(score, threshold),
        "score": score,
        "breakdown": {
            "pick": state.get("pick_count") or 0,
            "sort": state.get("sort_count") or 0,
            "audit": state.get("audit_count") or 0,
            "live_containers": live,
        },
        "threshold": threshold,
    }


def get_non_crowded(db: Database, limit: int = 10, threshold: float = DEFAULT_THRESHOLD) -> List[Dict[str, Any]]:
    """Shelves scoring below the threshold, least busy first."""
    threshold = _check_threshold(threshold)
    if limit < 1:
        raise ValidationError("limit must be >= 1")

    # rescore against live occupancy; stored scores can be stale
    result = []
    for cs in list(db["crowdstate"].find()):
        shelf = db["shelf"].find_one({"_id": oid(cs["shelf_id"], "shelf id")})
        if not shelf:
            logger.warning("Crowd state references missing shelf %s", cs["shelf_id"])
            continue
        score = _score_state(cs, _live_containers(shelf))
        _refresh_score(db, cs, score)
        if is_crowded(score, threshold):
            continue
        result.append({
            "id": str(shelf["_id"]),
            "shelf_id": shelf.get("shelf_id"),
            "zone": shelf.get("zone"),
            "type": shelf.get("type"),
            "occupied_slots": _live_containers(shelf),
            "crowd": {"score": score, "crowded": False},
        })
    result.sort(key=lambda r: r["crowd"]["score"])
    return result[:limit]


# ----------------------
# Shelf task markers
# ----------------------
def mark_shelf_task_start(db: Database, shelf_id: str, kind: Union[str, CrowdKind], user_id: str) -> Dict[str, Any]:
    state = bump(db, shelf_id, +1, kind)
    logger.info("User %s started %s task on shelf %s", user_id, _parse_kind(kind).value, shelf_id)
    return state


def mark_shelf_task_end(db: Database, shelf_id: str, kind: Union[str, CrowdKind], user_id: str) -> Dict[str, Any]:
    state = bump(db, shelf_id, -1, kind)
    logger.info("User %s finished %s task on shelf %s", user_id, _parse_kind(kind).value, shelf_id)
    return state


def get_shelf_with_crowd(db: Database, shelf_id: str, threshold: float = DEFAULT_THRESHOLD) -> Dict[str, Any]:
    crowd = compute_shelf_crowd(db, shelf_id, threshold)
    return {"shelf": serialize_doc(_get_shelf(db, shelf_id)), "crowd": crowd}
