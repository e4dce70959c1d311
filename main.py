import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pymongo.database import Database

import container_ops
import crowd
import pick_tasks
from config import settings
from database import ensure_indexes, get_db
from errors import NotFoundError, ServiceError
from schemas import ContainerState, CrowdKind, Meta, PickItem, ShelfAssignment

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_indexes(get_db())
    yield


app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": exc.message})


# ----------------------
# Health
# ----------------------
@app.get("/")
def read_root():
    return {"message": f"{settings.APP_NAME} running"}


# ----------------------
# Shelf crowd
# ----------------------
class BumpBody(BaseModel):
    delta: int
    kind: CrowdKind


class ShelfTaskBody(BaseModel):
    kind: CrowdKind
    user_id: str


def threshold_query(threshold: Optional[float] = Query(None, ge=0)) -> float:
    return settings.CROWD_THRESHOLD if threshold is None else threshold


# declared before /shelves/{shelf_id} so "non-crowded" is not taken for an id
@app.get("/shelves/non-crowded")
def non_crowded_shelves(
    limit: Optional[int] = Query(None, ge=1, le=100),
    threshold: float = Depends(threshold_query),
    db: Database = Depends(get_db),
):
    return crowd.get_non_crowded(db, limit or settings.NON_CROWDED_LIMIT, threshold)


@app.get("/shelves/{shelf_id}")
def shelf_with_crowd(shelf_id: str, threshold: float = Depends(threshold_query), db: Database = Depends(get_db)):
    return crowd.get_shelf_with_crowd(db, shelf_id, threshold)


@app.get("/shelves/{shelf_id}/crowd")
def shelf_crowd(shelf_id: str, threshold: float = Depends(threshold_query), db: Database = Depends(get_db)):
    return crowd.compute_shelf_crowd(db, shelf_id, threshold)


@app.post("/shelves/{shelf_id}/crowd/bump")
def bump_shelf_crowd(shelf_id: str, body: BumpBody, db: Database = Depends(get_db)):
    return crowd.bump(db, shelf_id, body.delta, body.kind)


@app.post("/shelves/{shelf_id}/tasks/start")
def shelf_task_start(shelf_id: str, body: ShelfTaskBody, db: Database = Depends(get_db)):
    crowd.mark_shelf_task_start(db, shelf_id, body.kind, body.user_id)
    return {"ok": True}


@app.post("/shelves/{shelf_id}/tasks/end")
def shelf_task_end(shelf_id: str, body: ShelfTaskBody, db: Database = Depends(get_db)):
    crowd.mark_shelf_task_end(db, shelf_id, body.kind, body.user_id)
    return {"ok": True}


# ----------------------
# Containers
# ----------------------
class IntakeBody(BaseModel):
    container_id: str
    farmer_order_id: str
    item_id: str
    logistic_center_id: str
    actor_id: str
    qr_id: Optional[str] = None


class LocationIn(BaseModel):
    zone: Optional[str] = None
    aisle: Optional[str] = None
    shelf_id: Optional[str] = None
    slot_id: Optional[str] = None


class TransitionBody(BaseModel):
    to_state: ContainerState
    actor_id: str
    location: Optional[LocationIn] = None
    weight_kg: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = None
    meta: Optional[Meta] = None


class WeightBody(BaseModel):
    value_kg: float = Field(..., ge=0)
    actor_id: str


class PickedBody(BaseModel):
    amount_kg: float = Field(..., gt=0)
    actor_id: str


@app.post("/containers")
def intake(body: IntakeBody, db: Database = Depends(get_db)):
    return container_ops.intake_container(
        db,
        container_id=body.container_id,
        farmer_order_id=body.farmer_order_id,
        item_id=body.item_id,
        logistic_center_id=body.logistic_center_id,
        actor_id=body.actor_id,
        qr_id=body.qr_id,
    )


@app.get("/containers")
def list_containers(
    logistic_center_id: Optional[str] = Query(None),
    state: Optional[ContainerState] = Query(None),
    container_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: Database = Depends(get_db),
):
    if container_id:
        return [container_ops.get_by_container_id(db, container_id)]
    return container_ops.list_containers(db, logistic_center_id, state, limit)


@app.get("/containers/{ops_id}")
def get_container(ops_id: str, db: Database = Depends(get_db)):
    doc = container_ops.get_container(db, ops_id)
    doc["allowed_transitions"] = container_ops.allowed_transitions(doc["state"])
    return doc


@app.post("/containers/{ops_id}/transition")
def transition_container(ops_id: str, body: TransitionBody, db: Database = Depends(get_db)):
    return container_ops.transition_container(
        db,
        ops_id,
        body.to_state,
        body.actor_id,
        location=body.location.model_dump() if body.location else None,
        weight_kg=body.weight_kg,
        notes=body.notes,
        meta=body.meta,
    )


@app.post("/containers/{ops_id}/weights")
def record_weight(ops_id: str, body: WeightBody, db: Database = Depends(get_db)):
    return container_ops.record_weight(db, ops_id, body.value_kg, body.actor_id)


@app.post("/containers/{ops_id}/picked")
def record_picked(ops_id: str, body: PickedBody, db: Database = Depends(get_db)):
    return container_ops.record_picked(db, ops_id, body.amount_kg, body.actor_id)


# ----------------------
# Pick tasks
# ----------------------
class CreatePickTaskBody(BaseModel):
    order_id: str
    logistic_center_id: str
    items: List[PickItem]
    shelf_assignments: List[ShelfAssignment] = []
    actor_id: Optional[str] = None


class AssignBody(BaseModel):
    picker_id: str
    actor_id: Optional[str] = None


class StartBody(BaseModel):
    picker_id: Optional[str] = None


class ActorBody(BaseModel):
    actor_id: Optional[str] = None


class CancelBody(BaseModel):
    reason: str = ""
    actor_id: Optional[str] = None


class AssignmentBody(ShelfAssignment):
    actor_id: Optional[str] = None


@app.post("/pick-tasks")
def create_pick_task(body: CreatePickTaskBody, db: Database = Depends(get_db)):
    return pick_tasks.create_pick_task(
        db,
        order_id=body.order_id,
        logistic_center_id=body.logistic_center_id,
        items=body.items,
        shelf_assignments=body.shelf_assignments,
        actor_id=body.actor_id,
    )


@app.get("/pick-tasks")
def list_pick_tasks(
    logistic_center_id: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: Database = Depends(get_db),
):
    return pick_tasks.list_pick_tasks(db, logistic_center_id, state, limit)


@app.get("/pick-tasks/suggest")
def suggest_pick_task(logistic_center_id: Optional[str] = Query(None), db: Database = Depends(get_db)):
    task = pick_tasks.suggest_pick_task(db, logistic_center_id)
    if task is None:
        raise NotFoundError("No pending pick tasks")
    return task


@app.get("/pick-tasks/{task_id}")
def get_pick_task(task_id: str, db: Database = Depends(get_db)):
    return pick_tasks.get_pick_task(db, task_id)


@app.post("/pick-tasks/{task_id}/assign")
def assign_pick_task(task_id: str, body: AssignBody, db: Database = Depends(get_db)):
    return pick_tasks.assign_pick_task(db, task_id, body.picker_id, body.actor_id)


@app.post("/pick-tasks/{task_id}/start")
def start_pick_task(task_id: str, body: StartBody, db: Database = Depends(get_db)):
    return pick_tasks.start_pick_task(db, task_id, body.picker_id)


@app.post("/pick-tasks/{task_id}/assignments")
def add_shelf_assignment(task_id: str, body: AssignmentBody, db: Database = Depends(get_db)):
    assignment: Dict[str, Any] = body.model_dump(exclude={"actor_id"})
    return pick_tasks.add_shelf_assignment(db, task_id, assignment, body.actor_id)


@app.post("/pick-tasks/{task_id}/complete")
def complete_pick_task(task_id: str, body: ActorBody, db: Database = Depends(get_db)):
    return pick_tasks.complete_pick_task(db, task_id, body.actor_id)


@app.post("/pick-tasks/{task_id}/cancel")
def cancel_pick_task(task_id: str, body: CancelBody, db: Database = Depends(get_db)):
    return pick_tasks.cancel_pick_task(db, task_id, body.reason, body.actor_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
