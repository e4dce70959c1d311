"""
Database Schemas for the logistics centre ops services

Each Pydantic model represents a collection in MongoDB.
Collection name is the lowercase of the class name.

Example: class PickTask -> collection "picktask"

References to other documents are stored as their _id string, the way
the rest of the marketplace stores them.
"""
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

# Open metadata bag: free-form keys, scalar values
Meta = Dict[str, Union[str, int, float, bool, None]]


class DocModel(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)


# ----------------------
# Enumerations
# ----------------------
class CrowdKind(str, Enum):
    PICK = "pick"
    SORT = "sort"
    AUDIT = "audit"


class ContainerState(str, Enum):
    ARRIVED = "arrived"        # scanned at intake
    REJECTED = "rejected"      # failed inspection
    CLEANING = "cleaning"
    CLEANED = "cleaned"
    WEIGHING = "weighing"
    WEIGHED = "weighed"
    SORTING = "sorting"
    SORTED = "sorted"
    STORED = "stored"          # warehouse overflow area
    SHELVED = "shelved"        # on a shelf slot, available for orders
    PICKED = "picked"
    PACKAGED = "packaged"
    DISPATCHED = "dispatched"  # handed off to delivery


class LocationArea(str, Enum):
    WAREHOUSE = "warehouse"
    SHELF = "shelf"
    PICKER_SHELF = "pickerShelf"
    OUT = "out"


class PickTaskState(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELED = "canceled"


class ShelfType(str, Enum):
    WAREHOUSE = "warehouse"
    PICKER = "picker"
    DELIVERY = "delivery"


# ----------------------
# Shared pieces
# ----------------------
class AuditEntry(DocModel):
    action: str
    by: Optional[str] = Field(None, description="Acting user _id; None for system actions")
    note: str = ""
    at: datetime
    meta: Meta = Field(default_factory=dict)


# ----------------------
# Shelf (read-only collaborator owned by the shelving service)
# ----------------------
class ShelfSlot(DocModel):
    slot_id: str
    capacity_kg: float = Field(..., ge=0)
    current_weight_kg: float = Field(0, ge=0)
    container_ops_id: Optional[str] = None


class Shelf(DocModel):
    logistic_center_id: str
    shelf_id: str = Field(..., description="Human code, e.g. A-01")
    type: ShelfType
    zone: Optional[str] = None
    aisle: Optional[str] = None
    max_slots: int = Field(..., ge=1)
    max_weight_kg: float = Field(..., ge=0)
    current_weight_kg: float = Field(0, ge=0)
    occupied_slots: int = Field(0, ge=0)
    slots: List[ShelfSlot] = Field(default_factory=list)


# ----------------------
# Crowd state (one per shelf)
# ----------------------
class CrowdState(DocModel):
    shelf_id: str
    pick_count: int = Field(0, ge=0)
    sort_count: int = Field(0, ge=0)
    audit_count: int = Field(0, ge=0)
    busy_score: float = 0.0
    version: int = 0


# ----------------------
# Container operations
# ----------------------
class WeightEntry(DocModel):
    value_kg: float = Field(..., ge=0)
    by: str
    at: datetime


class CleaningInfo(DocModel):
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    by: Optional[str] = None
    notes: str = ""


class SortingInfo(DocModel):
    sorted_at: Optional[datetime] = None
    by: Optional[str] = None
    details: Meta = Field(default_factory=dict)


class Location(DocModel):
    area: LocationArea = LocationArea.WAREHOUSE
    zone: Optional[str] = None
    aisle: Optional[str] = None
    shelf_id: Optional[str] = None
    slot_id: Optional[str] = None
    updated_at: Optional[datetime] = None


class ContainerOps(DocModel):
    container_id: str = Field(..., description="Printed/QR container label")
    farmer_order_id: str
    item_id: str
    logistic_center_id: str
    qr_id: Optional[str] = None
    state: ContainerState = ContainerState.ARRIVED
    weight_history: List[WeightEntry] = Field(default_factory=list)
    cleaning: CleaningInfo = Field(default_factory=CleaningInfo)
    sorting: SortingInfo = Field(default_factory=SortingInfo)
    location: Location = Field(default_factory=Location)
    audit_trail: List[AuditEntry] = Field(default_factory=list)
    version: int = 0


# ----------------------
# Pick tasks
# ----------------------
class PickItem(DocModel):
    item_id: str
    quantity_kg: float = Field(0, ge=0)
    quantity_units: float = Field(0, ge=0)


class ShelfAssignment(DocModel):
    item_id: str
    container_ops_id: str
    shelf_id: str
    slot_id: str
    quantity_kg: float = Field(0, ge=0)
    quantity_units: float = Field(0, ge=0)


class TargetSlot(DocModel):
    item_id: str
    shelf_id: str
    slot_id: str
    planned_kg: float = Field(..., ge=0)
    crowd_score: float


class PickTask(DocModel):
    order_id: str
    logistic_center_id: str
    state: PickTaskState = PickTaskState.PENDING
    assigned_to: Optional[str] = None
    suggested_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    items: List[PickItem] = Field(default_factory=list)
    shelf_assignments: List[ShelfAssignment] = Field(default_factory=list)
    aggregate_crowd_score: Optional[float] = Field(None, description="Sum of shelf crowd scores at planning time")
    target_slots: List[TargetSlot] = Field(default_factory=list)
    active_shelves: List[str] = Field(default_factory=list, description="Shelves whose pick counter this task holds")
    audit_trail: List[AuditEntry] = Field(default_factory=list)
    version: int = 0
