from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, ClassVar, Generic, Literal, Optional, TypeVar, Union

SyncStatus = Literal["synced", "pending", "conflict"]
SYNCED: SyncStatus = "synced"
PENDING: SyncStatus = "pending"
CONFLICT: SyncStatus = "conflict"

EntityType = Literal["dish", "meal_plan"]
DISH: EntityType = "dish"
MEAL_PLAN: EntityType = "meal_plan"
ENTITY_TYPES: tuple[EntityType, ...] = (DISH, MEAL_PLAN)

DishType = Literal["entree", "side", "other"]
DISH_TYPES: tuple[str, ...] = ("entree", "side", "other")


@dataclass(frozen=True)
class DayAssignment:
    date: str
    dish_ids: tuple[str, ...] = ()
    assigned_by: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"date": self.date, "dish_ids": list(self.dish_ids), "assigned_by": self.assigned_by}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "DayAssignment":
        return cls(
            date=str(payload.get("date", "")),
            dish_ids=tuple(str(dish_id) for dish_id in payload.get("dish_ids") or ()),
            assigned_by=payload.get("assigned_by"),
        )


@dataclass(frozen=True)
class Dish:
    """Plato del catálogo compartido por un hogar.

    El borrado es lógico (`deleted_at`) para que la baja viaje al remoto igual
    que cualquier otra edición.
    """

    entity_type: ClassVar[EntityType] = DISH

    id: str
    household_id: str
    name: str
    type: str
    added_by: str
    created_at: str
    updated_at: str
    cook_time_minutes: Optional[int] = None
    recipe_url: Optional[str] = None
    deleted_at: Optional[str] = None
    pairs_well_with: tuple[str, ...] = ()

    @property
    def parent_id(self) -> str:
        return self.household_id

    @property
    def changed_by(self) -> str:
        return self.added_by

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "household_id": self.household_id,
            "name": self.name,
            "type": self.type,
            "added_by": self.added_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "cook_time_minutes": self.cook_time_minutes,
            "recipe_url": self.recipe_url,
            "deleted_at": self.deleted_at,
            "pairs_well_with": list(self.pairs_well_with),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Dish":
        return cls(
            id=str(payload["id"]),
            household_id=str(payload["household_id"]),
            name=str(payload.get("name", "")),
            type=str(payload.get("type") or "entree"),
            added_by=str(payload.get("added_by", "")),
            created_at=str(payload.get("created_at", "")),
            updated_at=str(payload.get("updated_at", "")),
            cook_time_minutes=payload.get("cook_time_minutes"),
            recipe_url=payload.get("recipe_url"),
            deleted_at=payload.get("deleted_at"),
            pairs_well_with=tuple(payload.get("pairs_well_with") or ()),
        )


@dataclass(frozen=True)
class MealPlan:
    """Plan de comidas de un hogar; es el único recurso protegido por bloqueo de edición."""

    entity_type: ClassVar[EntityType] = MEAL_PLAN

    id: str
    household_id: str
    start_date: str
    created_by: str
    created_at: str
    updated_at: str
    name: Optional[str] = None
    days: tuple[DayAssignment, ...] = ()
    locked_by: Optional[str] = None
    locked_at: Optional[str] = None
    deleted_at: Optional[str] = None

    @property
    def parent_id(self) -> str:
        return self.household_id

    @property
    def changed_by(self) -> str:
        return self.created_by

    def with_lock(self, locked_by: Optional[str], locked_at: Optional[str]) -> "MealPlan":
        return replace(self, locked_by=locked_by, locked_at=locked_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "household_id": self.household_id,
            "start_date": self.start_date,
            "created_by": self.created_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "name": self.name,
            "days": [day.to_dict() for day in self.days],
            "locked_by": self.locked_by,
            "locked_at": self.locked_at,
            "deleted_at": self.deleted_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "MealPlan":
        return cls(
            id=str(payload["id"]),
            household_id=str(payload["household_id"]),
            start_date=str(payload.get("start_date", "")),
            created_by=str(payload.get("created_by", "")),
            created_at=str(payload.get("created_at", "")),
            updated_at=str(payload.get("updated_at", "")),
            name=payload.get("name"),
            days=tuple(DayAssignment.from_dict(day) for day in payload.get("days") or ()),
            locked_by=payload.get("locked_by"),
            locked_at=payload.get("locked_at"),
            deleted_at=payload.get("deleted_at"),
        )


Entity = Union[Dish, MealPlan]
E = TypeVar("E", Dish, MealPlan)

_ENTITY_CLASSES: dict[str, type] = {DISH: Dish, MEAL_PLAN: MealPlan}


def entity_class(entity_type: str) -> type:
    try:
        return _ENTITY_CLASSES[entity_type]
    except KeyError as exc:
        raise ValueError(f"Tipo de entidad desconocido: {entity_type}") from exc


def entity_from_dict(entity_type: str, payload: dict[str, Any]) -> Entity:
    return entity_class(entity_type).from_dict(payload)


@dataclass(frozen=True)
class CacheRecord(Generic[E]):
    """Entidad cacheada con su estado de sincronización.

    `version` es un token que el store incrementa en cada escritura; sirve para
    que `mark_synced` no pise un registro re-editado mientras viajaba el push.
    """

    entity: E
    sync_status: SyncStatus
    local_updated_at: str
    server_updated_at: Optional[str] = None
    version: int = 0

    @property
    def entity_type(self) -> EntityType:
        return self.entity.entity_type

    @property
    def entity_id(self) -> str:
        return self.entity.id

    @property
    def parent_id(self) -> str:
        return self.entity.parent_id

    @property
    def is_deleted(self) -> bool:
        return bool(self.entity.deleted_at)

    def with_status(self, sync_status: SyncStatus) -> "CacheRecord[E]":
        return replace(self, sync_status=sync_status)


@dataclass(frozen=True)
class LocalConfig:
    spreadsheet_id: str
    credentials_path: str
    device_id: str
    user_id: str = ""
    household_id: str = ""
