from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

from dishcourse.domain.models import DISH, MEAL_PLAN, DayAssignment, Dish, Entity, MealPlan


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _text_list(value: Any) -> tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        return tuple(part.strip() for part in value.split(",") if part.strip())
    return tuple(str(item) for item in value)


def dish_to_wire(dish: Dish) -> dict[str, Any]:
    return {
        "id": dish.id,
        "household_id": dish.household_id,
        "name": dish.name,
        "type": dish.type,
        "cook_time_minutes": dish.cook_time_minutes,
        "recipe_url": dish.recipe_url,
        "added_by": dish.added_by,
        "created_at": dish.created_at,
        "updated_at": dish.updated_at,
        "deleted_at": dish.deleted_at,
        "pairs_well_with": list(dish.pairs_well_with),
    }


def dish_from_wire(record: dict[str, Any]) -> Dish:
    return Dish(
        id=str(record["id"]),
        household_id=str(record.get("household_id") or ""),
        name=str(record.get("name") or ""),
        type=str(record.get("type") or "entree"),
        added_by=str(record.get("added_by") or ""),
        created_at=str(record.get("created_at") or ""),
        updated_at=str(record.get("updated_at") or ""),
        cook_time_minutes=_optional_int(record.get("cook_time_minutes")),
        recipe_url=_optional_text(record.get("recipe_url")),
        deleted_at=_optional_text(record.get("deleted_at")),
        pairs_well_with=_text_list(record.get("pairs_well_with")),
    )


def _day_to_wire(day: DayAssignment) -> dict[str, Any]:
    payload: dict[str, Any] = {"date": day.date, "dishIds": list(day.dish_ids)}
    if day.assigned_by:
        payload["assignedBy"] = day.assigned_by
    return payload


def _day_from_wire(payload: dict[str, Any]) -> DayAssignment:
    return DayAssignment(
        date=str(payload.get("date") or ""),
        dish_ids=_text_list(payload.get("dishIds")),
        assigned_by=_optional_text(payload.get("assignedBy")),
    )


def meal_plan_to_wire(plan: MealPlan) -> dict[str, Any]:
    return {
        "id": plan.id,
        "household_id": plan.household_id,
        "name": plan.name,
        "start_date": plan.start_date,
        "days": [_day_to_wire(day) for day in plan.days],
        "created_by": plan.created_by,
        "locked_by": plan.locked_by,
        "locked_at": plan.locked_at,
        "created_at": plan.created_at,
        "updated_at": plan.updated_at,
        "deleted_at": plan.deleted_at,
    }


def meal_plan_from_wire(record: dict[str, Any]) -> MealPlan:
    days = record.get("days") or []
    return MealPlan(
        id=str(record["id"]),
        household_id=str(record.get("household_id") or ""),
        start_date=str(record.get("start_date") or ""),
        created_by=str(record.get("created_by") or ""),
        created_at=str(record.get("created_at") or ""),
        updated_at=str(record.get("updated_at") or ""),
        name=_optional_text(record.get("name")),
        days=tuple(_day_from_wire(day) for day in days if isinstance(day, dict)),
        locked_by=_optional_text(record.get("locked_by")),
        locked_at=_optional_text(record.get("locked_at")),
        deleted_at=_optional_text(record.get("deleted_at")),
    )


@dataclass(frozen=True)
class ReplicatedTable:
    """Cómo se replica un tipo de entidad: tabla remota y conversión de formato."""

    entity_type: str
    table: str
    to_wire: Callable[[Any], dict[str, Any]]
    from_wire: Callable[[dict[str, Any]], Entity]
    scope_field: str = "household_id"


DISH_TABLE = ReplicatedTable(DISH, "dishes", dish_to_wire, dish_from_wire)
MEAL_PLAN_TABLE = ReplicatedTable(MEAL_PLAN, "meal_plans", meal_plan_to_wire, meal_plan_from_wire)

REPLICATED_TABLES: tuple[ReplicatedTable, ...] = (DISH_TABLE, MEAL_PLAN_TABLE)
_BY_ENTITY = {table.entity_type: table for table in REPLICATED_TABLES}
_BY_TABLE = {table.table: table for table in REPLICATED_TABLES}


def table_for_entity(entity_type: str) -> ReplicatedTable:
    try:
        return _BY_ENTITY[entity_type]
    except KeyError as exc:
        raise ValueError(f"Tipo de entidad no replicado: {entity_type}") from exc


def table_by_name(table: str) -> ReplicatedTable:
    try:
        return _BY_TABLE[table]
    except KeyError as exc:
        raise ValueError(f"Tabla remota desconocida: {table}") from exc


def entity_to_wire(entity: Entity) -> dict[str, Any]:
    return table_for_entity(entity.entity_type).to_wire(entity)
