from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import date, datetime

from lifeforge.rewards import Difficulty, HabitType, RoutineType, ShopItemType, parse_choice

ALL_DAYS = (0, 1, 2, 3, 4, 5, 6)


def new_id() -> str:
    return str(uuid.uuid4())


def iso_or_none(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def parse_datetime(raw) -> datetime | None:
    if not raw:
        return None
    if isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(str(raw))


def weekday_index(day: date) -> int:
    """Day of week with Sunday as 0."""
    return (day.weekday() + 1) % 7


def _parse_days(raw) -> list[int]:
    if raw is None or raw == "":
        return list(ALL_DAYS)
    if isinstance(raw, str):
        raw = json.loads(raw)
    return sorted({int(d) for d in raw})


@dataclass
class UserStats:
    hp: float = 100
    max_hp: float = 100
    xp: float = 0
    level: int = 1
    credits: int = 0
    streak: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "UserStats":
        known = {k: data[k] for k in cls.__dataclass_fields__ if data.get(k) is not None}
        return cls(**known)


@dataclass
class Routine:
    id: str
    title: str
    type: RoutineType = RoutineType.DAILY
    difficulty: Difficulty = Difficulty.MEDIUM
    habit_type: HabitType | None = HabitType.POSITIVE
    days_of_week: list[int] = field(default_factory=lambda: list(ALL_DAYS))
    completed_at: datetime | None = None
    is_pomodoro: bool = False
    pomodoro_time: int = 25
    active: bool = True

    def is_scheduled_on(self, day: date) -> bool:
        return weekday_index(day) in self.days_of_week

    def completed_on(self, day: date) -> bool:
        return self.completed_at is not None and self.completed_at.date() == day

    def to_row(self, user_id: str) -> dict:
        # completed_at is session state and has no remote column.
        return {
            "id": self.id,
            "user_id": user_id,
            "title": self.title,
            "type": self.type.value,
            "difficulty": self.difficulty.value,
            "habit_type": self.habit_type.value if self.habit_type else None,
            "recurrence": json.dumps(self.days_of_week),
            "is_pomodoro": int(self.is_pomodoro),
            "pomodoro_time": self.pomodoro_time,
            "active": int(self.active),
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "type": self.type.value,
            "difficulty": self.difficulty.value,
            "habit_type": self.habit_type.value if self.habit_type else None,
            "days_of_week": list(self.days_of_week),
            "completed_at": iso_or_none(self.completed_at),
            "is_pomodoro": self.is_pomodoro,
            "pomodoro_time": self.pomodoro_time,
            "active": self.active,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Routine":
        days = data.get("days_of_week")
        if days is None:
            days = data.get("recurrence")
        habit_type = data.get("habit_type")
        return cls(
            id=str(data["id"]),
            title=data["title"],
            type=parse_choice(RoutineType, data.get("type") or RoutineType.DAILY, "type"),
            difficulty=parse_choice(Difficulty, data.get("difficulty") or Difficulty.MEDIUM, "difficulty"),
            habit_type=parse_choice(HabitType, habit_type, "habit_type") if habit_type else None,
            days_of_week=_parse_days(days),
            completed_at=parse_datetime(data.get("completed_at")),
            is_pomodoro=bool(data.get("is_pomodoro") or False),
            pomodoro_time=int(data.get("pomodoro_time") or 25),
            active=bool(data.get("active", True)),
        )


@dataclass
class ShopItem:
    id: str
    name: str
    description: str = ""
    cost: int = 0
    type: ShopItemType = ShopItemType.CONSUMABLE

    def to_row(self, user_id: str) -> dict:
        return {
            "id": self.id,
            "user_id": user_id,
            "name": self.name,
            "description": self.description,
            "cost": self.cost,
            "type": self.type.value,
        }

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "description": self.description, "cost": self.cost, "type": self.type.value}

    @classmethod
    def from_dict(cls, data: dict) -> "ShopItem":
        return cls(
            id=str(data["id"]),
            name=data["name"],
            description=data.get("description") or "",
            cost=int(data.get("cost") or 0),
            type=parse_choice(ShopItemType, data.get("type") or ShopItemType.CONSUMABLE, "type"),
        )


@dataclass
class InventoryItem:
    id: str
    item: ShopItem
    quantity: int
    purchased_at: datetime

    def to_row(self, user_id: str) -> dict:
        return {
            "id": self.id,
            "user_id": user_id,
            "item_id": self.item.id,
            "quantity": self.quantity,
            "purchased_at": self.purchased_at.isoformat(),
        }

    def to_dict(self) -> dict:
        return {"id": self.id, "item": self.item.to_dict(), "quantity": self.quantity, "purchased_at": self.purchased_at.isoformat()}


@dataclass
class SyncOp:
    """One pending remote write; replaying it twice has the same effect as once."""

    table: str
    op: str
    row_id: str
    values: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class GameState:
    stats: UserStats = field(default_factory=UserStats)
    routines: list[Routine] = field(default_factory=list)
    shop_items: list[ShopItem] = field(default_factory=list)
    inventory: list[InventoryItem] = field(default_factory=list)
    last_update_date: datetime = field(default_factory=datetime.now)
    pending_dailies: list[Routine] = field(default_factory=list)
    today_completions: dict[str, int] = field(default_factory=dict)
    pending_sync: list[SyncOp] = field(default_factory=list)

    def find_routine(self, routine_id: str) -> Routine | None:
        return next((r for r in self.routines if r.id == routine_id), None)

    def find_shop_item(self, item_id: str) -> ShopItem | None:
        return next((i for i in self.shop_items if i.id == item_id), None)

    def find_inventory(self, inventory_id: str) -> InventoryItem | None:
        return next((i for i in self.inventory if i.id == inventory_id), None)

    def dailies(self) -> list[Routine]:
        return [r for r in self.routines if r.type is RoutineType.DAILY]

    def to_dict(self) -> dict:
        return {
            "stats": self.stats.to_dict(),
            "routines": [r.to_dict() for r in self.routines],
            "shop_items": [i.to_dict() for i in self.shop_items],
            "inventory": [
                {"id": i.id, "item_id": i.item.id, "quantity": i.quantity, "purchased_at": i.purchased_at.isoformat()}
                for i in self.inventory
            ],
            "last_update_date": self.last_update_date.isoformat(),
            "pending_dailies": [r.id for r in self.pending_dailies],
            "today_completions": dict(self.today_completions),
            "pending_sync": [op.to_dict() for op in self.pending_sync],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "GameState":
        routines = [Routine.from_dict(r) for r in data.get("routines", [])]
        shop_items = [ShopItem.from_dict(i) for i in data.get("shop_items", [])]
        by_item = {i.id: i for i in shop_items}
        inventory = [
            InventoryItem(
                id=str(row["id"]),
                item=by_item[str(row["item_id"])],
                quantity=int(row["quantity"]),
                purchased_at=parse_datetime(row["purchased_at"]) or datetime.now(),
            )
            for row in data.get("inventory", [])
            if str(row.get("item_id")) in by_item
        ]
        by_routine = {r.id: r for r in routines}
        pending = [by_routine[rid] for rid in data.get("pending_dailies", []) if rid in by_routine]
        return cls(
            stats=UserStats.from_dict(data.get("stats", {})),
            routines=routines,
            shop_items=shop_items,
            inventory=inventory,
            last_update_date=parse_datetime(data.get("last_update_date")) or datetime.now(),
            pending_dailies=pending,
            today_completions={str(k): int(v) for k, v in data.get("today_completions", {}).items()},
            pending_sync=[SyncOp(**op) for op in data.get("pending_sync", [])],
        )
