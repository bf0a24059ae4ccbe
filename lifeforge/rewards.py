from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Type, TypeVar

from lifeforge.errors import ValidationError


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"
    EPIC = "epic"


class RoutineType(str, Enum):
    DAILY = "daily"
    HABIT = "habit"
    TODO = "todo"


class HabitType(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"


class ShopItemType(str, Enum):
    CONSUMABLE = "consumable"
    PERMANENT = "permanent"


class LogStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class Reward:
    xp: int
    credits: int
    fail_xp: int
    fail_hp: int


REWARDS = {
    Difficulty.EASY: Reward(xp=10, credits=5, fail_xp=5, fail_hp=3),
    Difficulty.MEDIUM: Reward(xp=25, credits=15, fail_xp=12, fail_hp=8),
    Difficulty.HARD: Reward(xp=50, credits=30, fail_xp=25, fail_hp=15),
    Difficulty.EPIC: Reward(xp=100, credits=60, fail_xp=50, fail_hp=30),
}

E = TypeVar("E", bound=Enum)


def parse_choice(enum_cls: Type[E], raw, field: str) -> E:
    if isinstance(raw, enum_cls):
        return raw
    try:
        return enum_cls(str(raw).strip().lower())
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(field, f"must be one of {allowed}, got {raw!r}") from None


def reward_for(difficulty: Difficulty | str) -> Reward:
    return REWARDS[parse_choice(Difficulty, difficulty, "difficulty")]
