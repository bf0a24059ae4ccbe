"""End-of-day reconciliation of dailies.

``plan_daily_check`` and ``plan_review`` never touch the state they are given;
they return what should happen. ``start_new_day`` is the commit step shared by
both paths once a day is settled.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Iterable

from lifeforge.progression import Outcome, apply_penalty
from lifeforge.rewards import reward_for
from lifeforge.state import GameState, Routine, UserStats


class ReviewState(str, Enum):
    SETTLED = "settled"
    PENDING_REVIEW = "pending_review"


class CheckAction(str, Enum):
    NOOP = "noop"
    REVIEW = "review"
    ADVANCE = "advance"


@dataclass(frozen=True)
class DailyCheck:
    action: CheckAction
    missed: list[Routine] = field(default_factory=list)
    stats: UserStats | None = None


@dataclass(frozen=True)
class Review:
    outcome: Outcome
    missed_ids: list[str]
    streak_broken: bool


def review_state(state: GameState) -> ReviewState:
    return ReviewState.PENDING_REVIEW if state.pending_dailies else ReviewState.SETTLED


def plan_daily_check(state: GameState, now: datetime) -> DailyCheck:
    last_day = state.last_update_date.date()
    if now.date() == last_day:
        return DailyCheck(CheckAction.NOOP)

    missed = [r for r in state.dailies() if not r.completed_on(last_day)]
    if missed:
        return DailyCheck(CheckAction.REVIEW, missed=missed)
    return DailyCheck(CheckAction.ADVANCE, stats=replace(state.stats, streak=state.stats.streak + 1))


def plan_review(state: GameState, confirmed_ids: Iterable[str]) -> Review:
    confirmed = set(confirmed_ids)
    missed = [r for r in state.pending_dailies if r.id not in confirmed]
    hp_loss = sum(reward_for(r.difficulty).fail_hp for r in missed)
    xp_loss = sum(reward_for(r.difficulty).fail_xp for r in missed)

    # Confirmed dailies are only spared, they earn nothing.
    outcome = apply_penalty(state.stats, hp_loss, xp_loss)
    streak = 0 if missed else state.stats.streak + 1
    outcome = replace(outcome, stats=replace(outcome.stats, streak=streak))
    return Review(outcome=outcome, missed_ids=[r.id for r in missed], streak_broken=bool(missed))


def start_new_day(state: GameState, stats: UserStats, now: datetime) -> None:
    state.stats = stats
    for routine in state.dailies():
        routine.completed_at = None
    state.today_completions = {}
    state.pending_dailies = []
    state.last_update_date = now
