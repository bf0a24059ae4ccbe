from __future__ import annotations

import math
from dataclasses import dataclass, replace

from lifeforge.rewards import Difficulty, reward_for
from lifeforge.state import UserStats

DEATH_LOSS_FACTOR = 0.9
HEAL_PER_XP = 0.1


def level_threshold(level: int) -> float:
    return 100 * math.pow(1.5, level - 1)


@dataclass(frozen=True)
class Outcome:
    stats: UserStats
    xp_delta: float = 0
    credits_delta: int = 0
    hp_delta: float = 0
    leveled_up: bool = False
    died: bool = False


def apply_death_rule(stats: UserStats) -> UserStats:
    """Half-heal and cut 10% of xp and credits, on top of whatever penalty got us here."""
    return replace(
        stats,
        hp=stats.max_hp / 2,
        credits=math.floor(stats.credits * DEATH_LOSS_FACTOR),
        xp=math.floor(stats.xp * DEATH_LOSS_FACTOR),
    )


def complete_task(stats: UserStats, difficulty: Difficulty | str, multi_level_up: bool = False) -> Outcome:
    reward = reward_for(difficulty)
    xp = stats.xp + reward.xp
    hp = min(stats.max_hp, stats.hp + reward.xp * HEAL_PER_XP)
    level = stats.level
    leveled_up = False

    # A single completion grants at most one level unless multi_level_up is set;
    # the leftover xp can then sit above the new threshold.
    while xp >= level_threshold(level):
        xp -= level_threshold(level)
        level += 1
        hp = stats.max_hp
        leveled_up = True
        if not multi_level_up:
            break

    return Outcome(
        stats=replace(stats, hp=hp, xp=xp, level=level, credits=stats.credits + reward.credits),
        xp_delta=reward.xp,
        credits_delta=reward.credits,
        hp_delta=hp - stats.hp,
        leveled_up=leveled_up,
    )


def fail_task(stats: UserStats, difficulty: Difficulty | str) -> Outcome:
    reward = reward_for(difficulty)
    return apply_penalty(stats, reward.fail_hp, reward.fail_xp)


def apply_penalty(stats: UserStats, hp_loss: float, xp_loss: float) -> Outcome:
    hp = stats.hp - hp_loss
    xp = max(0, stats.xp - xp_loss)
    penalized = replace(stats, hp=hp, xp=xp)
    died = hp <= 0 and hp_loss > 0
    if died:
        penalized = apply_death_rule(penalized)
    return Outcome(
        stats=penalized,
        xp_delta=-xp_loss,
        hp_delta=-hp_loss,
        credits_delta=penalized.credits - stats.credits,
        died=died,
    )
