from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Iterable

from lifeforge import progression, rollover
from lifeforge.db import Backend
from lifeforge.errors import AuthError, NoRowsError, NotFoundError, PersistenceError, SyncError, ValidationError
from lifeforge.notifier import REMINDER_TEXT, NoopNotifier, Notifier
from lifeforge.rewards import Difficulty, HabitType, LogStatus, RoutineType, ShopItemType, parse_choice
from lifeforge.state import (
    ALL_DAYS,
    GameState,
    InventoryItem,
    Routine,
    ShopItem,
    SyncOp,
    UserStats,
    new_id,
)

if TYPE_CHECKING:
    from lifeforge.session import Session

logger = logging.getLogger(__name__)

STAT_COLUMNS = ("hp", "max_hp", "xp", "level", "credits", "streak")
ROUTINE_FIELDS = {"title", "type", "difficulty", "habit_type", "days_of_week", "is_pomodoro", "pomodoro_time", "active"}
SHOP_FIELDS = {"name", "description", "cost", "type"}
REMINDER_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


@dataclass(frozen=True)
class Notice:
    level: str
    title: str
    description: str = ""

    def to_dict(self) -> dict:
        return {"level": self.level, "title": self.title, "description": self.description}


def _clean_title(raw, field: str) -> str:
    title = (raw or "").strip()
    if not title:
        raise ValidationError(field, "is required")
    return title


def _clean_days(raw) -> list[int]:
    try:
        days = sorted({int(d) for d in raw})
    except (TypeError, ValueError):
        raise ValidationError("days_of_week", f"must be a list of weekday numbers, got {raw!r}") from None
    if any(d not in ALL_DAYS for d in days):
        raise ValidationError("days_of_week", "weekdays go from 0 (Sunday) to 6 (Saturday)")
    return days


def _clean_non_negative(raw, field: str) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(field, f"must be a whole number, got {raw!r}") from None
    if value < 0:
        raise ValidationError(field, "must not be negative")
    return value


def _routine_changes(changes: dict) -> dict:
    unknown = set(changes) - ROUTINE_FIELDS
    if unknown:
        raise ValidationError(", ".join(sorted(unknown)), "cannot be edited")
    parsed = {}
    for key, value in changes.items():
        if key == "title":
            parsed[key] = _clean_title(value, "title")
        elif key == "type":
            parsed[key] = parse_choice(RoutineType, value, "type")
        elif key == "difficulty":
            parsed[key] = parse_choice(Difficulty, value, "difficulty")
        elif key == "habit_type":
            parsed[key] = parse_choice(HabitType, value, "habit_type") if value else None
        elif key == "days_of_week":
            parsed[key] = _clean_days(value)
        elif key == "pomodoro_time":
            minutes = _clean_non_negative(value, "pomodoro_time")
            if minutes == 0:
                raise ValidationError("pomodoro_time", "must be at least one minute")
            parsed[key] = minutes
        else:
            parsed[key] = bool(value)
    return parsed


class Store:
    """In-memory game state of one signed-in user.

    Every mutator commits locally first and then flushes the queued remote
    writes. A failed flush never rolls the local change back: the write stays
    queued in ``state.pending_sync`` until ``retry_sync`` (or the next action)
    gets it through.
    """

    def __init__(
        self,
        backend: Backend,
        session: "Session",
        state: GameState | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = datetime.now,
        multi_level_up: bool = False,
    ) -> None:
        self.backend = backend
        self.session = session
        self.state = state or GameState(last_update_date=clock())
        self.notifier = notifier or NoopNotifier()
        self.clock = clock
        self.multi_level_up = multi_level_up
        self.notices: list[Notice] = []
        self.last_sync_error: SyncError | None = None

    # -- plumbing ---------------------------------------------------------

    def _require_user(self) -> str:
        if self.session is None or not self.session.active:
            raise AuthError("No active session")
        return self.session.user_id

    def _notify(self, level: str, title: str, description: str = "") -> None:
        self.notices.append(Notice(level, title, description))

    def drain_notices(self) -> list[Notice]:
        notices, self.notices = self.notices, []
        return notices

    def _enqueue(self, table: str, op: str, row_id: str, values: dict | None = None) -> None:
        self.state.pending_sync.append(SyncOp(table=table, op=op, row_id=row_id, values=dict(values or {})))

    def _dirty(self, table: str) -> bool:
        return any(op.table == table for op in self.state.pending_sync)

    def _apply(self, op: SyncOp) -> None:
        if op.op == "insert":
            self.backend.insert(op.table, {**op.values, "id": op.row_id})
        elif op.op == "update":
            try:
                self.backend.update(op.table, op.row_id, op.values)
            except NoRowsError:
                if op.table != "users":
                    logger.info("Dropping update for vanished %s row %s", op.table, op.row_id)
                    return
                self.backend.insert("users", {**op.values, "id": op.row_id})
        elif op.op == "delete":
            self.backend.delete(op.table, op.row_id)
        else:
            raise PersistenceError(f"Unknown sync op {op.op!r}")

    def _flush(self) -> bool:
        while self.state.pending_sync:
            op = self.state.pending_sync[0]
            try:
                self._apply(op)
            except PersistenceError as exc:
                self.last_sync_error = SyncError(op.table, op.op, op.row_id, exc)
                logger.warning("%s; %d write(s) left queued", self.last_sync_error, len(self.state.pending_sync))
                return False
            self.state.pending_sync.pop(0)
        self.last_sync_error = None
        return True

    def _sync(self, failure_title: str) -> bool:
        synced = self._flush()
        if not synced:
            self._notify("error", failure_title, str(self.last_sync_error.cause))
        return synced

    def _stats_update(self, user_id: str, *columns: str) -> None:
        stats = self.state.stats
        self._enqueue("users", "update", user_id, {c: getattr(stats, c) for c in columns})

    def get_routine(self, routine_id: str) -> Routine:
        routine = self.state.find_routine(routine_id)
        if routine is None:
            raise NotFoundError("routine", routine_id)
        return routine

    # -- remote fetches ---------------------------------------------------

    def fetch_user_stats(self) -> UserStats:
        user_id = self._require_user()
        try:
            try:
                row = self.backend.select_one("users", user_id)
            except NoRowsError:
                row = self.backend.insert(
                    "users",
                    {"id": user_id, "name": self.session.name or "Hero", "email": self.session.email or ""},
                )
                logger.info("Provisioned profile row for user %s", user_id)
        except PersistenceError as exc:
            logger.error("Error fetching user stats: %s", exc)
            return self.state.stats

        if self._dirty("users"):
            logger.info("Keeping local stats for %s, unsynced writes pending", user_id)
            return self.state.stats
        merged = self.state.stats.to_dict()
        merged.update({c: row[c] for c in STAT_COLUMNS if row.get(c) is not None})
        self.state.stats = UserStats.from_dict(merged)
        return self.state.stats

    def fetch_routines(self) -> list[Routine]:
        user_id = self._require_user()
        today = self.clock().date().isoformat()
        try:
            rows = self.backend.select("routines", user_id=user_id)
            logs = self.backend.select("routine_logs", user_id=user_id, date=today, status=LogStatus.COMPLETED.value)
        except PersistenceError as exc:
            self._notify("error", "Error fetching routines", str(exc))
            return self.state.routines

        if not self._dirty("routines"):
            local = {r.id: r for r in self.state.routines}
            routines = [Routine.from_dict(row) for row in rows]
            for routine in routines:
                if routine.id in local:
                    routine.completed_at = local[routine.id].completed_at
            by_id = {r.id: r for r in routines}
            self.state.routines = routines
            self.state.pending_dailies = [by_id[r.id] for r in self.state.pending_dailies if r.id in by_id]

        if not self._dirty("routine_logs"):
            completions: dict[str, int] = {}
            for log in logs:
                completions[log["routine_id"]] = completions.get(log["routine_id"], 0) + 1
            self.state.today_completions = completions
        return self.state.routines

    def fetch_shop_and_inventory(self) -> None:
        user_id = self._require_user()
        try:
            shop_rows = self.backend.select("shop_items", user_id=user_id)
            inventory_rows = self.backend.select("inventory", user_id=user_id)
        except PersistenceError as exc:
            logger.error("Error fetching shop and inventory: %s", exc)
            return
        if self._dirty("shop_items") or self._dirty("inventory"):
            logger.info("Keeping local shop for %s, unsynced writes pending", user_id)
            return

        shop = [ShopItem.from_dict(row) for row in shop_rows]
        by_id = {item.id: item for item in shop}
        self.state.shop_items = shop
        self.state.inventory = [
            InventoryItem(
                id=row["id"],
                item=by_id[row["item_id"]],
                quantity=int(row["quantity"]),
                purchased_at=datetime.fromisoformat(row["purchased_at"]) if row.get("purchased_at") else self.clock(),
            )
            for row in inventory_rows
            if row["item_id"] in by_id
        ]

    # -- routines ---------------------------------------------------------

    def add_routine(
        self,
        title: str,
        type: RoutineType | str = RoutineType.DAILY,
        difficulty: Difficulty | str = Difficulty.MEDIUM,
        habit_type: HabitType | str | None = HabitType.POSITIVE,
        days_of_week: Iterable[int] = ALL_DAYS,
        is_pomodoro: bool = False,
        pomodoro_time: int = 25,
    ) -> Routine:
        fields = _routine_changes(
            {
                "title": title,
                "type": type or RoutineType.DAILY,
                "difficulty": difficulty or Difficulty.MEDIUM,
                "habit_type": habit_type,
                "days_of_week": days_of_week,
                "is_pomodoro": is_pomodoro,
                "pomodoro_time": pomodoro_time,
            }
        )
        user_id = self._require_user()
        if fields["type"] is not RoutineType.HABIT:
            fields["habit_type"] = None
        elif fields["habit_type"] is None:
            fields["habit_type"] = HabitType.POSITIVE

        routine = Routine(id=new_id(), **fields)
        self.state.routines.append(routine)
        self._enqueue("routines", "insert", routine.id, routine.to_row(user_id))
        self._sync("Error creating routine")
        return routine

    def edit_routine(self, routine_id: str, **changes) -> Routine | None:
        parsed = _routine_changes(changes)
        user_id = self._require_user()
        routine = self.state.find_routine(routine_id)
        if routine is None:
            logger.info("edit_routine: %s is gone, nothing to do", routine_id)
            return None
        for key, value in parsed.items():
            setattr(routine, key, value)
        if routine.type is not RoutineType.HABIT:
            routine.habit_type = None
        elif routine.habit_type is None:
            routine.habit_type = HabitType.POSITIVE
        row = routine.to_row(user_id)
        row.pop("id")
        self._enqueue("routines", "update", routine.id, row)
        self._sync("Error editing routine")
        return routine

    def delete_routine(self, routine_id: str) -> bool:
        self._require_user()
        routine = self.state.find_routine(routine_id)
        if routine is None:
            logger.info("delete_routine: %s is gone, nothing to do", routine_id)
            return False
        self.state.routines.remove(routine)
        self.state.pending_dailies = [r for r in self.state.pending_dailies if r.id != routine_id]
        self.state.today_completions.pop(routine_id, None)
        self._enqueue("routines", "delete", routine_id)
        self._sync("Error deleting routine")
        return True

    def complete_routine(self, routine_id: str) -> dict | None:
        user_id = self._require_user()
        routine = self.state.find_routine(routine_id)
        if routine is None or not routine.active:
            logger.info("complete_routine: %s is gone or inactive, nothing to do", routine_id)
            return None

        now = self.clock()
        outcome = progression.complete_task(self.state.stats, routine.difficulty, self.multi_level_up)
        self.state.stats = outcome.stats
        routine.completed_at = now
        if routine.type is RoutineType.TODO:
            routine.active = False
        self.state.today_completions[routine.id] = self.state.today_completions.get(routine.id, 0) + 1

        self._enqueue(
            "routine_logs",
            "insert",
            new_id(),
            {"user_id": user_id, "routine_id": routine.id, "date": now.date().isoformat(), "status": LogStatus.COMPLETED.value},
        )
        self._stats_update(user_id, "xp", "level", "hp", "credits")
        if routine.type is RoutineType.TODO:
            self._enqueue("routines", "update", routine.id, {"active": 0})

        self._notify("success", f"+{outcome.xp_delta} XP | +{outcome.credits_delta} credits", f'Task "{routine.title}" completed!')
        if outcome.leveled_up:
            self._notify("success", "Level up!", f"You reached level {outcome.stats.level}. HP fully restored.")
        synced = self._sync("Failed to sync online")
        return {"stats": outcome.stats.to_dict(), "leveled_up": outcome.leveled_up, "synced": synced}

    def fail_routine(self, routine_id: str) -> dict | None:
        user_id = self._require_user()
        routine = self.state.find_routine(routine_id)
        if routine is None or not routine.active:
            logger.info("fail_routine: %s is gone or inactive, nothing to do", routine_id)
            return None

        outcome = progression.fail_task(self.state.stats, routine.difficulty)
        self.state.stats = outcome.stats
        self._enqueue(
            "routine_logs",
            "insert",
            new_id(),
            {"user_id": user_id, "routine_id": routine.id, "date": self.clock().date().isoformat(), "status": LogStatus.FAILED.value},
        )
        self._stats_update(user_id, "xp", "hp", "credits")

        if outcome.died:
            self._notify("error", "You died!", "Lost 10% of XP and credits. HP restored to 50%.")
        else:
            self._notify("error", f"-{-outcome.hp_delta:g} HP | -{-outcome.xp_delta:g} XP", f'Bad habit or failure on "{routine.title}"')
        synced = self._sync("Sync error")
        return {"stats": outcome.stats.to_dict(), "died": outcome.died, "synced": synced}

    def due_today(self, now: datetime | None = None) -> list[Routine]:
        today = (now or self.clock()).date()
        due = []
        for routine in self.state.routines:
            if not routine.active:
                continue
            if routine.type is RoutineType.DAILY and not routine.is_scheduled_on(today):
                continue
            due.append(routine)
        return due

    # -- daily rollover ---------------------------------------------------

    def run_daily_check(self) -> dict:
        user_id = self._require_user()
        now = self.clock()
        check = rollover.plan_daily_check(self.state, now)
        synced = True
        if check.action is rollover.CheckAction.REVIEW:
            self.state.pending_dailies = list(check.missed)
            logger.info("%d daily(ies) from %s need review", len(check.missed), self.state.last_update_date.date())
        elif check.action is rollover.CheckAction.ADVANCE:
            rollover.start_new_day(self.state, check.stats, now)
            self._stats_update(user_id, "streak")
            synced = self._sync("Failed to save streak")
        return {
            "action": check.action.value,
            "review_state": rollover.review_state(self.state).value,
            "pending": [r.id for r in self.state.pending_dailies],
            "synced": synced,
        }

    def resolve_pending_dailies(self, confirmed_ids: Iterable[str]) -> dict | None:
        user_id = self._require_user()
        if not self.state.pending_dailies:
            logger.info("resolve_pending_dailies: nothing pending")
            return None

        review = rollover.plan_review(self.state, confirmed_ids)
        outcome = review.outcome
        rollover.start_new_day(self.state, outcome.stats, self.clock())
        self._stats_update(user_id, "hp", "xp", "credits", "streak")

        if outcome.died:
            self._notify("error", "You died!", "Lost 10% of XP and credits. HP restored to 50%.")
        elif review.streak_broken:
            self._notify("error", f"-{-outcome.hp_delta:g} HP | -{-outcome.xp_delta:g} XP", f"{len(review.missed_ids)} daily(ies) missed. Streak reset.")
        else:
            self._notify("success", "New day started", f"Streak: {outcome.stats.streak}")
        synced = self._sync("Failed to sync daily review")
        return {
            "stats": outcome.stats.to_dict(),
            "missed": review.missed_ids,
            "died": outcome.died,
            "synced": synced,
        }

    # -- shop and inventory ----------------------------------------------

    def create_shop_item(
        self,
        name: str,
        description: str = "",
        cost: int = 0,
        type: ShopItemType | str = ShopItemType.CONSUMABLE,
    ) -> ShopItem:
        item = ShopItem(
            id=new_id(),
            name=_clean_title(name, "name"),
            description=(description or "").strip(),
            cost=_clean_non_negative(cost, "cost"),
            type=parse_choice(ShopItemType, type or ShopItemType.CONSUMABLE, "type"),
        )
        user_id = self._require_user()
        self.state.shop_items.append(item)
        self._enqueue("shop_items", "insert", item.id, item.to_row(user_id))
        self._sync("Error creating item")
        return item

    def edit_shop_item(self, item_id: str, **changes) -> ShopItem | None:
        unknown = set(changes) - SHOP_FIELDS
        if unknown:
            raise ValidationError(", ".join(sorted(unknown)), "cannot be edited")
        parsed = {}
        if "name" in changes:
            parsed["name"] = _clean_title(changes["name"], "name")
        if "description" in changes:
            parsed["description"] = (changes["description"] or "").strip()
        if "cost" in changes:
            parsed["cost"] = _clean_non_negative(changes["cost"], "cost")
        if "type" in changes:
            parsed["type"] = parse_choice(ShopItemType, changes["type"], "type")

        user_id = self._require_user()
        item = self.state.find_shop_item(item_id)
        if item is None:
            logger.info("edit_shop_item: %s is gone, nothing to do", item_id)
            return None
        # Inventory entries hold this same object, so they see the edit too.
        for key, value in parsed.items():
            setattr(item, key, value)
        row = item.to_row(user_id)
        row.pop("id")
        self._enqueue("shop_items", "update", item.id, row)
        self._sync("Error editing item")
        return item

    def delete_shop_item(self, item_id: str) -> bool:
        self._require_user()
        item = self.state.find_shop_item(item_id)
        if item is None:
            logger.info("delete_shop_item: %s is gone, nothing to do", item_id)
            return False
        self.state.shop_items.remove(item)
        orphans = [inv for inv in self.state.inventory if inv.item.id == item_id]
        self.state.inventory = [inv for inv in self.state.inventory if inv.item.id != item_id]
        self._enqueue("shop_items", "delete", item_id)
        for inv in orphans:
            self._enqueue("inventory", "delete", inv.id)
        self._sync("Error deleting item")
        return True

    def buy_item(self, item_id: str) -> dict | None:
        user_id = self._require_user()
        item = self.state.find_shop_item(item_id)
        if item is None:
            logger.info("buy_item: %s is gone, nothing to do", item_id)
            return None
        if self.state.stats.credits < item.cost:
            self._notify("error", "Not enough credits", f"{item.name} costs {item.cost}.")
            return {"bought": False, "synced": True}

        self.state.stats.credits -= item.cost
        entry = next((inv for inv in self.state.inventory if inv.item.id == item_id), None)
        if entry is not None:
            entry.quantity += 1
            self._enqueue("inventory", "update", entry.id, {"quantity": entry.quantity})
        else:
            entry = InventoryItem(id=new_id(), item=item, quantity=1, purchased_at=self.clock())
            self.state.inventory.append(entry)
            self._enqueue("inventory", "insert", entry.id, entry.to_row(user_id))
        self._stats_update(user_id, "credits")

        self._notify("success", "Purchase complete!", f"{item.name} was added to your backpack.")
        synced = self._sync("Purchase error")
        return {"bought": True, "inventory_id": entry.id, "quantity": entry.quantity, "synced": synced}

    def use_inventory_item(self, inventory_id: str) -> dict | None:
        user_id = self._require_user()
        entry = self.state.find_inventory(inventory_id)
        if entry is None or entry.quantity <= 0:
            logger.info("use_inventory_item: %s is gone or empty, nothing to do", inventory_id)
            return None

        entry.quantity -= 1
        if entry.quantity <= 0:
            self.state.inventory.remove(entry)
            self._enqueue("inventory", "delete", entry.id)
        else:
            self._enqueue("inventory", "update", entry.id, {"quantity": entry.quantity})
        self._enqueue(
            "inventory_usage",
            "insert",
            new_id(),
            {"user_id": user_id, "inventory_id": entry.id, "used_at": self.clock().isoformat()},
        )

        self._notify("success", f"Used {entry.item.name}!")
        synced = self._sync("Error using item")
        return {"quantity": entry.quantity, "synced": synced}

    # -- profile ----------------------------------------------------------

    def update_reminder_settings(self, phone_number: str, active: bool, reminder_time: str = "09:00") -> dict:
        reminder_time = (reminder_time or "09:00").strip()
        if not REMINDER_TIME_RE.match(reminder_time):
            raise ValidationError("reminder_time", "must look like HH:MM")
        phone_number = (phone_number or "").strip()
        if active and not phone_number:
            raise ValidationError("phone_number", "is required to turn reminders on")
        user_id = self._require_user()

        self._enqueue(
            "users",
            "update",
            user_id,
            {
                "phone_number": phone_number,
                "whatsapp_reminders_active": int(bool(active)),
                "whatsapp_reminder_time": reminder_time,
            },
        )
        synced = self._sync("Error saving profile")
        sent = False
        if active:
            sent = self.notifier.send(phone_number, REMINDER_TEXT)
            if sent:
                self._notify("success", "Reminder sent", "Check your WhatsApp.")
            else:
                self._notify("warning", "Settings saved", "The test reminder could not be sent.")
        return {"synced": synced, "sent": sent}

    # -- sync -------------------------------------------------------------

    def retry_sync(self) -> dict:
        self._require_user()
        pending = len(self.state.pending_sync)
        synced = self._sync("Still offline")
        if synced and pending:
            self._notify("success", "Synced", f"{pending} pending write(s) saved.")
        return {"synced": synced, "pending": len(self.state.pending_sync)}

    def snapshot(self) -> dict:
        return self.state.to_dict()

    def restore(self, payload: dict) -> GameState:
        """Replace the local state with an exported snapshot. Queued writes in it are kept."""
        self._require_user()
        try:
            state = GameState.from_dict(payload)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise ValidationError("snapshot", f"Unreadable snapshot: {exc}") from exc
        self.state = state
        logger.info("Restored snapshot with %d routine(s)", len(state.routines))
        return state
