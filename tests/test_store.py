from __future__ import annotations

import sqlite3
import tempfile
import unittest
from datetime import datetime
from pathlib import Path
from unittest.mock import Mock, patch

from lifeforge.db import SqliteBackend
from lifeforge.errors import AuthError, PersistenceError, ValidationError
from lifeforge.notifier import Notifier
from lifeforge.rewards import HabitType
from lifeforge.session import Session
from lifeforge.state import UserStats
from lifeforge.store import Store


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class StoreTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.backend = SqliteBackend(Path(self._tmp.name) / "test.sqlite3")
        self.clock = FakeClock(datetime(2026, 3, 2, 9, 0))
        self.notifier = Mock(spec=Notifier)
        self.notifier.send.return_value = True
        self.session = Session(user_id="u1", name="Tester", email="tester@example.com")
        self.store = Store(self.backend, self.session, notifier=self.notifier, clock=self.clock)
        self.store.fetch_user_stats()

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def remote_user(self) -> dict:
        return self.backend.select_one("users", "u1")


class FetchTests(StoreTestCase):
    def test_first_fetch_provisions_profile(self) -> None:
        row = self.remote_user()
        self.assertEqual(row["name"], "Tester")
        self.assertEqual(row["email"], "tester@example.com")
        self.assertEqual(self.store.state.stats, UserStats())

    def test_fetch_takes_remote_stats(self) -> None:
        self.backend.update("users", "u1", {"xp": 40, "credits": 12, "streak": 3})
        stats = self.store.fetch_user_stats()
        self.assertEqual((stats.xp, stats.credits, stats.streak), (40, 12, 3))

    def test_fetch_keeps_local_stats_while_writes_are_queued(self) -> None:
        routine = self.store.add_routine("Read", difficulty="easy")
        with patch.object(self.backend, "update", side_effect=PersistenceError("offline")):
            self.store.complete_routine(routine.id)
        self.store.fetch_user_stats()
        self.assertEqual(self.store.state.stats.xp, 10)

    def test_refetching_routines_keeps_local_completion_time(self) -> None:
        routine = self.store.add_routine("Read")
        self.store.complete_routine(routine.id)
        self.store.state.today_completions = {}

        routines = self.store.fetch_routines()

        self.assertEqual(routines[0].completed_at, self.clock.now)
        self.assertEqual(self.store.state.today_completions, {routine.id: 1})


class RoutineActionTests(StoreTestCase):
    def test_add_routine_persists_row(self) -> None:
        routine = self.store.add_routine("Stretch", type="daily", difficulty="hard", days_of_week=[1, 3, 5])
        row = self.backend.select_one("routines", routine.id)
        self.assertEqual(row["difficulty"], "hard")
        self.assertEqual(row["recurrence"], "[1, 3, 5]")
        self.assertIsNone(routine.habit_type)
        self.assertEqual(self.store.state.pending_sync, [])

    def test_blank_title_is_rejected_before_any_change(self) -> None:
        with self.assertRaises(ValidationError):
            self.store.add_routine("   ")
        self.assertEqual(self.store.state.routines, [])
        self.assertEqual(self.backend.select("routines"), [])

    def test_unknown_difficulty_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            self.store.add_routine("Run", difficulty="impossible")

    def test_out_of_range_weekday_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            self.store.add_routine("Run", days_of_week=[7])

    def test_edit_routine(self) -> None:
        routine = self.store.add_routine("Run")
        self.store.edit_routine(routine.id, title="Run 5k", difficulty="epic")
        row = self.backend.select_one("routines", routine.id)
        self.assertEqual((row["title"], row["difficulty"]), ("Run 5k", "epic"))

    def test_edit_rejects_unknown_fields(self) -> None:
        routine = self.store.add_routine("Run")
        with self.assertRaises(ValidationError):
            self.store.edit_routine(routine.id, completed_at="now")

    def test_changing_type_resets_habit_direction(self) -> None:
        routine = self.store.add_routine("Water")
        self.store.edit_routine(routine.id, type="habit")
        self.assertIs(routine.habit_type, HabitType.POSITIVE)

        self.store.edit_routine(routine.id, habit_type="negative")
        self.store.edit_routine(routine.id, type="daily")
        self.assertIsNone(routine.habit_type)
        self.assertIsNone(self.backend.select_one("routines", routine.id)["habit_type"])

    def test_delete_routine(self) -> None:
        routine = self.store.add_routine("Run")
        self.assertTrue(self.store.delete_routine(routine.id))
        self.assertEqual(self.store.state.routines, [])
        self.assertEqual(self.backend.select("routines"), [])

    def test_complete_levels_up_and_syncs(self) -> None:
        routine = self.store.add_routine("Read", difficulty="easy")
        self.store.state.stats.xp = 90

        result = self.store.complete_routine(routine.id)

        self.assertTrue(result["leveled_up"])
        self.assertTrue(result["synced"])
        self.assertEqual((self.store.state.stats.level, self.store.state.stats.xp), (2, 0))
        self.assertEqual(routine.completed_at, self.clock.now)
        self.assertEqual(self.store.state.today_completions, {routine.id: 1})
        self.assertEqual(self.remote_user()["level"], 2)
        logs = self.backend.select("routine_logs", user_id="u1")
        self.assertEqual([(log["routine_id"], log["date"], log["status"]) for log in logs], [(routine.id, "2026-03-02", "completed")])

    def test_completed_todo_is_terminal(self) -> None:
        todo = self.store.add_routine("File taxes", type="todo", difficulty="hard")
        self.store.complete_routine(todo.id)
        self.assertFalse(todo.active)
        self.assertEqual(self.backend.select_one("routines", todo.id)["active"], 0)

        credits = self.store.state.stats.credits
        self.assertIsNone(self.store.complete_routine(todo.id))
        self.assertEqual(self.store.state.stats.credits, credits)

    def test_failing_a_finished_todo_changes_nothing(self) -> None:
        todo = self.store.add_routine("Ship release", type="todo", difficulty="epic")
        self.store.complete_routine(todo.id)
        stats = UserStats(**vars(self.store.state.stats))

        self.assertIsNone(self.store.fail_routine(todo.id))

        self.assertEqual(self.store.state.stats, stats)
        statuses = [log["status"] for log in self.backend.select("routine_logs", routine_id=todo.id)]
        self.assertEqual(statuses, ["completed"])

    def test_fail_routine_logs_failure(self) -> None:
        habit = self.store.add_routine("Doomscrolling", type="habit", habit_type="negative", difficulty="medium")
        result = self.store.fail_routine(habit.id)
        self.assertFalse(result["died"])
        self.assertEqual(self.store.state.stats.hp, 92)
        logs = self.backend.select("routine_logs", user_id="u1")
        self.assertEqual([log["status"] for log in logs], ["failed"])
        self.assertEqual(self.remote_user()["hp"], 92)

    def test_failing_into_death_sends_death_notice(self) -> None:
        routine = self.store.add_routine("Boss", difficulty="epic")
        self.store.state.stats = UserStats(hp=5, credits=100, xp=50)
        self.store.drain_notices()

        result = self.store.fail_routine(routine.id)

        self.assertTrue(result["died"])
        self.assertEqual([n.title for n in self.store.drain_notices()], ["You died!"])

    def test_stale_id_is_a_silent_noop(self) -> None:
        self.store.drain_notices()
        self.assertIsNone(self.store.complete_routine("missing"))
        self.assertIsNone(self.store.fail_routine("missing"))
        self.assertIsNone(self.store.edit_routine("missing", title="x"))
        self.assertFalse(self.store.delete_routine("missing"))
        self.assertEqual(self.store.drain_notices(), [])

    def test_inactive_session_aborts_before_changes(self) -> None:
        routine = self.store.add_routine("Read")
        self.session.active = False
        with self.assertRaises(AuthError):
            self.store.complete_routine(routine.id)
        self.assertEqual(self.store.state.stats, UserStats())

    def test_due_today_follows_weekdays(self) -> None:
        monday = self.store.add_routine("Gym", days_of_week=[1])
        self.store.add_routine("Church", days_of_week=[0])
        habit = self.store.add_routine("Water", type="habit")
        done = self.store.add_routine("Call mom", type="todo")
        self.store.complete_routine(done.id)

        self.assertEqual([r.id for r in self.store.due_today()], [monday.id, habit.id])


class SyncTests(StoreTestCase):
    def test_failed_sync_keeps_local_state_and_queues_write(self) -> None:
        routine = self.store.add_routine("Read", difficulty="easy")
        self.store.drain_notices()

        with patch.object(self.backend, "update", side_effect=PersistenceError("offline")):
            result = self.store.complete_routine(routine.id)

        self.assertFalse(result["synced"])
        self.assertEqual(self.store.state.stats.xp, 10)
        self.assertEqual([(op.table, op.op) for op in self.store.state.pending_sync], [("users", "update")])
        self.assertEqual(self.remote_user()["xp"], 0)
        self.assertIn("Failed to sync online", [n.title for n in self.store.drain_notices()])
        self.assertEqual(self.store.last_sync_error.table, "users")

        retry = self.store.retry_sync()

        self.assertEqual(retry, {"synced": True, "pending": 0})
        self.assertEqual(self.remote_user()["xp"], 10)
        self.assertEqual(len(self.backend.select("routine_logs")), 1)

    def test_later_actions_wait_behind_a_stuck_write(self) -> None:
        routine = self.store.add_routine("Read", difficulty="easy")
        with patch.object(self.backend, "insert", side_effect=PersistenceError("offline")):
            self.store.complete_routine(routine.id)
            self.store.fail_routine(routine.id)
        self.assertEqual(len(self.store.state.pending_sync), 4)

        self.store.retry_sync()

        statuses = [log["status"] for log in self.backend.select("routine_logs")]
        self.assertEqual(statuses, ["completed", "failed"])
        self.assertEqual(self.remote_user()["hp"], self.store.state.stats.hp)

    def test_replaying_an_insert_is_harmless(self) -> None:
        routine = self.store.add_routine("Read")
        row = self.backend.select_one("routines", routine.id)
        self.backend.insert("routines", dict(row, title="Overwritten?"))
        self.assertEqual(self.backend.select_one("routines", routine.id)["title"], "Read")

    def test_unreachable_database_queues_writes(self) -> None:
        with patch("lifeforge.db.sqlite3.connect", side_effect=sqlite3.OperationalError("unable to open database file")):
            with self.assertRaises(PersistenceError):
                self.backend.select("routines")
            routine = self.store.add_routine("Read")

        self.assertEqual([(op.table, op.op) for op in self.store.state.pending_sync], [("routines", "insert")])
        self.assertEqual(self.store.last_sync_error.table, "routines")

        self.assertTrue(self.store.retry_sync()["synced"])
        self.assertEqual(self.backend.select_one("routines", routine.id)["title"], "Read")


class SnapshotRestoreTests(StoreTestCase):
    def test_restore_replaces_local_state(self) -> None:
        routine = self.store.add_routine("Read")
        exported = self.store.snapshot()
        self.store.delete_routine(routine.id)

        self.store.restore(exported)

        self.assertEqual([r.id for r in self.store.state.routines], [routine.id])

    def test_unreadable_snapshot_is_rejected(self) -> None:
        self.store.add_routine("Read")
        with self.assertRaises(ValidationError):
            self.store.restore({"inventory": [{"item_id": "x"}], "shop_items": [{"id": "x"}]})
        self.assertEqual(len(self.store.state.routines), 1)


class DailyRolloverTests(StoreTestCase):
    def _yesterday(self) -> None:
        self.store.state.last_update_date = datetime(2026, 3, 1, 20, 0)

    def test_all_done_starts_new_day(self) -> None:
        daily = self.store.add_routine("Meditate")
        self._yesterday()
        daily.completed_at = datetime(2026, 3, 1, 7, 0)

        result = self.store.run_daily_check()

        self.assertEqual(result["action"], "advance")
        self.assertEqual(self.store.state.stats.streak, 1)
        self.assertIsNone(daily.completed_at)
        self.assertEqual(self.store.state.last_update_date, self.clock.now)
        self.assertEqual(self.remote_user()["streak"], 1)

        self.assertEqual(self.store.run_daily_check()["action"], "noop")
        self.assertEqual(self.store.state.stats.streak, 1)

    def test_missed_daily_waits_for_review(self) -> None:
        daily = self.store.add_routine("Meditate")
        self._yesterday()
        self.store.state.stats.streak = 6

        result = self.store.run_daily_check()

        self.assertEqual(result["review_state"], "pending_review")
        self.assertEqual(result["pending"], [daily.id])
        self.assertEqual(self.store.state.stats.streak, 6)
        self.assertEqual(self.store.state.last_update_date, datetime(2026, 3, 1, 20, 0))

    def test_review_penalizes_only_unconfirmed(self) -> None:
        a = self.store.add_routine("A", difficulty="easy")
        b = self.store.add_routine("B", difficulty="medium")
        self._yesterday()
        self.store.state.stats = UserStats(hp=100, xp=30, credits=20, streak=6)
        self.store.run_daily_check()
        self.store.drain_notices()

        result = self.store.resolve_pending_dailies([a.id])

        self.assertEqual(result["missed"], [b.id])
        stats = self.store.state.stats
        self.assertEqual((stats.hp, stats.xp, stats.credits, stats.streak), (92, 18, 20, 0))
        self.assertEqual(self.backend.select("routine_logs"), [])
        self.assertEqual(self.store.state.pending_dailies, [])
        self.assertEqual(self.store.state.last_update_date, self.clock.now)
        self.assertEqual(self.remote_user()["streak"], 0)
        self.assertEqual(self.remote_user()["hp"], 92)

    def test_resolve_without_pending_review_is_noop(self) -> None:
        self.assertIsNone(self.store.resolve_pending_dailies([]))
        self.assertEqual(self.store.state.stats.streak, 0)


class ShopTests(StoreTestCase):
    def test_buying_without_enough_credits_changes_nothing(self) -> None:
        item = self.store.create_shop_item("Movie night", cost=50)
        self.store.state.stats.credits = 10

        result = self.store.buy_item(item.id)

        self.assertFalse(result["bought"])
        self.assertEqual(self.store.state.stats.credits, 10)
        self.assertEqual(self.store.state.inventory, [])

    def test_repeat_purchase_stacks(self) -> None:
        item = self.store.create_shop_item("Coffee", cost=20)
        self.store.state.stats.credits = 100

        self.store.buy_item(item.id)
        result = self.store.buy_item(item.id)

        self.assertEqual(result["quantity"], 2)
        self.assertEqual(self.store.state.stats.credits, 60)
        self.assertEqual(len(self.store.state.inventory), 1)
        self.assertEqual(self.backend.select_one("inventory", result["inventory_id"])["quantity"], 2)
        self.assertEqual(self.remote_user()["credits"], 60)

    def test_using_items_decrements_then_removes(self) -> None:
        item = self.store.create_shop_item("Snack", cost=0)
        self.store.buy_item(item.id)
        entry_id = self.store.buy_item(item.id)["inventory_id"]

        self.assertEqual(self.store.use_inventory_item(entry_id)["quantity"], 1)
        self.assertEqual(self.store.use_inventory_item(entry_id)["quantity"], 0)

        self.assertEqual(self.store.state.inventory, [])
        self.assertEqual(self.backend.select("inventory"), [])
        self.assertEqual(len(self.backend.select("inventory_usage", user_id="u1")), 2)
        self.assertIsNone(self.store.use_inventory_item(entry_id))

    def test_edits_show_through_inventory(self) -> None:
        item = self.store.create_shop_item("Game hour", cost=0)
        self.store.buy_item(item.id)
        self.store.edit_shop_item(item.id, name="Two game hours", cost=30)
        self.assertEqual(self.store.state.inventory[0].item.name, "Two game hours")
        self.assertEqual(self.backend.select_one("shop_items", item.id)["cost"], 30)

    def test_deleting_item_drops_inventory_entries(self) -> None:
        item = self.store.create_shop_item("Nap", cost=0, type="permanent")
        self.store.buy_item(item.id)
        self.assertTrue(self.store.delete_shop_item(item.id))
        self.assertEqual(self.store.state.inventory, [])
        self.assertEqual(self.backend.select("inventory"), [])

    def test_negative_cost_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            self.store.create_shop_item("Free money", cost=-5)

    def test_fetch_drops_inventory_for_missing_items(self) -> None:
        item = self.store.create_shop_item("Nap", cost=0)
        self.store.buy_item(item.id)
        self.backend.delete("shop_items", item.id)

        self.store.fetch_shop_and_inventory()

        self.assertEqual(self.store.state.shop_items, [])
        self.assertEqual(self.store.state.inventory, [])


class ReminderSettingsTests(StoreTestCase):
    def test_saving_active_reminders_sends_one(self) -> None:
        result = self.store.update_reminder_settings("+5511999990000", True, "07:30")
        self.assertEqual(result, {"synced": True, "sent": True})
        self.notifier.send.assert_called_once()
        row = self.remote_user()
        self.assertEqual((row["phone_number"], row["whatsapp_reminders_active"], row["whatsapp_reminder_time"]), ("+5511999990000", 1, "07:30"))

    def test_send_failure_still_saves_settings(self) -> None:
        self.notifier.send.return_value = False
        self.store.drain_notices()
        result = self.store.update_reminder_settings("+5511999990000", True)
        self.assertFalse(result["sent"])
        self.assertEqual(self.remote_user()["whatsapp_reminders_active"], 1)
        self.assertEqual([n.level for n in self.store.drain_notices()], ["warning"])

    def test_bad_time_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            self.store.update_reminder_settings("+5511999990000", True, "25:00")


if __name__ == "__main__":
    unittest.main()
