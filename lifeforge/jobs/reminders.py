from __future__ import annotations

import argparse
import logging
from datetime import datetime

from lifeforge.config import Settings, configure_logging, load_settings
from lifeforge.db import Backend, SqliteBackend
from lifeforge.errors import NoRowsError
from lifeforge.notifier import REMINDER_TEXT, Notifier, build_notifier

logger = logging.getLogger(__name__)


def _minutes(hhmm: str) -> int:
    hour, minute = hhmm.split(":", 1)
    return int(hour) * 60 + int(minute)


def in_window(reminder_time: str, now: datetime, window_minutes: int) -> bool:
    try:
        target = _minutes(reminder_time or "09:00")
    except ValueError:
        logger.warning("Ignoring malformed reminder time %r", reminder_time)
        return False
    # Windows may wrap past midnight.
    elapsed = (now.hour * 60 + now.minute - target) % 1440
    return elapsed < window_minutes


def send_reminder(backend: Backend, user_id: str, notifier: Notifier) -> bool:
    try:
        user = backend.select_one("users", user_id)
    except NoRowsError:
        logger.warning("Reminder requested for unknown user %s", user_id)
        return False
    if not user.get("phone_number") or not user.get("whatsapp_reminders_active"):
        logger.info("WhatsApp reminders not configured or inactive for %s", user_id)
        return False
    return notifier.send(user["phone_number"], REMINDER_TEXT)


def send_due_reminders(
    now: datetime | None = None,
    backend: SqliteBackend | None = None,
    notifier: Notifier | None = None,
    settings: Settings | None = None,
) -> list[str]:
    settings = settings or load_settings()
    backend = backend or SqliteBackend(settings.database_path)
    notifier = notifier or build_notifier(settings.whatsapp_api_url, settings.whatsapp_api_key)
    now = now or datetime.now()
    today = now.date().isoformat()

    sent = []
    for user in backend.reminder_candidates():
        if not in_window(user["whatsapp_reminder_time"], now, settings.reminder_window_minutes):
            continue
        if backend.was_reminder_sent(user["id"], today):
            continue
        if notifier.send(user["phone_number"], REMINDER_TEXT):
            backend.mark_reminder_sent(user["id"], today)
            sent.append(user["id"])
    logger.info("Sent %d reminder(s) for %s", len(sent), today)
    return sent


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--user", help="send one reminder to this user right away")
    args = parser.parse_args()

    settings = load_settings()
    configure_logging(settings.log_level)
    if args.user:
        backend = SqliteBackend(settings.database_path)
        send_reminder(backend, args.user, build_notifier(settings.whatsapp_api_url, settings.whatsapp_api_key))
    else:
        send_due_reminders(settings=settings)


if __name__ == "__main__":
    main()
