from __future__ import annotations

import argparse
import logging
import time
from datetime import datetime

from lifeforge.config import configure_logging, load_settings
from lifeforge.jobs.reminders import send_due_reminders

logger = logging.getLogger(__name__)


def run_once() -> list[str]:
    return send_due_reminders(now=datetime.now(), settings=load_settings())


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--every", type=int, default=0, help="keep running, checking every N minutes")
    args = parser.parse_args()
    configure_logging(load_settings().log_level)

    # Without --every, run this command every 5-10 minutes via cron/systemd timer.
    # Reminders are deduplicated per user and day either way.
    run_once()
    while args.every > 0:
        time.sleep(args.every * 60)
        run_once()


if __name__ == "__main__":
    main()
