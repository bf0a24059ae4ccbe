from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from lifeforge.config import Settings
from lifeforge.db import Backend
from lifeforge.errors import AuthError, ValidationError
from lifeforge.notifier import Notifier, build_notifier
from lifeforge.snapshot import SnapshotStore
from lifeforge.store import Store

logger = logging.getLogger(__name__)


@dataclass
class Session:
    user_id: str
    name: str = "Hero"
    email: str = ""
    active: bool = True


class SessionController:
    """Owns the Store of one signed-in user from sign-in to sign-out."""

    def __init__(
        self,
        session: Session,
        backend: Backend,
        snapshots: SnapshotStore,
        settings: Settings,
        notifier: Notifier,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.session = session
        self.backend = backend
        self.snapshots = snapshots
        self.settings = settings
        self.notifier = notifier
        self.clock = clock
        self.store: Store | None = None

    @property
    def snapshot_name(self) -> str:
        return f"{self.settings.snapshot_name}-{self.session.user_id}"

    def start(self) -> Store:
        state = self.snapshots.load(self.snapshot_name)
        self.store = Store(
            self.backend,
            self.session,
            state=state,
            notifier=self.notifier,
            clock=self.clock,
            multi_level_up=self.settings.multi_level_up,
        )
        if state is not None and state.pending_sync:
            self.store.retry_sync()
        self.store.fetch_user_stats()
        self.store.fetch_routines()
        self.store.fetch_shop_and_inventory()
        self.store.run_daily_check()
        self.persist()
        logger.info("Session started for %s", self.session.user_id)
        return self.store

    def require_store(self) -> Store:
        if self.store is None or not self.session.active:
            raise AuthError("No active session")
        return self.store

    def persist(self) -> None:
        if self.store is not None:
            self.snapshots.save(self.snapshot_name, self.store.state)

    def stop(self) -> None:
        self.persist()
        self.session.active = False
        self.store = None
        logger.info("Session closed for %s", self.session.user_id)


class SessionManager:
    def __init__(
        self,
        backend: Backend,
        settings: Settings,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.backend = backend
        self.settings = settings
        self.snapshots = SnapshotStore(settings.snapshot_dir)
        self.notifier = notifier or build_notifier(settings.whatsapp_api_url, settings.whatsapp_api_key)
        self.clock = clock
        self._controllers: dict[str, SessionController] = {}

    def sign_in(self, user_id: str, name: str = "", email: str = "") -> SessionController:
        user_id = (user_id or "").strip()
        if not user_id:
            raise ValidationError("user_id", "is required")
        existing = self._controllers.pop(user_id, None)
        if existing is not None:
            existing.stop()
        controller = SessionController(
            Session(user_id=user_id, name=(name or "").strip() or "Hero", email=(email or "").strip()),
            self.backend,
            self.snapshots,
            self.settings,
            self.notifier,
            clock=self.clock,
        )
        controller.start()
        self._controllers[user_id] = controller
        return controller

    def get(self, user_id: str | None) -> SessionController:
        controller = self._controllers.get(user_id or "")
        if controller is None:
            raise AuthError("No active session")
        return controller

    def sign_out(self, user_id: str | None) -> None:
        self.get(user_id).stop()
        self._controllers.pop(user_id, None)

    def close_all(self) -> None:
        for controller in self._controllers.values():
            controller.stop()
        self._controllers.clear()
