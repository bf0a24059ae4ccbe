from __future__ import annotations

import json
from datetime import datetime
from typing import Callable

from fastapi import FastAPI, Form, Header, Request
from fastapi.responses import JSONResponse

from lifeforge.config import Settings, configure_logging, load_settings
from lifeforge.db import SqliteBackend
from lifeforge.errors import AuthError, NotFoundError, ValidationError
from lifeforge.notifier import Notifier
from lifeforge.rollover import review_state
from lifeforge.session import SessionController, SessionManager
from lifeforge.state import ALL_DAYS


def state_payload(controller: SessionController) -> dict:
    store = controller.require_store()
    state = store.state
    return {
        "user_id": controller.session.user_id,
        "stats": state.stats.to_dict(),
        "routines": [r.to_dict() for r in state.routines],
        "shop_items": [i.to_dict() for i in state.shop_items],
        "inventory": [i.to_dict() for i in state.inventory],
        "today_completions": dict(state.today_completions),
        "review_state": review_state(state).value,
        "pending_dailies": [r.to_dict() for r in state.pending_dailies],
        "last_update_date": state.last_update_date.isoformat(),
        "unsynced_writes": len(state.pending_sync),
    }


def create_app(
    settings: Settings | None = None,
    notifier: Notifier | None = None,
    clock: Callable[[], datetime] = datetime.now,
) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level)
    sessions = SessionManager(SqliteBackend(settings.database_path), settings, notifier=notifier, clock=clock)

    app = FastAPI(title="LifeForge")
    app.state.sessions = sessions

    @app.exception_handler(AuthError)
    def auth_error(request: Request, exc: AuthError) -> JSONResponse:
        return JSONResponse({"error": str(exc)}, status_code=401)

    @app.exception_handler(ValidationError)
    def validation_error(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse({"error": exc.message, "field": exc.field}, status_code=422)

    @app.exception_handler(NotFoundError)
    def not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse({"error": str(exc)}, status_code=404)

    def reply(controller: SessionController, result=None) -> JSONResponse:
        store = controller.require_store()
        controller.persist()
        return JSONResponse(
            {
                "result": result,
                "notices": [n.to_dict() for n in store.drain_notices()],
                "state": state_payload(controller),
            }
        )

    @app.post("/session")
    def sign_in(user_id: str = Form(...), name: str = Form(""), email: str = Form("")) -> JSONResponse:
        controller = sessions.sign_in(user_id, name=name, email=email)
        return reply(controller)

    @app.delete("/session")
    def sign_out(x_user_id: str | None = Header(None)) -> JSONResponse:
        sessions.sign_out(x_user_id)
        return JSONResponse({"signed_out": True})

    @app.get("/state")
    def get_state(x_user_id: str | None = Header(None)) -> JSONResponse:
        return JSONResponse(state_payload(sessions.get(x_user_id)))

    @app.get("/routines")
    def list_routines(due_today: bool = False, x_user_id: str | None = Header(None)) -> JSONResponse:
        store = sessions.get(x_user_id).require_store()
        routines = store.due_today() if due_today else store.state.routines
        return JSONResponse([r.to_dict() for r in routines])

    @app.get("/routines/{routine_id}")
    def get_routine(routine_id: str, x_user_id: str | None = Header(None)) -> JSONResponse:
        store = sessions.get(x_user_id).require_store()
        return JSONResponse(store.get_routine(routine_id).to_dict())

    @app.post("/routines")
    def add_routine(
        title: str = Form(...),
        type: str = Form("daily"),
        difficulty: str = Form("medium"),
        habit_type: str = Form("positive"),
        days_of_week: list[int] = Form(list(ALL_DAYS)),
        is_pomodoro: bool = Form(False),
        pomodoro_time: int = Form(25),
        x_user_id: str | None = Header(None),
    ) -> JSONResponse:
        controller = sessions.get(x_user_id)
        routine = controller.require_store().add_routine(
            title,
            type=type,
            difficulty=difficulty,
            habit_type=habit_type,
            days_of_week=days_of_week,
            is_pomodoro=is_pomodoro,
            pomodoro_time=pomodoro_time,
        )
        return reply(controller, routine.to_dict())

    @app.post("/routines/{routine_id}/edit")
    def edit_routine(
        routine_id: str,
        title: str | None = Form(None),
        type: str | None = Form(None),
        difficulty: str | None = Form(None),
        habit_type: str | None = Form(None),
        days_of_week: list[int] | None = Form(None),
        is_pomodoro: bool | None = Form(None),
        pomodoro_time: int | None = Form(None),
        active: bool | None = Form(None),
        x_user_id: str | None = Header(None),
    ) -> JSONResponse:
        controller = sessions.get(x_user_id)
        changes = {
            "title": title,
            "type": type,
            "difficulty": difficulty,
            "habit_type": habit_type,
            "days_of_week": days_of_week,
            "is_pomodoro": is_pomodoro,
            "pomodoro_time": pomodoro_time,
            "active": active,
        }
        routine = controller.require_store().edit_routine(
            routine_id, **{k: v for k, v in changes.items() if v is not None}
        )
        return reply(controller, routine.to_dict() if routine else None)

    @app.delete("/routines/{routine_id}")
    def delete_routine(routine_id: str, x_user_id: str | None = Header(None)) -> JSONResponse:
        controller = sessions.get(x_user_id)
        return reply(controller, {"deleted": controller.require_store().delete_routine(routine_id)})

    @app.post("/routines/{routine_id}/complete")
    def complete_routine(routine_id: str, x_user_id: str | None = Header(None)) -> JSONResponse:
        controller = sessions.get(x_user_id)
        return reply(controller, controller.require_store().complete_routine(routine_id))

    @app.post("/routines/{routine_id}/fail")
    def fail_routine(routine_id: str, x_user_id: str | None = Header(None)) -> JSONResponse:
        controller = sessions.get(x_user_id)
        return reply(controller, controller.require_store().fail_routine(routine_id))

    @app.post("/daily-check")
    def daily_check(x_user_id: str | None = Header(None)) -> JSONResponse:
        controller = sessions.get(x_user_id)
        return reply(controller, controller.require_store().run_daily_check())

    @app.post("/daily-review")
    def daily_review(confirmed_ids: list[str] = Form([]), x_user_id: str | None = Header(None)) -> JSONResponse:
        controller = sessions.get(x_user_id)
        return reply(controller, controller.require_store().resolve_pending_dailies(confirmed_ids))

    @app.post("/shop")
    def create_shop_item(
        name: str = Form(...),
        description: str = Form(""),
        cost: int = Form(0),
        type: str = Form("consumable"),
        x_user_id: str | None = Header(None),
    ) -> JSONResponse:
        controller = sessions.get(x_user_id)
        item = controller.require_store().create_shop_item(name, description=description, cost=cost, type=type)
        return reply(controller, item.to_dict())

    @app.post("/shop/{item_id}/edit")
    def edit_shop_item(
        item_id: str,
        name: str | None = Form(None),
        description: str | None = Form(None),
        cost: int | None = Form(None),
        type: str | None = Form(None),
        x_user_id: str | None = Header(None),
    ) -> JSONResponse:
        controller = sessions.get(x_user_id)
        changes = {"name": name, "description": description, "cost": cost, "type": type}
        item = controller.require_store().edit_shop_item(item_id, **{k: v for k, v in changes.items() if v is not None})
        return reply(controller, item.to_dict() if item else None)

    @app.delete("/shop/{item_id}")
    def delete_shop_item(item_id: str, x_user_id: str | None = Header(None)) -> JSONResponse:
        controller = sessions.get(x_user_id)
        return reply(controller, {"deleted": controller.require_store().delete_shop_item(item_id)})

    @app.post("/shop/{item_id}/buy")
    def buy_item(item_id: str, x_user_id: str | None = Header(None)) -> JSONResponse:
        controller = sessions.get(x_user_id)
        return reply(controller, controller.require_store().buy_item(item_id))

    @app.post("/inventory/{inventory_id}/use")
    def use_inventory_item(inventory_id: str, x_user_id: str | None = Header(None)) -> JSONResponse:
        controller = sessions.get(x_user_id)
        return reply(controller, controller.require_store().use_inventory_item(inventory_id))

    @app.post("/profile/reminders")
    def reminder_settings(
        phone_number: str = Form(""),
        active: bool = Form(False),
        reminder_time: str = Form("09:00"),
        x_user_id: str | None = Header(None),
    ) -> JSONResponse:
        controller = sessions.get(x_user_id)
        result = controller.require_store().update_reminder_settings(phone_number, active, reminder_time)
        return reply(controller, result)

    @app.post("/sync")
    def retry_sync(x_user_id: str | None = Header(None)) -> JSONResponse:
        controller = sessions.get(x_user_id)
        return reply(controller, controller.require_store().retry_sync())

    @app.get("/export")
    def export_snapshot(x_user_id: str | None = Header(None)) -> JSONResponse:
        return JSONResponse(sessions.get(x_user_id).require_store().snapshot())

    @app.post("/import")
    def import_snapshot(payload: str = Form(...), x_user_id: str | None = Header(None)) -> JSONResponse:
        controller = sessions.get(x_user_id)
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ValidationError("payload", f"Invalid JSON: {exc.msg}") from exc
        if not isinstance(data, dict):
            raise ValidationError("payload", "Expected a JSON object")
        controller.require_store().restore(data)
        return reply(controller, {"imported": True})

    return app
