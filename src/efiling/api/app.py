import asyncio
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, Dict, Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from efiling.audit.recorder import AuditRecorder
from efiling.config.settings import AppSettings
from efiling.errors import ConcurrencyError, Forbidden, InvalidInput, InvalidTransition, NotFound, StoreUnavailable
from efiling.identity.directory import build_directory
from efiling.ledger.stores import build_stores
from efiling.locking.manager import LockManager, LockOutcome, RenewOutcome, require_resource_id
from efiling.locking.reaper import LockReaper
from efiling.notify.dispatcher import build_notifier
from efiling.shared.logging import get_logger, log_event
from efiling.validation.validator import SchemaValidator
from efiling.workflow.service import LOCK_DENIED, WorkflowService
from efiling.workflow.state_machine import parse_role
from efiling.workflow.tasks import TaskQueue


def _caller(x_user_id: str | None) -> str:
    if x_user_id is None or not x_user_id.strip():
        raise HTTPException(status_code=400, detail="X-User-Id header is required")
    return x_user_id.strip()


def _error(status_code: int, code: str, detail: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": code, "detail": detail, **extra})


def create_app(settings: Optional[AppSettings] = None) -> FastAPI:
    settings = settings or AppSettings.from_env()
    logger = get_logger("efiling.api")

    stores = build_stores(settings)
    locks = LockManager(stores.locks, ttl_seconds=settings.lock_ttl_seconds)
    recorder = AuditRecorder(stores)
    directory = build_directory(settings)
    validator = SchemaValidator()
    workflow = WorkflowService(stores, locks, recorder, directory, build_notifier(settings), validator)
    tasks = TaskQueue(stores.instructions)
    reaper = LockReaper(stores.locks)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.shutdown_event = asyncio.Event()
        app.state.reaper_task = None
        if settings.reaper_enabled:
            app.state.reaper_task = asyncio.create_task(
                reaper.run(app.state.shutdown_event, settings.reaper_interval_seconds)
            )
            log_event(logger, "reaper.started", interval_seconds=settings.reaper_interval_seconds)
        try:
            yield
        finally:
            app.state.shutdown_event.set()
            if app.state.reaper_task is not None:
                await app.state.reaper_task

    app = FastAPI(title="E-Filing Instruction Workflow", lifespan=lifespan)
    app.state.settings = settings
    app.state.stores = stores
    app.state.locks = locks
    app.state.recorder = recorder
    app.state.workflow = workflow
    app.state.reaper = reaper
    app.state.shutdown_event = asyncio.Event()
    app.state.reaper_task = None

    @app.exception_handler(InvalidInput)
    async def _invalid_input(request: Request, exc: InvalidInput):
        return _error(422, "INVALID_INPUT", str(exc))

    @app.exception_handler(NotFound)
    async def _not_found(request: Request, exc: NotFound):
        return _error(404, "NOT_FOUND", str(exc))

    @app.exception_handler(Forbidden)
    async def _forbidden(request: Request, exc: Forbidden):
        return _error(403, "FORBIDDEN", str(exc))

    @app.exception_handler(InvalidTransition)
    async def _invalid_transition(request: Request, exc: InvalidTransition):
        log_event(logger, "workflow.rejected", action=exc.action, role=exc.role, status=exc.status)
        return _error(409, "INVALID_TRANSITION", str(exc), status=exc.status)

    @app.exception_handler(ConcurrencyError)
    async def _conflict(request: Request, exc: ConcurrencyError):
        return _error(409, "CONFLICT", str(exc))

    @app.exception_handler(StoreUnavailable)
    async def _unavailable(request: Request, exc: StoreUnavailable):
        return _error(503, "STORE_UNAVAILABLE", str(exc))

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok"}

    @app.post("/v1/locks/{instruction_id}:acquire")
    def acquire_lock(instruction_id: str, x_user_id: str | None = Header(default=None, alias="X-User-Id")):
        user_id = _caller(x_user_id)
        instruction_id = require_resource_id(instruction_id, "instruction_id")
        if locks.acquire(instruction_id, user_id):
            lock = locks.get_lock(instruction_id)
            return {
                "outcome": LockOutcome.GRANTED.value,
                "holder_id": user_id,
                "expires_at": lock.expires_at if lock else None,
            }
        holder = locks.get_lock(instruction_id)
        return JSONResponse(
            status_code=409,
            content={
                "outcome": LockOutcome.DENIED.value,
                "holder_id": holder.holder_id if holder else None,
                "expires_at": holder.expires_at if holder else None,
            },
        )

    @app.post("/v1/locks/{instruction_id}:renew")
    def renew_lock(instruction_id: str, x_user_id: str | None = Header(default=None, alias="X-User-Id")):
        user_id = _caller(x_user_id)
        instruction_id = require_resource_id(instruction_id, "instruction_id")
        if locks.renew(instruction_id, user_id):
            lock = locks.get_lock(instruction_id)
            return {"outcome": RenewOutcome.RENEWED.value, "expires_at": lock.expires_at if lock else None}
        return JSONResponse(status_code=409, content={"outcome": RenewOutcome.LOCK_LOST.value})

    @app.post("/v1/locks/{instruction_id}:release")
    def release_lock(instruction_id: str, x_user_id: str | None = Header(default=None, alias="X-User-Id")):
        instruction_id = require_resource_id(instruction_id, "instruction_id")
        locks.release(instruction_id, _caller(x_user_id))
        return {"outcome": "ACK"}

    @app.get("/v1/locks/{instruction_id}")
    def lock_status(instruction_id: str, x_user_id: str | None = Header(default=None, alias="X-User-Id")):
        user_id = _caller(x_user_id)
        instruction_id = require_resource_id(instruction_id, "instruction_id")
        lock = locks.get_lock(instruction_id)
        return {
            "locked_by_other": lock is not None and lock.holder_id != user_id,
            "holder_id": lock.holder_id if lock else None,
            "expires_at": lock.expires_at if lock else None,
        }

    @app.post("/v1/instructions", status_code=201)
    def create_instruction(
        payload: Dict[str, Any],
        x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    ):
        user_id = _caller(x_user_id)
        payload = validator.validate_instruction(payload)
        return workflow.create_instruction(
            payload["title"],
            description=payload.get("description"),
            department_id=payload.get("department_id"),
            priority=payload.get("priority"),
            received_date=payload.get("received_date"),
            pre_logged=payload.get("pre_logged", False),
            created_by=user_id,
        )

    @app.get("/v1/instructions")
    def list_instructions(status: str | None = None, assigned_user_id: str | None = None):
        return workflow.list_instructions(status=status, assigned_user_id=assigned_user_id)

    @app.get("/v1/instructions/{instruction_id}")
    def get_instruction(instruction_id: str):
        return workflow.get_instruction(instruction_id)

    @app.post("/v1/instructions/{instruction_id}/transitions")
    def transition(
        instruction_id: str,
        body: Dict[str, Any],
        x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    ):
        user_id = _caller(x_user_id)
        action = body.get("action")
        role = body.get("role")
        if not isinstance(action, str) or not isinstance(role, str):
            raise InvalidInput("action and role are required")
        payload = body.get("payload")
        if payload is not None and not isinstance(payload, dict):
            raise InvalidInput("payload must be an object")
        result = workflow.transition(instruction_id, action, user_id, role, payload)
        if not result.accepted:
            holder = locks.get_lock(instruction_id)
            return _error(
                409,
                result.reason or LOCK_DENIED,
                "instruction is locked by another user",
                status=result.status,
                holder_id=holder.holder_id if holder else None,
            )
        content: Dict[str, Any] = {"status": result.status}
        if result.draft is not None:
            content["draft"] = asdict(result.draft)
        return content

    @app.get("/v1/instructions/{instruction_id}/drafts")
    def list_drafts(instruction_id: str):
        workflow.get_instruction(instruction_id)
        return recorder.list_drafts(instruction_id)

    @app.get("/v1/instructions/{instruction_id}/drafts/latest")
    def latest_draft(instruction_id: str):
        workflow.get_instruction(instruction_id)
        draft = recorder.latest_draft(instruction_id)
        if draft is None:
            raise NotFound(f"instruction {instruction_id} has no drafts")
        return draft

    @app.get("/v1/instructions/{instruction_id}/drafts/compare")
    def compare_drafts(instruction_id: str):
        return workflow.compare_drafts(instruction_id)

    @app.get("/v1/instructions/{instruction_id}/comments")
    def list_comments(instruction_id: str):
        return [
            {**asdict(thread), "resolved": thread.resolved}
            for thread in workflow.list_comment_threads(instruction_id)
        ]

    @app.post("/v1/instructions/{instruction_id}/comments", status_code=201)
    def add_comment(
        instruction_id: str,
        body: Dict[str, Any],
        x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    ):
        return workflow.add_comment(instruction_id, _caller(x_user_id), body)

    @app.post("/v1/comments/{comment_id}/replies", status_code=201)
    def reply_to_comment(
        comment_id: str,
        body: Dict[str, Any],
        x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    ):
        return workflow.reply_to_comment(comment_id, _caller(x_user_id), body)

    @app.post("/v1/comments/{comment_id}:resolve")
    def resolve_comment(comment_id: str, x_user_id: str | None = Header(default=None, alias="X-User-Id")):
        return workflow.resolve_comment(comment_id, _caller(x_user_id))

    @app.post("/v1/instructions/{instruction_id}/circulations", status_code=201)
    def send_to_ministry(
        instruction_id: str,
        body: Dict[str, Any],
        x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    ):
        user_id = _caller(x_user_id)
        role = body.pop("role", None)
        if not isinstance(role, str):
            raise InvalidInput("role is required")
        return workflow.send_to_ministry(instruction_id, user_id, role, body)

    @app.post("/v1/circulations/{circulation_id}/responses", status_code=201)
    def record_response(
        circulation_id: str,
        body: Dict[str, Any],
        x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    ):
        user_id = _caller(x_user_id)
        role = body.pop("role", None)
        if not isinstance(role, str):
            raise InvalidInput("role is required")
        return workflow.record_response(circulation_id, user_id, role, body)

    @app.get("/v1/instructions/{instruction_id}/timeline")
    def timeline(instruction_id: str):
        workflow.get_instruction(instruction_id)
        return recorder.timeline(instruction_id)

    @app.get("/v1/tasks")
    def task_queue(role: str | None = None, x_user_id: str | None = Header(default=None, alias="X-User-Id")):
        user_id = _caller(x_user_id)
        roles = directory.roles_for(user_id)
        if role is not None:
            requested = parse_role(role)
            if requested not in roles:
                raise Forbidden(f"user {user_id!r} does not hold role {role!r}")
            roles = frozenset({requested})
        return tasks.tasks_for(user_id, roles)

    if settings.admin_enabled:
        def _require_admin(key: str | None) -> None:
            if settings.admin_api_key and key != settings.admin_api_key:
                raise HTTPException(status_code=401, detail="unauthorized")

        @app.get("/v1/admin/locks")
        def admin_locks(x_admin_key: str | None = Header(default=None, alias="X-Admin-Key")):
            _require_admin(x_admin_key)
            return locks.list_active()

        @app.post("/v1/admin/locks:reap")
        def admin_reap(x_admin_key: str | None = Header(default=None, alias="X-Admin-Key")):
            _require_admin(x_admin_key)
            return {"removed": reaper.sweep()}

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("efiling.api.app:create_app", factory=True, host="0.0.0.0", port=8000)
