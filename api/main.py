"""
FastAPI Application: cron triggers, notification/todo endpoints, webhooks.

Provides:
- Cron endpoints (bearer CRON_SECRET) for the escalation sweep, reminder
  sweep, email queue batch, todo expiry and notification queue drain
- Follow-up, notification and todo endpoints for the acting user
- Notification-created webhook feeding Todo Automation

Identity is external: the acting user id arrives in the X-User-Id header
and is trusted as-is.
"""
from __future__ import annotations

import hmac
import structlog
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from api.services import Services, build_services
from models.errors import ConcurrencyConflict, NotFoundError, ValidationError
from models.schemas import (
    CompletionReason, Notification, NotificationCreate, NotificationType, TodoStatus,
)
from scheduler.jobs import EmailQueueJob

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class FollowUpCreateRequest(BaseModel):
    email_subject: str
    client_name: str
    client_email: Optional[str] = None
    document_type: Optional[str] = None
    original_email_id: Optional[str] = None
    sent_date: Optional[datetime] = None
    manager_id: Optional[str] = None


class CompleteRequest(BaseModel):
    reason: CompletionReason = CompletionReason.CLIENT_RESPONDED


class SnoozeRequest(BaseModel):
    new_due_date: Optional[datetime] = None


class NotificationCreateRequest(BaseModel):
    recipient: str
    type: NotificationType
    title: str
    message: str
    related_id: Optional[str] = None
    metadata: dict[str, Any] = {}


class TodoStatusRequest(BaseModel):
    status: TodoStatus


class TodoBulkRequest(BaseModel):
    todo_ids: list[str]
    status: TodoStatus


class NotificationEvent(Notification):
    """Webhook payload: a stored notification, so the id is mandatory."""
    id: str


# ──────────────────────────────────────────────────────────────
#  Dependencies
# ──────────────────────────────────────────────────────────────

def get_services(request: Request) -> Services:
    return request.app.state.services


def acting_user(request: Request) -> str:
    user_id = request.headers.get("x-user-id", "").strip()
    if not user_id:
        raise HTTPException(401, "Authentication required")
    return user_id


def has_cron_secret(request: Request, services: Services) -> bool:
    secret = services.settings.cron_secret or ""
    # an unresolved ${CRON_SECRET} placeholder means no secret is configured
    if not secret or secret.startswith("${"):
        return False
    supplied = request.headers.get("authorization", "")
    return hmac.compare_digest(supplied.encode(), f"Bearer {secret}".encode())


def require_cron(request: Request, services: Services = Depends(get_services)) -> Services:
    if not has_cron_secret(request, services):
        raise HTTPException(401, "Unauthorized")
    return services


def _job_response(result) -> dict[str, Any]:
    return {"success": result.ok, **result.model_dump(mode="json")}


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

router = APIRouter()


@router.get("/health")
async def health(services: Services = Depends(get_services)):
    return {
        "status": "ok",
        "app": services.settings.app_name,
        "store": type(services.store).__name__,
        "transport": await services.transport.health_check(),
    }


# ══════════════════════════════════════════════════════════════
#  CRON TRIGGERS
# ══════════════════════════════════════════════════════════════

@router.api_route("/cron/escalate-follow-ups", methods=["GET", "POST"])
async def cron_escalate(request: Request, services: Services = Depends(get_services)):
    if not has_cron_secret(request, services):
        # manual trigger is limited to managers
        user_id = request.headers.get("x-user-id", "").strip()
        if not user_id:
            raise HTTPException(401, "Unauthorized")
        if not await services.directory.is_manager(user_id):
            raise HTTPException(403, "Only managers can trigger escalation")
        logger.info("escalation_triggered_manually", user_id=user_id)
    result = await services.jobs["escalate_follow_ups"].trigger()
    return _job_response(result)


@router.api_route("/cron/process-email-queue", methods=["GET", "POST"])
async def cron_process_email_queue(
    limit: Optional[int] = Query(None, ge=1, le=100),
    services: Services = Depends(require_cron),
):
    result = await EmailQueueJob(services.processor, limit=limit).trigger()
    return _job_response(result)


@router.api_route("/cron/send-follow-up-reminders", methods=["GET", "POST"])
async def cron_send_reminders(services: Services = Depends(require_cron)):
    return _job_response(await services.jobs["send_follow_up_reminders"].trigger())


@router.api_route("/cron/expire-todos", methods=["GET", "POST"])
async def cron_expire_todos(services: Services = Depends(require_cron)):
    return _job_response(await services.jobs["expire_todos"].trigger())


@router.api_route("/cron/process-notification-queue", methods=["GET", "POST"])
async def cron_drain_notification_queue(services: Services = Depends(require_cron)):
    return _job_response(await services.jobs["drain_notification_queue"].trigger())


# ══════════════════════════════════════════════════════════════
#  FOLLOW-UPS
# ══════════════════════════════════════════════════════════════

@router.get("/followups")
async def list_followups(
    status: Optional[str] = None,
    sequence: Optional[int] = None,
    client_name: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(acting_user),
    services: Services = Depends(get_services),
):
    rows, total = await services.followups.get_by_user(
        user_id, status=status, sequence=sequence, client_name=client_name,
        limit=limit, offset=offset,
    )
    return {
        "followups": [f.model_dump(mode="json") for f in rows],
        "total": total,
        "pagination": {"limit": limit, "offset": offset, "has_more": offset + len(rows) < total},
    }


@router.post("/followups")
async def create_followup(
    req: FollowUpCreateRequest,
    user_id: str = Depends(acting_user),
    services: Services = Depends(get_services),
):
    followup = await services.followups.create(user_id=user_id, **req.model_dump())
    return {"success": True, "followup": followup.model_dump(mode="json")}


@router.get("/followups/stats")
async def followup_stats(
    user_id: str = Depends(acting_user),
    services: Services = Depends(get_services),
):
    return (await services.followups.get_stats(user_id)).model_dump()


@router.get("/followups/{followup_id}/history")
async def followup_history(
    followup_id: str,
    user_id: str = Depends(acting_user),
    services: Services = Depends(get_services),
):
    entries = await services.followups.history(followup_id, user_id)
    return {"history": [h.model_dump(mode="json") for h in entries]}


@router.post("/followups/{followup_id}/complete")
async def complete_followup(
    followup_id: str,
    req: CompleteRequest,
    user_id: str = Depends(acting_user),
    services: Services = Depends(get_services),
):
    followup = await services.followups.complete(followup_id, user_id, req.reason)
    return {"success": True, "followup": followup.model_dump(mode="json")}


@router.post("/followups/{followup_id}/snooze")
async def snooze_followup(
    followup_id: str,
    req: SnoozeRequest,
    user_id: str = Depends(acting_user),
    services: Services = Depends(get_services),
):
    followup = await services.followups.snooze(followup_id, user_id, req.new_due_date)
    return {"success": True, "followup": followup.model_dump(mode="json")}


@router.post("/followups/{followup_id}/resend")
async def resend_followup(
    followup_id: str,
    user_id: str = Depends(acting_user),
    services: Services = Depends(get_services),
):
    followup = await services.followups.resend(followup_id, user_id)
    return {"success": True, "followup": followup.model_dump(mode="json")}


@router.post("/followups/{followup_id}/no-response")
async def mark_followup_no_response(
    followup_id: str,
    user_id: str = Depends(acting_user),
    services: Services = Depends(get_services),
):
    followup = await services.followups.mark_no_response(followup_id, user_id)
    return {"success": True, "followup": followup.model_dump(mode="json")}


@router.post("/followups/{followup_id}/remind")
async def remind_followup(
    followup_id: str,
    user_id: str = Depends(acting_user),
    services: Services = Depends(get_services),
):
    followup = await services.followups.get(followup_id, user_id)
    return {"success": True, "queued": await services.followups.send_reminder_email(followup)}


# ══════════════════════════════════════════════════════════════
#  NOTIFICATIONS
# ══════════════════════════════════════════════════════════════

@router.get("/notifications")
async def list_notifications(
    limit: Optional[int] = Query(None, ge=1),
    unread_only: bool = False,
    user_id: str = Depends(acting_user),
    services: Services = Depends(get_services),
):
    result = await services.dispatcher.get_by_user(user_id, limit=limit, unread_only=unread_only)
    return result.model_dump(mode="json")


@router.post("/notifications")
async def create_notification(
    req: NotificationCreateRequest,
    user_id: str = Depends(acting_user),
    services: Services = Depends(get_services),
):
    notification = await services.dispatcher.create(NotificationCreate(
        user_id=req.recipient,
        type=req.type,
        title=req.title,
        message=req.message,
        related_id=req.related_id,
        metadata={**req.metadata, "created_by": user_id},
    ))
    return {
        "success": True,
        "notification": notification.model_dump(mode="json") if notification else None,
    }


@router.post("/notifications/mark-all-read")
async def mark_all_notifications_read(
    user_id: str = Depends(acting_user),
    services: Services = Depends(get_services),
):
    return {"success": True, "updated": await services.dispatcher.mark_all_as_read(user_id)}


@router.post("/notifications/{notification_id}/read")
async def mark_notification_read(
    notification_id: str,
    user_id: str = Depends(acting_user),
    services: Services = Depends(get_services),
):
    return {"success": await services.dispatcher.mark_as_read(notification_id, user_id)}


@router.get("/notifications/email-queue")
async def email_queue_stats(
    request: Request,
    services: Services = Depends(get_services),
):
    if has_cron_secret(request, services):
        stats = await services.processor.get_email_stats()
    else:
        stats = await services.processor.get_email_stats(acting_user(request))
    return stats.model_dump(mode="json")


# ══════════════════════════════════════════════════════════════
#  TODOS
# ══════════════════════════════════════════════════════════════

@router.get("/todos")
async def list_todos(
    status: Optional[TodoStatus] = None,
    category: Optional[str] = None,
    overdue_only: bool = False,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(acting_user),
    services: Services = Depends(get_services),
):
    todos, total = await services.todos.get_by_user(
        user_id, status=status, category=category, overdue_only=overdue_only,
        limit=limit, offset=offset,
    )
    return {
        "success": True,
        "todos": [t.model_dump(mode="json") for t in todos],
        "total": total,
        "pagination": {"limit": limit, "offset": offset, "has_more": offset + len(todos) < total},
    }


@router.get("/todos/stats")
async def todo_stats(
    user_id: str = Depends(acting_user),
    services: Services = Depends(get_services),
):
    return {"success": True, "stats": (await services.todos.get_stats(user_id)).model_dump()}


@router.put("/todos/{todo_id}/status")
async def update_todo_status(
    todo_id: str,
    req: TodoStatusRequest,
    user_id: str = Depends(acting_user),
    services: Services = Depends(get_services),
):
    todo = await services.todos.update_status(todo_id, user_id, req.status)
    return {"success": True, "todo": todo.model_dump(mode="json")}


@router.post("/todos/bulk")
async def bulk_update_todos(
    req: TodoBulkRequest,
    user_id: str = Depends(acting_user),
    services: Services = Depends(get_services),
):
    updated = await services.todos.bulk_update_status(req.todo_ids, user_id, req.status)
    return {
        "success": True,
        "updated_count": updated,
        "requested_count": len(req.todo_ids),
        "status": req.status.value,
    }


# ══════════════════════════════════════════════════════════════
#  WEBHOOKS
# ══════════════════════════════════════════════════════════════

@router.post("/webhooks/notification-created")
async def notification_created_webhook(
    notification: NotificationEvent,
    services: Services = Depends(require_cron),
):
    todo = await services.automation.process_notification(notification)
    return {
        "success": True,
        "notification_id": notification.id,
        "todo_generated": todo is not None,
        "todo_id": todo.id if todo else None,
    }


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def _register_error_handlers(app: FastAPI):

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError):
        return JSONResponse(
            status_code=404,
            content={"success": False, "error": f"{exc.entity.capitalize()} not found or access denied"},
        )

    @app.exception_handler(ValidationError)
    async def invalid(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})

    @app.exception_handler(ConcurrencyConflict)
    async def conflict(request: Request, exc: ConcurrencyConflict):
        return JSONResponse(status_code=409, content={"success": False, "error": str(exc)})


def create_app(services: Services = None) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc: Services = app.state.services
        await svc.start()

        queued = svc.settings.notifications.delivery == "queue"
        if queued:
            await svc.consumer.start_background()

        logger.info("followdesk_started",
                    delivery=svc.settings.notifications.delivery,
                    queue_backend=type(svc.queue).__name__)
        yield

        if queued:
            await svc.consumer.stop()
        await svc.close()
        logger.info("followdesk_stopped")

    app = FastAPI(
        title="FollowDesk API",
        description="Follow-up tracking, escalation, notifications and todos",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services or build_services()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _register_error_handlers(app)
    app.include_router(router)
    return app


app = create_app()
