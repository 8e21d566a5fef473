"""JSON API routes for the inbox triage engine.

Endpoints:
- runs: trigger (fire-and-forget), poll, recent runs
- classifications: read model with effective priority, history
- feedback: override, handled toggle, snooze, sender VIP/relationship
- user rules: CRUD

All routes use FastAPI dependency injection to access shared state.
"""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel, Field, field_validator

from inbox_triage.classifier.categories import ALLOWED_CATEGORIES
from inbox_triage.core.errors import DatabaseError, RunNotFoundError, TriageError
from inbox_triage.core.logging import get_logger
from inbox_triage.db.store import AgentRun, DatabaseStore, StoredClassification, UserRule
from inbox_triage.engine.feedback import FeedbackService
from inbox_triage.engine.read_model import ClassificationReader
from inbox_triage.engine.runner import RunManager
from inbox_triage.web.dependencies import (
    get_feedback_service,
    get_reader,
    get_run_manager,
    get_store,
)

logger = get_logger(__name__)

api_router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Pydantic models for API input validation
# ---------------------------------------------------------------------------


def _check_category(value: str | None) -> str | None:
    if value is not None and value not in ALLOWED_CATEGORIES:
        raise ValueError(f"Unknown category '{value}'")
    return value


class OverrideRequest(BaseModel):
    """Request body for a user override; only fields sent are changed."""

    priority: int | None = Field(default=None, ge=1, le=5)
    category: str | None = None
    needs_reply: bool | None = None
    needs_approval: bool | None = None
    is_thread_active: bool | None = None
    deadline: datetime | None = None

    @field_validator("category")
    @classmethod
    def validate_category(cls, v: str | None) -> str | None:
        return _check_category(v)


class HandleRequest(BaseModel):
    handled: bool = True


class SnoozeRequest(BaseModel):
    """Snooze until a time; null unsnoozes."""

    snoozed_until: datetime | None = None


class SenderUpdateRequest(BaseModel):
    is_vip: bool | None = None
    relationship: str | None = None


class CreateRuleRequest(BaseModel):
    """Request body for creating a user rule."""

    name: str = Field(min_length=1, max_length=200)
    sender_pattern: str | None = None
    subject_contains: str | None = None
    is_mailing_list: bool | None = None
    has_attachments: bool | None = None
    category: str | None = None
    priority: int | None = Field(default=None, ge=1, le=5)
    needs_reply: bool | None = None
    mark_handled: bool = False

    @field_validator("category")
    @classmethod
    def validate_category(cls, v: str | None) -> str | None:
        return _check_category(v)


class UpdateRuleRequest(BaseModel):
    """Request body for updating a user rule; only fields sent are changed."""

    name: str | None = Field(default=None, min_length=1, max_length=200)
    sender_pattern: str | None = None
    subject_contains: str | None = None
    is_mailing_list: bool | None = None
    has_attachments: bool | None = None
    category: str | None = None
    priority: int | None = Field(default=None, ge=1, le=5)
    needs_reply: bool | None = None
    mark_handled: bool | None = None
    is_active: bool | None = None

    @field_validator("category")
    @classmethod
    def validate_category(cls, v: str | None) -> str | None:
        return _check_category(v)


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _run_to_dict(run: AgentRun) -> dict[str, Any]:
    return {
        "id": run.id,
        "user_id": run.user_id,
        "trigger": run.trigger,
        "status": run.status,
        "emails_fetched": run.emails_fetched,
        "emails_classified": run.emails_classified,
        "emails_failed": run.emails_failed,
        "error_message": run.error_message,
        "started_at": _iso(run.started_at),
        "completed_at": _iso(run.completed_at),
    }


def _rule_to_dict(rule: UserRule) -> dict[str, Any]:
    data = asdict(rule)
    data["created_at"] = _iso(rule.created_at)
    return data


def _classification_to_dict(stored: StoredClassification) -> dict[str, Any]:
    return {
        "email_id": stored.email_id,
        "classification": stored.result.to_dict(),
        "user_override": stored.user_override,
        "handled": stored.handled,
        "handled_at": _iso(stored.handled_at),
        "thread_resolved": stored.thread_resolved,
        "snoozed_until": _iso(stored.snoozed_until),
        "updated_at": _iso(stored.updated_at),
    }


def _parse_priorities(raw: str | None) -> list[int]:
    if not raw:
        return []
    try:
        values = [int(part) for part in raw.split(",") if part.strip()]
    except ValueError:
        raise HTTPException(status_code=422, detail="priority must be a comma-separated list of 1-5") from None
    return [v for v in values if 1 <= v <= 5]


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@api_router.get("/health")
async def health_check(store: DatabaseStore = Depends(get_store)):
    """Health check endpoint for Docker and monitoring."""
    recent = await store.get_recent_runs(limit=1)
    return {
        "status": "healthy",
        "last_run": _run_to_dict(recent[0]) if recent else None,
        "version": "0.1.0",
    }


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


@api_router.post("/users/{user_id}/runs", status_code=202)
async def trigger_run(
    user_id: str,
    run_manager: RunManager = Depends(get_run_manager),
):
    """Start a triage run in the background and return its id at once."""
    try:
        run, started = await run_manager.trigger(user_id)
    except DatabaseError as e:
        raise HTTPException(status_code=500, detail="Failed to start run") from e
    except TriageError as e:
        raise HTTPException(status_code=404, detail=str(e)) from None

    response: dict[str, Any] = {"run_id": run.id, "status": run.status, "started": started}
    if not started:
        response["message"] = "A run is already in progress"
    return response


@api_router.get("/users/{user_id}/runs")
async def list_runs(
    user_id: str,
    limit: int = Query(default=10, ge=1, le=100),
    store: DatabaseStore = Depends(get_store),
):
    runs = await store.get_recent_runs(user_id, limit=limit)
    return {"runs": [_run_to_dict(run) for run in runs]}


@api_router.get("/runs/{run_id}")
async def get_run(
    run_id: str,
    run_manager: RunManager = Depends(get_run_manager),
):
    """Poll a run's status and counters."""
    try:
        run = await run_manager.get_run(run_id)
    except RunNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from None
    return _run_to_dict(run)


# ---------------------------------------------------------------------------
# Classifications
# ---------------------------------------------------------------------------


@api_router.get("/users/{user_id}/classifications")
async def list_classifications(
    user_id: str,
    priority: str | None = Query(default=None, description="Effective priorities, e.g. '1,2'"),
    category: str | None = None,
    needs_reply: bool | None = None,
    include_handled: bool = False,
    include_snoozed: bool = False,
    limit: int = Query(default=50, ge=1, le=500),
    reader: ClassificationReader = Depends(get_reader),
):
    """Classified emails, newest first, filtered by effective priority."""
    views = await reader.list_views(
        user_id,
        priorities=_parse_priorities(priority),
        category=category,
        needs_reply=needs_reply,
        include_handled=include_handled,
        include_snoozed=include_snoozed,
        limit=limit,
    )
    return {"emails": [view.to_dict() for view in views], "count": len(views)}


@api_router.get("/emails/{email_id}/classification")
async def get_classification(
    email_id: str,
    reader: ClassificationReader = Depends(get_reader),
):
    view = await reader.get_view(email_id)
    if view is None:
        raise HTTPException(status_code=404, detail="Classification not found")
    return view.to_dict()


@api_router.get("/emails/{email_id}/history")
async def get_history(
    email_id: str,
    store: DatabaseStore = Depends(get_store),
):
    entries = await store.get_history(email_id)
    return {
        "history": [
            {
                **{k: v for k, v in asdict(entry).items() if k != "created_at"},
                "created_at": _iso(entry.created_at),
            }
            for entry in entries
        ]
    }


# ---------------------------------------------------------------------------
# Feedback
# ---------------------------------------------------------------------------


@api_router.patch("/emails/{email_id}/override")
async def override_classification(
    email_id: str,
    body: OverrideRequest,
    feedback: FeedbackService = Depends(get_feedback_service),
):
    """Apply a user correction. Automated passes never overwrite it."""
    try:
        outcome = await feedback.override(email_id, body.model_dump(exclude_unset=True))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from None
    except DatabaseError as e:
        raise HTTPException(status_code=500, detail="Failed to override classification") from e
    if outcome is None:
        raise HTTPException(status_code=404, detail="Email has no classification to override")

    return {
        **_classification_to_dict(outcome.after),
        "sender_relationship_inferred": outcome.relationship_inferred,
        "sender_vip_promoted": outcome.vip_promoted,
    }


@api_router.patch("/emails/{email_id}/handle")
async def set_handled(
    email_id: str,
    body: HandleRequest,
    feedback: FeedbackService = Depends(get_feedback_service),
):
    stored = await feedback.set_handled(email_id, body.handled)
    if stored is None:
        raise HTTPException(status_code=404, detail="Email has no classification")
    return _classification_to_dict(stored)


@api_router.patch("/emails/{email_id}/snooze")
async def snooze(
    email_id: str,
    body: SnoozeRequest,
    feedback: FeedbackService = Depends(get_feedback_service),
):
    stored = await feedback.snooze(email_id, body.snoozed_until)
    if stored is None:
        raise HTTPException(status_code=404, detail="Email not classified yet")
    return _classification_to_dict(stored)


@api_router.put("/users/{user_id}/senders/{address}")
async def update_sender(
    user_id: str,
    address: str,
    body: SenderUpdateRequest,
    store: DatabaseStore = Depends(get_store),
    feedback: FeedbackService = Depends(get_feedback_service),
):
    """Manually set a sender's VIP flag and/or relationship."""
    fields = body.model_dump(exclude_unset=True)
    if not fields:
        raise HTTPException(status_code=422, detail="Nothing to update")
    try:
        if "relationship" in fields:
            await feedback.set_relationship(user_id, address, fields["relationship"])
        if fields.get("is_vip") is not None:
            await feedback.set_vip(user_id, address, fields["is_vip"])
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from None

    profile = await store.get_sender_profile(user_id, address)
    return {
        "address": profile.address,
        "is_vip": profile.is_vip,
        "vip_reason": profile.vip_reason,
        "relationship": profile.relationship,
        "relationship_manual": profile.relationship_manual,
    }


# ---------------------------------------------------------------------------
# User rules
# ---------------------------------------------------------------------------


@api_router.get("/users/{user_id}/rules")
async def list_rules(
    user_id: str,
    store: DatabaseStore = Depends(get_store),
):
    rules = await store.get_rules(user_id, active_only=False)
    return {"rules": [_rule_to_dict(rule) for rule in rules]}


@api_router.post("/users/{user_id}/rules", status_code=201)
async def create_rule(
    user_id: str,
    body: CreateRuleRequest,
    store: DatabaseStore = Depends(get_store),
):
    data = body.model_dump()
    if not (data["sender_pattern"] or data["subject_contains"]) and (
        data["is_mailing_list"] is None and data["has_attachments"] is None
    ):
        raise HTTPException(status_code=422, detail="A rule needs at least one condition")
    if await store.get_user(user_id) is None:
        raise HTTPException(status_code=404, detail="User not found")

    rule = await store.create_rule(user_id, data.pop("name"), **data)
    return _rule_to_dict(rule)


@api_router.patch("/rules/{rule_id}")
async def update_rule(
    rule_id: int,
    body: UpdateRuleRequest,
    store: DatabaseStore = Depends(get_store),
):
    changes = body.model_dump(exclude_unset=True)
    for required in ("name", "mark_handled", "is_active"):
        if required in changes and changes[required] is None:
            raise HTTPException(status_code=422, detail=f"{required} cannot be null")
    rule = await store.update_rule(rule_id, changes)
    if rule is None:
        raise HTTPException(status_code=404, detail="Rule not found")
    return _rule_to_dict(rule)


@api_router.delete("/rules/{rule_id}", status_code=204)
async def delete_rule(
    rule_id: int,
    store: DatabaseStore = Depends(get_store),
):
    if not await store.delete_rule(rule_id):
        raise HTTPException(status_code=404, detail="Rule not found")
    return Response(status_code=204)
