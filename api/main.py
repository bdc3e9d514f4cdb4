"""FastAPI server for ModelFlow."""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Optional, Dict, Any, List

from fastapi import FastAPI, HTTPException, Header, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from modelflow import (
    CustomLimits,
    DocumentStore,
    InferenceRelay,
    InvalidStateTransitionError,
    MetricsCollector,
    OpenAICompatibleRelay,
    PlanNotRequestableError,
    QuotaExceededError,
    RelayError,
    RequestNotFoundError,
    RequestStatus,
    SQLiteDocumentStore,
    StoreUnavailableError,
    UpgradeRequest,
    UpgradeWorkflow,
    UsageRecord,
    UsageStore,
    all_plans,
    evaluate,
    get_models,
    is_owner_identity,
    quota_summary,
    resolve_user_plan,
)
from modelflow import __version__


def _get_api_key() -> Optional[str]:
    return os.getenv("MODELFLOW_API_KEY")


def _require_api_key(x_api_key: Optional[str] = Header(default=None)) -> None:
    api_key = _get_api_key()
    if api_key and x_api_key != api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")


def _require_owner(x_user_email: Optional[str] = Header(default=None)) -> str:
    # Identity headers are only trusted from callers holding the API key.
    if not _get_api_key():
        raise HTTPException(status_code=403, detail="Admin routes require MODELFLOW_API_KEY")
    if not is_owner_identity(x_user_email):
        raise HTTPException(status_code=403, detail="Administrator access required")
    return x_user_email


def _trusted_email(email: Optional[str]) -> Optional[str]:
    """Client-supplied email, or None when no API key authenticates the caller."""
    return email if _get_api_key() else None


@lru_cache(maxsize=1)
def get_document_store() -> DocumentStore:
    return SQLiteDocumentStore(db_path=os.getenv("MODELFLOW_DB_PATH", "modelflow.db"))


@lru_cache(maxsize=1)
def get_relay() -> InferenceRelay:
    return OpenAICompatibleRelay()


@lru_cache(maxsize=1)
def get_metrics() -> MetricsCollector:
    return MetricsCollector()


def _usage_store(
    store: DocumentStore = Depends(get_document_store),
    metrics: MetricsCollector = Depends(get_metrics),
) -> UsageStore:
    return UsageStore(
        store,
        on_store_error=lambda exc: metrics.record_store_error(exc.operation, exc.path, str(exc)),
    )


def _workflow(store: DocumentStore = Depends(get_document_store)) -> UpgradeWorkflow:
    return UpgradeWorkflow(store)


app = FastAPI(title="ModelFlow API", version=__version__)


@app.exception_handler(RequestNotFoundError)
def _not_found(request: Request, exc: RequestNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": str(exc)})


@app.exception_handler(InvalidStateTransitionError)
def _invalid_transition(request: Request, exc: InvalidStateTransitionError) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={"error": str(exc), "status": exc.status.value},
    )


@app.exception_handler(PlanNotRequestableError)
def _not_requestable(request: Request, exc: PlanNotRequestableError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(QuotaExceededError)
def _quota_exceeded(request: Request, exc: QuotaExceededError) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"error": str(exc), "kind": exc.kind.value, "limit_value": exc.limit_value},
    )


@app.exception_handler(StoreUnavailableError)
def _store_unavailable(request: Request, exc: StoreUnavailableError) -> JSONResponse:
    return JSONResponse(status_code=503, content={"error": "Storage temporarily unavailable"})


class HistoryMessage(BaseModel):
    role: str = Field(..., pattern="^(user|assistant)$")
    content: str


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1)
    history: List[HistoryMessage] = Field(default_factory=list)
    model: Optional[str] = None


class ChatResponse(BaseModel):
    response: str
    model: str


class LimitsModel(BaseModel):
    responses_per_chat: Optional[int] = Field(None, ge=0)
    chats_per_day: Optional[int] = Field(None, ge=0)

    def to_limits(self) -> Optional[CustomLimits]:
        limits = CustomLimits(
            responses_per_chat=self.responses_per_chat,
            chats_per_day=self.chats_per_day,
        )
        return None if limits.is_empty() else limits


class ResponseCountRequest(BaseModel):
    was_advanced_model: bool = False


class EvaluateRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    email: Optional[str] = None
    is_new_chat: bool = False


class UpgradeSubmitRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    user_email: Optional[str] = None
    requested_plan_id: str
    reason: str = Field("", max_length=2000)
    custom_limits: Optional[LimitsModel] = None


class ApproveRequest(BaseModel):
    override_limits: Optional[LimitsModel] = None


class DenyRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=2000)


def _usage_dict(usage: UsageRecord) -> Dict[str, Any]:
    return usage.to_dict()


def _request_dict(request: UpgradeRequest) -> Dict[str, Any]:
    return request.to_dict()


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok", "version": __version__}


@app.post("/api/chat", response_model=ChatResponse, dependencies=[Depends(_require_api_key)])
def chat(req: ChatRequest, relay: InferenceRelay = Depends(get_relay)):
    models = get_models()
    model_id = req.model if req.model in models.values() else models["standard"]
    history = [m.model_dump() for m in req.history]

    try:
        reply = relay.send_message(req.message, history, model_id)
    except RelayError as exc:
        status = 504 if exc.timed_out else 502
        return JSONResponse(status_code=status, content={"error": str(exc)})

    return ChatResponse(response=reply.text, model=reply.model)


@app.get("/plans")
def plans() -> List[Dict[str, Any]]:
    return [
        {
            "id": p.id.value,
            "name": p.name,
            "display_name": p.display_name,
            "icon": p.icon,
            "color": p.color,
            "model_id": p.model_id,
            "advanced_model_id": p.advanced_model_id,
            "responses_per_chat": p.responses_per_chat,
            "chats_per_day": p.chats_per_day,
            "advanced_model_uses_per_chat": p.advanced_model_uses_per_chat,
            "requires_approval": p.requires_approval,
            "features": list(p.features),
        }
        for p in all_plans()
    ]


@app.get("/usage/{user_id}", dependencies=[Depends(_require_api_key)])
def get_usage(
    user_id: str,
    email: Optional[str] = None,
    usage_store: UsageStore = Depends(_usage_store),
    workflow: UpgradeWorkflow = Depends(_workflow),
) -> Dict[str, Any]:
    plan = resolve_user_plan(_trusted_email(email), workflow.get_plan_assignment(user_id))
    usage = usage_store.get_usage(user_id)
    return {
        "usage": _usage_dict(usage),
        "quota": quota_summary(plan, usage).to_dict(),
    }


@app.post("/usage/{user_id}/chats", dependencies=[Depends(_require_api_key)])
def start_chat(
    user_id: str,
    email: Optional[str] = None,
    usage_store: UsageStore = Depends(_usage_store),
    workflow: UpgradeWorkflow = Depends(_workflow),
) -> Dict[str, Any]:
    plan = resolve_user_plan(_trusted_email(email), workflow.get_plan_assignment(user_id))
    usage = usage_store.get_usage(user_id)
    decision = evaluate(plan, usage, is_new_chat=True)
    if not decision.allowed:
        raise decision.to_error()
    if plan.is_owner:
        return _usage_dict(usage)
    return _usage_dict(usage_store.increment_chat_start(user_id))


@app.post("/usage/{user_id}/responses", dependencies=[Depends(_require_api_key)])
def count_response(
    user_id: str,
    req: ResponseCountRequest,
    usage_store: UsageStore = Depends(_usage_store),
) -> Dict[str, Any]:
    return _usage_dict(usage_store.increment_response(user_id, req.was_advanced_model))


@app.post("/entitlements/evaluate", dependencies=[Depends(_require_api_key)])
def evaluate_entitlement(
    req: EvaluateRequest,
    usage_store: UsageStore = Depends(_usage_store),
    workflow: UpgradeWorkflow = Depends(_workflow),
    metrics: MetricsCollector = Depends(get_metrics),
) -> Dict[str, Any]:
    plan = resolve_user_plan(_trusted_email(req.email), workflow.get_plan_assignment(req.user_id))
    usage = usage_store.get_usage(req.user_id)
    decision = evaluate(plan, usage, req.is_new_chat)

    metrics.record_decision(
        req.user_id,
        plan.id.value,
        decision.allowed,
        model_id=getattr(decision, "model_id", None),
        denial_kind=None if decision.allowed else decision.kind.value,
        is_fallback=getattr(decision, "is_fallback", False),
    )

    if decision.allowed:
        return {
            "allowed": True,
            "plan_id": plan.id.value,
            "model_id": decision.model_id,
            "is_advanced_model": decision.is_advanced_model,
            "is_fallback": decision.is_fallback,
        }
    return {
        "allowed": False,
        "plan_id": plan.id.value,
        "kind": decision.kind.value,
        "limit_value": decision.limit_value,
        "message": decision.message,
    }


@app.post("/requests", status_code=201, dependencies=[Depends(_require_api_key)])
def submit_request(
    req: UpgradeSubmitRequest,
    workflow: UpgradeWorkflow = Depends(_workflow),
) -> Dict[str, Any]:
    request = workflow.submit_request(
        req.user_id,
        req.requested_plan_id,
        reason=req.reason,
        custom_limits=req.custom_limits.to_limits() if req.custom_limits else None,
        user_email=req.user_email,
    )
    return _request_dict(request)


@app.get("/users/{user_id}/requests", dependencies=[Depends(_require_api_key)])
def user_requests(user_id: str, workflow: UpgradeWorkflow = Depends(_workflow)) -> List[Dict[str, Any]]:
    return [_request_dict(r) for r in workflow.get_user_requests(user_id)]


@app.get("/admin/requests", dependencies=[Depends(_require_api_key)])
def admin_requests(
    status: str = "pending",
    admin: str = Depends(_require_owner),
    workflow: UpgradeWorkflow = Depends(_workflow),
) -> List[Dict[str, Any]]:
    if status == "all":
        wanted = None
    else:
        try:
            wanted = RequestStatus(status)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
    return [_request_dict(r) for r in workflow.list_requests(wanted)]


@app.get("/admin/stats", dependencies=[Depends(_require_api_key)])
def admin_stats(
    admin: str = Depends(_require_owner),
    workflow: UpgradeWorkflow = Depends(_workflow),
    metrics: MetricsCollector = Depends(get_metrics),
) -> Dict[str, Any]:
    return {
        "requests": workflow.request_stats(),
        "metrics": metrics.get_stats(),
    }


@app.post("/admin/requests/{request_id}/approve", dependencies=[Depends(_require_api_key)])
def approve_request(
    request_id: str,
    req: Optional[ApproveRequest] = None,
    admin: str = Depends(_require_owner),
    workflow: UpgradeWorkflow = Depends(_workflow),
) -> Dict[str, Any]:
    overrides = req.override_limits.to_limits() if req and req.override_limits else None
    return _request_dict(workflow.approve(request_id, admin, override_limits=overrides))


@app.post("/admin/requests/{request_id}/deny", dependencies=[Depends(_require_api_key)])
def deny_request(
    request_id: str,
    req: Optional[DenyRequest] = None,
    admin: str = Depends(_require_owner),
    workflow: UpgradeWorkflow = Depends(_workflow),
) -> Dict[str, Any]:
    return _request_dict(workflow.deny(request_id, admin, reason=req.reason if req else None))


@app.post("/admin/users/{user_id}/revoke", dependencies=[Depends(_require_api_key)])
def revoke_plan(
    user_id: str,
    admin: str = Depends(_require_owner),
    workflow: UpgradeWorkflow = Depends(_workflow),
) -> Dict[str, Any]:
    return workflow.revoke(user_id, admin).to_dict()
