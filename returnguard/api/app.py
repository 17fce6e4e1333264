"""
returnguard/api/app.py
=======================
HTTP API — ReturnGuard

Responsibility:
    - Expose the engine's external interface under /api/v1
    - Accept item photos as multipart uploads (.jpg, .jpeg, .png, .webp)
    - Map engine errors to HTTP status codes:
          UnknownEntity        → 404
          InvalidTransition    → 409
          InvalidPolicy        → 422
          ValueError           → 422
          AnalysisUnavailable  → 503 (body carries the degraded return)
          AuditWriteError      → 500
    - POST return decisions to WEBHOOK_URL when configured

The UI is a pure consumer of these routes; it never holds authoritative
state.
"""

import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Any

import aiohttp
from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from returnguard.config import load_settings
from returnguard.engine import ReturnGuardEngine
from returnguard.errors import (
    AnalysisUnavailable,
    AuditWriteError,
    InvalidPolicy,
    InvalidTransition,
    UnknownEntity,
)
from returnguard.models import ReturnRecord, ReturnRequest

logger = logging.getLogger("returnguard.api")

ALLOWED_IMAGE_EXTENSIONS: set[str] = {".jpg", ".jpeg", ".png", ".webp"}
MAX_IMAGE_BYTES: int = 10 * 1024 * 1024


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class ReturnHistoryIn(BaseModel):
    return_id: str
    amount: float
    filed_at: datetime
    reason: str = ""


class CustomerIn(BaseModel):
    customer_id: str
    name: str = ""
    flags: list[str] = Field(default_factory=list)
    ml_confidence: float | None = None
    risk_score: int | None = None
    returns: list[ReturnHistoryIn] = Field(default_factory=list)


class FlagIn(BaseModel):
    flag: str
    actor: str = "operator"


class ReturnIn(BaseModel):
    customer_id: str
    reason: str
    amount: float
    images: list[str] = Field(default_factory=list)


class DecisionIn(BaseModel):
    decision: str | None = None
    reason: str | None = None
    actor: str = "operator"


class SessionIn(BaseModel):
    customer_id: str


class MessageIn(BaseModel):
    text: str


class SessionActionIn(BaseModel):
    actor: str = "operator"
    reason: str


class PolicyIn(BaseModel):
    fields: dict[str, Any]
    actor: str = "risk_manager"


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------


async def notify_webhook(url: str | None, payload: dict[str, Any]) -> None:
    """POST a decision to the configured webhook. Failures are logged only."""
    if not url:
        logger.debug("WEBHOOK_URL not configured — skipping POST.")
        return
    try:
        async with aiohttp.ClientSession() as session:
            async with session.post(
                url,
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=aiohttp.ClientTimeout(total=10),
            ) as resp:
                logger.info("Webhook POST to %s — status %d", url, resp.status)
    except Exception as exc:
        logger.error("Webhook POST failed: %s", exc)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(engine: ReturnGuardEngine | None = None) -> FastAPI:
    """Build the FastAPI app around an engine (a configured one by default)."""
    if engine is None:
        engine = ReturnGuardEngine.from_settings(load_settings())

    app = FastAPI(
        title="ReturnGuard",
        description="Fraud-risk decisions for e-commerce returns and support chat.",
        version="1.0.0",
    )
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.getenv("CORS_ALLOW_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---- error mapping ---------------------------------------------------

    @app.exception_handler(UnknownEntity)
    async def _unknown_entity(request: Request, exc: UnknownEntity):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidTransition)
    async def _invalid_transition(request: Request, exc: InvalidTransition):
        return JSONResponse(
            status_code=409,
            content={"detail": str(exc), "current": exc.current, "requested": exc.requested},
        )

    @app.exception_handler(InvalidPolicy)
    async def _invalid_policy(request: Request, exc: InvalidPolicy):
        return JSONResponse(
            status_code=422,
            content={"detail": exc.message, "constraint": exc.constraint},
        )

    @app.exception_handler(ValueError)
    async def _bad_value(request: Request, exc: ValueError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(AnalysisUnavailable)
    async def _analysis_unavailable(request: Request, exc: AnalysisUnavailable):
        degraded = exc.return_request.to_dict() if exc.return_request else None
        return JSONResponse(
            status_code=503,
            content={"detail": str(exc), "return": degraded},
        )

    @app.exception_handler(AuditWriteError)
    async def _audit_failure(request: Request, exc: AuditWriteError):
        logger.error("Decision aborted: %s", exc)
        return JSONResponse(status_code=500, content={"detail": "Audit write failed; decision aborted."})

    webhook_url = engine.settings.webhook_url

    async def _decided(ret: ReturnRequest) -> dict[str, Any]:
        payload = ret.to_dict()
        await notify_webhook(webhook_url, {"event": "return_decision", "return": payload})
        return payload

    # ---- customers -------------------------------------------------------

    @app.post("/api/v1/customers", status_code=201)
    def register_customer(body: CustomerIn):
        history = [
            ReturnRecord(
                return_id=item.return_id,
                amount=item.amount,
                filed_at=_as_utc(item.filed_at),
                reason=item.reason,
            )
            for item in body.returns
        ]
        customer = engine.register_customer(
            body.customer_id,
            name=body.name,
            returns=history,
            flags=body.flags,
            ml_confidence=body.ml_confidence,
            risk_score=body.risk_score,
        )
        return customer.to_dict()

    @app.get("/api/v1/customers/flagged")
    def flagged_customers(band: str | None = None, status: str | None = None):
        return engine.flagged_customers(band=band, status=status)

    @app.get("/api/v1/customers/{customer_id}/risk")
    def customer_risk(customer_id: str):
        return engine.get_customer_risk(customer_id)

    @app.post("/api/v1/customers/{customer_id}/risk/refresh")
    def refresh_risk(customer_id: str):
        return engine.refresh_customer_risk(customer_id)

    @app.post("/api/v1/customers/{customer_id}/flags")
    def add_flag(customer_id: str, body: FlagIn):
        return engine.add_customer_flag(customer_id, body.flag, actor=body.actor).to_dict()

    # ---- returns ---------------------------------------------------------

    @app.post("/api/v1/returns", status_code=201)
    async def submit_return(body: ReturnIn):
        ret = await asyncio.to_thread(
            engine.submit_return, body.customer_id, body.reason, body.amount, body.images,
        )
        return await _decided(ret)

    @app.get("/api/v1/returns/{return_id}")
    def get_return(return_id: str):
        return engine.returns.get(return_id).to_dict()

    @app.post("/api/v1/returns/{return_id}/images")
    async def submit_image(return_id: str, image_file: UploadFile = File(...)):
        if image_file is None or image_file.filename is None:
            raise HTTPException(status_code=400, detail="Image file is required.")

        ext = os.path.splitext(image_file.filename)[1].lower()
        if ext not in ALLOWED_IMAGE_EXTENSIONS:
            raise HTTPException(
                status_code=415,
                detail=f"Unsupported image type {ext!r}; allowed: {sorted(ALLOWED_IMAGE_EXTENSIONS)}",
            )

        try:
            image_bytes = await image_file.read()
        except Exception:
            raise HTTPException(status_code=400, detail="Failed to read uploaded file.")
        if len(image_bytes) > MAX_IMAGE_BYTES:
            raise HTTPException(status_code=413, detail="Image exceeds 10 MB.")

        logger.info("Image received for %s: %s (%.1f KB)", return_id, image_file.filename, len(image_bytes) / 1024)

        try:
            verdict = await asyncio.to_thread(
                engine.submit_image_for_analysis, return_id, image_bytes,
            )
        except AnalysisUnavailable as exc:
            if exc.return_request is not None:
                await _decided(exc.return_request)
            raise

        ret = engine.returns.get(return_id)
        return {"verdict": verdict.to_dict(), "return": await _decided(ret)}

    @app.post("/api/v1/returns/{return_id}/decision")
    async def decide_return(return_id: str, body: DecisionIn):
        ret = await asyncio.to_thread(
            engine.decide_return, return_id, body.decision, body.reason, body.actor,
        )
        return await _decided(ret)

    # ---- chat ------------------------------------------------------------

    @app.post("/api/v1/chat/sessions", status_code=201)
    def open_session(body: SessionIn):
        return engine.open_chat_session(body.customer_id).to_dict()

    @app.get("/api/v1/chat/sessions/{session_id}")
    def get_session(session_id: str):
        return engine.sessions.get(session_id).to_dict()

    @app.post("/api/v1/chat/sessions/{session_id}/messages")
    def post_message(session_id: str, body: MessageIn):
        message = engine.post_chat_message(session_id, body.text)
        payload = message.to_dict()
        payload["session_status"] = engine.sessions.get(session_id).status.value
        return payload

    @app.post("/api/v1/chat/sessions/{session_id}/resolve")
    def resolve_session(session_id: str, body: SessionActionIn):
        return engine.resolve_chat_session(session_id, body.actor, body.reason).to_dict()

    @app.post("/api/v1/chat/sessions/{session_id}/escalate")
    def escalate_session(session_id: str, body: SessionActionIn):
        return engine.escalate_chat_session(session_id, body.actor, body.reason).to_dict()

    @app.get("/api/v1/chat/analytics")
    def chat_analytics():
        return engine.chat_analytics()

    # ---- policy ----------------------------------------------------------

    @app.get("/api/v1/policy")
    def get_policy():
        return engine.get_policy().to_dict()

    @app.put("/api/v1/policy")
    def update_policy(body: PolicyIn):
        return engine.update_policy(body.fields, actor=body.actor).to_dict()

    @app.post("/api/v1/policy/reset")
    def reset_policy(actor: str = "risk_manager"):
        return engine.reset_policy(actor=actor).to_dict()

    # ---- audit & dashboard -----------------------------------------------

    @app.get("/api/v1/audit")
    def recent_audit(limit: int = 20):
        return [entry.to_dict() for entry in engine.recent_audit(limit)]

    @app.get("/api/v1/audit/{kind}/{entity_id}")
    def audit_trail(kind: str, entity_id: str):
        return [entry.to_dict() for entry in engine.get_audit_trail(kind, entity_id)]

    @app.get("/api/v1/dashboard")
    def dashboard():
        return engine.dashboard_stats()

    return app


def _as_utc(value: datetime) -> datetime:
    """Naive timestamps are taken as UTC."""
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
