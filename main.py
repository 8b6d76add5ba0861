from __future__ import annotations

import asyncio
import logging
from typing import Any

import psycopg
from dotenv import load_dotenv
from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, PlainTextResponse
from pydantic import BaseModel, Field

from auth import require_admin
from config import Settings, load_settings
from db import EntitlementStore
from generate import GenerationError, generate_reply, get_llm
from payments import PaymentProviderError, StripePayments
from webhooks import WebhookVerificationError, dispatch_event, reconcile_events, verify_event

load_dotenv()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("oneclick")


class GenerateRequest(BaseModel):
    emailText: str | None = None
    type: str | None = None


class GenerateResponse(BaseModel):
    reply: str


class UserRequest(BaseModel):
    userId: str | None = None


class CheckoutResponse(BaseModel):
    url: str


class CheckProResponse(BaseModel):
    isPro: bool


class ReconcileRequest(BaseModel):
    limit: int = Field(default=50, ge=1, le=500)


router = APIRouter()


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _require_user_id(payload: UserRequest | None) -> str:
    user_id = (payload.userId or "").strip() if payload else ""
    if not user_id:
        raise HTTPException(status_code=400, detail="userId is required.")
    return user_id


def _get_llm(request: Request) -> Any:
    llm = request.app.state.llm
    if llm is None:
        llm = get_llm(_settings(request))
        request.app.state.llm = llm
    return llm


@router.get("/", response_class=PlainTextResponse)
def root() -> str:
    return "OK"


@router.get("/health")
def health_check() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/generate", response_model=GenerateResponse)
def generate(raw_request: Request, payload: GenerateRequest | None = None) -> GenerateResponse:
    payload = payload or GenerateRequest()
    try:
        reply = generate_reply(_get_llm(raw_request), payload.emailText, payload.type)
    except GenerationError as exc:
        logger.error("LLM generation failed: %s", exc)
        raise HTTPException(
            status_code=500,
            detail={"message": "AI generation failed", "error": str(exc)},
        ) from exc
    return GenerateResponse(reply=reply)


@router.post("/create-checkout-session", response_model=CheckoutResponse)
def create_checkout_session(
    raw_request: Request, payload: UserRequest | None = None
) -> CheckoutResponse:
    user_id = _require_user_id(payload)
    try:
        url = raw_request.app.state.payments.create_checkout_session(user_id)
    except PaymentProviderError as exc:
        logger.error("Stripe checkout failed for user %s: %s", user_id, exc)
        raise HTTPException(
            status_code=500,
            detail={"message": "Stripe failed", "error": str(exc)},
        ) from exc
    return CheckoutResponse(url=url)


@router.post("/webhook")
async def stripe_webhook(request: Request) -> dict[str, bool]:
    settings = _settings(request)
    raw_body = await request.body()
    try:
        event = verify_event(
            raw_body,
            request.headers.get("stripe-signature"),
            settings.stripe_webhook_secret or "",
            settings.stripe_webhook_tolerance_seconds,
        )
    except WebhookVerificationError as exc:
        logger.warning("Webhook signature verification failed: %s", exc)
        raise HTTPException(status_code=400, detail=f"Webhook Error: {exc}") from exc

    result = await asyncio.to_thread(dispatch_event, event, request.app.state.store)
    logger.debug("Webhook event %s handled: %s", result.event_id, result.action)
    return {"received": True}


@router.post("/check-pro", response_model=CheckProResponse)
def check_pro(raw_request: Request, payload: UserRequest | None = None) -> CheckProResponse:
    user_id = _require_user_id(payload)
    try:
        record = raw_request.app.state.store.get_entitlement(user_id)
    except psycopg.Error as exc:
        logger.error("Entitlement lookup failed for user %s: %s", user_id, exc)
        return CheckProResponse(isPro=False)
    return CheckProResponse(isPro=bool(record and record.get("is_pro")))


@router.get("/success", response_class=HTMLResponse)
def payment_success() -> str:
    return "<p>Payment successful. You can close this tab.</p>"


@router.get("/cancel", response_class=HTMLResponse)
def payment_cancel() -> str:
    return "<p>Payment canceled.</p>"


@router.get("/admin/unresolved-events")
def list_unresolved(raw_request: Request, limit: int = 50) -> dict[str, Any]:
    require_admin(raw_request, _settings(raw_request))
    try:
        events = raw_request.app.state.store.list_unresolved_events(max(1, min(limit, 500)))
    except psycopg.Error as exc:
        logger.exception("Listing unresolved events failed.")
        raise HTTPException(status_code=503, detail="Entitlement store unavailable.") from exc
    return {"events": events}


@router.post("/admin/reconcile")
def reconcile(raw_request: Request, payload: ReconcileRequest | None = None) -> dict[str, Any]:
    require_admin(raw_request, _settings(raw_request))
    limit = payload.limit if payload else 50
    try:
        summary = reconcile_events(
            raw_request.app.state.store, raw_request.app.state.payments, limit
        )
    except psycopg.Error as exc:
        logger.exception("Reconciliation aborted by a store error.")
        raise HTTPException(status_code=503, detail="Entitlement store unavailable.") from exc
    return summary.model_dump()


def create_app(
    settings: Settings | None = None,
    *,
    store: Any = None,
    payments: Any = None,
    llm: Any = None,
) -> FastAPI:
    settings = settings or load_settings()
    app = FastAPI(title="OneClick Reply Backend")
    app.state.settings = settings
    app.state.store = store if store is not None else EntitlementStore.from_settings(settings)
    app.state.payments = payments if payments is not None else StripePayments(settings)
    app.state.llm = llm

    allow_all = "*" in settings.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=not allow_all,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


def run() -> None:
    import uvicorn

    settings = load_settings()
    app = create_app(settings)
    logger.info("Server running on port %s", settings.port)
    uvicorn.run(app, host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    run()
