"""Stripe webhook verification, entitlement dispatch and reconciliation.

The provider retries on non-2xx responses, so once a delivery is authentic
every outcome is acknowledged. Deliveries that could not grant pro (no
``metadata.userId``, or a store error) go to the ``unresolved_events`` outbox
where ``reconcile_events`` can pick them up later.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import psycopg
import stripe
from pydantic import BaseModel

from payments import PaymentProviderError

logger = logging.getLogger("oneclick.webhooks")

CHECKOUT_COMPLETED = "checkout.session.completed"

ACTION_IGNORED = "ignored"
ACTION_GRANTED = "granted"
ACTION_MISSING_USER = "missing_user"
ACTION_STORE_FAILED = "store_failed"


class WebhookVerificationError(ValueError):
    pass


class Store(Protocol):
    def grant_pro(self, user_id: str) -> None: ...

    def record_unresolved_event(self, **kwargs: Any) -> bool: ...

    def list_unresolved_events(self, limit: int = 50) -> list[dict[str, Any]]: ...

    def mark_event_resolved(self, event_id: str, user_id: str) -> None: ...


class SessionLookup(Protocol):
    def retrieve_session(self, session_id: str) -> dict[str, Any]: ...


class WebhookResult(BaseModel):
    event_id: str | None
    event_type: str
    action: str
    user_id: str | None = None


class ReconcileSummary(BaseModel):
    checked: int = 0
    resolved: list[str] = []
    pending: list[str] = []


def verify_event(
    raw_body: bytes,
    signature_header: str | None,
    secret: str,
    tolerance: int = 300,
) -> dict[str, Any]:
    """Check the Stripe-Signature header against the raw bytes, then parse.

    Nothing in the body is trusted until the signature matches.
    """
    if not signature_header:
        raise WebhookVerificationError("Missing Stripe-Signature header.")
    try:
        payload = raw_body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise WebhookVerificationError("Payload is not valid UTF-8.") from exc
    try:
        stripe.WebhookSignature.verify_header(payload, signature_header, secret, tolerance)
    except stripe.SignatureVerificationError as exc:
        raise WebhookVerificationError(str(exc)) from exc

    try:
        event = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise WebhookVerificationError("Invalid JSON payload.") from exc
    if not isinstance(event, dict):
        raise WebhookVerificationError("Invalid JSON payload.")
    return event


def _session_object(event: dict[str, Any]) -> dict[str, Any]:
    data = event.get("data") or {}
    obj = data.get("object") if isinstance(data, dict) else None
    return obj if isinstance(obj, dict) else {}


def _metadata_user_id(obj: dict[str, Any]) -> str | None:
    metadata = obj.get("metadata") or {}
    if not isinstance(metadata, dict):
        return None
    return _optional_str(metadata.get("userId"))


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value).strip() or None


def _record_unresolved(
    store: Store,
    event_id: str | None,
    event: dict[str, Any],
    session: dict[str, Any],
    user_id: str | None,
    reason: str,
) -> None:
    if not event_id:
        logger.error("Cannot queue event without an id for reconciliation: %s", reason)
        return
    try:
        store.record_unresolved_event(
            event_id=event_id,
            event_type=str(event.get("type") or ""),
            session_id=_optional_str(session.get("id")),
            user_id=user_id,
            reason=reason,
            raw=event,
        )
    except psycopg.Error:
        logger.exception("Failed to queue event %s for reconciliation.", event_id)


def dispatch_event(event: dict[str, Any], store: Store) -> WebhookResult:
    event_id = _optional_str(event.get("id"))
    event_type = str(event.get("type") or "")

    if event_type != CHECKOUT_COMPLETED:
        logger.info("Ignoring webhook event %s of type %s", event_id, event_type or "unknown")
        return WebhookResult(event_id=event_id, event_type=event_type, action=ACTION_IGNORED)

    session = _session_object(event)
    user_id = _metadata_user_id(session)
    if not user_id:
        logger.warning(
            "Checkout session %s completed without metadata.userId; entitlement not granted.",
            session.get("id"),
        )
        _record_unresolved(store, event_id, event, session, None, "missing metadata.userId")
        return WebhookResult(event_id=event_id, event_type=event_type, action=ACTION_MISSING_USER)

    try:
        store.grant_pro(user_id)
    except psycopg.Error as exc:
        logger.error(
            "Failed to grant pro to user %s for session %s: %s",
            user_id,
            session.get("id"),
            exc,
            exc_info=True,
        )
        _record_unresolved(store, event_id, event, session, user_id, f"store error: {exc}")
        return WebhookResult(
            event_id=event_id,
            event_type=event_type,
            action=ACTION_STORE_FAILED,
            user_id=user_id,
        )

    logger.info("Granted pro to user %s via session %s", user_id, session.get("id"))
    return WebhookResult(
        event_id=event_id,
        event_type=event_type,
        action=ACTION_GRANTED,
        user_id=user_id,
    )


def _paid_session_user(session: dict[str, Any]) -> str | None:
    if session.get("payment_status") != "paid":
        return None
    user_id = _metadata_user_id(session)
    if user_id:
        return user_id
    reference = str(session.get("client_reference_id") or "").strip()
    return reference or None


def reconcile_events(store: Store, payments: SessionLookup, limit: int = 50) -> ReconcileSummary:
    """Retry unresolved completions against the provider's view of the session.

    Store and provider errors propagate to the caller; events already resolved
    in this pass stay resolved.
    """
    summary = ReconcileSummary()
    for row in store.list_unresolved_events(limit):
        summary.checked += 1
        event_id = row["event_id"]
        session_id = row.get("session_id")
        if not session_id:
            summary.pending.append(event_id)
            continue
        try:
            session = payments.retrieve_session(session_id)
        except PaymentProviderError as exc:
            logger.warning("Could not retrieve session %s: %s", session_id, exc)
            summary.pending.append(event_id)
            continue

        user_id = _paid_session_user(session)
        if not user_id:
            logger.info("Session %s still has no paid user; leaving event %s open.", session_id, event_id)
            summary.pending.append(event_id)
            continue

        store.grant_pro(user_id)
        store.mark_event_resolved(event_id, user_id)
        logger.info("Reconciled event %s: granted pro to user %s", event_id, user_id)
        summary.resolved.append(event_id)
    return summary
