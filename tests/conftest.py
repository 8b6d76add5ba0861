import hashlib
import hmac
import json
import time
from datetime import datetime, timezone

import psycopg
import pytest
from fastapi.testclient import TestClient
from langchain_core.messages import AIMessage

from config import Settings
from main import create_app
from payments import PaymentProviderError

WEBHOOK_SECRET = "whsec_test_secret"
ADMIN_SECRET = "admin-secret-for-tests"


class FakeStore:
    """In-memory stand-in for EntitlementStore with switchable failures."""

    def __init__(self):
        self.entitlements = {}
        self.unresolved = {}
        self.grant_calls = []
        self.read_calls = []
        self.fail_grant = False
        self.fail_read = False
        self.fail_record = False
        self.fail_list = False

    def grant_pro(self, user_id):
        self.grant_calls.append(user_id)
        if self.fail_grant:
            raise psycopg.OperationalError("connection timeout expired")
        self.entitlements[user_id] = {
            "user_id": user_id,
            "is_pro": True,
            "updated_at": datetime.now(timezone.utc),
        }

    def get_entitlement(self, user_id):
        self.read_calls.append(user_id)
        if self.fail_read:
            raise psycopg.OperationalError("connection timeout expired")
        return self.entitlements.get(user_id)

    def record_unresolved_event(self, *, event_id, event_type, session_id, user_id, reason, raw):
        if self.fail_record:
            raise psycopg.OperationalError("connection timeout expired")
        if event_id in self.unresolved:
            return False
        self.unresolved[event_id] = {
            "event_id": event_id,
            "event_type": event_type,
            "session_id": session_id,
            "user_id": user_id,
            "reason": reason,
            "raw": raw,
            "resolved_at": None,
        }
        return True

    def list_unresolved_events(self, limit=50):
        if self.fail_list:
            raise psycopg.OperationalError("connection timeout expired")
        rows = [row for row in self.unresolved.values() if row["resolved_at"] is None]
        return [
            {key: row[key] for key in ("event_id", "event_type", "session_id", "user_id", "reason")}
            for row in rows[:limit]
        ]

    def mark_event_resolved(self, event_id, user_id):
        row = self.unresolved[event_id]
        row["resolved_at"] = datetime.now(timezone.utc)
        row["user_id"] = user_id


class FakePayments:
    def __init__(self):
        self.created = []
        self.sessions = {}
        self.fail = False

    def create_checkout_session(self, user_id):
        if self.fail:
            raise PaymentProviderError("card_declined: provider unavailable")
        self.created.append(user_id)
        return f"https://checkout.stripe.com/c/pay/cs_test_{user_id}"

    def retrieve_session(self, session_id):
        if session_id not in self.sessions:
            raise PaymentProviderError(f"No such checkout.session: '{session_id}'")
        return self.sessions[session_id]


class FakeLLM:
    def __init__(self, content="Thanks for reaching out."):
        self.content = content
        self.calls = []
        self.error = None

    def invoke(self, messages):
        self.calls.append(messages)
        if self.error:
            raise self.error
        return AIMessage(content=self.content)


@pytest.fixture
def settings():
    return Settings(
        public_base_url="https://api.example.com",
        database_url="postgresql://localhost/oneclick_test",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        llm_api_key="test-llm-key",
        admin_secret=ADMIN_SECRET,
    )


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def payments():
    return FakePayments()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def client(settings, store, payments, llm):
    app = create_app(settings, store=store, payments=payments, llm=llm)
    return TestClient(app)


@pytest.fixture
def sign():
    def _sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
        timestamp = int(time.time()) if timestamp is None else timestamp
        signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
        signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={signature}"

    return _sign


@pytest.fixture
def make_event():
    def _make_event(
        event_type="checkout.session.completed",
        user_id="u1",
        event_id="evt_1",
        session_id="cs_test_1",
    ) -> bytes:
        metadata = {"userId": user_id} if user_id is not None else {}
        event = {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "data": {
                "object": {
                    "id": session_id,
                    "object": "checkout.session",
                    "payment_status": "paid",
                    "metadata": metadata,
                }
            },
        }
        return json.dumps(event).encode("utf-8")

    return _make_event


@pytest.fixture
def post_webhook(client, sign):
    def _post(body: bytes, signature: str | None = None):
        headers = {"content-type": "application/json"}
        headers["stripe-signature"] = sign(body) if signature is None else signature
        return client.post("/webhook", content=body, headers=headers)

    return _post
