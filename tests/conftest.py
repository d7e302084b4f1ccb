"""
Pytest configuration and fixtures.

Provides shared fixtures for:
- A fresh SQLite ledger database per test
- Credit ledger, usage recorder and repositories
- Fake AI provider and in-memory object store
- Stripe-signed webhook payloads
- FastAPI test client running the real lifespan against a temp database
"""

import asyncio
import json
import os
import tempfile
import time
from datetime import timedelta
from pathlib import Path

# Environment for the module-level settings read when magicstage.main is imported
_TEST_DATA_DIR = tempfile.mkdtemp(prefix="magicstage-tests-")
os.environ.setdefault("DATABASE_PATH", os.path.join(_TEST_DATA_DIR, "ledger.db"))
os.environ.setdefault("OBJECT_STORE_ROOT_PATH", os.path.join(_TEST_DATA_DIR, "uploads"))
os.environ.setdefault("LOGGING_JSON_OUTPUT", "false")

import pytest
from fastapi.testclient import TestClient

from magicstage.billing.signing import StripeSignatureSigner
from magicstage.billing.webhooks import PaymentWebhookProcessor
from magicstage.config import (
    AIProviderConfig,
    DatabaseConfig,
    LoggingConfig,
    ObjectStoreConfig,
    Settings,
    StagingConfig,
    StripeConfig,
)
from magicstage.ledger.credit_ledger import CreditLedger
from magicstage.ledger.usage_recorder import UsageRecorder
from magicstage.models.staging import StagingPreferences, StagingStyle
from magicstage.staging.object_store import ObjectStoreError
from magicstage.staging.orchestrator import StagingJobOrchestrator
from magicstage.staging.provider import StagedImage
from magicstage.storage.database import LedgerDatabase
from magicstage.storage.jobs import StagingJobRepository
from magicstage.storage.payments import PaymentEventRepository

WEBHOOK_SECRET = "whsec_test_0123456789abcdef0123456789abcdef"
ADMIN_KEY = "admin-test-key-0123456789abcdef0123456789"
ROOM_IMAGE_REF = "rooms/org-test/living-room.jpg"
ROOM_IMAGE_BYTES = b"\xff\xd8\xff\xe0fake-jpeg-room"
STAGED_IMAGE_BYTES = b"\x89PNG\r\n\x1a\nfake-staged-room"


# ============================================================================
# FAKES
# ============================================================================


class FakeProvider:
    """AI provider double: returns a staged image, raises, or hangs."""

    def __init__(self, cost_cents: int = 4):
        self.cost_cents = cost_cents
        self.error: Exception | None = None
        self.delay_seconds = 0.0
        self.calls: list[dict] = []

    async def stage(
        self,
        image: bytes,
        prompt: str,
        style: StagingStyle,
        preferences: StagingPreferences | None = None,
    ) -> StagedImage:
        self.calls.append(
            {"image": image, "prompt": prompt, "style": style, "preferences": preferences}
        )
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.error is not None:
            raise self.error
        return StagedImage(
            data=STAGED_IMAGE_BYTES,
            mime_type="image/png",
            cost_cents=self.cost_cents,
            model="fake-image-model",
            prompt=prompt,
        )


class InMemoryObjectStore:
    """Object store double keeping objects in a dict."""

    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.fail_writes = False

    async def get(self, ref: str) -> bytes:
        try:
            return self.objects[ref]
        except KeyError:
            raise ObjectStoreError(f"Object not found: {ref}") from None

    async def put(self, data: bytes, key: str, content_type: str) -> str:
        if self.fail_writes:
            raise ObjectStoreError("Disk full")
        self.objects[key] = data
        return f"memory://{key}"


# ============================================================================
# STORAGE AND LEDGER
# ============================================================================


@pytest.fixture
async def ledger_db(tmp_path) -> LedgerDatabase:
    """Fresh, initialized ledger database."""
    db = LedgerDatabase(str(tmp_path / "ledger.db"), busy_timeout_seconds=5.0)
    await db.initialize()
    yield db
    db.close()


@pytest.fixture
def recorder(ledger_db: LedgerDatabase) -> UsageRecorder:
    return UsageRecorder(ledger_db)


@pytest.fixture
def payments(ledger_db: LedgerDatabase) -> PaymentEventRepository:
    return PaymentEventRepository(ledger_db)


@pytest.fixture
def ledger(
    ledger_db: LedgerDatabase, recorder: UsageRecorder, payments: PaymentEventRepository
) -> CreditLedger:
    return CreditLedger(ledger_db, recorder, payments)


@pytest.fixture
def jobs(ledger_db: LedgerDatabase) -> StagingJobRepository:
    return StagingJobRepository(ledger_db)


# ============================================================================
# STAGING
# ============================================================================


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def object_store() -> InMemoryObjectStore:
    store = InMemoryObjectStore()
    store.objects[ROOM_IMAGE_REF] = ROOM_IMAGE_BYTES
    return store


@pytest.fixture
def orchestrator(
    ledger_db: LedgerDatabase,
    ledger: CreditLedger,
    jobs: StagingJobRepository,
    fake_provider: FakeProvider,
    object_store: InMemoryObjectStore,
) -> StagingJobOrchestrator:
    return StagingJobOrchestrator(
        ledger_db,
        ledger,
        jobs,
        fake_provider,
        object_store,
        provider_timeout_seconds=1.0,
        credits_per_job=1,
        stale_after=timedelta(minutes=30),
    )


# ============================================================================
# WEBHOOKS
# ============================================================================


@pytest.fixture
def stripe_config() -> StripeConfig:
    return StripeConfig(
        api_key="sk_test_fixture",
        webhook_secret=WEBHOOK_SECRET,
        currency="usd",
        signature_tolerance_seconds=300,
    )


@pytest.fixture
def signer() -> StripeSignatureSigner:
    return StripeSignatureSigner(WEBHOOK_SECRET)


@pytest.fixture
def webhook_processor(
    stripe_config: StripeConfig,
    ledger_db: LedgerDatabase,
    ledger: CreditLedger,
    payments: PaymentEventRepository,
) -> PaymentWebhookProcessor:
    return PaymentWebhookProcessor(stripe_config, ledger_db, ledger, payments)


def make_payment_event(
    event_id: str = "evt_test_1",
    organization_id: str | None = "org-test",
    credits: int | str | None = 10,
    payment_id: str = "pi_test_1",
    event_type: str = "payment_intent.succeeded",
    amount_cents: int = 4490,
) -> dict:
    """Build a Stripe event dict shaped like a PaymentIntent webhook."""
    metadata: dict[str, str] = {"packageId": "credits-10"}
    if organization_id is not None:
        metadata["organizationId"] = organization_id
    if credits is not None:
        metadata["credits"] = str(credits)

    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": {
            "object": {
                "id": payment_id,
                "object": "payment_intent",
                "amount": amount_cents,
                "amount_received": amount_cents,
                "currency": "usd",
                "metadata": metadata,
            }
        },
    }


def signed_request(signer: StripeSignatureSigner, event: dict) -> tuple[bytes, dict[str, str]]:
    """Serialize an event and sign it the way Stripe does."""
    body = json.dumps(event)
    return body.encode("utf-8"), signer.create_headers(body)


# ============================================================================
# API
# ============================================================================


@pytest.fixture
def api_settings(tmp_path) -> Settings:
    """Settings pointing the app at a per-test database and upload root."""
    return Settings(
        database=DatabaseConfig(path=str(tmp_path / "api-ledger.db")),
        stripe=StripeConfig(api_key="sk_test_api", webhook_secret=WEBHOOK_SECRET),
        ai=AIProviderConfig(api_key=""),
        staging=StagingConfig(
            credits_per_job=1,
            provider_timeout_seconds=5.0,
            signup_bonus_credits=3,
            stale_job_minutes=30,
        ),
        object_store=ObjectStoreConfig(root_path=str(tmp_path / "uploads")),
        logging=LoggingConfig(json_output=False),
        admin_api_key=ADMIN_KEY,
    )


@pytest.fixture
def client(api_settings: Settings, fake_provider: FakeProvider, monkeypatch):
    """
    Test client with the real lifespan (temp database, local object store)
    and the fake AI provider swapped in.
    """
    import magicstage.config as config_module
    from magicstage.main import app
    from magicstage.rate_limits import limiter
    from magicstage.resilience.circuit_breakers import reset_all_breakers

    monkeypatch.setattr(config_module, "_settings", api_settings)
    limiter.reset()
    reset_all_breakers()

    room = tmp_room_path(api_settings)
    room.parent.mkdir(parents=True, exist_ok=True)
    room.write_bytes(ROOM_IMAGE_BYTES)

    with TestClient(app) as test_client:
        app.state.orchestrator.provider = fake_provider
        yield test_client


def tmp_room_path(settings: Settings) -> Path:
    return Path(settings.object_store.root_path) / ROOM_IMAGE_REF


@pytest.fixture
def drain_jobs(client: TestClient):
    """Wait for background staging runs started by the API to settle."""

    def drain() -> None:
        client.portal.call(client.app.state.orchestrator.drain)

    return drain


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Key": ADMIN_KEY}


@pytest.fixture
def room_image_ref() -> str:
    return ROOM_IMAGE_REF


@pytest.fixture
def payment_event():
    """Factory for Stripe PaymentIntent event dicts."""
    return make_payment_event


@pytest.fixture
def sign_event(signer: StripeSignatureSigner):
    """Serialize and sign an event: returns (body, headers)."""

    def sign(event: dict) -> tuple[bytes, dict[str, str]]:
        return signed_request(signer, event)

    return sign
