from datetime import datetime
from decimal import Decimal

import httpx
import pytest
from fastapi.testclient import TestClient

from shared.security_config import limiter
from shared.utils import Settings
from offramp.fanout import EventPublisher
from offramp.main import create_app
from offramp.models import Transaction, TransactionStatus
from offramp.provider import OnmetaClient
from offramp.store import InMemoryTransactionStore

ONMETA_URL = "https://onmeta.test/v1"


class RecordingPublisher(EventPublisher):
    def __init__(self):
        self.events = []

    async def publish(self, event):
        self.events.append(event)

    def types(self):
        return [e["type"] for e in self.events]


class FakeOnmeta:
    """Handler for httpx.MockTransport: records requests, replays canned responses."""

    def __init__(self):
        self.requests = []
        self.order_response = (200, {
            "success": True,
            "data": {
                "orderId": "o1",
                "receiverWalletAddress": "0xdead",
                "gasUseEstimate": 21000,
                "quote": {"rate": 84.5, "fee": 2.0},
            },
        })
        self.status_response = (200, {"data": {"status": "SUCCESS", "txHash": "0xfeed"}})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/offramp/orders/create"):
            status, body = self.order_response
        else:
            status, body = self.status_response
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)


@pytest.fixture(autouse=True)
def reset_rate_limits():
    limiter.reset()
    yield


@pytest.fixture
def settings():
    return Settings(
        ONMETA_API_URL=ONMETA_URL,
        ONMETA_API_KEY="test-key",
        BASE_URL="https://pay.example.com",
        INITIATE_RETRY_BACKOFF=0.0,
        BROADCAST_SEND_TIMEOUT=0.5,
    )


@pytest.fixture
def fake_onmeta():
    return FakeOnmeta()


@pytest.fixture
def provider(settings, fake_onmeta):
    return OnmetaClient(
        base_url=settings.ONMETA_API_URL,
        api_key=settings.ONMETA_API_KEY,
        timeout=settings.ONMETA_TIMEOUT_SECONDS,
        forwarded_for=settings.FORWARDED_FOR,
        transport=httpx.MockTransport(fake_onmeta),
    )


@pytest.fixture
def store():
    return InMemoryTransactionStore()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def make_draft():
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        draft = {
            "merchantTxId": f"m-{counter['n']}",
            "upiId": "shop@upi",
            "inrAmount": "500.00",
            "tokenAmount": "5.91",
            "cryptoType": "usdt",
            "chain": "polygon",
            "walletAddress": "0xabc0000000000000000000000000000000000001",
        }
        draft.update(overrides)
        return draft

    return _make


@pytest.fixture
def make_transaction():
    def _make(**overrides):
        now = datetime(2024, 1, 1, 12, 0, 0)
        fields = dict(
            id=1,
            merchant_tx_id="m1",
            upi_id="shop@upi",
            inr_amount=Decimal("500.00"),
            token_amount=Decimal("5.91000000"),
            wallet_address="0xabc",
            status=TransactionStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        fields.update(overrides)
        return Transaction(**fields)

    return _make


@pytest.fixture
def app(settings, provider):
    return create_app(settings=settings, provider=provider)


@pytest.fixture
def client(app):
    # One portal for the whole test so HTTP calls and WebSockets share a loop
    with TestClient(app) as test_client:
        yield test_client
