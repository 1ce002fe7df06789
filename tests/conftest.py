import pytest

from dataset_gateway.config import GatewayConfig
from dataset_gateway.content_store import InMemoryContentStore
from dataset_gateway.gateway import AccessGateway
from dataset_gateway.models import DatasetRecord
from dataset_gateway.payment import InMemoryLedger, PaymentGate
from dataset_gateway.token_store import InMemoryTokenStore

ALICE = "0xA11CE00000000000000000000000000000000001"
BOB = "0xB0B0000000000000000000000000000000000002"

DAY_MS = 24 * 3600 * 1000

SAMPLE_CSV = (
    b"city,date,temperature_c,humidity\n"
    b"berlin,2024-01-01,2.5,81\n"
    b"berlin,2024-01-02,3.1,78\n"
    b"madrid,2024-01-01,11.0,55\n"
    b"madrid,2024-01-02,12.4,52\n"
    b"oslo,2024-01-01,-6.2,88\n"
)


class FakeClock:
    """Millisecond clock under test control."""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.now_ms = start_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def content_store():
    return InMemoryContentStore()


@pytest.fixture
def dataset(ledger, content_store, clock):
    content_hash = content_store.put(SAMPLE_CSV)
    return ledger.register_dataset(
        DatasetRecord(
            dataset_id="ds-weather-eu",
            owner="0x0wner000000000000000000000000000000000003",
            price_wei=10**15,
            verified=True,
            content_hash=content_hash,
            name="EU weather samples",
            tags=("climate", "weather"),
            created_at_ms=clock() - DAY_MS,
        )
    )


@pytest.fixture
def paid_proof(ledger, dataset):
    return ledger.submit_payment(dataset.dataset_id, ALICE)


@pytest.fixture
def make_gateway(ledger, content_store, clock):
    def _make(store=None, config=None, **kwargs):
        return AccessGateway(
            store=store if store is not None else InMemoryTokenStore(stripes=8),
            payment_gate=PaymentGate(ledger),
            content_store=kwargs.pop("content", content_store),
            config=config or GatewayConfig(upstream_retry_backoff_seconds=0.0),
            clock=clock,
            **kwargs,
        )

    return _make


@pytest.fixture
def gateway(make_gateway):
    return make_gateway()
