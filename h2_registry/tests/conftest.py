import datetime
import json
from collections import defaultdict
from typing import Any, Callable, Generator

import pytest
from esdbclient import NewEvent
from sqlalchemy.engine.base import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine
from starlette.testclient import TestClient

from h2_registry.core.authorization import AccessPolicy, get_access_policy
from h2_registry.core.database import db, events
from h2_registry.core.models.base import ClaimStatus, RenewableSource
from h2_registry.core.services import create_claim_hash
from h2_registry.credit import services as credit_services
from h2_registry.credit.models import LedgerState
from h2_registry.main import app
from h2_registry.marketplace.models import MarketplaceState
from h2_registry.producer.models import Producer
from h2_registry.settings import settings
from h2_registry.utils import ActiveRecord
from h2_registry.verification.models import ProductionClaim, VerificationGate, Verifier

ADMIN_ADDRESS = "0x" + "a" * 40
ISSUER_ADDRESS = "0x" + "1" * 40
CREDIT_LEDGER_ADDRESS = "0x" + "c" * 40
MARKETPLACE_ADDRESS = "0x" + "d" * 40
VERIFIER_ADDRESS = "0x" + "e" * 40
PRODUCER_ADDRESS = "0x" + "b" * 40
BUYER_ADDRESS = "0x" + "f" * 40
OUTSIDER_ADDRESS = "0x" + "9" * 40


class InMemoryEventStore:
    """Stands in for the EventStoreDBClient, recording appended events per
    stream."""

    def __init__(self) -> None:
        self.streams: dict[str, list[NewEvent]] = defaultdict(list)

    def append_to_stream(
        self, stream_name: str, *, current_version: Any, events: list[NewEvent], **kwargs
    ) -> int:
        self.streams[stream_name].extend(events)
        return len(self.streams[stream_name]) - 1

    def get_stream(self, stream_name: str, backwards: bool = False) -> tuple[NewEvent, ...]:
        recorded = list(self.streams[stream_name])
        if backwards:
            recorded.reverse()
        return tuple(recorded)

    def event_data(self, event_type: str) -> list[dict[str, Any]]:
        return [
            json.loads(event.data)
            for event in self.streams[events.EVENT_STREAM]
            if event.type == event_type
        ]

    def event_types(self) -> list[str]:
        return [event.type for event in self.streams[events.EVENT_STREAM]]


def _sqlite_engine() -> Engine:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture()
def write_engine() -> Generator[Engine, None, None]:
    """An in-memory SQLite database standing in for the write database."""
    engine = _sqlite_engine()
    yield engine
    engine.dispose()


@pytest.fixture()
def read_engine() -> Generator[Engine, None, None]:
    engine = _sqlite_engine()
    yield engine
    engine.dispose()


@pytest.fixture()
def write_session(write_engine: Engine) -> Generator[Session, None, None]:
    with Session(write_engine) as session:
        yield session


@pytest.fixture()
def read_session(read_engine: Engine) -> Generator[Session, None, None]:
    with Session(read_engine) as session:
        yield session


@pytest.fixture()
def esdb_client() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture()
def policy() -> AccessPolicy:
    return AccessPolicy(
        admin_addresses={ADMIN_ADDRESS},
        issuer_addresses={ISSUER_ADDRESS},
        credit_ledger_address=CREDIT_LEDGER_ADDRESS,
        marketplace_address=MARKETPLACE_ADDRESS,
    )


@pytest.fixture()
def now() -> datetime.datetime:
    return datetime.datetime(2026, 10, 15, 12, 0, tzinfo=datetime.timezone.utc)


@pytest.fixture()
def api_client(
    write_session: Session,
    read_session: Session,
    esdb_client: InMemoryEventStore,
    policy: AccessPolicy,
    monkeypatch: pytest.MonkeyPatch,
) -> Generator[TestClient, None, None]:
    """API Client for testing routes"""

    def get_write_session_override():
        assert write_session.is_active
        return write_session

    def get_read_session_override():
        assert read_session.is_active
        return read_session

    def get_db_name_to_client_override():
        return {
            "write": write_session,
            "read": read_session,
        }

    def get_esdb_client_override():
        return esdb_client

    def get_access_policy_override():
        return policy

    monkeypatch.setattr(settings, "BOOTSTRAP_ON_STARTUP", False)

    app.dependency_overrides[db.get_write_session] = get_write_session_override
    app.dependency_overrides[db.get_read_session] = get_read_session_override
    app.dependency_overrides[db.get_db_name_to_client] = get_db_name_to_client_override
    app.dependency_overrides[events.get_esdb_client] = get_esdb_client_override
    app.dependency_overrides[get_access_policy] = get_access_policy_override

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()


def add_entity_to_write_and_read(
    entity: ActiveRecord, write_session: Session, read_session: Session
):
    write_session.add(entity)
    write_session.commit()
    write_session.refresh(entity)

    read_entity = read_session.merge(entity)
    read_session.commit()
    read_session.refresh(read_entity)

    return read_entity


@pytest.fixture()
def fake_db_gate(write_session: Session, read_session: Session) -> VerificationGate:
    gate = VerificationGate.model_validate(
        {"name": "Production Oracle", "submission_fee": settings.SUBMISSION_FEE}
    )
    return add_entity_to_write_and_read(gate, write_session, read_session)


@pytest.fixture()
def fake_db_ledger(
    write_session: Session, read_session: Session, fake_db_gate: VerificationGate
) -> LedgerState:
    ledger_state = LedgerState(id=1, verification_gate_id=fake_db_gate.id)
    return add_entity_to_write_and_read(ledger_state, write_session, read_session)


@pytest.fixture()
def fake_db_marketplace(write_session: Session, read_session: Session) -> MarketplaceState:
    marketplace_state = MarketplaceState(
        id=1, platform_fee_bps=250, fee_recipient=ADMIN_ADDRESS
    )
    return add_entity_to_write_and_read(marketplace_state, write_session, read_session)


@pytest.fixture()
def fake_db_verifier(
    write_session: Session, read_session: Session, fake_db_gate: VerificationGate
) -> Verifier:
    verifier = Verifier(
        gate_id=fake_db_gate.id,  # type: ignore
        address=VERIFIER_ADDRESS,
        name="TÜV SÜD Verifier",
        organisation="TÜV SÜD",
    )
    return add_entity_to_write_and_read(verifier, write_session, read_session)


@pytest.fixture()
def producer_factory(
    write_session: Session, read_session: Session
) -> Callable[..., Producer]:
    """Factory function to add producers directly to both databases."""

    def _create_producer(
        address: str = PRODUCER_ADDRESS,
        plant_id: str = "SOLAR-PLANT-001",
        monthly_production_limit: int = 1000,
        is_verified: bool = True,
        is_active: bool = True,
        renewable_source: RenewableSource = RenewableSource.SOLAR,
    ) -> Producer:
        producer = Producer(
            address=address,
            plant_id=plant_id,
            location="Munich, Germany",
            renewable_source=renewable_source,
            monthly_production_limit=monthly_production_limit,
            is_verified=is_verified,
            is_active=is_active,
        )
        return add_entity_to_write_and_read(producer, write_session, read_session)

    return _create_producer


@pytest.fixture()
def fake_db_producer(producer_factory: Callable[..., Producer]) -> Producer:
    return producer_factory()


@pytest.fixture()
def claim_factory(
    write_session: Session,
    read_session: Session,
    fake_db_gate: VerificationGate,
    now: datetime.datetime,
) -> Callable[..., ProductionClaim]:
    """Factory function to add claims in a given status, bypassing submission."""
    nonce_counter = iter(range(1_000_000, 2_000_000))

    def _create_claim(
        producer: Producer,
        amount: int,
        status: ClaimStatus = ClaimStatus.APPROVED,
        gate_id: int | None = None,
    ) -> ProductionClaim:
        nonce = next(nonce_counter)
        production_timestamp = now - datetime.timedelta(days=1)
        claim = ProductionClaim(
            claim_id=create_claim_hash(
                producer.address,
                producer.plant_id,
                amount,
                production_timestamp,
                "ipfs://evidence",
                nonce,
            ),
            gate_id=gate_id or fake_db_gate.id,  # type: ignore
            producer_address=producer.address,
            plant_id=producer.plant_id,
            amount=amount,
            production_timestamp=production_timestamp,
            evidence_ref="ipfs://evidence",
            fee_paid=settings.SUBMISSION_FEE,
            submission_nonce=nonce,
            status=status,
            verifier_address=None if status == ClaimStatus.SUBMITTED else VERIFIER_ADDRESS,
            submitted_at=now,
        )
        return add_entity_to_write_and_read(claim, write_session, read_session)

    return _create_claim


@pytest.fixture()
def mint_credits(
    write_session: Session,
    read_session: Session,
    esdb_client: InMemoryEventStore,
    policy: AccessPolicy,
    claim_factory: Callable[..., ProductionClaim],
    fake_db_ledger: LedgerState,
    now: datetime.datetime,
) -> Callable[[Producer, int], Any]:
    """Mint credits to a producer through an approved claim and the real
    issuance path."""

    def _mint(producer: Producer, amount: int):
        claim = claim_factory(producer, amount)
        return credit_services.issue_credits_from_claim(
            ADMIN_ADDRESS,
            claim.claim_id,
            write_session,
            read_session,
            esdb_client,  # type: ignore
            policy,
            now=now,
        )

    return _mint
