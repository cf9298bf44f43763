from esdbclient import EventStoreDBClient
from sqlmodel import Session, col, select

from h2_registry.core.authorization import AccessPolicy
from h2_registry.core.models.base import RenewableSource
from h2_registry.credit import services as credit_services
from h2_registry.credit.models import LedgerState
from h2_registry.logging_config import logger
from h2_registry.marketplace import services as marketplace_services
from h2_registry.marketplace.models import MarketplaceState
from h2_registry.producer import services as producer_services
from h2_registry.producer.models import Producer
from h2_registry.producer.schemas import ProducerRegister
from h2_registry.settings import settings
from h2_registry.verification import services as verification_services
from h2_registry.verification.models import VerificationGate, Verifier
from h2_registry.verification.schemas import VerifierAdd

DEMO_VERIFIERS = [
    {
        "address": "0x70997970c51812dc3a010c7d01b50e0d17dc79c8",
        "name": "TÜV SÜD Verifier",
        "organisation": "TÜV SÜD",
    },
    {
        "address": "0x3c44cdddb6a900fa2b585dd299e03d12fa4293bc",
        "name": "Bureau Veritas Verifier",
        "organisation": "Bureau Veritas",
    },
]

DEMO_PRODUCERS = [
    {
        "address": "0x90f79bf6eb2c4f870365e785982e1f101e93b906",
        "plant_id": "SOLAR-PLANT-V2-001",
        "location": "Munich, Germany",
        "renewable_source": RenewableSource.SOLAR.value,
        "monthly_production_limit": 5000,
    },
    {
        "address": "0x15d34aaf54267db7d7c367839aaf71a00a2c6a65",
        "plant_id": "WIND-PLANT-V2-002",
        "location": "Hamburg, Germany",
        "renewable_source": RenewableSource.WIND.value,
        "monthly_production_limit": 8000,
    },
]


def seed_registry_state(
    write_session: Session,
    read_session: Session,
    esdb_client: EventStoreDBClient | None,
) -> tuple[LedgerState, MarketplaceState]:
    """Make sure a verification gate, the ledger state and the marketplace
    state exist. Safe to run on every start up."""
    gate = write_session.exec(
        select(VerificationGate).order_by(col(VerificationGate.id))
    ).first()
    if gate is None:
        gate = VerificationGate.create(
            {
                "name": settings.DEFAULT_GATE_NAME,
                "submission_fee": settings.SUBMISSION_FEE,
            },
            write_session,
            read_session,
            esdb_client,
        )[0]
        logger.info(f"Created default verification gate {settings.DEFAULT_GATE_NAME}")

    ledger_state = credit_services.initialise_ledger(
        gate.id, write_session, read_session, esdb_client
    )
    marketplace_state = marketplace_services.initialise_marketplace(
        write_session, read_session, esdb_client
    )

    return ledger_state, marketplace_state


def seed_demo_data(
    admin_address: str,
    write_session: Session,
    read_session: Session,
    esdb_client: EventStoreDBClient | None,
    policy: AccessPolicy,
) -> None:
    """Add the demo verifiers and producers to a fresh registry. Producers are
    registered and marked as verified so claims can be issued against them
    straight away. Entries that already exist are skipped."""
    ledger_state, _ = seed_registry_state(write_session, read_session, esdb_client)
    gate_id = ledger_state.verification_gate_id

    for verifier in DEMO_VERIFIERS:
        if Verifier.by_gate_and_address(gate_id, verifier["address"], write_session):  # type: ignore
            continue
        verification_services.add_verifier(
            admin_address,
            VerifierAdd(gate_id=gate_id, **verifier),  # type: ignore
            write_session,
            read_session,
            esdb_client,
            policy,
        )

    for producer in DEMO_PRODUCERS:
        if Producer.by_address(producer["address"], write_session):  # type: ignore
            continue
        producer_services.register_producer(
            admin_address,
            ProducerRegister.model_validate(producer),
            write_session,
            read_session,
            esdb_client,
            policy,
        )
        producer_services.set_producer_verification(
            admin_address,
            producer["address"],  # type: ignore
            True,
            write_session,
            read_session,
            esdb_client,
            policy,
        )

    logger.info(
        f"Demo data seeded: {len(DEMO_VERIFIERS)} verifiers, {len(DEMO_PRODUCERS)} producers"
    )
