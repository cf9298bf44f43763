from esdbclient import EventStoreDBClient
from fastapi import APIRouter, Depends
from sqlmodel import Session

from h2_registry.core.authorization import (
    AccessPolicy,
    get_access_policy,
    get_caller_address,
)
from h2_registry.core.database import db, events
from h2_registry.verification.models import (
    ProductionClaimRead,
    VerificationGateRead,
    VerifierRead,
)
from h2_registry.verification.schemas import (
    ClaimVerification,
    ProductionClaimSubmit,
    VerificationGateCreate,
    VerifierAdd,
    VerifierStats,
)

from . import services

# Router initialisation
router = APIRouter(tags=["Verification"])


@router.post("/gates", status_code=201, response_model=VerificationGateRead)
def create_verification_gate(
    gate_create: VerificationGateCreate,
    caller: str = Depends(get_caller_address),
    write_session: Session = Depends(db.get_write_session),
    read_session: Session = Depends(db.get_read_session),
    esdb_client: EventStoreDBClient = Depends(events.get_esdb_client),
    policy: AccessPolicy = Depends(get_access_policy),
):
    return services.create_verification_gate(
        caller, gate_create, write_session, read_session, esdb_client, policy
    )


@router.get("/gates/{gate_id}", response_model=VerificationGateRead)
def read_verification_gate(
    gate_id: int, read_session: Session = Depends(db.get_read_session)
):
    return services.get_gate(gate_id, read_session)


@router.post(
    "/gates/{gate_id}/claims", status_code=201, response_model=ProductionClaimRead
)
def submit_production_claim(
    gate_id: int,
    claim_submit: ProductionClaimSubmit,
    caller: str = Depends(get_caller_address),
    write_session: Session = Depends(db.get_write_session),
    read_session: Session = Depends(db.get_read_session),
    esdb_client: EventStoreDBClient = Depends(events.get_esdb_client),
    policy: AccessPolicy = Depends(get_access_policy),
):
    """Submit a production claim. `fee_paid` is the native value attached to
    the submission, in minor units."""
    return services.submit_production_claim(
        caller, gate_id, claim_submit, write_session, read_session, esdb_client, policy
    )


@router.get("/gates/{gate_id}/verifiers", response_model=list[VerifierRead])
def read_active_verifiers(
    gate_id: int, read_session: Session = Depends(db.get_read_session)
):
    return services.get_active_verifiers(gate_id, read_session)


@router.get("/gates/{gate_id}/verifiers/{address}/stats", response_model=VerifierStats)
def read_verifier_stats(
    gate_id: int, address: str, read_session: Session = Depends(db.get_read_session)
):
    return services.get_verifier_stats(gate_id, address, read_session)


@router.post("/verifiers", status_code=201, response_model=VerifierRead)
def add_verifier(
    verifier_add: VerifierAdd,
    caller: str = Depends(get_caller_address),
    write_session: Session = Depends(db.get_write_session),
    read_session: Session = Depends(db.get_read_session),
    esdb_client: EventStoreDBClient = Depends(events.get_esdb_client),
    policy: AccessPolicy = Depends(get_access_policy),
):
    return services.add_verifier(
        caller, verifier_add, write_session, read_session, esdb_client, policy
    )


@router.delete("/gates/{gate_id}/verifiers/{address}", response_model=VerifierRead)
def remove_verifier(
    gate_id: int,
    address: str,
    caller: str = Depends(get_caller_address),
    write_session: Session = Depends(db.get_write_session),
    read_session: Session = Depends(db.get_read_session),
    esdb_client: EventStoreDBClient = Depends(events.get_esdb_client),
    policy: AccessPolicy = Depends(get_access_policy),
):
    return services.remove_verifier(
        caller, gate_id, address, write_session, read_session, esdb_client, policy
    )


@router.get("/claims/pending", response_model=list[ProductionClaimRead])
def read_pending_claims(
    gate_id: int | None = None, read_session: Session = Depends(db.get_read_session)
):
    return services.get_pending_claims(gate_id, read_session)


@router.get("/claims/producer/{address}", response_model=list[ProductionClaimRead])
def read_producer_claims(
    address: str, read_session: Session = Depends(db.get_read_session)
):
    return services.get_claims_by_producer(address, read_session)


@router.get("/claims/{claim_id}", response_model=ProductionClaimRead)
def read_claim(claim_id: str, read_session: Session = Depends(db.get_read_session)):
    return services.get_claim(claim_id, read_session)


@router.get("/claims/{claim_id}/consumable", response_model=bool)
def read_claim_consumable(
    claim_id: str, read_session: Session = Depends(db.get_read_session)
):
    return services.is_consumable(claim_id, read_session)


@router.post("/claims/{claim_id}/verify", response_model=ProductionClaimRead)
def verify_claim(
    claim_id: str,
    claim_verification: ClaimVerification,
    caller: str = Depends(get_caller_address),
    write_session: Session = Depends(db.get_write_session),
    read_session: Session = Depends(db.get_read_session),
    esdb_client: EventStoreDBClient = Depends(events.get_esdb_client),
    policy: AccessPolicy = Depends(get_access_policy),
):
    return services.verify_claim(
        caller,
        claim_id,
        claim_verification.approve,
        claim_verification.notes,
        write_session,
        read_session,
        esdb_client,
        policy,
    )
