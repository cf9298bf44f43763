import datetime
from typing import Any

from esdbclient import EventStoreDBClient
from sqlalchemy import func
from sqlmodel import Session, col, select

from h2_registry.core.authorization import AccessPolicy
from h2_registry.core.database.cqrs import ChangeSet, commit_changes
from h2_registry.core.errors import (
    AlreadyRegistered,
    InvalidInput,
    NotRegistered,
    UnknownClaim,
)
from h2_registry.core.models.base import (
    ClaimDecision,
    ClaimStatus,
    PayoutType,
    utc_datetime_now,
)
from h2_registry.core.services import create_claim_hash, normalise_address
from h2_registry.logging_config import logger
from h2_registry.payment.services import build_payout
from h2_registry.settings import settings
from h2_registry.verification.models import ProductionClaim, VerificationGate, Verifier
from h2_registry.verification.schemas import (
    ProductionClaimSubmit,
    VerificationGateCreate,
    VerifierAdd,
    VerifierStats,
)
from h2_registry.verification.validation import (
    transition_claim,
    validate_claim_submission,
    validate_verification_notes,
)


def get_gate(gate_id: int, db_session: Session, for_update: bool = False) -> VerificationGate:
    return VerificationGate.by_id(gate_id, db_session, for_update)


def create_verification_gate(
    caller: str,
    gate_create: VerificationGateCreate,
    write_session: Session,
    read_session: Session,
    esdb_client: EventStoreDBClient | None,
    policy: AccessPolicy,
) -> VerificationGate:
    policy.require_admin(caller, "create verification gates")

    name = gate_create.name.strip()
    if not name:
        raise InvalidInput("Gate name cannot be empty", field="name")
    if gate_create.submission_fee < 0:
        raise InvalidInput("Submission fee cannot be negative", field="submission_fee")

    gate = VerificationGate(name=name, submission_fee=gate_create.submission_fee)

    change_set = ChangeSet()
    change_set.create(gate)
    change_set.emit(
        "VerificationGateCreated",
        lambda: {"gate_id": gate.id, "name": name, "submission_fee": gate.submission_fee},
    )

    db_gate = commit_changes(change_set, write_session, read_session, esdb_client)[0]
    logger.info(f"Created verification gate {name}")

    return db_gate  # type: ignore


def submit_production_claim(
    caller: str,
    gate_id: int,
    claim_submit: ProductionClaimSubmit,
    write_session: Session,
    read_session: Session,
    esdb_client: EventStoreDBClient | None,
    policy: AccessPolicy,
    now: datetime.datetime | None = None,
) -> ProductionClaim:
    """Record a production claim on a verification gate.

    The claim may be submitted by the producer itself or by an administrator
    on its behalf. The attached fee must cover the gate's submission fee and
    is forwarded in full to the fee recipient. The claim ID is derived from
    the claim's attributes and the gate's submission nonce, which is bumped
    on every submission so identical resubmissions still get distinct IDs.

    Args:
        caller (str): The submitting account
        gate_id (int): The gate the claim is recorded on
        claim_submit (ProductionClaimSubmit): The claim and the attached fee
        write_session (Session): The database write session
        read_session (Session): The database read session
        esdb_client (EventStoreDBClient): The EventStoreDB client
        policy (AccessPolicy): The access policy
        now (datetime.datetime | None): The submission time, defaults to now

    Returns:
        ProductionClaim: The recorded claim with status Submitted
    """
    now = now or utc_datetime_now()

    producer_address = normalise_address(
        claim_submit.producer_address, field="producer_address"
    )
    policy.require_account_holder(caller, producer_address, "submit production claims")

    gate = get_gate(gate_id, write_session, for_update=True)
    claim_fields = validate_claim_submission(claim_submit, gate, write_session, now)

    nonce = gate.submission_nonce
    claim_id = create_claim_hash(
        producer_address=claim_fields["producer_address"],
        plant_id=claim_fields["plant_id"],
        amount=claim_fields["amount"],
        production_timestamp=claim_fields["production_timestamp"],
        evidence_ref=claim_fields["evidence_ref"],
        nonce=nonce,
    )

    claim = ProductionClaim(
        **claim_fields,
        claim_id=claim_id,
        gate_id=gate_id,
        submission_nonce=nonce,
        status=ClaimStatus.SUBMITTED,
        submitted_at=now,
    )

    change_set = ChangeSet()
    change_set.create(claim)
    change_set.update(gate, {"submission_nonce": nonce + 1})
    build_payout(
        change_set,
        settings.FEE_RECIPIENT,
        claim_fields["fee_paid"],
        PayoutType.SUBMISSION_FEE,
        claim_id,
    )
    change_set.emit(
        "ProductionSubmitted",
        {
            "claim_id": claim_id,
            "producer": producer_address,
            "amount": claim_fields["amount"],
        },
    )

    db_claim = commit_changes(change_set, write_session, read_session, esdb_client)[0]
    logger.info(f"Production claim {claim_id} submitted for {producer_address}")

    return db_claim  # type: ignore


def get_claim(
    claim_id: str, db_session: Session, for_update: bool = False
) -> ProductionClaim:
    claim = ProductionClaim.by_claim_id(claim_id, db_session, for_update)
    if claim is None:
        raise UnknownClaim(f"Claim not found: {claim_id}", claim_id=claim_id)
    return claim


def verify_claim(
    caller: str,
    claim_id: str,
    approve: bool,
    notes: str | None,
    write_session: Session,
    read_session: Session,
    esdb_client: EventStoreDBClient | None,
    policy: AccessPolicy,
    now: datetime.datetime | None = None,
) -> ProductionClaim:
    """Record a verifier's decision on a submitted claim.

    A single active verifier on the claim's gate decides; the decision is
    final and any further call fails with AlreadyDecided.
    """
    claim = get_claim(claim_id, write_session, for_update=True)
    verifier = policy.require_verifier(caller, claim.gate_id, write_session)
    notes = validate_verification_notes(notes)

    decision = ClaimDecision.APPROVE if approve else ClaimDecision.REJECT
    new_status = transition_claim(claim.claim_id, claim.status, decision)

    change_set = ChangeSet()
    change_set.update(
        claim,
        {
            "status": new_status,
            "verifier_address": verifier.address,
            "verification_notes": notes,
            "decided_at": now or utc_datetime_now(),
        },
    )
    change_set.update(verifier, {"verification_count": verifier.verification_count + 1})
    change_set.emit(
        "ProductionVerified", {"claim_id": claim.claim_id, "approved": approve}
    )

    db_claim = commit_changes(change_set, write_session, read_session, esdb_client)[0]
    logger.info(f"Claim {claim.claim_id} {new_status.value.lower()} by {verifier.address}")

    return db_claim  # type: ignore


def is_consumable(claim_id: str, db_session: Session, gate_id: int | None = None) -> bool:
    """True if the claim exists, is approved and has not yet been consumed.
    When `gate_id` is given the claim must also have been recorded on it."""
    claim = ProductionClaim.by_claim_id(claim_id, db_session)
    if claim is None:
        return False
    if gate_id is not None and claim.gate_id != gate_id:
        return False
    return claim.status == ClaimStatus.APPROVED


def prepare_consumption(
    caller: str,
    claim: ProductionClaim,
    policy: AccessPolicy,
    now: datetime.datetime,
) -> dict[str, Any]:
    """Return the claim update that consumes it, for inclusion in the caller's
    change set. Only the credit ledger may consume a claim.

    Raises:
        NotAuthorized: If the caller is not the credit ledger.
        NotConsumable: If the claim is not approved, including when it has
                       already been consumed.
    """
    policy.require_credit_ledger(caller)
    new_status = transition_claim(claim.claim_id, claim.status, ClaimDecision.CONSUME)
    return {"status": new_status, "consumed_at": now}


def mark_consumed(
    caller: str,
    claim_id: str,
    write_session: Session,
    read_session: Session,
    esdb_client: EventStoreDBClient | None,
    policy: AccessPolicy,
    now: datetime.datetime | None = None,
) -> ProductionClaim:
    claim = get_claim(claim_id, write_session, for_update=True)
    claim_update = prepare_consumption(caller, claim, policy, now or utc_datetime_now())

    change_set = ChangeSet()
    change_set.update(claim, claim_update)

    return commit_changes(change_set, write_session, read_session, esdb_client)[0]  # type: ignore


def add_verifier(
    caller: str,
    verifier_add: VerifierAdd,
    write_session: Session,
    read_session: Session,
    esdb_client: EventStoreDBClient | None,
    policy: AccessPolicy,
) -> Verifier:
    """Add an address to a gate's verifier allowlist. A previously removed
    verifier is reinstated with the new name and organisation."""
    policy.require_admin(caller, "add verifiers")

    address = normalise_address(verifier_add.address)
    name = verifier_add.name.strip()
    organisation = verifier_add.organisation.strip()
    if not name:
        raise InvalidInput("Verifier name cannot be empty", field="name")
    if not organisation:
        raise InvalidInput("Verifier organisation cannot be empty", field="organisation")

    get_gate(verifier_add.gate_id, write_session)

    existing = Verifier.by_gate_and_address(
        verifier_add.gate_id, address, write_session, for_update=True
    )
    if existing is not None and existing.is_active:
        err_msg = f"Verifier {address} is already on gate {verifier_add.gate_id}"
        logger.error(err_msg)
        raise AlreadyRegistered(err_msg, address=address)

    change_set = ChangeSet()
    if existing is not None:
        change_set.update(
            existing, {"is_active": True, "name": name, "organisation": organisation}
        )
    else:
        change_set.create(
            Verifier(
                gate_id=verifier_add.gate_id,
                address=address,
                name=name,
                organisation=organisation,
            )
        )
    change_set.emit(
        "VerifierAdded",
        {
            "verifier": address,
            "gate_id": verifier_add.gate_id,
            "name": name,
            "organisation": organisation,
        },
    )

    db_verifier = commit_changes(change_set, write_session, read_session, esdb_client)[0]
    logger.info(f"Added verifier {address} ({organisation}) to gate {verifier_add.gate_id}")

    return db_verifier  # type: ignore


def remove_verifier(
    caller: str,
    gate_id: int,
    address: str,
    write_session: Session,
    read_session: Session,
    esdb_client: EventStoreDBClient | None,
    policy: AccessPolicy,
) -> Verifier:
    policy.require_admin(caller, "remove verifiers")

    address = normalise_address(address)
    verifier = Verifier.by_gate_and_address(gate_id, address, write_session, for_update=True)
    if verifier is None or not verifier.is_active:
        err_msg = f"Verifier {address} is not on gate {gate_id}"
        logger.error(err_msg)
        raise NotRegistered(err_msg, address=address)

    change_set = ChangeSet()
    change_set.update(verifier, {"is_active": False})
    change_set.emit("VerifierRemoved", {"verifier": address, "gate_id": gate_id})

    db_verifier = commit_changes(change_set, write_session, read_session, esdb_client)[0]
    logger.info(f"Removed verifier {address} from gate {gate_id}")

    return db_verifier  # type: ignore


def get_pending_claims(gate_id: int | None, read_session: Session) -> list[ProductionClaim]:
    return _get_claims_by_status(ClaimStatus.SUBMITTED, gate_id, read_session)


def get_consumable_claims(gate_id: int | None, db_session: Session) -> list[ProductionClaim]:
    return _get_claims_by_status(ClaimStatus.APPROVED, gate_id, db_session)


def _get_claims_by_status(
    status: ClaimStatus, gate_id: int | None, db_session: Session
) -> list[ProductionClaim]:
    stmt = select(ProductionClaim).where(ProductionClaim.status == status)
    if gate_id is not None:
        stmt = stmt.where(ProductionClaim.gate_id == gate_id)
    return list(db_session.exec(stmt.order_by(col(ProductionClaim.id))).all())


def get_claims_by_producer(address: str, read_session: Session) -> list[ProductionClaim]:
    return list(
        read_session.exec(
            select(ProductionClaim)
            .where(ProductionClaim.producer_address == normalise_address(address))
            .order_by(col(ProductionClaim.id))
        ).all()
    )


def get_active_verifiers(gate_id: int, read_session: Session) -> list[Verifier]:
    return list(
        read_session.exec(
            select(Verifier)
            .where(Verifier.gate_id == gate_id, Verifier.is_active == True)  # noqa: E712
            .order_by(col(Verifier.id))
        ).all()
    )


def get_verifier_stats(gate_id: int, address: str, read_session: Session) -> VerifierStats:
    address = normalise_address(address)
    verifier = Verifier.by_gate_and_address(gate_id, address, read_session)
    if verifier is None:
        raise NotRegistered(f"Verifier {address} is not on gate {gate_id}", address=address)

    decided = read_session.exec(
        select(ProductionClaim.status, func.count(col(ProductionClaim.id)))
        .where(
            ProductionClaim.gate_id == gate_id,
            ProductionClaim.verifier_address == address,
        )
        .group_by(ProductionClaim.status)
    ).all()
    counts = {status: count for status, count in decided}

    return VerifierStats(
        address=verifier.address,
        gate_id=verifier.gate_id,
        name=verifier.name,
        organisation=verifier.organisation,
        is_active=verifier.is_active,
        verification_count=verifier.verification_count,
        approved_count=counts.get(ClaimStatus.APPROVED, 0)
        + counts.get(ClaimStatus.CONSUMED, 0),
        rejected_count=counts.get(ClaimStatus.REJECTED, 0),
    )
