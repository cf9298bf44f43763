import datetime

from sqlmodel import Session

from h2_registry.core.errors import (
    AlreadyDecided,
    FutureTimestamp,
    InsufficientFee,
    InvalidAmount,
    InvalidInput,
    NotConsumable,
    NotRegistered,
    PlantMismatch,
    StaleProduction,
)
from h2_registry.core.models.base import ClaimDecision, ClaimStatus
from h2_registry.core.services import ensure_utc, normalise_address
from h2_registry.logging_config import logger
from h2_registry.producer.models import Producer
from h2_registry.settings import settings
from h2_registry.verification.models import VerificationGate
from h2_registry.verification.schemas import ProductionClaimSubmit

# The only legal moves of a claim. Submitted claims are decided once; approved
# claims are consumed once; rejected and consumed claims are terminal.
CLAIM_TRANSITIONS: dict[tuple[ClaimStatus, ClaimDecision], ClaimStatus] = {
    (ClaimStatus.SUBMITTED, ClaimDecision.APPROVE): ClaimStatus.APPROVED,
    (ClaimStatus.SUBMITTED, ClaimDecision.REJECT): ClaimStatus.REJECTED,
    (ClaimStatus.APPROVED, ClaimDecision.CONSUME): ClaimStatus.CONSUMED,
}


def transition_claim(
    claim_id: str, status: ClaimStatus, decision: ClaimDecision
) -> ClaimStatus:
    """Return the status a claim moves to when `decision` is applied to it.

    Raises:
        AlreadyDecided: If an approve or reject is applied to a decided claim.
        NotConsumable: If a consume is applied to a claim that is not approved.
    """
    next_status = CLAIM_TRANSITIONS.get((status, decision))
    if next_status is not None:
        return next_status

    if decision == ClaimDecision.CONSUME:
        err_msg = f"Claim {claim_id} is {status.value} and cannot be consumed"
        logger.error(err_msg)
        raise NotConsumable(err_msg, claim_id=claim_id, status=status.value)

    err_msg = f"Claim {claim_id} has already been decided ({status.value})"
    logger.error(err_msg)
    raise AlreadyDecided(err_msg, claim_id=claim_id, status=status.value)


def validate_claim_submission(
    claim_submit: ProductionClaimSubmit,
    gate: VerificationGate,
    db_session: Session,
    now: datetime.datetime,
) -> dict:
    """Validate a production claim against its gate and the producer registry,
    returning the cleaned claim fields."""
    producer_address = normalise_address(
        claim_submit.producer_address, field="producer_address"
    )
    plant_id = (claim_submit.plant_id or "").strip()
    evidence_ref = (claim_submit.evidence_ref or "").strip()

    if claim_submit.fee_paid < gate.submission_fee:
        err_msg = f"Submission fee of {gate.submission_fee} required, {claim_submit.fee_paid} attached"
        logger.error(err_msg)
        raise InsufficientFee(
            err_msg, required=gate.submission_fee, paid=claim_submit.fee_paid
        )

    if claim_submit.amount <= 0:
        raise InvalidAmount(
            f"Claimed amount must be positive, got {claim_submit.amount}", field="amount"
        )
    if not plant_id:
        raise InvalidInput("Plant ID cannot be empty", field="plant_id")
    if not evidence_ref:
        raise InvalidInput("Evidence reference cannot be empty", field="evidence_ref")

    production_timestamp = ensure_utc(
        claim_submit.production_timestamp, field="production_timestamp"
    )
    if production_timestamp > now:
        err_msg = f"Production timestamp {production_timestamp.isoformat()} is in the future"
        logger.error(err_msg)
        raise FutureTimestamp(err_msg, production_timestamp=production_timestamp.isoformat())

    max_age = datetime.timedelta(days=settings.MAX_PRODUCTION_AGE_DAYS)
    if production_timestamp < now - max_age:
        err_msg = f"Production timestamp {production_timestamp.isoformat()} is older than {settings.MAX_PRODUCTION_AGE_DAYS} days"
        logger.error(err_msg)
        raise StaleProduction(err_msg, production_timestamp=production_timestamp.isoformat())

    producer = Producer.by_address(producer_address, db_session)
    if producer is None:
        err_msg = f"Producer not registered: {producer_address}"
        logger.error(err_msg)
        raise NotRegistered(err_msg, address=producer_address)

    if producer.plant_id != plant_id:
        err_msg = f"Plant ID {plant_id} does not match the plant registered to {producer_address}"
        logger.error(err_msg)
        raise PlantMismatch(err_msg, plant_id=plant_id)

    return {
        "producer_address": producer_address,
        "plant_id": plant_id,
        "amount": claim_submit.amount,
        "production_timestamp": production_timestamp,
        "evidence_ref": evidence_ref,
        "fee_paid": claim_submit.fee_paid,
    }


def validate_verification_notes(notes: str | None) -> str | None:
    if notes is None:
        return None
    notes = notes.strip()
    if len(notes) > settings.MAX_VERIFICATION_NOTES_LENGTH:
        raise InvalidInput(
            f"Verification notes cannot exceed {settings.MAX_VERIFICATION_NOTES_LENGTH} characters",
            field="notes",
        )
    return notes or None
