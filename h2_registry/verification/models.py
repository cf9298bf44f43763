import datetime

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, Session, select

from h2_registry.core.models.base import ClaimStatus
from h2_registry.verification.schemas import (
    ProductionClaimBase,
    VerificationGateBase,
    VerifierBase,
)

# VerificationGate - the oracle instance that records production claims and
# the allowlist of verifiers that decide them. The credit ledger points at a
# single gate; claims recorded on any other gate are not issuable.


class VerificationGate(VerificationGateBase, table=True):
    id: int | None = Field(default=None, primary_key=True)
    submission_nonce: int = Field(
        default=0, description="Incremented on every submission, salting the claim ID."
    )


class VerificationGateRead(VerificationGateBase):
    id: int
    submission_nonce: int


# Verifier - an allowlisted reviewer on a gate. Removal deactivates the row so
# the verifier's past decisions stay attributable.


class Verifier(VerifierBase, table=True):
    __table_args__ = (UniqueConstraint("gate_id", "address"),)

    id: int | None = Field(default=None, primary_key=True)
    is_active: bool = Field(default=True)
    verification_count: int = Field(default=0)

    @classmethod
    def by_gate_and_address(
        cls, gate_id: int, address: str, session: Session, for_update: bool = False
    ) -> "Verifier | None":
        stmt = select(cls).where(cls.gate_id == gate_id, cls.address == address.lower())
        if for_update:
            stmt = stmt.with_for_update()
        return session.exec(stmt).first()


class VerifierRead(VerifierBase):
    id: int
    is_active: bool
    verification_count: int


class ProductionClaim(ProductionClaimBase, table=True):
    id: int | None = Field(default=None, primary_key=True)
    verifier_address: str | None = Field(default=None, max_length=42)
    verification_notes: str | None = Field(default=None, max_length=1000)
    submitted_at: datetime.datetime
    decided_at: datetime.datetime | None = None
    consumed_at: datetime.datetime | None = None

    @classmethod
    def by_claim_id(
        cls, claim_id: str, session: Session, for_update: bool = False
    ) -> "ProductionClaim | None":
        stmt = select(cls).where(cls.claim_id == claim_id.lower())
        if for_update:
            stmt = stmt.with_for_update()
        return session.exec(stmt).first()


class ProductionClaimRead(ProductionClaimBase):
    id: int
    status: ClaimStatus
    verifier_address: str | None
    verification_notes: str | None
    submitted_at: datetime.datetime
    decided_at: datetime.datetime | None
    consumed_at: datetime.datetime | None
