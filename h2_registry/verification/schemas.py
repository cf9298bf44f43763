import datetime

from pydantic import BaseModel
from sqlmodel import BigInteger, Field, SQLModel

from h2_registry import utils
from h2_registry.core.models.base import ClaimStatus


class VerificationGateBase(utils.ActiveRecord):
    name: str = Field(min_length=1, max_length=100)
    submission_fee: int = Field(
        description="The minimum native value, in minor units, attached to a claim submission.",
        sa_type=BigInteger,
        ge=0,
    )


class VerifierBase(utils.ActiveRecord):
    gate_id: int = Field(foreign_key="verificationgate.id", index=True)
    address: str = Field(max_length=42, index=True)
    name: str = Field(max_length=255)
    organisation: str = Field(max_length=255)


class ProductionClaimBase(utils.ActiveRecord):
    """A producer's assertion that a quantity of green hydrogen was produced.

    The claim ID is the sha256 of the claim's identifying attributes salted
    with the gate's submission nonce. A claim is decided once by a verifier
    on its gate and, if approved, consumed once by the credit ledger to mint
    credits; `status` carries the whole lifecycle.
    """

    claim_id: str = Field(unique=True, index=True, max_length=66)
    gate_id: int = Field(foreign_key="verificationgate.id", index=True)
    producer_address: str = Field(max_length=42, index=True)
    plant_id: str = Field(max_length=100)
    amount: int = Field(
        description="The claimed production, in credit base units.",
        sa_type=BigInteger,
        gt=0,
    )
    production_timestamp: datetime.datetime
    evidence_ref: str = Field(
        description="A pointer to the supporting evidence, e.g. an IPFS content identifier.",
        max_length=255,
    )
    fee_paid: int = Field(sa_type=BigInteger, ge=0)
    submission_nonce: int
    status: ClaimStatus = Field(default=ClaimStatus.SUBMITTED, index=True)


class ProductionClaimSubmit(SQLModel):
    producer_address: str
    plant_id: str
    amount: int
    production_timestamp: datetime.datetime
    evidence_ref: str
    fee_paid: int = 0


class ClaimVerification(BaseModel):
    approve: bool
    notes: str | None = None


class VerifierAdd(BaseModel):
    gate_id: int
    address: str
    name: str
    organisation: str


class VerificationGateCreate(BaseModel):
    name: str
    submission_fee: int


class VerifierStats(BaseModel):
    address: str
    gate_id: int
    name: str
    organisation: str
    is_active: bool
    verification_count: int
    approved_count: int
    rejected_count: int
