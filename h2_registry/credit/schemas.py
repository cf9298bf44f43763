import datetime

from pydantic import BaseModel
from sqlalchemy import JSON, Column
from sqlmodel import BigInteger, Field

from h2_registry import utils
from h2_registry.core.models.base import RenewableSource


class CreditBatchBase(utils.ActiveRecord):
    """The provenance record of a single issuance.

    Each batch links the credits minted to a producer back to the production
    claim that justified them. Batches are immutable apart from the one way
    `is_retired` flag, which is informational: retirement burns fungible
    balance from a holder, not from a specific batch.
    """

    producer_address: str = Field(max_length=42, index=True)
    amount: int = Field(sa_type=BigInteger, gt=0)
    claim_id: str = Field(
        description="The production claim consumed to mint this batch.",
        unique=True,
        max_length=66,
    )
    plant_id: str = Field(max_length=100)
    renewable_source: RenewableSource
    production_timestamp: datetime.datetime
    evidence_ref: str = Field(max_length=255)
    is_retired: bool = Field(default=False)
    issued_at: datetime.datetime


class CreditBalanceBase(utils.ActiveRecord):
    address: str = Field(unique=True, index=True, max_length=42)
    balance: int = Field(
        default=0, sa_type=BigInteger, ge=0, description="Spendable credit base units."
    )
    retired_total: int = Field(
        default=0,
        sa_type=BigInteger,
        ge=0,
        description="Credit base units this account has permanently retired.",
    )


class CreditAllowanceBase(utils.ActiveRecord):
    owner_address: str = Field(max_length=42, index=True)
    spender_address: str = Field(max_length=42, index=True)
    amount: int = Field(default=0, sa_type=BigInteger, ge=0)


class CreditRetirementBase(utils.ActiveRecord):
    holder_address: str = Field(max_length=42, index=True)
    amount: int = Field(sa_type=BigInteger, gt=0)
    reason: str = Field(max_length=500)
    retired_at: datetime.datetime
    batch_ids: list[int] = Field(
        default_factory=list,
        sa_column=Column(JSON),
        description="The credit batches this retirement closes out for provenance reporting.",
    )


class CreditApprove(BaseModel):
    spender: str
    amount: int


class CreditTransfer(BaseModel):
    to: str
    amount: int


class CreditTransferFrom(BaseModel):
    owner: str
    to: str
    amount: int


class CreditRetire(BaseModel):
    amount: int
    reason: str
    batch_ids: list[int] = []


class VerificationGateUpdate(BaseModel):
    gate_id: int


class CreditTransferReceipt(BaseModel):
    sender: str
    recipient: str
    amount: int
    timestamp: datetime.datetime


class CreditBalanceSummary(BaseModel):
    address: str
    balance: int
    retired_total: int


class CreditAllowanceSummary(BaseModel):
    owner: str
    spender: str
    amount: int


class LedgerStats(BaseModel):
    name: str
    symbol: str
    decimals: int
    total_supply: int
    total_minted: int
    total_retired: int
    total_batches: int
    producer_count: int
    verified_producer_count: int
    verification_gate_id: int | None
    is_paused: bool


class IssuanceRunResult(BaseModel):
    issued_claim_ids: list[str]
    failed_claims: dict[str, str]
