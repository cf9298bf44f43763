from sqlalchemy import UniqueConstraint
from sqlmodel import BigInteger, Field, Session, select

from h2_registry import utils
from h2_registry.credit.schemas import (
    CreditAllowanceBase,
    CreditBalanceBase,
    CreditBatchBase,
    CreditRetirementBase,
)

LEDGER_STATE_ID = 1


class LedgerState(utils.ActiveRecord, table=True):
    """The ledger-wide switches and totals, stored as a single row.

    `total_supply` is the sum of all balances; `total_minted` only ever grows,
    and `total_supply + total_retired == total_minted` holds after every
    committed operation.
    """

    id: int | None = Field(default=LEDGER_STATE_ID, primary_key=True)
    verification_gate_id: int | None = Field(
        default=None, foreign_key="verificationgate.id"
    )
    is_paused: bool = Field(default=False)
    total_supply: int = Field(default=0, sa_type=BigInteger)
    total_minted: int = Field(default=0, sa_type=BigInteger)
    total_retired: int = Field(default=0, sa_type=BigInteger)
    total_batches: int = Field(default=0)


class CreditBatch(CreditBatchBase, table=True):
    id: int | None = Field(default=None, primary_key=True)


class CreditBatchRead(CreditBatchBase):
    id: int


class CreditBalance(CreditBalanceBase, table=True):
    id: int | None = Field(default=None, primary_key=True)

    @classmethod
    def by_address(
        cls, address: str, session: Session, for_update: bool = False
    ) -> "CreditBalance | None":
        stmt = select(cls).where(cls.address == address.lower())
        if for_update:
            stmt = stmt.with_for_update()
        return session.exec(stmt).first()


class CreditAllowance(CreditAllowanceBase, table=True):
    __table_args__ = (UniqueConstraint("owner_address", "spender_address"),)

    id: int | None = Field(default=None, primary_key=True)

    @classmethod
    def by_pair(
        cls, owner: str, spender: str, session: Session, for_update: bool = False
    ) -> "CreditAllowance | None":
        stmt = select(cls).where(
            cls.owner_address == owner.lower(), cls.spender_address == spender.lower()
        )
        if for_update:
            stmt = stmt.with_for_update()
        return session.exec(stmt).first()


class CreditRetirement(CreditRetirementBase, table=True):
    id: int | None = Field(default=None, primary_key=True)


class CreditRetirementRead(CreditRetirementBase):
    id: int
