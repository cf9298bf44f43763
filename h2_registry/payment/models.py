from sqlmodel import BigInteger, Field, Session, select

from h2_registry import utils
from h2_registry.core.models.base import PayoutType

# Payout - a movement of native value settled by the registry: submission fees
# forwarded to the fee recipient, purchase proceeds to sellers, platform fees
# and overpayment refunds. Payouts are recorded in the same unit of work as
# the operation that owes them and are settled off-ledger.


class PayoutBase(utils.ActiveRecord):
    recipient_address: str = Field(max_length=42, index=True)
    amount: int = Field(
        description="The native value owed, in minor units.",
        sa_type=BigInteger,
        ge=0,
    )
    payout_type: PayoutType
    reference: str = Field(
        description="The claim ID or listing/purchase reference the payout settles.",
        max_length=100,
    )


class Payout(PayoutBase, table=True):
    id: int | None = Field(default=None, primary_key=True)

    @classmethod
    def by_recipient(cls, address: str, session: Session) -> list["Payout"]:
        return list(
            session.exec(
                select(cls)
                .where(cls.recipient_address == address.lower())
                .order_by(cls.id)  # type: ignore
            ).all()
        )


class PayoutRead(PayoutBase):
    id: int
