from sqlmodel import Session

from h2_registry.core.database.cqrs import ChangeSet
from h2_registry.core.models.base import PayoutType
from h2_registry.core.services import normalise_address
from h2_registry.payment.models import Payout


def build_payout(
    change_set: ChangeSet,
    recipient_address: str,
    amount: int,
    payout_type: PayoutType,
    reference: str,
) -> Payout | None:
    """Add a payout to the change set. Zero value payouts are not recorded."""
    if amount <= 0:
        return None

    payout = Payout(
        recipient_address=recipient_address.lower(),
        amount=amount,
        payout_type=payout_type,
        reference=reference,
    )
    change_set.create(payout)
    return payout


def get_payouts_by_address(address: str, read_session: Session) -> list[Payout]:
    return Payout.by_recipient(normalise_address(address), read_session)


def get_total_owed(address: str, read_session: Session) -> int:
    return sum(payout.amount for payout in get_payouts_by_address(address, read_session))
