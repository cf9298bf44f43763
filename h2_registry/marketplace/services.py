import datetime

from esdbclient import EventStoreDBClient
from sqlalchemy import func, or_
from sqlmodel import Session, col, select

from h2_registry.core.authorization import AccessPolicy
from h2_registry.core.database.cqrs import ChangeSet, commit_changes
from h2_registry.core.errors import (
    AmountExceedsListing,
    InactiveListing,
    InsufficientAllowance,
    InsufficientBalance,
    InsufficientPayment,
    InvalidAmount,
    InvalidInput,
    InvalidPrice,
    NotSeller,
    TransferFailed,
    UnknownEntity,
    UnknownListing,
)
from h2_registry.core.models.base import PayoutType, utc_datetime_now
from h2_registry.core.services import normalise_address
from h2_registry.credit import services as credit_services
from h2_registry.logging_config import logger
from h2_registry.marketplace.models import (
    MARKETPLACE_STATE_ID,
    Listing,
    MarketplaceState,
    Purchase,
)
from h2_registry.marketplace.schemas import MarketplaceStats
from h2_registry.payment.services import build_payout
from h2_registry.settings import settings

BPS_DENOMINATOR = 10_000


def initialise_marketplace(
    write_session: Session,
    read_session: Session,
    esdb_client: EventStoreDBClient | None,
) -> MarketplaceState:
    """Create the marketplace state row from settings if it does not yet exist."""
    state = write_session.get(MarketplaceState, MARKETPLACE_STATE_ID)
    if state is not None:
        return state

    change_set = ChangeSet()
    change_set.create(
        MarketplaceState(
            id=MARKETPLACE_STATE_ID,
            platform_fee_bps=settings.PLATFORM_FEE_BPS,
            fee_recipient=normalise_address(settings.FEE_RECIPIENT, field="fee_recipient"),
        )
    )
    logger.info(f"Initialised marketplace with a {settings.PLATFORM_FEE_BPS} bps platform fee")

    return commit_changes(change_set, write_session, read_session, esdb_client)[0]  # type: ignore


def get_marketplace_state(db_session: Session, for_update: bool = False) -> MarketplaceState:
    try:
        return MarketplaceState.by_id(MARKETPLACE_STATE_ID, db_session, for_update)
    except UnknownEntity:
        raise UnknownEntity("The marketplace has not been initialised")


def get_listing(listing_id: int, db_session: Session, for_update: bool = False) -> Listing:
    try:
        return Listing.by_id(listing_id, db_session, for_update)
    except UnknownEntity:
        raise UnknownListing(f"Listing {listing_id} not found", listing_id=listing_id)


def calculate_payment(amount: int, price_per_unit: int, fee_bps: int) -> tuple[int, int]:
    """Return the payment required for `amount` credit base units at
    `price_per_unit` per whole credit, and the platform fee taken from it."""
    required = amount * price_per_unit // settings.credit_unit
    fee = required * fee_bps // BPS_DENOMINATOR
    return required, fee


def create_listing(
    caller: str,
    amount: int,
    price_per_unit: int,
    write_session: Session,
    read_session: Session,
    esdb_client: EventStoreDBClient | None,
    now: datetime.datetime | None = None,
) -> Listing:
    """Offer credits for sale. The credits are not locked; the seller must
    approve the marketplace for at least the listed amount for purchases to
    settle."""
    seller = normalise_address(caller, field="seller")
    if amount <= 0:
        raise InvalidAmount(f"Listing amount must be positive, got {amount}", field="amount")
    if price_per_unit <= 0:
        raise InvalidPrice(
            f"Price per unit must be positive, got {price_per_unit}", field="price_per_unit"
        )

    state = get_marketplace_state(write_session, for_update=True)

    listing = Listing(
        seller_address=seller,
        amount=amount,
        original_amount=amount,
        price_per_unit=price_per_unit,
        is_active=True,
        listed_at=now or utc_datetime_now(),
    )

    change_set = ChangeSet()
    change_set.create(listing)
    change_set.update(state, {"total_listings_created": state.total_listings_created + 1})
    change_set.emit(
        "ListingCreated",
        lambda: {
            "listing_id": listing.id,
            "seller": seller,
            "amount": amount,
            "price": price_per_unit,
        },
    )

    db_listing = commit_changes(change_set, write_session, read_session, esdb_client)[0]
    logger.info(f"{seller} listed {amount} credits at {price_per_unit} per unit")

    return db_listing  # type: ignore


def purchase_credits(
    caller: str,
    listing_id: int,
    amount: int,
    payment: int,
    write_session: Session,
    read_session: Session,
    esdb_client: EventStoreDBClient | None,
    policy: AccessPolicy,
    now: datetime.datetime | None = None,
) -> Purchase:
    """Buy credits from a listing.

    The credits move from seller to buyer through the ledger's delegated
    transfer, with the marketplace as spender. The payment is split into the
    seller's proceeds and the platform fee, and any overpayment is refunded to
    the buyer; each of these is recorded as a payout in the same commit.

    Args:
        caller (str): The buyer
        listing_id (int): The listing to buy from
        amount (int): Credit base units to buy
        payment (int): Native value attached, in minor units
        write_session (Session): The database write session
        read_session (Session): The database read session
        esdb_client (EventStoreDBClient): The EventStoreDB client
        policy (AccessPolicy): The access policy, naming the marketplace account
        now (datetime.datetime | None): The purchase time, defaults to now

    Raises:
        UnknownListing: If the listing does not exist.
        InactiveListing: If the listing was cancelled or sold out.
        AmountExceedsListing: If `amount` is above the listing's remaining amount.
        InsufficientPayment: If `payment` is below the required payment.
        TransferFailed: If the seller's allowance or balance cannot cover `amount`.

    Returns:
        Purchase: The recorded purchase
    """
    buyer = normalise_address(caller, field="buyer")
    now = now or utc_datetime_now()

    listing = get_listing(listing_id, write_session, for_update=True)
    if not listing.is_active:
        err_msg = f"Listing {listing_id} is not active"
        logger.error(err_msg)
        raise InactiveListing(err_msg, listing_id=listing_id)

    if amount <= 0:
        raise InvalidAmount(f"Purchase amount must be positive, got {amount}", field="amount")
    if amount > listing.amount:
        err_msg = f"Requested {amount} credits but listing {listing_id} only has {listing.amount}"
        logger.error(err_msg)
        raise AmountExceedsListing(
            err_msg, listing_id=listing_id, requested=amount, available=listing.amount
        )
    if buyer == listing.seller_address:
        raise InvalidInput("Sellers cannot buy from their own listing", field="buyer")

    state = get_marketplace_state(write_session, for_update=True)
    required, fee = calculate_payment(amount, listing.price_per_unit, state.platform_fee_bps)
    if payment < required:
        err_msg = f"Payment of {payment} is below the required {required}"
        logger.error(err_msg)
        raise InsufficientPayment(err_msg, required=required, paid=payment)

    change_set = ChangeSet()
    purchase = Purchase(
        listing_id=listing_id,
        buyer_address=buyer,
        seller_address=listing.seller_address,
        amount=amount,
        price_per_unit=listing.price_per_unit,
        total_paid=required,
        platform_fee=fee,
        refund=payment - required,
        purchased_at=now,
    )
    change_set.create(purchase)

    try:
        credit_services.build_transfer_from(
            policy.marketplace_address,
            listing.seller_address,
            buyer,
            amount,
            write_session,
            change_set,
            now,
        )
    except (InsufficientAllowance, InsufficientBalance) as e:
        err_msg = f"Credit transfer for listing {listing_id} failed: {e.message}"
        logger.error(err_msg)
        raise TransferFailed(err_msg, listing_id=listing_id, cause=e.kind) from e

    reference = f"listing:{listing_id}"
    build_payout(
        change_set,
        listing.seller_address,
        required - fee,
        PayoutType.SELLER_PROCEEDS,
        reference,
    )
    build_payout(change_set, state.fee_recipient, fee, PayoutType.PLATFORM_FEE, reference)
    build_payout(change_set, buyer, payment - required, PayoutType.REFUND, reference)

    remaining = listing.amount - amount
    change_set.update(listing, {"amount": remaining, "is_active": remaining > 0})
    change_set.update(
        state,
        {
            "total_volume": state.total_volume + amount,
            "total_value_traded": state.total_value_traded + required,
            "total_fees_collected": state.total_fees_collected + fee,
        },
    )
    change_set.emit(
        "CreditsPurchased",
        {
            "listing_id": listing_id,
            "buyer": buyer,
            "amount": amount,
            "total_paid": required,
        },
    )

    db_purchase = commit_changes(change_set, write_session, read_session, esdb_client)[0]
    logger.info(f"{buyer} bought {amount} credits from listing {listing_id} for {required}")

    return db_purchase  # type: ignore


def _get_seller_listing(caller: str, listing_id: int, write_session: Session) -> Listing:
    listing = get_listing(listing_id, write_session, for_update=True)
    if caller.lower() != listing.seller_address:
        err_msg = f"Caller {caller} is not the seller of listing {listing_id}"
        logger.error(err_msg)
        raise NotSeller(err_msg, caller=caller, listing_id=listing_id)
    if not listing.is_active:
        err_msg = f"Listing {listing_id} is not active"
        logger.error(err_msg)
        raise InactiveListing(err_msg, listing_id=listing_id)
    return listing


def update_listing_price(
    caller: str,
    listing_id: int,
    new_price: int,
    write_session: Session,
    read_session: Session,
    esdb_client: EventStoreDBClient | None,
) -> Listing:
    listing = _get_seller_listing(caller, listing_id, write_session)
    if new_price <= 0:
        raise InvalidPrice(
            f"Price per unit must be positive, got {new_price}", field="price_per_unit"
        )

    change_set = ChangeSet()
    change_set.update(listing, {"price_per_unit": new_price})
    change_set.emit(
        "ListingPriceUpdated", {"listing_id": listing_id, "new_price": new_price}
    )

    db_listing = commit_changes(change_set, write_session, read_session, esdb_client)[0]
    logger.info(f"Listing {listing_id} repriced to {new_price}")

    return db_listing  # type: ignore


def cancel_listing(
    caller: str,
    listing_id: int,
    write_session: Session,
    read_session: Session,
    esdb_client: EventStoreDBClient | None,
) -> Listing:
    """Withdraw a listing. Nothing was escrowed, so no credits move."""
    listing = _get_seller_listing(caller, listing_id, write_session)

    change_set = ChangeSet()
    change_set.update(listing, {"is_active": False})
    change_set.emit("ListingCancelled", {"listing_id": listing_id})

    db_listing = commit_changes(change_set, write_session, read_session, esdb_client)[0]
    logger.info(f"Listing {listing_id} cancelled")

    return db_listing  # type: ignore


def set_platform_fee(
    caller: str,
    fee_bps: int,
    write_session: Session,
    read_session: Session,
    esdb_client: EventStoreDBClient | None,
    policy: AccessPolicy,
) -> MarketplaceState:
    policy.require_admin(caller, "set the platform fee")

    if fee_bps < 0 or fee_bps > settings.MAX_PLATFORM_FEE_BPS:
        raise InvalidInput(
            f"Platform fee must be between 0 and {settings.MAX_PLATFORM_FEE_BPS} bps, got {fee_bps}",
            field="fee_bps",
        )

    state = get_marketplace_state(write_session, for_update=True)

    change_set = ChangeSet()
    change_set.update(state, {"platform_fee_bps": fee_bps})
    change_set.emit(
        "PlatformFeeUpdated",
        {"old_fee_bps": state.platform_fee_bps, "new_fee_bps": fee_bps},
    )

    db_state = commit_changes(change_set, write_session, read_session, esdb_client)[0]
    logger.info(f"Platform fee set to {fee_bps} bps")

    return db_state  # type: ignore


def get_active_listings(read_session: Session) -> list[Listing]:
    return list(
        read_session.exec(
            select(Listing)
            .where(Listing.is_active == True)  # noqa: E712
            .order_by(col(Listing.id))
        ).all()
    )


def get_seller_listings(address: str, read_session: Session) -> list[Listing]:
    return list(
        read_session.exec(
            select(Listing)
            .where(Listing.seller_address == normalise_address(address))
            .order_by(col(Listing.id))
        ).all()
    )


def get_purchase_history(address: str, read_session: Session) -> list[Purchase]:
    """Purchases in which the account was either the buyer or the seller."""
    address = normalise_address(address)
    return list(
        read_session.exec(
            select(Purchase)
            .where(
                or_(Purchase.buyer_address == address, Purchase.seller_address == address)
            )
            .order_by(col(Purchase.id))
        ).all()
    )


def get_marketplace_stats(read_session: Session) -> MarketplaceStats:
    state = get_marketplace_state(read_session)
    active_listings = read_session.exec(
        select(func.count(col(Listing.id))).where(Listing.is_active == True)  # noqa: E712
    ).one()

    return MarketplaceStats(
        total_listings_created=state.total_listings_created,
        active_listings=active_listings,
        total_volume=state.total_volume,
        total_value_traded=state.total_value_traded,
        total_fees_collected=state.total_fees_collected,
        platform_fee_bps=state.platform_fee_bps,
        fee_recipient=state.fee_recipient,
    )
