from esdbclient import EventStoreDBClient
from fastapi import APIRouter, Depends
from sqlmodel import Session

from h2_registry.core.authorization import (
    AccessPolicy,
    get_access_policy,
    get_caller_address,
)
from h2_registry.core.database import db, events
from h2_registry.marketplace.models import ListingRead, MarketplaceState, PurchaseRead
from h2_registry.marketplace.schemas import (
    ListingCreate,
    ListingPriceUpdate,
    MarketplaceStats,
    PlatformFeeUpdate,
    PurchaseRequest,
)

from . import services

# Router initialisation
router = APIRouter(tags=["Marketplace"])


@router.post("/listings", status_code=201, response_model=ListingRead)
def create_listing(
    listing_create: ListingCreate,
    caller: str = Depends(get_caller_address),
    write_session: Session = Depends(db.get_write_session),
    read_session: Session = Depends(db.get_read_session),
    esdb_client: EventStoreDBClient = Depends(events.get_esdb_client),
):
    return services.create_listing(
        caller,
        listing_create.amount,
        listing_create.price_per_unit,
        write_session,
        read_session,
        esdb_client,
    )


@router.get("/listings", response_model=list[ListingRead])
def read_active_listings(read_session: Session = Depends(db.get_read_session)):
    return services.get_active_listings(read_session)


@router.get("/listings/seller/{address}", response_model=list[ListingRead])
def read_seller_listings(
    address: str, read_session: Session = Depends(db.get_read_session)
):
    return services.get_seller_listings(address, read_session)


@router.get("/listings/{listing_id}", response_model=ListingRead)
def read_listing(listing_id: int, read_session: Session = Depends(db.get_read_session)):
    return services.get_listing(listing_id, read_session)


@router.post(
    "/listings/{listing_id}/purchase", status_code=201, response_model=PurchaseRead
)
def purchase_credits(
    listing_id: int,
    purchase_request: PurchaseRequest,
    caller: str = Depends(get_caller_address),
    write_session: Session = Depends(db.get_write_session),
    read_session: Session = Depends(db.get_read_session),
    esdb_client: EventStoreDBClient = Depends(events.get_esdb_client),
    policy: AccessPolicy = Depends(get_access_policy),
):
    """Buy credits from a listing. `payment` is the native value attached to
    the purchase, in minor units; any overpayment is refunded."""
    return services.purchase_credits(
        caller,
        listing_id,
        purchase_request.amount,
        purchase_request.payment,
        write_session,
        read_session,
        esdb_client,
        policy,
    )


@router.patch("/listings/{listing_id}/price", response_model=ListingRead)
def update_listing_price(
    listing_id: int,
    price_update: ListingPriceUpdate,
    caller: str = Depends(get_caller_address),
    write_session: Session = Depends(db.get_write_session),
    read_session: Session = Depends(db.get_read_session),
    esdb_client: EventStoreDBClient = Depends(events.get_esdb_client),
):
    return services.update_listing_price(
        caller,
        listing_id,
        price_update.price_per_unit,
        write_session,
        read_session,
        esdb_client,
    )


@router.post("/listings/{listing_id}/cancel", response_model=ListingRead)
def cancel_listing(
    listing_id: int,
    caller: str = Depends(get_caller_address),
    write_session: Session = Depends(db.get_write_session),
    read_session: Session = Depends(db.get_read_session),
    esdb_client: EventStoreDBClient = Depends(events.get_esdb_client),
):
    return services.cancel_listing(
        caller, listing_id, write_session, read_session, esdb_client
    )


@router.get("/purchases/{address}", response_model=list[PurchaseRead])
def read_purchase_history(
    address: str, read_session: Session = Depends(db.get_read_session)
):
    return services.get_purchase_history(address, read_session)


@router.patch("/platform_fee", response_model=MarketplaceState)
def set_platform_fee(
    fee_update: PlatformFeeUpdate,
    caller: str = Depends(get_caller_address),
    write_session: Session = Depends(db.get_write_session),
    read_session: Session = Depends(db.get_read_session),
    esdb_client: EventStoreDBClient = Depends(events.get_esdb_client),
    policy: AccessPolicy = Depends(get_access_policy),
):
    return services.set_platform_fee(
        caller, fee_update.fee_bps, write_session, read_session, esdb_client, policy
    )


@router.get("/stats", response_model=MarketplaceStats)
def read_marketplace_stats(read_session: Session = Depends(db.get_read_session)):
    return services.get_marketplace_stats(read_session)
