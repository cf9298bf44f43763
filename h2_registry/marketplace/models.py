from sqlmodel import BigInteger, Field

from h2_registry import utils
from h2_registry.marketplace.schemas import ListingBase, PurchaseBase

MARKETPLACE_STATE_ID = 1


class MarketplaceState(utils.ActiveRecord, table=True):
    id: int | None = Field(default=MARKETPLACE_STATE_ID, primary_key=True)
    platform_fee_bps: int = Field(description="Platform fee in basis points of the payment.")
    fee_recipient: str = Field(max_length=42)
    total_listings_created: int = Field(default=0)
    total_volume: int = Field(
        default=0, sa_type=BigInteger, description="Credit base units sold."
    )
    total_value_traded: int = Field(
        default=0, sa_type=BigInteger, description="Native value paid, excluding refunds."
    )
    total_fees_collected: int = Field(default=0, sa_type=BigInteger)


class Listing(ListingBase, table=True):
    id: int | None = Field(default=None, primary_key=True)


class ListingRead(ListingBase):
    id: int


class Purchase(PurchaseBase, table=True):
    id: int | None = Field(default=None, primary_key=True)


class PurchaseRead(PurchaseBase):
    id: int
