import datetime

from pydantic import BaseModel
from sqlmodel import BigInteger, Field

from h2_registry import utils


class ListingBase(utils.ActiveRecord):
    """A standing offer to sell credits at a fixed price per unit.

    Listed credits are not escrowed: they stay in the seller's balance and
    are moved to the buyer at purchase time through the marketplace's
    allowance on the seller. A purchase therefore fails if the seller has
    since moved the credits away or reduced the allowance.
    """

    seller_address: str = Field(max_length=42, index=True)
    amount: int = Field(
        description="The credit base units still available on this listing.",
        sa_type=BigInteger,
        ge=0,
    )
    original_amount: int = Field(sa_type=BigInteger, gt=0)
    price_per_unit: int = Field(
        description="The price of one whole credit, in native minor units.",
        sa_type=BigInteger,
        gt=0,
    )
    is_active: bool = Field(default=True, index=True)
    listed_at: datetime.datetime


class PurchaseBase(utils.ActiveRecord):
    listing_id: int = Field(foreign_key="listing.id", index=True)
    buyer_address: str = Field(max_length=42, index=True)
    seller_address: str = Field(max_length=42, index=True)
    amount: int = Field(sa_type=BigInteger, gt=0)
    price_per_unit: int = Field(sa_type=BigInteger)
    total_paid: int = Field(
        description="The payment required for the purchase, excluding any refunded overpayment.",
        sa_type=BigInteger,
    )
    platform_fee: int = Field(sa_type=BigInteger)
    refund: int = Field(default=0, sa_type=BigInteger)
    purchased_at: datetime.datetime


class ListingCreate(BaseModel):
    amount: int
    price_per_unit: int


class ListingPriceUpdate(BaseModel):
    price_per_unit: int


class PurchaseRequest(BaseModel):
    amount: int
    payment: int


class PlatformFeeUpdate(BaseModel):
    fee_bps: int


class MarketplaceStats(BaseModel):
    total_listings_created: int
    active_listings: int
    total_volume: int
    total_value_traded: int
    total_fees_collected: int
    platform_fee_bps: int
    fee_recipient: str
