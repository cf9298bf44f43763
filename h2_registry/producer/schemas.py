from pydantic import BaseModel
from sqlmodel import BigInteger, Field, SQLModel

from h2_registry import utils
from h2_registry.core.models.base import RenewableSource


class ProducerBase(utils.ActiveRecord):
    address: str = Field(
        description="The account address of the producer; credits issued against its claims are minted here.",
        unique=True,
        index=True,
        max_length=42,
    )
    plant_id: str = Field(
        description="The operator's identifier for the electrolysis plant. Unique across the registry.",
        unique=True,
        index=True,
        min_length=1,
        max_length=100,
    )
    location: str = Field(
        description="The location of the plant, rendered as an address or a lon/lat pair.",
        min_length=1,
        max_length=255,
    )
    renewable_source: RenewableSource = Field(
        description="The renewable energy source powering the plant.",
    )
    monthly_production_limit: int = Field(
        description="The maximum number of credit base units that may be issued to this producer in one calendar month.",
        sa_type=BigInteger,
        gt=0,
    )


class ProducerRegister(SQLModel):
    address: str
    plant_id: str
    location: str
    renewable_source: str
    monthly_production_limit: int


class ProducerVerification(BaseModel):
    is_verified: bool


class ProducerStats(BaseModel):
    address: str
    plant_id: str
    is_active: bool
    is_verified: bool
    total_produced: int
    current_month_production: int
    monthly_production_limit: int
    remaining_monthly_capacity: int
