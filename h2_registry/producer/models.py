import datetime

from sqlmodel import BigInteger, Field, Session, select

from h2_registry.core.models.base import utc_datetime_now
from h2_registry.producer.schemas import ProducerBase

# Producer - an electrolysis plant operator admitted to the registry by an
# administrator. Producers are never deleted, only deactivated; the monthly
# counters track issuance against the producer's monthly production limit.


class Producer(ProducerBase, table=True):
    id: int | None = Field(default=None, primary_key=True)
    total_produced: int = Field(
        default=0,
        sa_type=BigInteger,
        description="Cumulative credit base units issued to this producer.",
    )
    current_month_production: int = Field(
        default=0,
        sa_type=BigInteger,
        description="Credit base units issued in the month recorded by last_production_month.",
    )
    last_production_month: int = Field(
        default=0,
        description="The calendar month (YYYYMM) that current_month_production refers to.",
    )
    is_active: bool = Field(default=True)
    is_verified: bool = Field(
        default=False, description="Set once the producer has passed KYC checks."
    )
    registration_time: datetime.datetime = Field(default_factory=utc_datetime_now)

    @classmethod
    def by_address(
        cls, address: str, session: Session, for_update: bool = False
    ) -> "Producer | None":
        stmt = select(cls).where(cls.address == address.lower())
        if for_update:
            stmt = stmt.with_for_update()
        return session.exec(stmt).first()

    @classmethod
    def by_plant_id(cls, plant_id: str, session: Session) -> "Producer | None":
        return session.exec(select(cls).where(cls.plant_id == plant_id)).first()


class ProducerRead(ProducerBase):
    id: int
    total_produced: int
    current_month_production: int
    last_production_month: int
    is_active: bool
    is_verified: bool
    registration_time: datetime.datetime
