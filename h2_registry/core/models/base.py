import datetime
import enum
from enum import Enum
from functools import partial
from typing import Any

from pydantic import BaseModel, Field

utc_datetime_now = partial(datetime.datetime.now, datetime.timezone.utc)


class RenewableSource(str, enum.Enum):
    SOLAR = "Solar"
    WIND = "Wind"
    HYDRO = "Hydro"
    GEOTHERMAL = "Geothermal"
    BIOMASS = "Biomass"
    OTHER = "Other"

    @classmethod
    def values(cls):
        return [e.value for e in cls]


class ClaimStatus(str, Enum):
    SUBMITTED = "Submitted"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    CONSUMED = "Consumed"


class ClaimDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    CONSUME = "consume"


class PayoutType(str, Enum):
    SUBMISSION_FEE = "submission_fee"
    SELLER_PROCEEDS = "seller_proceeds"
    PLATFORM_FEE = "platform_fee"
    REFUND = "refund"


class EventTypes(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"


class Event(BaseModel):
    entity_id: int | str
    entity_name: str
    attributes_before: dict[str, Any] | None = None
    attributes_after: dict[str, Any] | None = None
    timestamp: datetime.datetime = Field(default_factory=utc_datetime_now)


class DomainEvent(BaseModel):
    """A named ledger event, e.g. CreditIssued, mirrored to the audit stream."""

    name: str
    payload: dict[str, Any]
    timestamp: datetime.datetime = Field(default_factory=utc_datetime_now)


class logging_levels(str, enum.Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LoggingLevelRequest(BaseModel):
    level: logging_levels
