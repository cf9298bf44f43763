from sqlmodel import Session

from h2_registry.core.errors import AlreadyRegistered, InvalidInput
from h2_registry.core.models.base import RenewableSource
from h2_registry.core.services import normalise_address
from h2_registry.logging_config import logger
from h2_registry.producer.models import Producer
from h2_registry.producer.schemas import ProducerRegister
from h2_registry.settings import settings


def parse_renewable_source(source: RenewableSource | str | None) -> RenewableSource:
    """Accept either the value ("Solar") or the name ("SOLAR") of a source."""
    if isinstance(source, RenewableSource):
        return source
    if not source or not source.strip():
        raise InvalidInput("Renewable source cannot be empty", field="renewable_source")

    source = source.strip()
    for member in RenewableSource:
        if source.lower() in (member.value.lower(), member.name.lower()):
            return member

    raise InvalidInput(
        f"Unknown renewable source {source}, expected one of {RenewableSource.values()}",
        field="renewable_source",
    )


def validate_producer_registration(
    producer_register: ProducerRegister, db_session: Session
) -> dict:
    """Validate a registration request and return the cleaned producer fields.

    Raises:
        InvalidInput: If any field is empty or the monthly limit is out of range.
        AlreadyRegistered: If the address or the plant ID is already registered.
    """
    address = normalise_address(producer_register.address)
    plant_id = (producer_register.plant_id or "").strip()
    location = (producer_register.location or "").strip()

    if not plant_id:
        raise InvalidInput("Plant ID cannot be empty", field="plant_id")
    if not location:
        raise InvalidInput("Location cannot be empty", field="location")

    renewable_source = parse_renewable_source(producer_register.renewable_source)

    limit = producer_register.monthly_production_limit
    if limit <= 0 or limit > settings.MAX_MONTHLY_PRODUCTION_LIMIT:
        raise InvalidInput(
            f"Monthly production limit must be between 1 and {settings.MAX_MONTHLY_PRODUCTION_LIMIT}, got {limit}",
            field="monthly_production_limit",
        )

    if Producer.by_address(address, db_session) is not None:
        err_msg = f"Producer already registered: {address}"
        logger.error(err_msg)
        raise AlreadyRegistered(err_msg, address=address)

    if Producer.by_plant_id(plant_id, db_session) is not None:
        err_msg = f"Plant ID already registered: {plant_id}"
        logger.error(err_msg)
        raise AlreadyRegistered(err_msg, plant_id=plant_id)

    return {
        "address": address,
        "plant_id": plant_id,
        "location": location,
        "renewable_source": renewable_source,
        "monthly_production_limit": limit,
    }
