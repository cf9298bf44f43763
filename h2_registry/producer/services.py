import datetime
from typing import Any

from esdbclient import EventStoreDBClient
from sqlalchemy import func
from sqlmodel import Session, select

from h2_registry.core.authorization import AccessPolicy
from h2_registry.core.database.cqrs import ChangeSet, commit_changes
from h2_registry.core.errors import AlreadyInState, MonthlyLimitExceeded, NotRegistered
from h2_registry.core.models.base import utc_datetime_now
from h2_registry.core.services import month_bucket, normalise_address
from h2_registry.logging_config import logger
from h2_registry.producer.models import Producer
from h2_registry.producer.schemas import ProducerRegister, ProducerStats
from h2_registry.producer.validation import validate_producer_registration


def get_producer(address: str, db_session: Session, for_update: bool = False) -> Producer:
    producer = Producer.by_address(normalise_address(address), db_session, for_update)
    if producer is None:
        raise NotRegistered(f"Producer not registered: {address}", address=address)
    return producer


def get_all_producers(read_session: Session) -> list[Producer]:
    return list(read_session.exec(select(Producer).order_by(Producer.id)).all())


def get_registered_producers_count(read_session: Session) -> int:
    return read_session.exec(select(func.count(Producer.id))).one()


def get_verified_producers_count(read_session: Session) -> int:
    return read_session.exec(
        select(func.count(Producer.id)).where(Producer.is_verified == True)  # noqa: E712
    ).one()


def register_producer(
    caller: str,
    producer_register: ProducerRegister,
    write_session: Session,
    read_session: Session,
    esdb_client: EventStoreDBClient | None,
    policy: AccessPolicy,
    now: datetime.datetime | None = None,
) -> Producer:
    """Admit a producer to the registry.

    The producer starts active but unverified, with its production counters
    at zero. Re-registering an address is not supported; deactivated producers
    are brought back with `reactivate_producer`.

    Args:
        caller (str): The account performing the registration, must be an admin
        producer_register (ProducerRegister): The producer's details
        write_session (Session): The database write session
        read_session (Session): The database read session
        esdb_client (EventStoreDBClient): The EventStoreDB client
        policy (AccessPolicy): The access policy
        now (datetime.datetime | None): Registration time, defaults to now

    Returns:
        Producer: The registered producer, read from the read database
    """
    policy.require_admin(caller, "register producers")

    producer_fields = validate_producer_registration(producer_register, write_session)
    registration_time = now or utc_datetime_now()

    producer = Producer.model_validate(
        {**producer_fields, "registration_time": registration_time}
    )

    change_set = ChangeSet()
    change_set.create(producer)
    change_set.emit(
        "ProducerRegistered",
        {
            "producer": producer.address,
            "plant_id": producer.plant_id,
            "location": producer.location,
            "timestamp": registration_time,
        },
    )

    db_producer = commit_changes(change_set, write_session, read_session, esdb_client)[0]
    logger.info(f"Registered producer {producer_fields['address']} ({producer_fields['plant_id']})")

    return db_producer  # type: ignore


def set_producer_verification(
    caller: str,
    address: str,
    is_verified: bool,
    write_session: Session,
    read_session: Session,
    esdb_client: EventStoreDBClient | None,
    policy: AccessPolicy,
) -> Producer:
    """Record the outcome of a producer's KYC check. Issuance requires the
    producer to be verified."""
    policy.require_admin(caller, "set producer verification")

    producer = get_producer(address, write_session, for_update=True)

    change_set = ChangeSet()
    change_set.update(producer, {"is_verified": is_verified})
    change_set.emit(
        "ProducerVerified", {"producer": producer.address, "verified": is_verified}
    )

    db_producer = commit_changes(change_set, write_session, read_session, esdb_client)[0]
    logger.info(f"Producer {address} verification set to {is_verified}")

    return db_producer  # type: ignore


def _set_producer_active(
    caller: str,
    address: str,
    is_active: bool,
    write_session: Session,
    read_session: Session,
    esdb_client: EventStoreDBClient | None,
    policy: AccessPolicy,
) -> Producer:
    action = "reactivate producers" if is_active else "deactivate producers"
    policy.require_admin(caller, action)

    producer = get_producer(address, write_session, for_update=True)

    if producer.is_active == is_active:
        state = "active" if is_active else "inactive"
        err_msg = f"Producer {address} is already {state}"
        logger.error(err_msg)
        raise AlreadyInState(err_msg, address=address)

    change_set = ChangeSet()
    change_set.update(producer, {"is_active": is_active})
    change_set.emit(
        "ProducerReactivated" if is_active else "ProducerDeactivated",
        {"producer": producer.address},
    )

    return commit_changes(change_set, write_session, read_session, esdb_client)[0]  # type: ignore


def deactivate_producer(
    caller: str,
    address: str,
    write_session: Session,
    read_session: Session,
    esdb_client: EventStoreDBClient | None,
    policy: AccessPolicy,
) -> Producer:
    """Block future issuance to a producer. Counters and credits already
    minted are left untouched."""
    return _set_producer_active(
        caller, address, False, write_session, read_session, esdb_client, policy
    )


def reactivate_producer(
    caller: str,
    address: str,
    write_session: Session,
    read_session: Session,
    esdb_client: EventStoreDBClient | None,
    policy: AccessPolicy,
) -> Producer:
    return _set_producer_active(
        caller, address, True, write_session, read_session, esdb_client, policy
    )


def effective_month_production(producer: Producer, now: datetime.datetime) -> int:
    """The producer's production in the month containing `now`, treating the
    stored counter as zero once the calendar month has rolled over."""
    if producer.last_production_month != month_bucket(now):
        return 0
    return producer.current_month_production


def check_and_reset_monthly_cap(
    producer: Producer, amount: int, now: datetime.datetime
) -> dict[str, Any]:
    """Check an issuance of `amount` against the producer's monthly limit.

    If the calendar month of `now` differs from the producer's last counted
    month the counter restarts from zero. Nothing is written here: the
    returned update, which carries both the reset and the new counters, must
    be committed in the same ChangeSet as the issuance itself, so a rejected
    issuance leaves the producer untouched.

    Raises:
        MonthlyLimitExceeded: If the issuance would take the month's production
                              above the producer's limit.

    Returns:
        dict[str, Any]: The producer update to apply alongside the issuance
    """
    current_bucket = month_bucket(now)
    current_month_production = effective_month_production(producer, now)

    if current_month_production + amount > producer.monthly_production_limit:
        err_msg = (
            f"Monthly production limit exceeded for {producer.address}: "
            f"{current_month_production} + {amount} > {producer.monthly_production_limit}"
        )
        logger.error(err_msg)
        raise MonthlyLimitExceeded(
            err_msg,
            limit=producer.monthly_production_limit,
            current=current_month_production,
            requested=amount,
        )

    return {
        "last_production_month": current_bucket,
        "current_month_production": current_month_production + amount,
        "total_produced": producer.total_produced + amount,
    }


def get_producer_stats(
    address: str, read_session: Session, now: datetime.datetime | None = None
) -> ProducerStats:
    producer = get_producer(address, read_session)
    current_month_production = effective_month_production(
        producer, now or utc_datetime_now()
    )

    return ProducerStats(
        address=producer.address,
        plant_id=producer.plant_id,
        is_active=producer.is_active,
        is_verified=producer.is_verified,
        total_produced=producer.total_produced,
        current_month_production=current_month_production,
        monthly_production_limit=producer.monthly_production_limit,
        remaining_monthly_capacity=max(
            producer.monthly_production_limit - current_month_production, 0
        ),
    )
