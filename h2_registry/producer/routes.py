from esdbclient import EventStoreDBClient
from fastapi import APIRouter, Depends
from sqlmodel import Session

from h2_registry.core.authorization import (
    AccessPolicy,
    get_access_policy,
    get_caller_address,
)
from h2_registry.core.database import db, events
from h2_registry.producer.models import ProducerRead
from h2_registry.producer.schemas import (
    ProducerRegister,
    ProducerStats,
    ProducerVerification,
)

from . import services

# Router initialisation
router = APIRouter(tags=["Producers"])


@router.post("/register", status_code=201, response_model=ProducerRead)
def register_producer(
    producer_register: ProducerRegister,
    caller: str = Depends(get_caller_address),
    write_session: Session = Depends(db.get_write_session),
    read_session: Session = Depends(db.get_read_session),
    esdb_client: EventStoreDBClient = Depends(events.get_esdb_client),
    policy: AccessPolicy = Depends(get_access_policy),
):
    return services.register_producer(
        caller, producer_register, write_session, read_session, esdb_client, policy
    )


@router.patch("/{address}/verification", response_model=ProducerRead)
def set_producer_verification(
    address: str,
    producer_verification: ProducerVerification,
    caller: str = Depends(get_caller_address),
    write_session: Session = Depends(db.get_write_session),
    read_session: Session = Depends(db.get_read_session),
    esdb_client: EventStoreDBClient = Depends(events.get_esdb_client),
    policy: AccessPolicy = Depends(get_access_policy),
):
    return services.set_producer_verification(
        caller,
        address,
        producer_verification.is_verified,
        write_session,
        read_session,
        esdb_client,
        policy,
    )


@router.post("/{address}/deactivate", response_model=ProducerRead)
def deactivate_producer(
    address: str,
    caller: str = Depends(get_caller_address),
    write_session: Session = Depends(db.get_write_session),
    read_session: Session = Depends(db.get_read_session),
    esdb_client: EventStoreDBClient = Depends(events.get_esdb_client),
    policy: AccessPolicy = Depends(get_access_policy),
):
    return services.deactivate_producer(
        caller, address, write_session, read_session, esdb_client, policy
    )


@router.post("/{address}/reactivate", response_model=ProducerRead)
def reactivate_producer(
    address: str,
    caller: str = Depends(get_caller_address),
    write_session: Session = Depends(db.get_write_session),
    read_session: Session = Depends(db.get_read_session),
    esdb_client: EventStoreDBClient = Depends(events.get_esdb_client),
    policy: AccessPolicy = Depends(get_access_policy),
):
    return services.reactivate_producer(
        caller, address, write_session, read_session, esdb_client, policy
    )


@router.get("/list", response_model=list[ProducerRead])
def list_producers(read_session: Session = Depends(db.get_read_session)):
    return services.get_all_producers(read_session)


@router.get("/{address}", response_model=ProducerRead)
def read_producer(address: str, read_session: Session = Depends(db.get_read_session)):
    return services.get_producer(address, read_session)


@router.get("/{address}/stats", response_model=ProducerStats)
def read_producer_stats(
    address: str, read_session: Session = Depends(db.get_read_session)
):
    return services.get_producer_stats(address, read_session)
