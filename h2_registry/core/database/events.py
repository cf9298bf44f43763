from functools import lru_cache
from typing import Any

from esdbclient import EventStoreDBClient, NewEvent, StreamState

from h2_registry.core.models.base import DomainEvent, Event, EventTypes
from h2_registry.logging_config import logger
from h2_registry.settings import settings

EVENT_STREAM = "events"


@lru_cache(maxsize=1)
def _connect_esdb_client(uri: str) -> EventStoreDBClient:
    logger.info(f"Connecting to EventStoreDB at {uri}")
    return EventStoreDBClient(uri=uri)


def get_esdb_client() -> EventStoreDBClient:
    """FastAPI dependency returning the shared EventStoreDB client."""
    uri = f"esdb://{settings.ESDB_CONNECTION_STRING}:2113?tls=false"
    return _connect_esdb_client(uri)


def _append(new_events: list[NewEvent], esdb_client: EventStoreDBClient | None) -> None:
    if not new_events:
        return
    if esdb_client is None:
        logger.warning(
            f"No EventStoreDB client available, {len(new_events)} events not mirrored"
        )
        return

    esdb_client.append_to_stream(
        EVENT_STREAM,
        current_version=StreamState.ANY,
        events=new_events,
    )


def create_event(
    entity_id: int | str,
    entity_name: str,
    event_type: EventTypes,
    esdb_client: EventStoreDBClient | None,
    attributes_before: dict[str, Any] | None = None,
    attributes_after: dict[str, Any] | None = None,
) -> None:
    event = Event(
        entity_id=entity_id,
        entity_name=entity_name,
        attributes_before=attributes_before,
        attributes_after=attributes_after,
    )
    _append(
        [NewEvent(type=event_type.value, data=event.model_dump_json().encode())],
        esdb_client,
    )


def batch_create_events(
    entity_ids: list[int | str],
    entity_names: list[str],
    event_type: EventTypes,
    esdb_client: EventStoreDBClient | None,
) -> None:
    new_events = [
        NewEvent(
            type=event_type.value,
            data=Event(entity_id=entity_id, entity_name=entity_name)
            .model_dump_json()
            .encode(),
        )
        for entity_id, entity_name in zip(entity_ids, entity_names)
    ]
    _append(new_events, esdb_client)


def create_domain_events(
    domain_events: list[DomainEvent], esdb_client: EventStoreDBClient | None
) -> None:
    """Append named ledger events (ProducerRegistered, CreditIssued, ...) to the
    audit stream, using the event name as the stream event type."""
    new_events = [
        NewEvent(type=event.name, data=event.model_dump_json().encode())
        for event in domain_events
    ]
    _append(new_events, esdb_client)
