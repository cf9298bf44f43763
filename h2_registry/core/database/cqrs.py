from typing import Any, Callable

from esdbclient import EventStoreDBClient
from sqlmodel import Session, SQLModel

from h2_registry.core.database.events import (
    batch_create_events,
    create_domain_events,
    create_event,
)
from h2_registry.core.models.base import DomainEvent, EventTypes
from h2_registry.logging_config import logger

PayloadFactory = Callable[[], dict[str, Any]]


class ChangeSet:
    """The entities created and updated by a single ledger operation, together
    with the domain events it emits. A ChangeSet is committed as one unit by
    `commit_changes`; nothing is written until then.

    Domain event payloads may be given as a callable, evaluated after the
    write session has been flushed so that generated IDs are available.
    """

    def __init__(self) -> None:
        self.created: list[SQLModel] = []
        self._updated: dict[int, tuple[SQLModel, dict[str, Any]]] = {}
        self._events: list[tuple[str, dict[str, Any] | PayloadFactory]] = []

    @property
    def updated(self) -> list[tuple[SQLModel, dict[str, Any]]]:
        return list(self._updated.values())

    def create(self, entity: SQLModel) -> SQLModel:
        self.created.append(entity)
        return entity

    def update(self, entity: SQLModel, update_data: dict[str, Any]) -> None:
        key = id(entity)
        if key in self._updated:
            self._updated[key][1].update(update_data)
        else:
            self._updated[key] = (entity, dict(update_data))

    def emit(self, name: str, payload: dict[str, Any] | PayloadFactory) -> None:
        self._events.append((name, payload))

    def extend(self, other: "ChangeSet") -> None:
        for entity in other.created:
            self.create(entity)
        for entity, update_data in other.updated:
            self.update(entity, update_data)
        self._events.extend(other._events)

    def domain_events(self) -> list[DomainEvent]:
        return [
            DomainEvent(name=name, payload=payload() if callable(payload) else payload)
            for name, payload in self._events
        ]

    def __bool__(self) -> bool:
        return bool(self.created or self._updated or self._events)


def transform_write_entities_to_read(entities: list[SQLModel]) -> list[SQLModel]:
    # Read models currently mirror the write models one to one
    return entities


def commit_changes(
    change_set: ChangeSet,
    write_session: Session,
    read_session: Session,
    esdb_client: EventStoreDBClient | None,
) -> list[SQLModel]:
    """Apply a ChangeSet to the write and read databases in a single commit,
    recording a CREATE or UPDATE event for each entity and appending the
    ChangeSet's domain events to the audit stream.

    Any failure rolls back both sessions and is re-raised, so either every
    change in the set is visible afterwards or none is.

    Returns:
        list[SQLModel]: The read instances of the created entities followed by
                        the read instances of the updated entities.
    """
    created = change_set.created
    updated = change_set.updated

    before_data: list[dict[str, Any]] = []

    try:
        for entity, update_data in updated:
            before_data.append(
                {attr: getattr(entity, attr) for attr in update_data.keys()}
            )
            entity.sqlmodel_update(update_data)
            write_session.add(entity)

        write_session.add_all(created)
        write_session.flush()

        for entity in created:
            write_session.refresh(entity)

        domain_events = change_set.domain_events()

    except Exception as e:
        logger.error(
            f"Error during flush to write DB: {str(e)}, session ID {id(write_session)}"
        )
        write_session.rollback()
        raise

    try:
        read_created = [
            read_session.merge(entity)
            for entity in transform_write_entities_to_read(created)
        ]
        read_updated = [
            read_session.merge(entity)
            for entity in transform_write_entities_to_read([e for e, _ in updated])
        ]
        read_session.flush()

    except Exception as e:
        logger.error(f"Error during flush to read DB: {str(e)}")
        write_session.rollback()
        read_session.rollback()
        raise

    try:
        if created:
            batch_create_events(
                entity_ids=[entity.id for entity in created],  # type: ignore
                entity_names=[entity.__class__.__name__ for entity in created],
                event_type=EventTypes.CREATE,
                esdb_client=esdb_client,
            )

        for (entity, update_data), before in zip(updated, before_data):
            create_event(
                entity_id=entity.id,  # type: ignore
                entity_name=entity.__class__.__name__,
                event_type=EventTypes.UPDATE,
                attributes_before=before,
                attributes_after=update_data,
                esdb_client=esdb_client,
            )

        create_domain_events(domain_events, esdb_client)

        write_session.commit()
        read_session.commit()

    except Exception as e:
        logger.error(f"Error while committing change set: {str(e)}")
        write_session.rollback()
        read_session.rollback()
        raise

    read_entities = read_created + read_updated
    for entity in read_entities:
        read_session.refresh(entity)

    return read_entities


def write_to_database(
    entities: list[SQLModel] | SQLModel,
    write_session: Session,
    read_session: Session,
    esdb_client: EventStoreDBClient | None,
) -> list[SQLModel]:
    """Write the provided entities to the read and write databases, saving an
    Event entry for each entity."""

    if not isinstance(entities, list):
        entities = [entities]

    change_set = ChangeSet()
    for entity in entities:
        change_set.create(entity)

    return commit_changes(change_set, write_session, read_session, esdb_client)
