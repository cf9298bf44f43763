import datetime
from typing import Any, Hashable, Type, TypeVar

from esdbclient import EventStoreDBClient
from pydantic import BaseModel
from sqlmodel import Field, Session, SQLModel, select

from h2_registry.core.database import cqrs
from h2_registry.core.errors import UnknownEntity
from h2_registry.core.models.base import utc_datetime_now

T = TypeVar("T", bound="ActiveRecord")


class ActiveRecord(SQLModel):
    created_at: datetime.datetime = Field(
        default_factory=utc_datetime_now, nullable=False
    )

    @classmethod
    def by_id(
        cls: Type[T],
        id_: int,
        session: Session,
        for_update: bool = False,
    ) -> T:
        if for_update:
            obj = session.exec(
                select(cls).where(cls.id == id_).with_for_update()  # type: ignore
            ).first()
        else:
            obj = session.get(cls, id_)
        if obj is None:
            raise UnknownEntity(f"{cls.__name__} with id {id_} not found")
        return obj

    @classmethod
    def create(
        cls,
        source: list[dict[Hashable, Any]]
        | dict[Hashable, Any]
        | dict[str, Any]
        | BaseModel,
        write_session: Session,
        read_session: Session,
        esdb_client: EventStoreDBClient | None,
    ) -> list[SQLModel]:
        if isinstance(source, (SQLModel, BaseModel)):
            obj = [cls.model_validate(source.model_dump())]
        elif isinstance(source, dict):
            obj = [cls.model_validate(source)]
        elif isinstance(source, list):
            obj = [cls.model_validate(elem) for elem in source]
        else:
            raise ValueError(f"The input type {type(source)} can not be processed")

        created_entities = cqrs.write_to_database(
            obj,  # type: ignore
            write_session,
            read_session,
            esdb_client,
        )

        return created_entities
