"""Shared SQLModel base with a small chainable query helper."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar, Generic, Self, TypeVar

from sqlmodel import SQLModel, col, select

if TYPE_CHECKING:
    from sqlalchemy.sql.elements import ColumnElement
    from sqlmodel.ext.asyncio.session import AsyncSession

ModelT = TypeVar("ModelT", bound="QueryModel")


@dataclass(frozen=True)
class QuerySet(Generic[ModelT]):
    """Immutable query builder; every refinement returns a new instance."""

    model: type[ModelT]
    criteria: tuple[Any, ...] = ()
    ordering: tuple[Any, ...] = ()
    row_limit: int | None = None

    def filter(self, *criteria: ColumnElement[bool] | bool) -> Self:
        return type(self)(
            self.model,
            (*self.criteria, *criteria),
            self.ordering,
            self.row_limit,
        )

    def filter_by(self, **values: object) -> Self:
        return self.filter(*(col(getattr(self.model, key)) == value for key, value in values.items()))

    def order_by(self, *ordering: Any) -> Self:
        return type(self)(self.model, self.criteria, (*self.ordering, *ordering), self.row_limit)

    def limit(self, row_limit: int) -> Self:
        return type(self)(self.model, self.criteria, self.ordering, row_limit)

    def _statement(self) -> Any:
        statement = select(self.model)
        if self.criteria:
            statement = statement.where(*self.criteria)
        if self.ordering:
            statement = statement.order_by(*self.ordering)
        if self.row_limit is not None:
            statement = statement.limit(self.row_limit)
        return statement

    async def all(self, session: AsyncSession) -> list[ModelT]:
        return list(await session.exec(self._statement()))

    async def first(self, session: AsyncSession) -> ModelT | None:
        return (await session.exec(self.limit(1)._statement())).first()


class _ObjectsDescriptor:
    def __get__(self, instance: object, owner: type[ModelT]) -> ModelManager[ModelT]:
        return ModelManager(owner)


class ModelManager(Generic[ModelT]):
    """Entry point exposed as ``Model.objects``."""

    def __init__(self, model: type[ModelT]) -> None:
        self.model = model

    def all(self) -> QuerySet[ModelT]:
        return QuerySet(self.model)

    def by_id(self, obj_id: object) -> QuerySet[ModelT]:
        return self.filter_by(id=obj_id)

    def filter(self, *criteria: ColumnElement[bool] | bool) -> QuerySet[ModelT]:
        return QuerySet(self.model).filter(*criteria)

    def filter_by(self, **values: object) -> QuerySet[ModelT]:
        return QuerySet(self.model).filter_by(**values)


class QueryModel(SQLModel):
    """Base class for table models that want ``Model.objects`` query helpers."""

    objects: ClassVar[_ObjectsDescriptor] = _ObjectsDescriptor()
