from contextlib import asynccontextmanager
from typing import (
    Any,
    Generic,
    TypeVar,
    Optional,
    List,
    Type,
    AsyncGenerator,
    Iterable,
)

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy import update
from pydantic import BaseModel

from common.core.otel_axiom_exporter import trace_span
from common.db.scoped import get_session

EntityType = TypeVar("EntityType")
DomainModelType = TypeVar("DomainModelType")
CreateModelType = TypeVar("CreateModelType", bound=BaseModel)
UpdateModelType = TypeVar("UpdateModelType", bound=BaseModel)


class BaseRepository(Generic[EntityType, DomainModelType]):
    """
    Base repository with support for both explicit and lazy session management.

    1. Explicit session: pass db_session to the constructor. The session is
       used directly and the caller manages its lifecycle.
    2. Lazy session: omit db_session. Each operation acquires a session via
       get_session(), joining an enclosing transaction() when there is one.

    Example:
        repo = PaymentRepository()
        payment = await repo.get(123)  # Acquires and releases session
    """

    def __init__(
        self,
        entity_class: Type[EntityType],
        domain_class: Type[DomainModelType],
        db_session: Optional[AsyncSession] = None,
    ):
        self.entity_class = entity_class
        self.domain_class = domain_class
        self._explicit_session = db_session

    @asynccontextmanager
    async def _get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Yield the explicit session if one was given, else a lazy one."""
        if self._explicit_session is not None:
            yield self._explicit_session
        else:
            async with get_session() as session:
                yield session

    def _add_tenant_filter(self, query, tenant_id: str):
        """Add tenant filtering to any query."""
        return query.where(self.entity_class.tenant_id == tenant_id)

    def _entity_to_domain(self, entity: EntityType) -> DomainModelType:
        """Convert database entity to domain model."""
        return self.domain_class.model_validate(entity)

    def _entities_to_domain(
        self, entities: Iterable[EntityType]
    ) -> List[DomainModelType]:
        return [self._entity_to_domain(entity) for entity in entities]

    @trace_span
    async def get(
        self, id: Any, tenant_id: Optional[str] = None
    ) -> Optional[DomainModelType]:
        query = (
            select(self.entity_class)
            .where(self.entity_class.id == id)
            .execution_options(populate_existing=True)
        )

        if tenant_id is not None:
            query = self._add_tenant_filter(query, tenant_id)

        async with self._get_session() as session:
            result = await session.execute(query)
            entity = result.scalar_one_or_none()
            return self._entity_to_domain(entity) if entity else None

    @trace_span
    async def get_multi(
        self, skip: int = 0, limit: int = 100, tenant_id: Optional[str] = None
    ) -> List[DomainModelType]:
        query = (
            select(self.entity_class)
            .order_by(self.entity_class.id)
            .offset(skip)
            .limit(limit)
            .execution_options(populate_existing=True)
        )

        if tenant_id is not None:
            query = self._add_tenant_filter(query, tenant_id)

        async with self._get_session() as session:
            result = await session.execute(query)
            return self._entities_to_domain(result.scalars().all())

    @trace_span
    async def create(self, create_model: CreateModelType) -> DomainModelType:
        """Create a new entity from a typed create model."""
        data = create_model.model_dump(exclude_none=True)
        db_obj = self.entity_class(**data)
        async with self._get_session() as session:
            session.add(db_obj)
            await session.flush()
            await session.refresh(db_obj)
            return self._entity_to_domain(db_obj)

    @trace_span
    async def update(
        self, id: Any, update_model: UpdateModelType
    ) -> Optional[DomainModelType]:
        """Update an entity with a typed update model."""
        data = update_model.model_dump(exclude_unset=True)
        if not data:
            return await self.get(id)

        async with self._get_session() as session:
            await session.execute(
                update(self.entity_class).where(self.entity_class.id == id).values(data)
            )
            await session.flush()
        return await self.get(id)

    @trace_span
    async def transition_status(
        self,
        id: Any,
        expected: Iterable[str],
        new_status: str,
        *conditions,
        **values: Any,
    ) -> bool:
        """
        Compare-and-set a status column.

        The row is only updated while its status is one of ``expected`` and
        every extra SQL condition holds. Returns True when this caller won
        the transition, False when the row was missing or already moved on.
        """
        expected = [str(getattr(s, "value", s)) for s in expected]
        stmt = (
            update(self.entity_class)
            .where(
                self.entity_class.id == id,
                self.entity_class.status.in_(expected),
                *conditions,
            )
            .values(status=str(getattr(new_status, "value", new_status)), **values)
            .execution_options(synchronize_session=False)
        )
        async with self._get_session() as session:
            result = await session.execute(stmt)
            await session.flush()
            return result.rowcount == 1
