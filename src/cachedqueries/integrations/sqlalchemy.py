"""SQLAlchemy support for cached queries.

Provides:
- SqlAlchemyQuery: a 2.0-style ``select()`` bound to an AsyncSession
- EagerLoadTagSupplier: tags from the statement's entities and everything
  they load eagerly
- affected_tags / invalidate_on_commit: tags for the entities a unit of work
  touches, invalidated once the commit succeeds
- orm_codec: a codec that rebuilds cached entities with ORM state

Tags are fully-qualified class names, e.g. ``app.models.Order``.

Example:
    track_changes(AsyncSession)

    query = SqlAlchemyQuery(session, select(Order).where(Order.open), include=[Order.lines])
    orders = await manager.to_list(query)  # tags: app.models.Order, app.models.OrderLine

    session.add(Order(...))
    await invalidate_on_commit(session, manager)
"""

from __future__ import annotations

import itertools
from collections.abc import Iterable, Sequence
from typing import Any, Generic, TypeVar

from sqlalchemy import Select, event
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapper, QueryableAttribute, Session, selectinload
from sqlalchemy.orm.attributes import set_committed_value

from cachedqueries.manager import CacheManager
from cachedqueries.query import Query
from cachedqueries.serialization import ReferenceCodec, default_instance_factory

T = TypeVar("T")

EAGER_LOADING = frozenset({"joined", "selectin", "subquery", "immediate"})

# Session.info key holding tags collected by before_flush
PENDING_TAGS_KEY = "cachedqueries.pending_tags"


def entity_tag(cls: type) -> str:
    """Invalidation tag for a mapped class."""
    return f"{cls.__module__}.{cls.__qualname__}"


def _mapper_for(cls: Any) -> Mapper[Any] | None:
    mapper = sa_inspect(cls, raiseerr=False)
    return mapper if isinstance(mapper, Mapper) else None


def _selects_entities(statement: Select[Any]) -> bool:
    descriptions = statement.column_descriptions
    return bool(descriptions) and all(
        d.get("entity") is not None and d.get("type") is d.get("entity") for d in descriptions
    )


# -------------------------------------------------------------------------
# Queries
# -------------------------------------------------------------------------


class SqlAlchemyQuery(Generic[T]):
    """Re-runnable ORM statement.

    Args:
        session: Session the statement runs in
        statement: ``select()`` returning ORM entities or scalars
        include: Relationship attributes to load with ``selectinload``; their
            targets are added to the derived tags
        unique: De-duplicate rows, required for joined eager collections.
            Defaults to True when the statement selects whole entities.
    """

    def __init__(
        self,
        session: AsyncSession,
        statement: Select[Any],
        include: Iterable[QueryableAttribute[Any]] = (),
        unique: bool | None = None,
    ):
        self.session = session
        self.include = tuple(include)
        if self.include:
            statement = statement.options(*(selectinload(attr) for attr in self.include))
        self.statement = statement
        self.unique = _selects_entities(statement) if unique is None else unique

    def identity(self) -> str:
        """Compiled SQL text, bound parameters and included relationships.

        Loader options are not rendered in the SQL, so includes are listed
        separately to keep differently loaded graphs apart.
        """
        compiled = self.statement.compile()
        params = ", ".join(f"{name}={value!r}" for name, value in sorted(compiled.params.items()))
        includes = ", ".join(str(attr) for attr in self.include)
        return f"{compiled}\n{params}\n{includes}"

    async def fetch_all(self) -> Sequence[T]:
        result = await self.session.scalars(self.statement)
        if self.unique:
            result = result.unique()
        return list(result.all())

    async def fetch_first(self) -> T | None:
        result = await self.session.scalars(self.statement.limit(1))
        if self.unique:
            result = result.unique()
        return result.first()


class EagerLoadTagSupplier:
    """Derives tags from a statement's root entities and eager relationships.

    Relationships declared with an eager ``lazy`` strategy are followed
    recursively, as are the ``include`` attributes of a SqlAlchemyQuery.
    """

    def derive_tags(self, query: Query[Any]) -> Sequence[str]:
        statement = getattr(query, "statement", None)
        if not isinstance(statement, Select):
            return []

        visited: dict[type, None] = {}
        for description in statement.column_descriptions:
            entity = description.get("entity")
            if entity is not None:
                self._walk(entity, visited)
        for attr in getattr(query, "include", ()):
            self._walk(attr.property.mapper.class_, visited)

        return [entity_tag(cls) for cls in visited]

    def _walk(self, cls: type, visited: dict[type, None]) -> None:
        mapper = _mapper_for(cls)
        if mapper is None or mapper.class_ in visited:
            return
        visited[mapper.class_] = None
        for relationship in mapper.relationships:
            if relationship.lazy in EAGER_LOADING:
                self._walk(relationship.mapper.class_, visited)


# -------------------------------------------------------------------------
# Unit-of-work invalidation
# -------------------------------------------------------------------------


def affected_tags(session: Session | AsyncSession) -> list[str]:
    """Tags for every new, dirty and deleted instance and its mapped bases."""
    tags: dict[str, None] = {}
    for instance in itertools.chain(session.new, session.dirty, session.deleted):
        for cls in type(instance).__mro__:
            if _mapper_for(cls) is not None:
                tags[entity_tag(cls)] = None
    return list(tags)


def _collect_before_flush(session: Session, flush_context: Any, instances: Any) -> None:
    session.info.setdefault(PENDING_TAGS_KEY, set()).update(affected_tags(session))


def _discard_pending(session: Session) -> None:
    session.info.pop(PENDING_TAGS_KEY, None)


def track_changes(target: Any) -> None:
    """Record affected tags at every flush of ``target``.

    Autoflush empties ``session.new``/``dirty``/``deleted`` before commit, so
    tags are accumulated in ``session.info`` as flushes happen. They are
    dropped when the transaction commits or rolls back, so only
    ``invalidate_on_commit`` acts on them. ``target`` may be a Session
    class, a sessionmaker, a Session, or an AsyncSession.
    """
    if isinstance(target, AsyncSession):
        target = target.sync_session
    elif target is AsyncSession:
        target = Session
    if not event.contains(target, "before_flush", _collect_before_flush):
        event.listen(target, "before_flush", _collect_before_flush)
        event.listen(target, "after_commit", _discard_pending)
        event.listen(target, "after_rollback", _discard_pending)


def pending_tags(session: Session | AsyncSession) -> list[str]:
    """Tags collected by flushes plus the session's unflushed changes."""
    collected: set[str] = set(session.info.get(PENDING_TAGS_KEY, ()))
    collected.update(affected_tags(session))
    return sorted(collected)


async def invalidate_on_commit(session: AsyncSession, manager: CacheManager) -> list[str]:
    """Commit the session, then invalidate the tags its changes touched.

    Errors from the commit propagate and nothing is invalidated.

    Returns:
        The invalidated tags.
    """
    tags = pending_tags(session)
    await session.commit()
    session.info.pop(PENDING_TAGS_KEY, None)
    if tags:
        await manager.invalidate(tags)
    return tags


# -------------------------------------------------------------------------
# Decoding cached entities
# -------------------------------------------------------------------------


def orm_instance_factory(cls: type) -> Any:
    """Blank instance with ORM state for mapped classes."""
    mapper = _mapper_for(cls)
    if mapper is None:
        return default_instance_factory(cls)
    return mapper.class_manager.new_instance()


def orm_attribute_setter(instance: Any, name: str, value: Any) -> None:
    """Set mapped attributes as loaded values, without change events."""
    mapper = _mapper_for(type(instance))
    if mapper is not None and name in mapper.attrs:
        set_committed_value(instance, name, value)
    else:
        object.__setattr__(instance, name, value)


def orm_codec() -> ReferenceCodec:
    """ReferenceCodec that rebuilds mapped instances as detached, loaded objects."""
    return ReferenceCodec(
        instance_factory=orm_instance_factory,
        attribute_setter=orm_attribute_setter,
    )
