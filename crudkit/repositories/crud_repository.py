from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Union

from sqlalchemy import desc
from sqlalchemy.engine import Row
from sqlalchemy.inspection import inspect as sa_inspect
from sqlalchemy.orm import Query, Session

from crudkit.core.config import settings
from crudkit.core.errors import QueryOptionsError, RecordNotFound
from crudkit.models.common import SOFT_DELETE_COLUMN, supports_soft_delete, utcnow
from crudkit.schemas.query import Page, QueryOptions
from crudkit.services.filter_query import (
    apply_filters,
    apply_search,
    apply_select,
    apply_sorts,
    coerce_filter_value,
    relation_count_column,
    relation_loader,
)

_LOG = logging.getLogger("crudkit.repository")

BaseQuery = Callable[[Query], Query]
Where = Union[Mapping[str, Any], Callable[[Query], Query]]


class Trashed(str, Enum):
    EXCLUDE = "exclude"
    INCLUDE = "include"
    ONLY = "only"


class CrudRepository:
    """Query building and persistence for one mapped class.

    Reads come in three flavours: the plain method hides trashed rows, the
    ``_with_trashed`` variant shows everything and the ``_from_trash`` variant
    shows trashed rows only. Models without a ``deleted_at`` column ignore the
    distinction.
    """

    limit: int = settings.CRUD_DEFAULT_LIMIT

    def __init__(self, model: type, db: Session):
        self.model = model
        self.db = db

    def get_key_name(self) -> str:
        mapper = sa_inspect(self.model)
        if len(mapper.primary_key) != 1:
            raise QueryOptionsError("Only models with a single primary key column are supported")
        return mapper.get_property_by_column(mapper.primary_key[0]).key

    def _key_column(self):
        return getattr(self.model, self.get_key_name())

    def _key_value(self, row_id: Any) -> Any:
        if row_id is None:
            return None
        try:
            return coerce_filter_value(self._key_column(), row_id)
        except QueryOptionsError:
            return None

    def _scoped(self, q: Query, trashed: Trashed) -> Query:
        if trashed is Trashed.INCLUDE or not supports_soft_delete(self.model):
            return q
        column = getattr(self.model, SOFT_DELETE_COLUMN)
        return q.filter(column.isnot(None) if trashed is Trashed.ONLY else column.is_(None))

    def _compose(
        self,
        options: Optional[QueryOptions] = None,
        base_query: Optional[BaseQuery] = None,
        trashed: Trashed = Trashed.EXCLUDE,
        criteria: tuple = (),
    ) -> Query:
        q = self.db.query(self.model)
        if options is not None:
            q = apply_select(q, self.model, options.fields)
            if options.filters:
                q = apply_filters(q, self.model, options.filters)
            if options.search and options.search_fields:
                q = apply_search(q, self.model, options.search, options.search_fields)
            if options.sorts:
                q = apply_sorts(q, self.model, options.sorts)
            for target in options.counts:
                column = relation_count_column(self.model, target)
                if column is not None:
                    q = q.add_columns(column)
            loaders = [loader for loader in (relation_loader(self.model, target) for target in options.relations) if loader is not None]
            if loaders:
                q = q.options(*loaders)
        if base_query is not None:
            q = base_query(q)
        if criteria:
            q = q.filter(*criteria)
        return self._scoped(q, trashed)

    def build_query(
        self,
        options: Optional[QueryOptions] = None,
        base_query: Optional[BaseQuery] = None,
        trashed: Trashed = Trashed.EXCLUDE,
    ) -> Query:
        q = self._compose(options, base_query, trashed)
        if options is None:
            return q
        return q.limit(max(int(options.limit), 1))

    @staticmethod
    def _hydrate(row: Any) -> Any:
        # Relation counts come back as extra columns next to the entity.
        if not isinstance(row, Row):
            return row
        record = row[0]
        for name, value in zip(row._fields[1:], row[1:]):
            setattr(record, name, value)
        return record

    def _paginate(self, options: Optional[QueryOptions], base_query: Optional[BaseQuery], trashed: Trashed) -> Page:
        options = options or QueryOptions(limit=self.limit)
        page = max(int(options.page), 1)
        limit = max(int(options.limit), 1)
        q = self._compose(options, base_query, trashed)
        total = q.order_by(None).count()
        rows = q.offset((page - 1) * limit).limit(limit).all()
        return Page(items=[self._hydrate(row) for row in rows], total=total, page=page, limit=limit)

    def paginate(self, options: Optional[QueryOptions] = None, base_query: Optional[BaseQuery] = None) -> Page:
        return self._paginate(options, base_query, Trashed.EXCLUDE)

    def paginate_with_trashed(self, options: Optional[QueryOptions] = None, base_query: Optional[BaseQuery] = None) -> Page:
        return self._paginate(options, base_query, Trashed.INCLUDE)

    def paginate_from_trash(self, options: Optional[QueryOptions] = None, base_query: Optional[BaseQuery] = None) -> Page:
        return self._paginate(options, base_query, Trashed.ONLY)

    def _get_many(self, options: Optional[QueryOptions], base_query: Optional[BaseQuery], trashed: Trashed) -> list[Any]:
        options = options or QueryOptions(limit=self.limit)
        rows = self._compose(options, base_query, trashed).limit(max(int(options.limit), 1)).all()
        return [self._hydrate(row) for row in rows]

    def get_many(self, options: Optional[QueryOptions] = None, base_query: Optional[BaseQuery] = None) -> list[Any]:
        return self._get_many(options, base_query, Trashed.EXCLUDE)

    def get_many_with_trashed(self, options: Optional[QueryOptions] = None, base_query: Optional[BaseQuery] = None) -> list[Any]:
        return self._get_many(options, base_query, Trashed.INCLUDE)

    def get_many_from_trash(self, options: Optional[QueryOptions] = None, base_query: Optional[BaseQuery] = None) -> list[Any]:
        return self._get_many(options, base_query, Trashed.ONLY)

    def _get_one(self, row_id: Any, options: Optional[QueryOptions], base_query: Optional[BaseQuery], trashed: Trashed):
        key = self._key_value(row_id)
        if key is None:
            return None
        q = self._compose(options, base_query, trashed, criteria=(self._key_column() == key,))
        return self._hydrate(q.first())

    def get_one(self, row_id: Any, options: Optional[QueryOptions] = None, base_query: Optional[BaseQuery] = None):
        return self._get_one(row_id, options, base_query, Trashed.EXCLUDE)

    def get_one_or_fail(self, row_id: Any, options: Optional[QueryOptions] = None, base_query: Optional[BaseQuery] = None):
        record = self.get_one(row_id, options, base_query)
        if record is None:
            raise RecordNotFound()
        return record

    def get_one_with_trashed(self, row_id: Any, options: Optional[QueryOptions] = None, base_query: Optional[BaseQuery] = None):
        return self._get_one(row_id, options, base_query, Trashed.INCLUDE)

    def get_one_from_trash(self, row_id: Any, options: Optional[QueryOptions] = None, base_query: Optional[BaseQuery] = None):
        return self._get_one(row_id, options, base_query, Trashed.ONLY)

    def get_latest(self, column: str = "created_at"):
        return self.db.query(self.model).order_by(desc(getattr(self.model, column))).first()

    def get_latest_and_lock(self, column: str = "created_at", fields: Optional[list[str]] = None):
        """Newest row by ``column``, read under a shared lock (FOR SHARE)."""
        q = apply_select(self.db.query(self.model), self.model, fields)
        return q.order_by(desc(getattr(self.model, column))).with_for_update(read=True).first()

    def _fill(self, record: Any, payload: Mapping[str, Any]) -> None:
        columns = sa_inspect(self.model).column_attrs
        for key, value in payload.items():
            if key not in columns:
                _LOG.debug("Ignoring unknown field %s.%s in payload", self.model.__name__, key)
                continue
            setattr(record, key, value)

    def _commit(self, record: Any = None) -> None:
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        if record is not None:
            self.db.refresh(record)

    def create_one(self, payload: Optional[Mapping[str, Any]] = None):
        record = self.model()
        self._fill(record, payload or {})
        self.db.add(record)
        self._commit(record)
        return record

    def update_one(self, record: Any, payload: Mapping[str, Any]):
        if record is None:
            return None
        self._fill(record, payload)
        self._commit(record)
        return record

    def update_or_create(self, record: Any, payload: Mapping[str, Any]):
        if record is None or getattr(record, self.get_key_name(), None) is None:
            record = self.model()
            self.db.add(record)
        self._fill(record, payload)
        self._commit(record)
        return record

    def update_one_by_id(self, row_id: Any, payload: Mapping[str, Any]):
        return self.update_one(self.get_one(row_id), payload)

    def delete_one(self, record: Any):
        if record is None:
            return None
        if supports_soft_delete(self.model):
            setattr(record, SOFT_DELETE_COLUMN, utcnow())
            self._commit(record)
        else:
            self.db.delete(record)
            self._commit()
        _LOG.info("Deleted %s %s", self.model.__name__, getattr(record, self.get_key_name()))
        return record

    def delete_one_by_id(self, row_id: Any):
        return self.delete_one(self.get_one(row_id))

    def restore_one(self, record: Any):
        if record is None:
            return None
        if not supports_soft_delete(self.model):
            return record
        setattr(record, SOFT_DELETE_COLUMN, None)
        self._commit(record)
        _LOG.info("Restored %s %s", self.model.__name__, getattr(record, self.get_key_name()))
        return record

    def restore_one_by_id(self, row_id: Any):
        return self.restore_one(self.get_one_with_trashed(row_id))

    def force_delete_one(self, record: Any):
        if record is None:
            return None
        key = getattr(record, self.get_key_name())
        self.db.delete(record)
        self._commit()
        _LOG.info("Permanently deleted %s %s", self.model.__name__, key)
        return record

    def force_delete_one_by_id(self, row_id: Any):
        return self.force_delete_one(self.get_one_with_trashed(row_id))

    def _where(self, q: Query, where: Where) -> Query:
        if callable(where):
            return where(q)
        for field, value in where.items():
            q = q.filter(getattr(self.model, field) == value)
        return q

    def get_one_where(self, where: Where, fields: Optional[list[str]] = None):
        q = apply_select(self.db.query(self.model), self.model, fields)
        return self._scoped(self._where(q, where), Trashed.EXCLUDE).first()

    def count_where(self, where: Where, options: Optional[QueryOptions] = None) -> int:
        q = self._where(self._compose(options), where)
        return q.order_by(None).count()
