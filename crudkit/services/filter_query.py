import logging
import re
import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy import and_, asc, desc, func, or_, select
from sqlalchemy.inspection import inspect as sa_inspect
from sqlalchemy.orm import Query, load_only, selectinload

from crudkit.core.errors import QueryOptionsError, bad_filter_value
from crudkit.models.common import SOFT_DELETE_COLUMN, supports_soft_delete
from crudkit.schemas.query import Computed, Filter

_LOG = logging.getLogger("crudkit.query")

_FIELD_NAME_RE = re.compile(r"[^a-zA-Z0-9_*]")

_COMPARATORS = {
    "=": lambda col, value: col == value,
    "!=": lambda col, value: col != value,
    ">": lambda col, value: col > value,
    "<": lambda col, value: col < value,
    ">=": lambda col, value: col >= value,
    "<=": lambda col, value: col <= value,
}


def _coerce_bool_filter_value(column_key: str, value):
    if isinstance(value, bool):
        return value
    text = str(value or "").strip().lower()
    if text in {"1", "true", "yes", "y", "on"}:
        return True
    if text in {"0", "false", "no", "n", "off"}:
        return False
    raise bad_filter_value(column_key, "boolean")


def _coerce_number_filter_value(column_key: str, value, python_type):
    if python_type in {int, float} and isinstance(value, (int, float)) and not isinstance(value, bool):
        return python_type(value)
    if python_type is Decimal and isinstance(value, Decimal):
        return value
    text = str(value).strip()
    if not text:
        raise bad_filter_value(column_key, "number")
    try:
        if python_type is int:
            return int(text)
        if python_type is float:
            return float(text)
        return Decimal(text)
    except (ValueError, TypeError, InvalidOperation):
        raise bad_filter_value(column_key, "number")


def _coerce_date_filter_value(column_key: str, value):
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value or "").strip()
    if not text:
        raise bad_filter_value(column_key, "date")
    try:
        # Full ISO datetimes are accepted, only their date part is compared.
        if "T" in text or " " in text:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        return date.fromisoformat(text)
    except ValueError:
        raise bad_filter_value(column_key, "date")


def _coerce_datetime_filter_value(column_key: str, value):
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value or "").strip()
        if not text:
            raise bad_filter_value(column_key, "datetime")
        try:
            if "T" not in text and " " not in text and len(text) == 10:
                parsed = datetime.combine(date.fromisoformat(text), datetime.min.time())
            else:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            raise bad_filter_value(column_key, "datetime")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _column_python_type(column):
    try:
        return column.property.columns[0].type.python_type
    except Exception:
        return None


def coerce_filter_value(column, value):
    python_type = _column_python_type(column)
    if python_type is None:
        return value
    if python_type is uuid.UUID:
        if isinstance(value, uuid.UUID):
            return value
        try:
            return uuid.UUID(str(value or "").strip())
        except ValueError:
            raise bad_filter_value(column.key, "uuid")
    if python_type is bool:
        return _coerce_bool_filter_value(column.key, value)
    if python_type in {int, float, Decimal}:
        return _coerce_number_filter_value(column.key, value, python_type)
    if python_type is datetime:
        return _coerce_datetime_filter_value(column.key, value)
    if python_type is date:
        return _coerce_date_filter_value(column.key, value)
    return value


def is_relation_field(field: str) -> bool:
    return "." in field


def column_attr(model, name: str):
    mapper = sa_inspect(model)
    if name not in mapper.column_attrs:
        return None
    return getattr(model, name)


def relationship_attr(model, name: str):
    mapper = sa_inspect(model)
    if name not in mapper.relationships:
        return None
    return getattr(model, name)


def related_model(relationship):
    return relationship.property.mapper.class_


def visible_criteria(model) -> list:
    if not supports_soft_delete(model):
        return []
    return [getattr(model, SOFT_DELETE_COLUMN).is_(None)]


def _has(relationship, criterion=None):
    criteria = visible_criteria(related_model(relationship))
    if criterion is not None:
        criteria.append(criterion)
    clause = and_(*criteria) if criteria else None
    if relationship.property.uselist:
        return relationship.any(clause)
    return relationship.has(clause)


def _is_empty(value) -> bool:
    # None, False, 0 and "0" count as missing bounds, same as blank strings.
    if isinstance(value, str):
        return value.strip() in {"", "0"}
    return not value


def _between_clause(column, value):
    slots = list(value) if isinstance(value, (list, tuple)) else [value]
    slots = (slots + [None, None])[:2]
    kept = [slot for slot in slots if not _is_empty(slot)]
    if not kept:
        return None
    if len(kept) == 1:
        if not _is_empty(slots[0]):
            return column >= coerce_filter_value(column, slots[0])
        return column <= coerce_filter_value(column, slots[1])
    return column.between(coerce_filter_value(column, kept[0]), coerce_filter_value(column, kept[1]))


def _date_clause(column, value):
    if _column_python_type(column) is datetime:
        day_start = _coerce_datetime_filter_value(column.key, _coerce_date_filter_value(column.key, value).isoformat())
        return (column >= day_start) & (column < day_start + timedelta(days=1))
    return column == _coerce_date_filter_value(column.key, value)


def build_filter_clause(model, field: str, value, op: str = "="):
    """Criterion for one filter on a plain column, or None when it adds nothing."""
    column = column_attr(model, field)
    if column is None:
        _LOG.debug("Skipping filter on unknown field %s.%s", model.__name__, field)
        return None

    if op == "between":
        return _between_clause(column, value)
    if isinstance(value, (list, tuple)):
        if not value:
            return None
        return column.in_([coerce_filter_value(column, item) for item in value])
    if op == "exists":
        if value is True or value == "true":
            return column.isnot(None)
        return column.is_(None)
    if value is None:
        return None
    if op == "contain":
        return column.ilike(f"%{value}%")
    if op == "date":
        return _date_clause(column, value)
    if op == "like":
        return column.like(str(value))
    comparator = _COMPARATORS.get(op)
    if comparator is None:
        _LOG.debug("Operator %s does not apply to column %s.%s", op, model.__name__, field)
        return None
    return comparator(column, coerce_filter_value(column, value))


def relation_clause(model, field: str, value, op: str):
    parts = field.split(".")
    if len(parts) > 3:
        raise QueryOptionsError(f'Relation path "{field}" is nested too deep')

    first = relationship_attr(model, parts[0])
    if first is None:
        _LOG.debug("Skipping filter on unknown relation %s.%s", model.__name__, parts[0])
        return None
    if op == "not_has":
        return ~_has(first)

    if len(parts) == 2:
        return _has(first, build_filter_clause(related_model(first), parts[1], value, op))

    second = relationship_attr(related_model(first), parts[1])
    if second is None:
        _LOG.debug("Skipping filter on unknown relation %s", field)
        return None
    inner = build_filter_clause(related_model(second), parts[2], value, op)
    return _has(first, _has(second, inner))


def filter_clause(model, item: Filter):
    if is_relation_field(item.field):
        return relation_clause(model, item.field, item.value, item.operator)
    return build_filter_clause(model, item.field, item.value, item.operator)


def apply_filters(q: Query, model, filters: list[Filter]) -> Query:
    clauses = [clause for clause in (filter_clause(model, item) for item in filters) if clause is not None]
    if not clauses:
        return q
    return q.filter(and_(*clauses))


def apply_search(q: Query, model, search: str, fields: list[str]) -> Query:
    clauses = []
    for field in fields:
        if is_relation_field(field):
            clause = relation_clause(model, field, search, "contain")
        else:
            clause = build_filter_clause(model, field, search, "contain")
        if clause is not None:
            clauses.append(clause)
    if not clauses:
        return q
    return q.filter(or_(*clauses))


def apply_sorts(q: Query, model, sorts: dict[str, str]) -> Query:
    for field, direction in sorts.items():
        col = column_attr(model, field)
        if col is None:
            _LOG.debug("Skipping sort on unknown field %s.%s", model.__name__, field)
            continue
        q = q.order_by(asc(col) if direction == "asc" else desc(col))
    return q


def select_fields(fields: list[str] | None = None) -> list[str]:
    if not fields:
        return ["*"]
    return [_FIELD_NAME_RE.sub("", str(field)) for field in fields]


def apply_select(q: Query, model, fields: list[str] | None) -> Query:
    names = select_fields(fields)
    if "*" in names:
        return q
    columns = [col for col in (column_attr(model, name) for name in names if name) if col is not None]
    if not columns:
        return q
    return q.options(load_only(*columns))


def count_label(path: str) -> str:
    return f"{path.replace('.', '_')}_count"


def relation_count_column(model, target):
    """Correlated COUNT(*) of the related rows, labelled ``<relation>_count``."""
    relationship = relationship_attr(model, target.path)
    if relationship is None:
        _LOG.debug("Skipping count of unknown relation %s.%s", model.__name__, target.path)
        return None
    prop = relationship.property
    related = related_model(relationship)
    stmt = select(func.count()).select_from(prop.target)
    if prop.secondary is not None:
        stmt = stmt.join(prop.secondary, prop.secondaryjoin)
    stmt = stmt.where(prop.primaryjoin)
    criteria = visible_criteria(related)
    if isinstance(target, Computed):
        criteria.append(target.constraint(related))
    if criteria:
        stmt = stmt.where(*criteria)
    return stmt.scalar_subquery().label(count_label(target.path))


def relation_loader(model, target):
    current = model
    loader = None
    names = target.path.split(".")
    for index, name in enumerate(names):
        relationship = relationship_attr(current, name)
        if relationship is None:
            _LOG.debug("Skipping eager load of unknown relation %s.%s", current.__name__, name)
            return None
        related = related_model(relationship)
        criteria = visible_criteria(related)
        if isinstance(target, Computed) and index == len(names) - 1:
            criteria.append(target.constraint(related))
        attr = relationship.and_(*criteria) if criteria else relationship
        loader = selectinload(attr) if loader is None else loader.selectinload(attr)
        current = related
    return loader
