from __future__ import annotations

import logging
import re
from typing import Any, Callable, Mapping, Optional

from crudkit.core.errors import QueryOptionsError, RecordNotFound
from crudkit.repositories.crud_repository import CrudRepository, Where
from crudkit.schemas.query import FILTER_OPERATORS, CrudConfig, Filter, Named, Page, QueryOptions

_LOG = logging.getLogger("crudkit.service")

FILTER_OPTIONS_KEY = "filter_options"
RELATIONS_KEY = "relations"
COUNTS_KEY = "counts"

# Request parameters that drive the query itself and are never treated as filters.
RESERVED_KEYS = frozenset(
    {
        "sorts",
        "limit",
        "page",
        "fields",
        "search",
        "search_fields",
        "no_pagination",
        RELATIONS_KEY,
        COUNTS_KEY,
        FILTER_OPTIONS_KEY,
    }
)

_CAMEL_BOUNDARY_RE = re.compile(r"(?<!^)(?=[A-Z])")


def _snake_case(name: str) -> str:
    return ".".join(_CAMEL_BOUNDARY_RE.sub("_", part).replace("-", "_").lower() for part in name.split("."))


def _list_param(value: Any) -> list[str]:
    if value is None or value == "":
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item) for item in value]


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in {"", "0", "false", "no", "off"}
    return bool(value)


class CrudService:
    """Turns raw request parameters into QueryOptions and runs them.

    Recognised parameters::

        filter_options=status:=,price:between   operator per filter field
        <field>=<value>                         filter, "a,b" becomes a list
        relations=author,reviews                eager loads (allow-listed)
        counts=reviews                          relation counts (allow-listed)
        sorts=name:asc,id:desc
        fields=id,name
        search=term&search_fields=name,author.name
        page=2&limit=20&no_pagination=1
    """

    def __init__(self, repo: CrudRepository, config: Optional[CrudConfig] = None):
        self.repo = repo
        self.config = config or CrudConfig()

    def excludes(self) -> dict[str, Any]:
        return dict(self.config.excludes)

    def searchable(self) -> list[str]:
        return list(self.config.searchable)

    def relations(self) -> dict[str, Any]:
        return self.config.allowed_relations

    def base_query(self) -> Optional[Callable]:
        return self.config.base_query

    @staticmethod
    def is_valid_operator(operator: str) -> bool:
        return operator in FILTER_OPERATORS

    def get_operator(self, value: str = "=") -> str:
        if not self.is_valid_operator(value):
            raise QueryOptionsError(f'Invalid filter operator "{value}"')
        return value

    def append_filter(self, options: QueryOptions, field: str, operator: str, value: Any = None) -> QueryOptions:
        item = Filter(field=field, value=value, operator=self.get_operator(operator))
        return options.model_copy(update={"filters": [*options.filters, item]})

    def remove_filtered_field(self, options: QueryOptions, field: str) -> QueryOptions:
        return options.model_copy(update={"filters": [item for item in options.filters if item.field != field]})

    def _has_valid_filterable_field(self, field: str) -> bool:
        return not self.config.filterable or field in self.config.filterable

    def default_filters(self) -> list[Filter]:
        return [Filter(field=field, value=value, operator="!=") for field, value in self.excludes().items()]

    @staticmethod
    def _value(value: Any) -> Any:
        if isinstance(value, str) and "," in value:
            return value.split(",")
        return value

    def build_filters(self, fields: Mapping[str, Any], operators: Mapping[str, str]) -> list[Filter]:
        filters = self.default_filters()
        for field, value in fields.items():
            if not self._has_valid_filterable_field(field):
                _LOG.debug("Rejected filter on non-filterable field %s", field)
                continue
            filters.append(
                Filter(
                    field=self.config.filterable.get(field, field),
                    value=self._value(value),
                    operator=self.get_operator(operators.get(field, "=")),
                )
            )
        return filters

    def get_filter_options(self, options: Mapping[str, Any]) -> dict[str, str]:
        data = options.get(FILTER_OPTIONS_KEY)
        if not data:
            return {}
        if not isinstance(data, str):
            raise QueryOptionsError(
                "Incorrect filter_options parameter. Expected format: filter_options=field1:operator,field2:operator"
            )
        result: dict[str, str] = {}
        for item in data.split(","):
            field, _, operator = item.partition(":")
            operator = operator.strip()
            if operator:
                result[field.strip()] = self.get_operator(operator)
        return result

    def get_filter_fields(self, options: Mapping[str, Any]) -> dict[str, Any]:
        return {key: value for key, value in options.items() if key not in RESERVED_KEYS}

    def format_relations(self, params: list[str]) -> list[Any]:
        names = [name.strip() for name in params if name.strip()]
        requested = set(names) | {_snake_case(name) for name in names}
        result = []
        matched = set()
        for name, target in self.relations().items():
            # Computed targets are only reachable through their configured key.
            if name in requested:
                matched.add(name)
            elif isinstance(target, Named) and target.path in requested:
                matched.add(target.path)
            else:
                continue
            result.append(target)
        rejected = [name for name in names if name not in matched and _snake_case(name) not in matched]
        if rejected:
            _LOG.debug("Rejected relations not in allow-list: %s", ", ".join(sorted(rejected)))
        return result

    def _relation_param(self, options: Mapping[str, Any], key: str) -> list[Any]:
        raw = options.get(key)
        if not raw:
            return []
        if not isinstance(raw, str):
            raise QueryOptionsError(f"Incorrect {key} parameter. Expected format: {key}=relation1,relation2")
        return self.format_relations(raw.split(","))

    def get_relations(self, options: Mapping[str, Any]) -> list[Any]:
        return self._relation_param(options, RELATIONS_KEY)

    def get_counts(self, options: Mapping[str, Any]) -> list[Any]:
        return self._relation_param(options, COUNTS_KEY)

    def get_sorts(self, options: Mapping[str, Any]) -> dict[str, str]:
        raw = options.get("sorts")
        if not raw:
            return {}
        result: dict[str, str] = {}
        for item in str(raw).split(","):
            field, _, direction = item.partition(":")
            direction = direction.strip().lower()
            if not direction:
                continue
            if direction not in {"asc", "desc"}:
                raise QueryOptionsError(f'Invalid sort direction "{direction}"')
            result[field.strip()] = direction
        return result

    def get_selected_fields(self, options: Mapping[str, Any]) -> list[str]:
        return _list_param(options.get("fields")) or ["*"]

    @staticmethod
    def _int_param(options: Mapping[str, Any], key: str, default: int) -> int:
        raw = options.get(key)
        if raw is None or raw == "":
            return default
        try:
            value = int(raw)
        except (TypeError, ValueError):
            raise QueryOptionsError(f'Parameter "{key}" must be an integer', status_code=400)
        return max(value, 1)

    def prepare_options(self, options: Optional[Mapping[str, Any]] = None) -> QueryOptions:
        options = options or {}
        search = options.get("search")
        return QueryOptions(
            filters=self.build_filters(self.get_filter_fields(options), self.get_filter_options(options)),
            relations=self.get_relations(options),
            counts=self.get_counts(options),
            fields=self.get_selected_fields(options),
            page=self._int_param(options, "page", 1),
            limit=self._int_param(options, "limit", self.config.limit),
            sorts=self.get_sorts(options),
            search=str(search) if search not in (None, "") else None,
            search_fields=_list_param(options.get("search_fields")) or self.searchable(),
        )

    def paginate(self, options: Optional[Mapping[str, Any]] = None) -> Page | list[Any]:
        if _flag((options or {}).get("no_pagination")):
            return self.get_many(options)
        return self.repo.paginate(self.prepare_options(options), self.base_query())

    def paginate_with_trashed(self, options: Optional[Mapping[str, Any]] = None) -> Page | list[Any]:
        if _flag((options or {}).get("no_pagination")):
            return self.get_many_with_trashed(options)
        return self.repo.paginate_with_trashed(self.prepare_options(options), self.base_query())

    def paginate_from_trash(self, options: Optional[Mapping[str, Any]] = None) -> Page | list[Any]:
        if _flag((options or {}).get("no_pagination")):
            return self.get_many_from_trash(options)
        return self.repo.paginate_from_trash(self.prepare_options(options), self.base_query())

    def get_many(self, options: Optional[Mapping[str, Any]] = None) -> list[Any]:
        return self.repo.get_many(self.prepare_options(options), self.base_query())

    def get_many_with_trashed(self, options: Optional[Mapping[str, Any]] = None) -> list[Any]:
        return self.repo.get_many_with_trashed(self.prepare_options(options), self.base_query())

    def get_many_from_trash(self, options: Optional[Mapping[str, Any]] = None) -> list[Any]:
        return self.repo.get_many_from_trash(self.prepare_options(options), self.base_query())

    def get_one(self, row_id: Any, options: Optional[Mapping[str, Any]] = None):
        return self.repo.get_one(row_id, self.prepare_options(options), self.base_query())

    def get_one_or_fail(self, row_id: Any, options: Optional[Mapping[str, Any]] = None):
        return self.repo.get_one_or_fail(row_id, self.prepare_options(options), self.base_query())

    def get_one_with_trashed(self, row_id: Any, options: Optional[Mapping[str, Any]] = None):
        return self.repo.get_one_with_trashed(row_id, self.prepare_options(options), self.base_query())

    def get_one_from_trash(self, row_id: Any, options: Optional[Mapping[str, Any]] = None):
        return self.repo.get_one_from_trash(row_id, self.prepare_options(options), self.base_query())

    def create_one(self, payload: Mapping[str, Any]):
        return self.repo.create_one(payload)

    def update_one(self, row_id: Any, payload: Mapping[str, Any]):
        return self.repo.update_one(self.get_one_or_fail(row_id), payload)

    def update_model(self, record: Any, payload: Mapping[str, Any]):
        return self.repo.update_one(record, payload)

    def delete_one(self, row_id: Any):
        return self.repo.delete_one(self.get_one_or_fail(row_id))

    def delete_model(self, record: Any):
        return self.repo.delete_one(record)

    def restore_one(self, row_id: Any):
        record = self.get_one_from_trash(row_id)
        if record is None:
            raise RecordNotFound()
        return self.repo.restore_one(record)

    def restore_model(self, record: Any):
        return self.repo.restore_one(record)

    def force_delete_one(self, row_id: Any):
        record = self.get_one_with_trashed(row_id)
        if record is None:
            raise RecordNotFound()
        return self.repo.force_delete_one(record)

    def force_delete_model(self, record: Any):
        return self.repo.force_delete_one(record)

    def count_where(self, where: Where) -> int:
        return self.repo.count_where(where, self.prepare_options())
