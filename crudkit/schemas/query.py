from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated, Any, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from crudkit.core.config import settings

Operator = Literal["=", "!=", ">", "<", ">=", "<=", "like", "contain", "between", "date", "exists", "not_has"]
Dir = Literal["asc", "desc"]

FILTER_OPERATORS: tuple[str, ...] = (
    "=", "!=", ">", "<", ">=", "<=", "like", "contain", "between", "date", "exists", "not_has",
)


class Filter(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    value: Any = None
    operator: Operator = "="


class Named(BaseModel):
    """Relation included by its path, e.g. ``author`` or ``author.books``."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["named"] = "named"
    path: str


class Computed(BaseModel):
    """Relation included with a constraint on the related rows.

    ``constraint`` receives the related mapped class and returns a criterion.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["computed"] = "computed"
    path: str = ""
    constraint: Callable[[Any], Any]


RelationTarget = Annotated[Union[Named, Computed], Field(discriminator="kind")]


class QueryOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    filters: List[Filter] = []
    relations: List[RelationTarget] = []
    counts: List[RelationTarget] = []
    fields: List[str] = ["*"]
    page: int = 1
    limit: int = settings.CRUD_DEFAULT_LIMIT
    sorts: Dict[str, Dir] = {}
    search: Optional[str] = None
    search_fields: List[str] = []


@dataclass
class Page:
    items: list[Any]
    total: int
    page: int
    limit: int

    @property
    def last_page(self) -> int:
        if self.limit <= 0:
            return 1
        return max(1, (self.total + self.limit - 1) // self.limit)

    @property
    def has_next(self) -> bool:
        return self.page < self.last_page

    def to_dict(self, serialize: Callable[[Any], Any] | None = None) -> dict[str, Any]:
        items = [serialize(item) for item in self.items] if serialize else list(self.items)
        return {
            "items": items,
            "total": self.total,
            "page": self.page,
            "limit": self.limit,
            "last_page": self.last_page,
            "has_next": self.has_next,
        }


@dataclass
class CrudConfig:
    """Per-entity settings for a CrudService.

    ``allowed_relations`` maps the externally visible relation name to either
    a relation path string or a RelationTarget. ``filterable`` maps accepted
    filter keys to internal field expressions; empty means no restriction.
    ``excludes`` rows with these values are hidden from every query.
    """

    allowed_relations: dict[str, Union[str, Named, Computed]] = field(default_factory=dict)
    filterable: dict[str, str] = field(default_factory=dict)
    excludes: dict[str, Any] = field(default_factory=dict)
    searchable: list[str] = field(default_factory=list)
    limit: int = settings.CRUD_DEFAULT_LIMIT
    base_query: Optional[Callable[[Any], Any]] = None

    def __post_init__(self):
        normalized: dict[str, Union[Named, Computed]] = {}
        for name, target in self.allowed_relations.items():
            if isinstance(target, str):
                normalized[name] = Named(path=target)
            elif isinstance(target, Computed) and not target.path:
                normalized[name] = Computed(path=name, constraint=target.constraint)
            else:
                normalized[name] = target
        self.allowed_relations = normalized
