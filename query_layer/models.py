from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
import time

CREATED_AT = "created_at"
UPDATED_AT = "updated_at"
DELETED_AT = "deleted_at"
VERSION = "version"


@dataclass(frozen=True)
class ColumnInfo:
    type: str
    nullable: bool = True
    default: Optional[str] = None
    max_length: Optional[int] = None
    precision: Optional[int] = None
    scale: Optional[int] = None


@dataclass(frozen=True)
class TableSchema:
    """Column and key metadata for one table.

    Column names are lower case; Oracle folds unquoted identifiers so the
    layer treats them case-insensitively.
    """
    table_name: str
    columns: Mapping[str, ColumnInfo]
    primary_key: Tuple[str, ...] = ()
    last_updated: float = field(default_factory=time.time)

    def __post_init__(self):
        object.__setattr__(self, "columns", MappingProxyType(dict(self.columns)))
        object.__setattr__(self, "primary_key", tuple(self.primary_key))

    @property
    def has_created_at(self) -> bool:
        return CREATED_AT in self.columns

    @property
    def has_updated_at(self) -> bool:
        return UPDATED_AT in self.columns

    @property
    def has_deleted_at(self) -> bool:
        return DELETED_AT in self.columns

    @property
    def has_version(self) -> bool:
        return VERSION in self.columns

    def has_column(self, name: str) -> bool:
        return name.lower() in self.columns

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table_name": self.table_name,
            "columns": {name: col.__dict__ for name, col in self.columns.items()},
            "primary_key": list(self.primary_key),
            "last_updated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TableSchema":
        return cls(
            table_name=data["table_name"],
            columns={name: ColumnInfo(**col) for name, col in data["columns"].items()},
            primary_key=tuple(data.get("primary_key") or ()),
            last_updated=data.get("last_updated", time.time()),
        )

    def describe(self) -> Dict[str, Any]:
        """Plain dict used by tool output, including the audit-column flags."""
        info = self.to_dict()
        info.update(
            has_created_at=self.has_created_at,
            has_updated_at=self.has_updated_at,
            has_deleted_at=self.has_deleted_at,
            has_version=self.has_version,
        )
        return info


@dataclass(frozen=True)
class Join:
    table: str
    on: str
    type: str = "INNER"


@dataclass(frozen=True)
class Comparison:
    column: str
    op: str
    value: Any


@dataclass(frozen=True)
class Between:
    column: str
    low: Any
    high: Any


@dataclass(frozen=True)
class Raw:
    """Raw predicate; each ``?`` marker is bound to the next item of ``args``."""
    sql: str
    args: Sequence[Any] = ()


@dataclass
class QuerySpec:
    select: str = "*"
    where: Dict[str, Any] = field(default_factory=dict)
    predicates: List[Any] = field(default_factory=list)
    where_raw: Optional[str] = None
    joins: List[Join] = field(default_factory=list)
    group_by: Optional[str] = None
    having: Optional[str] = None
    order_by: Optional[str] = None
    limit: Optional[int] = None
    offset: Optional[int] = None
    distinct: bool = False
    include_soft_deleted: Optional[bool] = None
    # Output aliases (window results, search rank) that ORDER BY may use.
    aliases: Tuple[str, ...] = ()


@dataclass(frozen=True)
class OutBind:
    """Placeholder argument for a ``RETURNING ... INTO`` target or a PL/SQL OUT parameter.

    ``value`` seeds an IN OUT parameter.
    """
    column: str
    type: str = "VARCHAR2"
    value: Any = None


@dataclass
class QueryResult:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    row_count: int = 0
    columns: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class Aggregation:
    function: str
    column: str = "*"
    distinct: bool = False
    alias: Optional[str] = None


@dataclass(frozen=True)
class WindowFunction:
    function: str
    alias: str
    column: Optional[str] = None
    partition_by: Sequence[str] = ()
    order_by: Optional[str] = None
    order_direction: str = "ASC"


@dataclass(frozen=True)
class RoutineParameter:
    name: str
    type: Optional[str]
    mode: str = "IN"
    position: int = 0

    @property
    def is_input(self) -> bool:
        return self.mode in ("IN", "IN/OUT")

    @property
    def is_output(self) -> bool:
        return self.mode in ("OUT", "IN/OUT")


@dataclass(frozen=True)
class RoutineInfo:
    """Signature of a standalone stored procedure or function."""
    name: str
    routine_type: str
    parameters: Tuple[RoutineParameter, ...] = ()
    return_type: Optional[str] = None
    last_updated: float = field(default_factory=time.time)

    def __post_init__(self):
        object.__setattr__(self, "parameters", tuple(self.parameters))

    @property
    def is_function(self) -> bool:
        return self.routine_type == "FUNCTION"

    @property
    def input_parameters(self) -> List[RoutineParameter]:
        return [p for p in self.parameters if p.is_input]

    @property
    def output_parameters(self) -> List[RoutineParameter]:
        return [p for p in self.parameters if p.is_output]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "routine_type": self.routine_type,
            "parameters": [p.__dict__ for p in self.parameters],
            "return_type": self.return_type,
            "last_updated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoutineInfo":
        return cls(
            name=data["name"],
            routine_type=data["routine_type"],
            parameters=tuple(RoutineParameter(**p) for p in data.get("parameters") or ()),
            return_type=data.get("return_type"),
            last_updated=data.get("last_updated", time.time()),
        )

    def describe(self) -> Dict[str, Any]:
        info = self.to_dict()
        info.update(
            parameter_count=len(self.parameters),
            has_input_params=bool(self.input_parameters),
            has_output_params=bool(self.output_parameters),
            is_function=self.is_function,
        )
        return info
