"""Schema descriptors for tenant data models.

A ``SchemaDefinition`` is a static description of one collection: its typed
fields, composite indexes and whether it carries timestamps. Binding it to a
tenant connection turns it into a SQLAlchemy ``Table`` (see ``to_table``).

Master-data collections share one base field set; a few collections extend it
with fixed fields selected by ``MasterDataVariant``.
"""

import copy
import re
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)
from sqlalchemy.types import TypeEngine

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Columns every table gets; user fields may not reuse these names.
RESERVED_COLUMNS = frozenset({"id", "created_at", "updated_at"})


def _utcnow() -> datetime:
    return datetime.now(UTC)


class FieldType(StrEnum):
    """Storage type of a schema field."""

    STRING = "string"
    TEXT = "text"
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    DATETIME = "datetime"
    JSON = "json"


class FieldSpec(BaseModel):
    """One field of a schema."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    type: FieldType = FieldType.STRING
    required: bool = False
    unique: bool = False
    index: bool = False
    max_length: int | None = Field(default=None, gt=0)
    default: Any = None
    default_now: bool = False

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not IDENTIFIER_PATTERN.match(v):
            raise ValueError(f"Invalid field name: {v!r}")
        if v in RESERVED_COLUMNS:
            raise ValueError(f"Field name {v!r} is reserved")
        return v

    @model_validator(mode="after")
    def validate_default_now(self) -> "FieldSpec":
        if self.default_now and self.type is not FieldType.DATETIME:
            raise ValueError("default_now is only valid for datetime fields")
        return self

    def column_type(self) -> TypeEngine[Any]:
        match self.type:
            case FieldType.STRING:
                return String(self.max_length or 255)
            case FieldType.TEXT:
                return Text()
            case FieldType.INTEGER:
                return Integer()
            case FieldType.FLOAT:
                return Float()
            case FieldType.BOOLEAN:
                return Boolean()
            case FieldType.DATETIME:
                return DateTime(timezone=True)
            case FieldType.JSON:
                return JSON()

    def to_column(self) -> Column[Any]:
        default: Any = self.default
        if self.default_now:
            default = _utcnow
        elif isinstance(default, (dict, list)):
            template = default
            default = lambda: copy.deepcopy(template)  # noqa: E731
        return Column(
            self.name,
            self.column_type(),
            nullable=not self.required,
            unique=self.unique or None,
            index=(self.index and not self.unique) or None,
            default=default,
        )


class IndexSpec(BaseModel):
    """Composite index over several fields."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    fields: tuple[str, ...] = Field(min_length=1)
    unique: bool = False


class SchemaDefinition(BaseModel):
    """Static description of a collection.

    Example:
        >>> schema = SchemaDefinition(
        ...     collection="users",
        ...     fields=(FieldSpec(name="email", required=True, unique=True),),
        ...     timestamps=True,
        ... )
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    collection: str
    fields: tuple[FieldSpec, ...] = Field(min_length=1)
    indexes: tuple[IndexSpec, ...] = ()
    timestamps: bool = False

    @field_validator("collection")
    @classmethod
    def validate_collection(cls, v: str) -> str:
        if not IDENTIFIER_PATTERN.match(v):
            raise ValueError(f"Invalid collection name: {v!r}")
        return v

    @model_validator(mode="after")
    def validate_fields(self) -> "SchemaDefinition":
        names = [f.name for f in self.fields]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"Duplicate fields: {sorted(duplicates)}")

        available = set(names) | (
            {"created_at", "updated_at"} if self.timestamps else set()
        )
        for index in self.indexes:
            missing = [f for f in index.fields if f not in available]
            if missing:
                raise ValueError(f"Index references unknown fields: {missing}")
        return self

    @property
    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    def extend(self, collection: str, *extra: FieldSpec) -> "SchemaDefinition":
        """Copy of this schema under another collection with extra fields."""
        return SchemaDefinition(
            collection=collection,
            fields=self.fields + extra,
            indexes=self.indexes,
            timestamps=self.timestamps,
        )

    def to_table(self, metadata: MetaData) -> Table:
        """Build the SQLAlchemy table of this schema in ``metadata``.

        An existing table of the same name in ``metadata`` is replaced.
        """
        existing = metadata.tables.get(self.collection)
        if existing is not None:
            metadata.remove(existing)

        columns: list[Any] = [
            Column("id", Integer, primary_key=True, autoincrement=True)
        ]
        columns.extend(f.to_column() for f in self.fields)
        if self.timestamps:
            columns.append(
                Column("created_at", DateTime(timezone=True), default=_utcnow)
            )
            columns.append(
                Column(
                    "updated_at",
                    DateTime(timezone=True),
                    default=_utcnow,
                    onupdate=_utcnow,
                )
            )
        for index in self.indexes:
            columns.append(
                Index(
                    f"ix_{self.collection}_{'_'.join(index.fields)}",
                    *index.fields,
                    unique=index.unique,
                )
            )
        return Table(self.collection, metadata, *columns)


# =============================================================================
# Collection naming
# =============================================================================

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


def collection_name_for(model_name: str) -> str:
    """Derive a collection name from a logical model name.

    ``EquipmentCategory`` -> ``equipment_categories``,
    ``UnknownCollection`` -> ``unknown_collections``. Names already ending
    in "s" are taken as plural: ``plant_types`` -> ``plant_types``.
    """
    snake = _CAMEL_BOUNDARY.sub("_", model_name).lower()
    if snake.endswith("s"):
        return snake
    if snake.endswith("y") and not snake.endswith(("ay", "ey", "oy", "uy")):
        return snake[:-1] + "ies"
    if snake.endswith(("x", "ch", "sh")):
        return snake + "es"
    return snake + "s"


# =============================================================================
# Master data
# =============================================================================


class MasterDataVariant(StrEnum):
    """Master-data shape, keyed by collection name."""

    BASE = "base"
    EQUIPMENT_CATEGORY = "equipment_categories"
    INDUSTRY_TYPE = "industry_types"
    PLANT_TYPE = "plant_types"

    @classmethod
    def for_collection(cls, collection_name: str) -> "MasterDataVariant":
        try:
            return cls(collection_name)
        except ValueError:
            return cls.BASE


MASTER_DATA_BASE = SchemaDefinition(
    collection="master_data",
    fields=(
        FieldSpec(name="name", required=True, unique=True, max_length=200),
        FieldSpec(name="code", required=True, unique=True, max_length=50),
        FieldSpec(name="default_tax", type=FieldType.FLOAT, required=True, default=18),
        FieldSpec(name="description", max_length=500),
        FieldSpec(name="category", max_length=100, index=True),
        FieldSpec(name="sub_category", max_length=100),
        FieldSpec(name="specifications", type=FieldType.JSON, default={}),
        FieldSpec(name="unit_of_measure", max_length=20, default="Nos"),
        FieldSpec(name="minimum_quantity", type=FieldType.FLOAT, default=1),
        FieldSpec(name="maximum_quantity", type=FieldType.FLOAT),
        FieldSpec(name="default_rate", type=FieldType.FLOAT, default=0),
        FieldSpec(name="rate_range", type=FieldType.JSON),
        FieldSpec(name="valid_from", type=FieldType.DATETIME, default_now=True),
        FieldSpec(name="valid_to", type=FieldType.DATETIME),
        FieldSpec(name="tags", type=FieldType.JSON, default=[]),
        FieldSpec(name="sort_order", type=FieldType.INTEGER, default=100, index=True),
        FieldSpec(name="is_active", type=FieldType.BOOLEAN, default=True, index=True),
        FieldSpec(name="created_by", required=True, default="system"),
        FieldSpec(name="created_on", type=FieldType.DATETIME, default_now=True),
        FieldSpec(name="updated_by"),
        FieldSpec(name="updated_on", type=FieldType.DATETIME, default_now=True),
    ),
    indexes=(
        IndexSpec(fields=("is_active", "sort_order")),
        IndexSpec(fields=("is_active", "name")),
        IndexSpec(fields=("valid_from", "valid_to")),
    ),
)

_VARIANT_FIELDS: dict[MasterDataVariant, tuple[FieldSpec, ...]] = {
    MasterDataVariant.BASE: (),
    MasterDataVariant.EQUIPMENT_CATEGORY: (
        FieldSpec(name="equipment_type", max_length=100),
        FieldSpec(name="capacity_range", type=FieldType.JSON),
    ),
    MasterDataVariant.INDUSTRY_TYPE: (
        FieldSpec(name="sector", max_length=100),
        FieldSpec(name="regulatory_requirements", type=FieldType.JSON, default=[]),
    ),
    MasterDataVariant.PLANT_TYPE: (
        FieldSpec(name="industry_type", max_length=100),
        FieldSpec(name="typical_capacity", type=FieldType.JSON),
        FieldSpec(name="process_type", max_length=100),
    ),
}

# Master-data collections known to the platform.
MASTER_DATA_COLLECTIONS = (
    "industry_types",
    "plant_types",
    "equipment_categories",
    "equipment_types",
    "currencies",
    "units_of_measure",
    "tax_rates",
    "vendors",
    "locations",
)


def master_data_schema(collection_name: str) -> SchemaDefinition:
    """Master-data schema for a collection, extended by its variant."""
    variant = MasterDataVariant.for_collection(collection_name)
    return MASTER_DATA_BASE.extend(collection_name, *_VARIANT_FIELDS[variant])


# =============================================================================
# Default catalogue
# =============================================================================


def _user_schema() -> SchemaDefinition:
    return SchemaDefinition(
        collection="users",
        fields=(
            FieldSpec(name="email", required=True, unique=True, max_length=254),
            FieldSpec(name="password_hash", required=True, max_length=255),
            FieldSpec(name="first_name", required=True, max_length=50),
            FieldSpec(name="last_name", required=True, max_length=50),
            FieldSpec(name="role", max_length=20, default="user", index=True),
            FieldSpec(name="is_active", type=FieldType.BOOLEAN, default=True),
            FieldSpec(name="last_login", type=FieldType.DATETIME),
            FieldSpec(name="login_attempts", type=FieldType.INTEGER, default=0),
            FieldSpec(name="lock_until", type=FieldType.DATETIME),
        ),
        indexes=(IndexSpec(fields=("is_active", "role")),),
        timestamps=True,
    )


def _project_schema() -> SchemaDefinition:
    return SchemaDefinition(
        collection="projects",
        fields=(
            FieldSpec(name="project_id", required=True, unique=True, max_length=64),
            FieldSpec(name="project_name", required=True, max_length=200),
            FieldSpec(name="case_number", max_length=100),
            FieldSpec(name="industry_type", max_length=100),
            FieldSpec(name="plant_type", max_length=100),
            FieldSpec(name="base_currency", required=True, max_length=3, default="INR"),
            FieldSpec(name="display_unit", max_length=20),
            FieldSpec(name="versions", type=FieldType.JSON, default=[]),
            FieldSpec(name="description", type=FieldType.TEXT),
            FieldSpec(name="is_active", type=FieldType.BOOLEAN, default=True),
            FieldSpec(name="created_by", required=True, max_length=100),
            FieldSpec(name="created_on", type=FieldType.DATETIME, default_now=True),
            FieldSpec(name="updated_by", max_length=100),
            FieldSpec(name="updated_on", type=FieldType.DATETIME, default_now=True),
        ),
        indexes=(
            IndexSpec(fields=("industry_type", "plant_type")),
            IndexSpec(fields=("is_active", "created_on")),
        ),
    )


def _equipment_cost_schema() -> SchemaDefinition:
    return SchemaDefinition(
        collection="equipment_costs",
        fields=(
            FieldSpec(name="record_id", required=True, unique=True, max_length=64),
            FieldSpec(name="project_id", required=True, max_length=64, index=True),
            FieldSpec(name="version_id", required=True, max_length=64),
            FieldSpec(name="equipment_category", required=True, max_length=100),
            FieldSpec(name="equipment_name", required=True, max_length=200),
            FieldSpec(name="number_quantity", type=FieldType.FLOAT, default=1),
            FieldSpec(name="rate", type=FieldType.FLOAT, default=0),
            FieldSpec(name="base_cost_before_tax", type=FieldType.FLOAT),
            FieldSpec(name="applicable_tax_percent", type=FieldType.FLOAT, default=18),
            FieldSpec(name="applicable_tax", type=FieldType.FLOAT),
            FieldSpec(name="total_cost_with_tax", type=FieldType.FLOAT),
            FieldSpec(name="specifications", type=FieldType.JSON, default={}),
            FieldSpec(name="vendor", max_length=200),
            FieldSpec(name="notes", type=FieldType.TEXT),
            FieldSpec(name="status", max_length=20, default="Draft", index=True),
            FieldSpec(name="is_active", type=FieldType.BOOLEAN, default=True),
            FieldSpec(name="created_by", required=True, max_length=100),
            FieldSpec(name="created_on", type=FieldType.DATETIME, default_now=True),
            FieldSpec(name="updated_by", max_length=100),
            FieldSpec(name="updated_on", type=FieldType.DATETIME, default_now=True),
        ),
        indexes=(IndexSpec(fields=("project_id", "version_id")),),
    )


def _audit_log_schema() -> SchemaDefinition:
    return SchemaDefinition(
        collection="audit_logs",
        fields=(
            FieldSpec(name="user_id", required=True, max_length=64, index=True),
            FieldSpec(name="user_email", max_length=254),
            FieldSpec(name="action", required=True, max_length=20, index=True),
            FieldSpec(name="resource", required=True, max_length=100),
            FieldSpec(name="resource_id", max_length=64),
            FieldSpec(name="before", type=FieldType.JSON),
            FieldSpec(name="after", type=FieldType.JSON),
            FieldSpec(name="changes", type=FieldType.JSON, default={}),
            FieldSpec(name="timestamp", type=FieldType.DATETIME, default_now=True),
            FieldSpec(name="ip_address", max_length=45),
            FieldSpec(name="user_agent", max_length=500),
            FieldSpec(name="request_id", max_length=64),
            FieldSpec(name="status", max_length=20, default="SUCCESS"),
            FieldSpec(name="error_message", type=FieldType.TEXT),
            FieldSpec(name="duration", type=FieldType.FLOAT),
        ),
        indexes=(
            IndexSpec(fields=("resource", "resource_id")),
            IndexSpec(fields=("user_id", "timestamp")),
        ),
    )


def default_schemas() -> dict[str, SchemaDefinition]:
    """Schemas every tenant gets by default, keyed by logical model name."""
    return {
        "User": _user_schema(),
        "Project": _project_schema(),
        "EquipmentCost": _equipment_cost_schema(),
        "AuditLog": _audit_log_schema(),
    }


class CachedModel(BaseModel):
    """Cached metadata of one bound model (never the handle itself)."""

    name: str
    collection_name: str
    schema_registered: bool = True


class CachedModelSet(BaseModel):
    """Cached metadata of every model materialized for a tenant."""

    tenant_id: str
    cached_at: datetime = Field(default_factory=_utcnow)
    models: dict[str, CachedModel] = Field(default_factory=dict)

    def to_cache(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_cache(cls, data: Any) -> "CachedModelSet":
        return cls.model_validate(data)
