"""Virtual filesystem-style addresses for database objects.

Paths follow ``/database/{category}/{schema}/{name}[.sql]``. Resolution is a pure function of
that grammar: it never checks that the object exists, and anything that does not fit the
grammar resolves to ``None`` rather than raising.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import re


ROOT_SEGMENT = "database"
SQL_SUFFIX = ".sql"
IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ObjectCategory(str, Enum):
    STORED_PROCEDURES = "stored_procedures"
    VIEWS = "views"
    FUNCTIONS = "functions"
    TABLES = "tables"

    @property
    def has_source(self) -> bool:
        # Code objects are addressed as .sql files; tables are not.
        return self != ObjectCategory.TABLES


@dataclass(frozen=True)
class ObjectRef:
    category: ObjectCategory
    schema: str
    name: str


def is_identifier(value: str | None) -> bool:
    return bool(value) and IDENTIFIER_RE.match(value) is not None


def resolve(path: str | None) -> ObjectRef | None:
    if not path or not path.startswith("/"):
        return None
    segments = path.strip("/").split("/")
    if len(segments) != 4 or segments[0] != ROOT_SEGMENT:
        return None
    _, raw_category, schema, name = segments
    try:
        category = ObjectCategory(raw_category)
    except ValueError:
        return None
    if name.endswith(SQL_SUFFIX):
        name = name[: -len(SQL_SUFFIX)]
    if not is_identifier(schema) or not is_identifier(name):
        return None
    return ObjectRef(category=category, schema=schema, name=name)


def to_path(ref: ObjectRef) -> str:
    if not is_identifier(ref.schema) or not is_identifier(ref.name):
        raise ValueError(f"Invalid object identifier {ref.schema}.{ref.name}")
    suffix = SQL_SUFFIX if ref.category.has_source else ""
    return f"/{ROOT_SEGMENT}/{ref.category.value}/{ref.schema}/{ref.name}{suffix}"


def procedure_path(schema: str, name: str) -> str:
    return to_path(ObjectRef(category=ObjectCategory.STORED_PROCEDURES, schema=schema, name=name))
