"""Migration script models: declared objects, lookups and parsed queries."""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..constants import (
    COMPLEX_FIELDS_QUERY_PREFIX,
    COMPLEX_FIELDS_QUERY_SEPARATOR,
    COMPLEX_FIELDS_SEPARATOR,
    ID_FIELD,
    RECORD_TYPE_OBJECT_NAME,
    REFERENCE_FIELD_SEPARATOR,
    SPECIAL_OBJECT_LOOKUP_MASTER_DETAIL_ORDER,
    SPECIAL_OBJECTS,
)
from ..errors import MalformedQueryError
from .schema import ObjectSchema


class Operation(str, Enum):
    """Operation declared for an object."""
    INSERT = "Insert"
    UPDATE = "Update"
    UPSERT = "Upsert"
    READONLY = "Readonly"
    DELETE = "Delete"
    DELETE_SOURCE = "DeleteSource"
    DELETE_HIERARCHY = "DeleteHierarchy"
    HARD_DELETE = "HardDelete"

    @classmethod
    def parse(cls, value: Any) -> "Operation":
        """Parse an operation name case-insensitively."""
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        for member in cls:
            if member.value.lower() == text:
                return member
        raise ValueError(f"Unknown operation: {value}")


class DataMedia(str, Enum):
    """Kind of endpoint on one side of the migration."""
    ORG = "org"
    FILE = "file"


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

_QUERY_RE = re.compile(
    r"^\s*SELECT\s+(?P<fields>.+?)\s+FROM\s+(?P<object>[A-Za-z_][\w]*)"
    r"(?:\s+WHERE\s+(?P<where>.+?))?"
    r"(?:\s+ORDER\s+BY\s+(?P<order>.+?))?"
    r"(?:\s+LIMIT\s+(?P<limit>\d+))?\s*$",
    re.IGNORECASE | re.DOTALL,
)
_FIELD_RE = re.compile(r"^[A-Za-z_$][\w.$;]*$")


def is_complex_field(name: str) -> bool:
    """True for composite (``A;B``) or composed (``$$A$B``) field names."""
    return COMPLEX_FIELDS_SEPARATOR in name or name.startswith(COMPLEX_FIELDS_QUERY_PREFIX) or (
        REFERENCE_FIELD_SEPARATOR in name and COMPLEX_FIELDS_QUERY_PREFIX in name
    )


def get_complex_field(external_id: str) -> str:
    """Turn ``A;B`` into the composed column name ``$$A$B``."""
    if COMPLEX_FIELDS_SEPARATOR not in external_id:
        return external_id
    parts = [p.strip() for p in external_id.split(COMPLEX_FIELDS_SEPARATOR) if p.strip()]
    return COMPLEX_FIELDS_QUERY_PREFIX + COMPLEX_FIELDS_QUERY_SEPARATOR.join(parts)


def split_complex_field(name: str) -> List[str]:
    """Component fields of a composed column, honouring a relationship prefix."""
    prefix = ""
    base = name
    marker = REFERENCE_FIELD_SEPARATOR + COMPLEX_FIELDS_QUERY_PREFIX
    if marker in name:
        prefix, base = name.split(marker, 1)
        prefix += REFERENCE_FIELD_SEPARATOR
        base = COMPLEX_FIELDS_QUERY_PREFIX + base
    if base.startswith(COMPLEX_FIELDS_QUERY_PREFIX):
        parts = base[len(COMPLEX_FIELDS_QUERY_PREFIX):].split(COMPLEX_FIELDS_QUERY_SEPARATOR)
    elif COMPLEX_FIELDS_SEPARATOR in base:
        parts = base.split(COMPLEX_FIELDS_SEPARATOR)
    else:
        return [name]
    return [prefix + p for p in parts if p]


def compose_complex_value(record: Dict[str, Any], name: str) -> Optional[str]:
    """Value of a composed column computed from its component fields."""
    parts = split_complex_field(name)
    values = [record.get(p) for p in parts]
    if all(v in (None, "") for v in values):
        return None
    return COMPLEX_FIELDS_SEPARATOR.join("" if v is None else str(v) for v in values)


def quote_value(value: Any) -> str:
    text = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{text}'"


@dataclass
class QuerySpec:
    """A parsed SELECT statement plus the IN filters added by the engine."""
    object_name: str
    fields: List[str] = field(default_factory=list)
    where: str = ""
    order_by: str = ""
    limit: Optional[int] = None
    in_filters: List[Tuple[str, List[Any]]] = field(default_factory=list)

    @property
    def is_limited(self) -> bool:
        return bool(self.where) or self.limit is not None

    def copy(self, **changes: Any) -> "QuerySpec":
        data = {
            "object_name": self.object_name,
            "fields": list(self.fields),
            "where": self.where,
            "order_by": self.order_by,
            "limit": self.limit,
            "in_filters": list(self.in_filters),
        }
        data.update(changes)
        return QuerySpec(**data)

    def with_in_filter(self, field_name: str, values: Sequence[Any]) -> "QuerySpec":
        return self.copy(in_filters=self.in_filters + [(field_name, list(values))])

    def expanded_fields(self) -> List[str]:
        """Fields as sent to a data service; composed columns split into parts."""
        result: List[str] = []
        for name in self.fields:
            for part in (split_complex_field(name) if is_complex_field(name) else [name]):
                if part not in result:
                    result.append(part)
        return result

    def matches(self, record: Dict[str, Any]) -> bool:
        """Evaluate the IN filters against a flat record."""
        for field_name, values in self.in_filters:
            if record.get(field_name) not in values:
                return False
        return True

    def to_soql(self) -> str:
        """Render the statement as query text."""
        text = f"SELECT {', '.join(self.expanded_fields())} FROM {self.object_name}"
        predicates = []
        if self.where:
            predicates.append(f"({self.where})")
        for field_name, values in self.in_filters:
            predicates.append(f"{field_name} IN ({', '.join(quote_value(v) for v in values)})")
        if predicates:
            text += " WHERE " + " AND ".join(predicates)
        if self.order_by:
            text += f" ORDER BY {self.order_by}"
        if self.limit is not None:
            text += f" LIMIT {self.limit}"
        return text


def parse_query(text: str, object_name: str = "") -> QuerySpec:
    """
    Parse a declared ``SELECT ... FROM ...`` statement.

    Raises:
        MalformedQueryError: if the text is not a supported statement.
    """
    match = _QUERY_RE.match(text or "")
    if not match:
        raise MalformedQueryError(object_name or "?", text, "expected SELECT <fields> FROM <object>")

    fields: List[str] = []
    for raw in match.group("fields").split(","):
        name = raw.strip()
        if not name:
            raise MalformedQueryError(object_name or match.group("object"), text, "empty field name")
        if not _FIELD_RE.match(name):
            raise MalformedQueryError(object_name or match.group("object"), text, f"invalid field '{name}'")
        if name.lower() not in (f.lower() for f in fields):
            fields.append(name)

    if object_name and match.group("object").lower() != object_name.lower():
        raise MalformedQueryError(object_name, text, f"query selects from {match.group('object')}")

    limit = match.group("limit")
    return QuerySpec(
        object_name=match.group("object"),
        fields=fields,
        where=(match.group("where") or "").strip(),
        order_by=(match.group("order") or "").strip(),
        limit=int(limit) if limit else None,
    )


# ---------------------------------------------------------------------------
# Objects and lookups
# ---------------------------------------------------------------------------

def default_relationship_name(field_name: str) -> str:
    if field_name.endswith("__c"):
        return field_name[:-3] + "__r"
    if field_name.endswith("Id") and len(field_name) > 2:
        return field_name[:-2]
    return field_name + "__r"


@dataclass
class LookupField:
    """A field of one object referencing records of another."""
    name: str
    owner_name: str
    reference_to: List[str] = field(default_factory=list)
    relationship_name: str = ""
    is_master_detail: bool = False
    is_polymorphic: bool = False
    explicit_parent: str = ""
    writable: bool = True
    parent: Optional["MigrationObject"] = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        if not self.relationship_name:
            self.relationship_name = default_relationship_name(self.name)

    @property
    def is_polymorphic_unresolved(self) -> bool:
        return self.is_polymorphic and self.parent is None

    @property
    def is_self_reference(self) -> bool:
        return self.parent is not None and self.parent.name == self.owner_name

    @property
    def parent_name(self) -> str:
        return self.parent.name if self.parent else ""

    @property
    def parent_external_id(self) -> str:
        return self.parent.complex_external_id if self.parent else ""

    @property
    def reference_column(self) -> str:
        """Column holding the parent's external id value, e.g. ``Account.Name``."""
        if not self.parent:
            return ""
        return f"{self.relationship_name}{REFERENCE_FIELD_SEPARATOR}{self.parent.complex_external_id}"


@dataclass
class MockField:
    """Replace a field value on write using a pattern with ``{n}``/``{value}``."""
    name: str
    pattern: str

    def apply(self, value: Any, counter: int) -> str:
        return self.pattern.replace("{n}", str(counter)).replace("{value}", "" if value is None else str(value))


@dataclass(eq=False)
class MigrationObject:
    """An object declared in the migration script, or auto-added as a lookup parent."""
    name: str
    query: str = ""
    operation: Operation = Operation.READONLY
    external_id: str = ""
    delete_old_data: bool = False
    delete_query: str = ""
    hard_delete: bool = False
    skip_records_comparison: bool = False
    skip_existing_records: bool = False
    process_all_source: bool = False
    process_all_target: bool = False
    master: bool = True
    excluded: bool = False
    use_source_csv_file: bool = False
    target_object: str = ""
    field_mapping: Dict[str, str] = field(default_factory=dict)
    mock_fields: List[MockField] = field(default_factory=list)
    excluded_from_update_fields: List[str] = field(default_factory=list)
    is_auto_added: bool = False
    declaration_index: int = 0

    # Populated during setup
    parsed_query: Optional[QuerySpec] = field(default=None, repr=False)
    source_schema: Optional[ObjectSchema] = field(default=None, repr=False)
    target_schema: Optional[ObjectSchema] = field(default=None, repr=False)
    lookups: Dict[str, LookupField] = field(default_factory=dict, repr=False)

    # --- naming -----------------------------------------------------------

    @property
    def target_object_name(self) -> str:
        return self.target_object or self.name

    def map_field_to_target(self, field_name: str) -> str:
        return self.field_mapping.get(field_name, field_name)

    # --- query state ------------------------------------------------------

    @property
    def fields_in_query(self) -> List[str]:
        return list(self.parsed_query.fields) if self.parsed_query else []

    @property
    def is_limited_query(self) -> bool:
        return bool(self.parsed_query and self.parsed_query.is_limited)

    def ensure_field_in_query(self, field_name: str) -> None:
        if self.parsed_query is None:
            return
        if field_name.lower() not in (f.lower() for f in self.parsed_query.fields):
            self.parsed_query.fields.append(field_name)

    def remove_field_from_query(self, field_name: str) -> None:
        if self.parsed_query is None:
            return
        self.parsed_query.fields = [f for f in self.parsed_query.fields if f.lower() != field_name.lower()]

    # --- external id ------------------------------------------------------

    @property
    def external_id_fields(self) -> List[str]:
        return [p.strip() for p in self.external_id.split(COMPLEX_FIELDS_SEPARATOR) if p.strip()]

    @property
    def has_complex_external_id(self) -> bool:
        return COMPLEX_FIELDS_SEPARATOR in self.external_id or REFERENCE_FIELD_SEPARATOR in self.external_id

    @property
    def complex_external_id(self) -> str:
        return get_complex_field(self.external_id)

    def get_external_id_value(self, record: Dict[str, Any]) -> Optional[str]:
        """External id value of a flat record; composite values joined with ';'."""
        name = self.complex_external_id
        if is_complex_field(name):
            value = record.get(name)
            if value not in (None, ""):
                return str(value)
            return compose_complex_value(record, name)
        value = record.get(name)
        return None if value in (None, "") else str(value)

    @property
    def has_autonumber_external_id(self) -> bool:
        if self.external_id == ID_FIELD:
            return True
        schema = self.source_schema or self.target_schema
        if not schema or self.has_complex_external_id:
            return False
        describe = schema.get_field(self.external_id)
        return bool(describe and describe.auto_number)

    # --- operation semantics -----------------------------------------------

    @property
    def is_delete_operation(self) -> bool:
        return self.operation in (
            Operation.DELETE,
            Operation.DELETE_SOURCE,
            Operation.DELETE_HIERARCHY,
            Operation.HARD_DELETE,
        )

    @property
    def is_readonly_object(self) -> bool:
        """Not part of the insert/update flow."""
        return self.operation == Operation.READONLY or self.is_delete_operation

    @property
    def can_update(self) -> bool:
        return self.operation in (Operation.INSERT, Operation.UPDATE, Operation.UPSERT)

    @property
    def can_delete(self) -> bool:
        return self.is_delete_operation or self.delete_old_data

    @property
    def is_hard_delete(self) -> bool:
        return self.hard_delete or self.operation == Operation.HARD_DELETE

    @property
    def is_record_type(self) -> bool:
        return self.name == RECORD_TYPE_OBJECT_NAME

    @property
    def is_special_object(self) -> bool:
        return self.name.lower() in (o.lower() for o in SPECIAL_OBJECTS)

    # --- relationships -------------------------------------------------------

    @property
    def parent_lookup_objects(self) -> List["MigrationObject"]:
        parents: Dict[str, MigrationObject] = {}
        for lookup in self.lookups.values():
            if lookup.parent is not None:
                parents.setdefault(lookup.parent.name, lookup.parent)
        return list(parents.values())

    @property
    def parent_master_detail_objects(self) -> List["MigrationObject"]:
        parents: Dict[str, MigrationObject] = {}
        for lookup in self.lookups.values():
            if lookup.parent is None:
                continue
            forced = self.name in SPECIAL_OBJECT_LOOKUP_MASTER_DETAIL_ORDER.get(lookup.parent.name, [])
            if lookup.is_master_detail or forced:
                parents.setdefault(lookup.parent.name, lookup.parent)
        return list(parents.values())

    def has_child_lookups(self, objects: Sequence["MigrationObject"]) -> bool:
        return any(
            lookup.parent is self
            for other in objects if other is not self
            for lookup in other.lookups.values()
        )

    def is_without_relationships(self, objects: Sequence["MigrationObject"]) -> bool:
        return not self.parent_lookup_objects and not self.has_child_lookups(objects)

    @property
    def fields_to_update(self) -> List[str]:
        """Source field names written to the target."""
        schema = self.target_schema or self.source_schema
        if not schema:
            return []
        excluded = {f.lower() for f in self.excluded_from_update_fields}
        result = []
        for name in self.fields_in_query:
            if name == ID_FIELD or REFERENCE_FIELD_SEPARATOR in name or is_complex_field(name):
                continue
            if name.lower() in excluded:
                continue
            describe = schema.get_field(self.map_field_to_target(name))
            if describe is None:
                continue
            writable = describe.creatable if self.operation == Operation.INSERT else (
                describe.creatable or describe.updateable
            )
            if writable or name in self.field_mapping:
                result.append(name)
        return result


@dataclass
class MigrationScript:
    """The whole declarative migration: objects plus run-wide switches."""
    objects: List[MigrationObject] = field(default_factory=list)
    keep_object_order: bool = False
    exclude_ids_from_csv_files: bool = False
    validate_csv_files_only: bool = False
    import_csv_files_as_is: bool = False
    create_target_csv_files: bool = True
    prompt_on_issues_in_csv_files: bool = True
    prompt_on_missing_parent_objects: bool = True
    csv_read_delimiter: str = ","
    csv_write_delimiter: str = ","
    csv_file_encoding: str = "utf-8"
    csv_insert_nulls: bool = True
    concurrent_describe: bool = True
    all_or_none: bool = False
    excluded_objects: List[str] = field(default_factory=list)

    def get_object(self, name: str) -> Optional[MigrationObject]:
        lowered = name.lower()
        for obj in self.objects:
            if obj.name.lower() == lowered:
                return obj
        return None

    @property
    def active_objects(self) -> List[MigrationObject]:
        return [o for o in self.objects if not o.excluded]
