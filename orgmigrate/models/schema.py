"""Schema models describing object metadata returned by a data service."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..constants import ID_FIELD


@dataclass
class FieldDescribe:
    """Metadata of a single field of an object."""
    name: str
    label: str = ""
    type: str = "string"
    creatable: bool = True
    updateable: bool = True
    is_lookup: bool = False
    reference_to: List[str] = field(default_factory=list)
    relationship_name: str = ""
    cascade_delete: bool = False
    name_field: bool = False
    auto_number: bool = False
    unique: bool = False
    is_polymorphic: bool = False

    @property
    def is_master_detail(self) -> bool:
        """Ownership edge: a lookup that cannot be reparented or cascades on delete."""
        return self.is_lookup and (not self.updateable or self.cascade_delete)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        result = {
            "name": self.name,
            "label": self.label,
            "type": self.type,
            "createable": self.creatable,
            "updateable": self.updateable,
        }
        if self.is_lookup:
            result["referenceTo"] = self.reference_to
            result["relationshipName"] = self.relationship_name
            result["cascadeDelete"] = self.cascade_delete
        if self.name_field:
            result["nameField"] = True
        if self.auto_number:
            result["autoNumber"] = True
        if self.unique:
            result["unique"] = True
        if self.is_polymorphic:
            result["polymorphic"] = True
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldDescribe":
        """Create from a describe payload entry."""
        reference_to = list(data.get("referenceTo") or [])
        field_type = data.get("type", "string")
        return cls(
            name=data.get("name", ""),
            label=data.get("label", ""),
            type=field_type,
            creatable=data.get("createable", True),
            updateable=data.get("updateable", True),
            is_lookup=field_type == "reference" or bool(reference_to),
            reference_to=reference_to,
            relationship_name=data.get("relationshipName") or "",
            cascade_delete=data.get("cascadeDelete", False),
            name_field=data.get("nameField", False),
            auto_number=data.get("autoNumber", False),
            unique=data.get("unique", False),
            is_polymorphic=data.get("polymorphic", len(reference_to) > 1),
        )


@dataclass
class ObjectSchema:
    """Metadata of an object: access flags and its fields."""
    name: str
    label: str = ""
    createable: bool = True
    updateable: bool = True
    deletable: bool = True
    queryable: bool = True
    fields: Dict[str, FieldDescribe] = field(default_factory=dict)

    def get_field(self, name: str) -> Optional[FieldDescribe]:
        """Get a field by name, case-insensitively."""
        if name in self.fields:
            return self.fields[name]
        lowered = name.lower()
        for field_name, describe in self.fields.items():
            if field_name.lower() == lowered:
                return describe
        return None

    def has_field(self, name: str) -> bool:
        return self.get_field(name) is not None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "label": self.label,
            "createable": self.createable,
            "updateable": self.updateable,
            "deletable": self.deletable,
            "queryable": self.queryable,
            "fields": [f.to_dict() for f in self.fields.values()],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ObjectSchema":
        """Create from a describe payload."""
        raw_fields = data.get("fields", [])
        if isinstance(raw_fields, dict):
            raw_fields = [{**value, "name": key} for key, value in raw_fields.items()]

        fields = {}
        for field_data in raw_fields:
            describe = FieldDescribe.from_dict(field_data)
            fields[describe.name] = describe

        if ID_FIELD not in fields:
            fields[ID_FIELD] = FieldDescribe(name=ID_FIELD, type="id", creatable=False, updateable=False)

        return cls(
            name=data.get("name", ""),
            label=data.get("label", ""),
            createable=data.get("createable", True),
            updateable=data.get("updateable", True),
            deletable=data.get("deletable", True),
            queryable=data.get("queryable", True),
            fields=fields,
        )
