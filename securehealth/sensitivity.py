"""
Field sensitivity map – per record type, which encryption class a field
uses and which attributes gate reading and writing it.
"""

from typing import Dict, FrozenSet, Iterable, Optional

from securehealth.errors import ConfigurationError
from securehealth.models import EncryptionClass, FieldDescriptor

# Reserved attribute for fields without a descriptor. Never present in a
# policy table, so any decision on it is a denial.
UNMAPPED_FIELD_ATTRIBUTE = "__unmapped-field__"


class FieldSensitivityMap:

    def __init__(self, descriptors: Iterable[FieldDescriptor]):
        table: Dict[str, Dict[str, FieldDescriptor]] = {}
        for d in descriptors:
            fields = table.setdefault(d.record_type, {})
            if d.field_name in fields:
                raise ConfigurationError(
                    f"Duplicate descriptor for {d.record_type}.{d.field_name}."
                )
            fields[d.field_name] = d
        self._table = table

    @property
    def record_types(self) -> FrozenSet[str]:
        return frozenset(self._table)

    def fields_of(self, record_type: str) -> tuple:
        """Field names of *record_type* in declaration order."""
        return tuple(self._table.get(record_type, {}))

    def descriptors(self) -> Iterable[FieldDescriptor]:
        for fields in self._table.values():
            yield from fields.values()

    def find(self, record_type: str, field_name: str) -> Optional[FieldDescriptor]:
        return self._table.get(record_type, {}).get(field_name)

    def describe(self, record_type: str, field_name: str) -> FieldDescriptor:
        """
        Descriptor for a field. Unmapped fields get a fail-closed descriptor
        whose read and write attributes can never be granted.
        """
        found = self.find(record_type, field_name)
        if found is not None:
            return found
        return FieldDescriptor(
            record_type=record_type,
            field_name=field_name,
            encryption_class=EncryptionClass.OPAQUE,
            read_attribute=UNMAPPED_FIELD_ATTRIBUTE,
            write_attribute=UNMAPPED_FIELD_ATTRIBUTE,
        )

    def read_attribute_for(self, record_type: str, field_name: str) -> str:
        return self.describe(record_type, field_name).read_attribute

    def write_attribute_for(self, record_type: str, field_name: str) -> str:
        return self.describe(record_type, field_name).write_attribute

    def validate_against(self, attributes: FrozenSet[str]) -> None:
        """Every referenced attribute must exist in the policy table."""
        for d in self.descriptors():
            for kind, attribute in (("read", d.read_attribute), ("write", d.write_attribute)):
                if attribute not in attributes:
                    raise ConfigurationError(
                        f"Field {d.record_type}.{d.field_name} references unknown "
                        f"{kind} attribute '{attribute}'."
                    )

    def assert_covers(self, record_type: str, field_names: Iterable[str]) -> None:
        """Fail unless every persisted field of *record_type* has a descriptor."""
        if record_type not in self._table:
            raise ConfigurationError(f"Record type '{record_type}' has no field descriptors.")
        missing = sorted(f for f in field_names if f not in self._table[record_type])
        if missing:
            raise ConfigurationError(
                f"Record type '{record_type}' persists fields without descriptors: "
                + ", ".join(missing)
            )

    def __eq__(self, other):
        if not isinstance(other, FieldSensitivityMap):
            return NotImplemented
        return self._table == other._table
