"""
Loading and cross-validating the declarative security configuration.

Every inconsistency raises ConfigurationError here, at startup or reload,
never at request time.
"""

import json
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import structlog
from pydantic import BaseModel, ConfigDict, StrictStr, ValidationError, model_validator

from securehealth.catalog import DEFAULT_CONFIGURATION
from securehealth.errors import ConfigurationError
from securehealth.models import EncryptionClass, FieldDescriptor
from securehealth.rbac import AttributeRule, Grant, PermissionPolicy, RelationshipLookup
from securehealth.roles import RoleHierarchy
from securehealth.sensitivity import FieldSensitivityMap

logger = structlog.get_logger()


# ── Document schema ──────────────────────────────────────────────────

class GrantSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    roles: List[StrictStr]
    relationship: Optional[StrictStr] = None


class AttributeSpec(BaseModel):
    """Either a single clause (roles, relationship) or a list of grants."""
    model_config = ConfigDict(extra="forbid")

    roles: Optional[List[StrictStr]] = None
    relationship: Optional[StrictStr] = None
    grants: Optional[List[GrantSpec]] = None

    @model_validator(mode="after")
    def one_form_only(self):
        if self.grants is not None and (self.roles is not None or self.relationship is not None):
            raise ValueError("use either 'grants' or 'roles'/'relationship', not both")
        return self

    def clauses(self) -> List[GrantSpec]:
        if self.grants is not None:
            return self.grants
        return [GrantSpec(roles=self.roles or [], relationship=self.relationship)]


class FieldSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    encryption: StrictStr
    read: StrictStr
    write: StrictStr


class ConfigurationDocument(BaseModel):
    roles: Dict[StrictStr, List[StrictStr]]
    attributes: Dict[StrictStr, AttributeSpec]
    record_types: Dict[StrictStr, Dict[StrictStr, FieldSpec]]


def _parse_document(document: Any) -> ConfigurationDocument:
    try:
        return ConfigurationDocument.model_validate(document)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"]) or "document"
        raise ConfigurationError(
            f"Invalid security configuration at {location}: {first['msg']}"
            + (f" (and {e.error_count() - 1} more)" if e.error_count() > 1 else "")
        ) from e


# ── Building the tables ──────────────────────────────────────────────

class SecurityConfiguration:
    """Immutable bundle of the three process-wide tables."""

    def __init__(self, hierarchy: RoleHierarchy, policy: PermissionPolicy,
                 sensitivity: FieldSensitivityMap):
        self.hierarchy = hierarchy
        self.policy = policy
        self.sensitivity = sensitivity

    def __eq__(self, other):
        if not isinstance(other, SecurityConfiguration):
            return NotImplemented
        return (
            self.hierarchy == other.hierarchy
            and self.policy == other.policy
            and self.sensitivity == other.sensitivity
        )


def _parse_rules(attributes: Mapping[str, AttributeSpec], hierarchy: RoleHierarchy):
    known_roles = hierarchy.roles
    for attribute, entry in attributes.items():
        grants = tuple(
            Grant(frozenset(clause.roles), clause.relationship) for clause in entry.clauses()
        )
        unknown = sorted(set().union(*(g.roles for g in grants)) - known_roles)
        if unknown:
            raise ConfigurationError(
                f"Attribute '{attribute}' names undeclared roles: {', '.join(unknown)}"
            )
        yield AttributeRule(attribute, grants)


def _parse_descriptors(record_types: Mapping[str, Mapping[str, FieldSpec]]):
    for record_type, fields in record_types.items():
        if not fields:
            raise ConfigurationError(f"Record type '{record_type}' must map at least one field.")
        for field_name, entry in fields.items():
            try:
                encryption = EncryptionClass(entry.encryption)
            except ValueError as e:
                raise ConfigurationError(
                    f"Field {record_type}.{field_name} has unknown encryption class "
                    f"{entry.encryption!r}."
                ) from e
            yield FieldDescriptor(record_type, field_name, encryption, entry.read, entry.write)


def load_configuration(
    document: Mapping[str, Any],
    relationship_lookup: Optional[RelationshipLookup] = None,
) -> SecurityConfiguration:
    """Build and cross-validate a SecurityConfiguration from a declarative document."""
    parsed = _parse_document(document)

    hierarchy = RoleHierarchy(parsed.roles)
    policy = PermissionPolicy(
        _parse_rules(parsed.attributes, hierarchy),
        relationship_lookup=relationship_lookup,
    )
    sensitivity = FieldSensitivityMap(_parse_descriptors(parsed.record_types))
    sensitivity.validate_against(policy.attributes)

    logger.info(
        "Security configuration loaded",
        roles=len(hierarchy.roles),
        attributes=len(policy.attributes),
        record_types=sorted(sensitivity.record_types),
    )
    return SecurityConfiguration(hierarchy, policy, sensitivity)


def load_configuration_file(
    path, relationship_lookup: Optional[RelationshipLookup] = None
) -> SecurityConfiguration:
    """Load a JSON configuration file; unreadable or malformed files are configuration errors."""
    try:
        document = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Cannot read security configuration {path}: {e}") from e
    return load_configuration(document, relationship_lookup)


def default_configuration(
    relationship_lookup: Optional[RelationshipLookup] = None,
) -> SecurityConfiguration:
    return load_configuration(DEFAULT_CONFIGURATION, relationship_lookup)


def assert_persisted_fields_covered(configuration: SecurityConfiguration,
                                    persisted_fields: Mapping[str, Iterable[str]]) -> None:
    for record_type, field_names in persisted_fields.items():
        configuration.sensitivity.assert_covers(record_type, field_names)


class ConfigurationHolder:
    """
    Single-writer, many-reader holder for hot reload.

    Readers take `current` once per request; `reload` validates the new
    configuration completely, including coverage of *persisted_fields*,
    before swapping the reference, so readers never observe a partially
    built or under-covering table.
    """

    def __init__(self, configuration: SecurityConfiguration,
                 persisted_fields: Mapping[str, Iterable[str]],
                 relationship_lookup: Optional[RelationshipLookup] = None):
        self._persisted_fields = {k: tuple(v) for k, v in persisted_fields.items()}
        assert_persisted_fields_covered(configuration, self._persisted_fields)
        self._current = configuration
        self._lookup = relationship_lookup
        self._write_lock = threading.Lock()

    @property
    def current(self) -> SecurityConfiguration:
        return self._current

    def reload(self, document: Mapping[str, Any]) -> SecurityConfiguration:
        with self._write_lock:
            try:
                fresh = load_configuration(document, self._lookup)
                assert_persisted_fields_covered(fresh, self._persisted_fields)
            except ConfigurationError as e:
                logger.error("Security configuration reload rejected", error=str(e))
                raise
            self._current = fresh
            logger.info("Security configuration reloaded")
            return fresh
