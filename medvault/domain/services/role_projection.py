"""Role Projection.

Shapes a decrypted entity into the view a role set may see. Each field is
visible (plaintext), masked (present but redacted) or omitted (key absent).
Anything a table does not list is omitted.

Security Impact:
    - Default-deny: unlisted fields never appear in the output
    - Omitted fields are absent keys, not nulls, so the output does not reveal
      whether an omitted field holds a value
    - A role's forbidden set removes fields even if another held role could see them
    - Output shape depends only on (entity type, role set), never on the values
"""

import logging
import re
from datetime import date
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping

from medvault.domain.entities import SensitiveEntity
from medvault.domain.enums import EntityType, Role, Visibility

logger = logging.getLogger(__name__)

V, M = Visibility.VISIBLE, Visibility.MASKED

_PATIENT_BASE = {
    "id": V, "firstName": V, "lastName": V, "email": V, "phoneNumber": V,
    "birthDate": V, "createdAt": V, "updatedAt": V,
}
_PATIENT_CLINICAL = ("ssn", "diagnosis", "medications", "notes", "notesHistory")

_KNOWLEDGE_ALL = {
    "id": V, "title": V, "content": V, "summary": V, "tags": V, "specialties": V,
    "source": V, "sourceUrl": V, "confidenceLevel": V, "evidenceLevel": V,
    "relatedConditions": V, "relatedMedications": V, "requiresReview": V,
    "isActive": V, "createdBy": V, "createdAt": V, "updatedAt": V,
}
_KNOWLEDGE_PUBLIC = {"id": V, "title": V, "summary": V, "tags": V, "specialties": V}

VisibilityTable = Mapping[EntityType, Mapping[Role, Mapping[str, Visibility]]]

DEFAULT_VISIBILITY: VisibilityTable = MappingProxyType({
    EntityType.PATIENT: MappingProxyType({
        Role.CLINICIAN: MappingProxyType({
            **_PATIENT_BASE,
            "ssn": V, "diagnosis": V, "medications": V, "insuranceDetails": V,
            "notes": V, "notesHistory": V, "primaryDoctorId": V,
        }),
        Role.CARE_SUPPORT: MappingProxyType({
            **_PATIENT_BASE, "ssn": M, "diagnosis": V, "medications": V, "notes": V,
        }),
        Role.FRONT_DESK: MappingProxyType({**_PATIENT_BASE, "ssn": M, "insuranceDetails": V}),
        Role.ADMINISTRATOR: MappingProxyType({**_PATIENT_BASE, "insuranceDetails": V}),
        Role.PATIENT_SELF: MappingProxyType({**_PATIENT_BASE, "ssn": M, "insuranceDetails": V}),
    }),
    EntityType.MEDICAL_KNOWLEDGE: MappingProxyType({
        Role.CLINICIAN: MappingProxyType(_KNOWLEDGE_ALL),
        Role.CARE_SUPPORT: MappingProxyType(_KNOWLEDGE_ALL),
        Role.ADMINISTRATOR: MappingProxyType(_KNOWLEDGE_ALL),
        Role.FRONT_DESK: MappingProxyType(_KNOWLEDGE_PUBLIC),
        Role.PATIENT_SELF: MappingProxyType(_KNOWLEDGE_PUBLIC),
    }),
})

DEFAULT_FORBIDDEN: Mapping[EntityType, Mapping[Role, frozenset]] = MappingProxyType({
    EntityType.PATIENT: MappingProxyType({Role.ADMINISTRATOR: frozenset(_PATIENT_CLINICAL)}),
})

_RANK = {Visibility.OMITTED: 0, Visibility.MASKED: 1, Visibility.VISIBLE: 2}
_DIGITS = re.compile(r"\D")


def mask_value(field: str, value: Any) -> Any:
    """Redacted rendering of ``value``; never equal to a non-trivial plaintext."""
    if isinstance(value, (list, tuple, dict)):
        return "[REDACTED]"
    if isinstance(value, date):
        return "****-**-**"
    if not isinstance(value, str) or not value:
        return "***"

    lowered = field.lower()
    if lowered == "ssn":
        return f"***-**-{_DIGITS.sub('', value)[-4:]}"
    if "phone" in lowered:
        return f"***-***-{_DIGITS.sub('', value)[-4:]}"
    if "email" in lowered and "@" in value:
        local, _, domain = value.partition("@")
        return f"{local[:1]}***@{domain}"
    if len(value) > 4:
        return f"***{value[-2:]}"
    return "***"


class RoleProjection:
    """Projects entities through per-role visibility tables.

    Parameters:
        visibility: Visibility table per entity type and role
        forbidden: Fields removed whenever the given role is held
    """

    def __init__(
        self,
        visibility: VisibilityTable = DEFAULT_VISIBILITY,
        forbidden: Mapping[EntityType, Mapping[Role, frozenset]] = DEFAULT_FORBIDDEN,
    ):
        self._visibility = visibility
        self._forbidden = forbidden

    def visibility_for(self, entity_type: EntityType, roles: Iterable[Role]) -> Dict[str, Visibility]:
        """Effective visibility per listed field for a role set.

        Most permissive visibility wins across roles; forbidden fields of any
        held role are removed. Fields not in the result are omitted.
        """
        roles = frozenset(roles)
        table = self._visibility.get(entity_type, {})
        merged: Dict[str, Visibility] = {}
        for role in roles:
            for field, visibility in table.get(role, {}).items():
                if _RANK[visibility] > _RANK[merged.get(field, Visibility.OMITTED)]:
                    merged[field] = visibility

        forbidden_rules = self._forbidden.get(entity_type, {})
        for role in roles:
            for field in forbidden_rules.get(role, frozenset()):
                merged.pop(field, None)
        return merged

    def project(self, entity: SensitiveEntity, roles: Iterable[Role]) -> Dict[str, Any]:
        """Role-specific view of ``entity`` keyed by storage names, in field order.

        Returns:
            dict: JSON-compatible values; empty for an empty role set
        """
        visibility = self.visibility_for(entity.entity_type, roles)
        if not visibility:
            return {}

        plain = entity.model_dump(mode="json", by_alias=True)
        view: Dict[str, Any] = {}
        for attribute, info in type(entity).model_fields.items():
            storage_name = info.alias or attribute
            field_visibility = visibility.get(storage_name, Visibility.OMITTED)
            if field_visibility == Visibility.VISIBLE:
                view[storage_name] = plain[storage_name]
            elif field_visibility == Visibility.MASKED:
                view[storage_name] = mask_value(storage_name, getattr(entity, attribute))
        return view
