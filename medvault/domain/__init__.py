"""Domain layer for MedVault.

This module contains the sensitive entity models, the access-control value
objects and the ports storage adapters implement. All domain models are pure
Python with no external dependencies beyond Pydantic.
"""

from .access_models import AuditEntry, AuditQuery, PolicyDecision, Principal, SubjectRef
from .entities import MedicalKnowledgeRecord, PatientRecord, SensitiveEntity

__all__ = [
    "AuditEntry",
    "AuditQuery",
    "PolicyDecision",
    "Principal",
    "SubjectRef",
    "MedicalKnowledgeRecord",
    "PatientRecord",
    "SensitiveEntity",
]
