"""Domain enumerations.

Closed vocabularies shared by the encryption schema, the policy evaluator,
the role projection and the audit trail. Values are the strings persisted in
documents and audit entries, so they must never be renamed in place.
"""

from enum import Enum


class EntityType(str, Enum):
    """Entity types known to the schema registry and the rule tables."""
    PATIENT = "patient"
    MEDICAL_KNOWLEDGE = "medical_knowledge"
    AUDIT_LOG = "audit_log"


class EncryptionClass(str, Enum):
    """Cryptographic treatment of a classified field.

    DETERMINISTIC: equality-searchable, same plaintext -> same ciphertext
    RANGE: carries an order-preserving token for interval search
    RANDOM: fresh nonce per encryption, opaque
    """
    DETERMINISTIC = "deterministic"
    RANGE = "range"
    RANDOM = "random"


class Role(str, Enum):
    """Roles a principal may hold. Resolved upstream, never inferred here."""
    ADMINISTRATOR = "administrator"
    CLINICIAN = "clinician"
    CARE_SUPPORT = "care_support"
    FRONT_DESK = "front_desk"
    PATIENT_SELF = "patient_self"


class Action(str, Enum):
    """Verbs evaluated by the policy evaluator."""
    VIEW = "view"
    VIEW_SENSITIVE_SUBSET = "view_sensitive_subset"
    CREATE = "create"
    EDIT = "edit"
    EDIT_SENSITIVE_SUBSET = "edit_sensitive_subset"
    DELETE = "delete"
    SEARCH = "search"
    IMPORT = "import"
    VIEW_AGGREGATE_STATS = "view_aggregate_stats"
    VIEW_OWN_RECORD_ONLY = "view_own_record_only"

    # Field-group verbs for patient records
    VIEW_DIAGNOSIS = "view_diagnosis"
    EDIT_DIAGNOSIS = "edit_diagnosis"
    VIEW_MEDICATIONS = "view_medications"
    EDIT_MEDICATIONS = "edit_medications"
    VIEW_SSN = "view_ssn"
    VIEW_INSURANCE = "view_insurance"
    EDIT_INSURANCE = "edit_insurance"

    # Medical knowledge verbs
    CLINICAL_DECISION_SUPPORT = "clinical_decision_support"
    DRUG_INTERACTIONS = "drug_interactions"
    TREATMENT_GUIDELINES = "treatment_guidelines"
    DIAGNOSTIC_CRITERIA = "diagnostic_criteria"


class Effect(str, Enum):
    """Effect of a single rule-table cell."""
    ALLOW = "allow"
    DENY = "deny"
    ALLOW_IF_OWNER = "allow_if_owner"


class Decision(str, Enum):
    """Outcome of a policy evaluation."""
    GRANT = "grant"
    DENY = "deny"
    ABSTAIN = "abstain"


class AuditDecision(str, Enum):
    """Decision as recorded in the audit trail (abstain is recorded as deny)."""
    GRANT = "grant"
    DENY = "deny"


class AuditEventType(str, Enum):
    """Kinds of audit entries."""
    POLICY_DECISION = "POLICY_DECISION"
    DATA_ACCESS = "DATA_ACCESS"
    DATA_MUTATION = "DATA_MUTATION"
    KEY_MANAGEMENT = "KEY_MANAGEMENT"


class Visibility(str, Enum):
    """How a field appears in a role projection."""
    VISIBLE = "visible"
    MASKED = "masked"
    OMITTED = "omitted"
