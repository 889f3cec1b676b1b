"""Unit tests for PolicyEvaluator."""

import pytest
from unittest.mock import Mock

from medvault.domain.access_models import Principal
from medvault.domain.entities import MedicalKnowledgeRecord, PatientRecord
from medvault.domain.enums import (
    Action,
    AuditDecision,
    AuditEventType,
    Decision,
    Effect,
    EntityType,
    Role,
)
from medvault.domain.ports import AuditWriteFailure
from medvault.domain.services.policy_evaluator import PolicyEvaluator


def principal(*roles, linked_record_id=None):
    return Principal(actor_id="actor-1", roles=frozenset(roles), linked_record_id=linked_record_id)


class TestPolicyEvaluator:
    """Test suite for PolicyEvaluator."""

    def test_clinician_view_granted(self, evaluator):
        """Test that a clinician may view a patient record."""
        decision = evaluator.evaluate(
            principal(Role.CLINICIAN), Action.VIEW, subject=PatientRecord.subject_for("P001")
        )
        assert decision.outcome == Decision.GRANT
        assert decision.is_granted
        assert decision.reason == "Allowed"
        assert decision.matched_roles == ("clinician",)
        assert decision.entity_id == "P001"

    def test_empty_role_set_denied(self, evaluator):
        """Test that a principal without roles is denied without consulting rules."""
        decision = evaluator.evaluate(
            principal(), Action.VIEW, subject=PatientRecord.subject_for("P001")
        )
        assert decision.outcome == Decision.DENY
        assert decision.reason == "Unauthenticated"

    def test_front_desk_sensitive_subset_abstains(self, evaluator):
        """Test that an unlisted action abstains and is effectively a deny."""
        decision = evaluator.evaluate(
            principal(Role.FRONT_DESK), Action.VIEW_SENSITIVE_SUBSET,
            subject=PatientRecord.subject_for("P001"),
        )
        assert decision.outcome == Decision.ABSTAIN
        assert decision.effective == Decision.DENY
        assert not decision.is_granted
        assert decision.reason == "NoMatchingRole"

    def test_explicit_deny_overrides_allow(self, evaluator):
        """Test that administrator's explicit deny wins over clinician's allow."""
        decision = evaluator.evaluate(
            principal(Role.ADMINISTRATOR, Role.CLINICIAN), Action.VIEW_DIAGNOSIS,
            subject=PatientRecord.subject_for("P001"),
        )
        assert decision.outcome == Decision.DENY
        assert decision.reason == "ExplicitDeny"
        assert decision.matched_roles == ("administrator",)

    def test_allow_union_across_roles(self, evaluator):
        """Test that allow from any held role grants when nothing denies."""
        decision = evaluator.evaluate(
            principal(Role.FRONT_DESK, Role.CARE_SUPPORT), Action.VIEW_SENSITIVE_SUBSET,
            subject=PatientRecord.subject_for("P001"),
        )
        assert decision.outcome == Decision.GRANT
        assert decision.matched_roles == ("care_support",)

    def test_patient_self_owner_granted(self, evaluator):
        """Test that a patient may view their own record."""
        decision = evaluator.evaluate(
            principal(Role.PATIENT_SELF, linked_record_id="P001"), Action.VIEW,
            subject=PatientRecord.subject_for("P001"),
        )
        assert decision.outcome == Decision.GRANT
        assert decision.reason == "Owner"

    def test_patient_self_other_record_denied(self, evaluator):
        """Test that a patient may not view another patient's record."""
        decision = evaluator.evaluate(
            principal(Role.PATIENT_SELF, linked_record_id="P001"), Action.VIEW,
            subject=PatientRecord.subject_for("P002"),
        )
        assert decision.outcome == Decision.DENY
        assert decision.reason == "NotOwner"

    def test_patient_self_without_link_denied(self, evaluator):
        """Test that an unlinked patient principal is never an owner."""
        decision = evaluator.evaluate(
            principal(Role.PATIENT_SELF), Action.VIEW_OWN_RECORD_ONLY,
            subject=PatientRecord.subject_for("P001"),
        )
        assert decision.outcome == Decision.DENY

    def test_patient_self_diagnosis_explicitly_denied(self, evaluator):
        """Test that patient_self is denied clinical field groups even on their own record."""
        decision = evaluator.evaluate(
            principal(Role.PATIENT_SELF, linked_record_id="P001"), Action.VIEW_DIAGNOSIS,
            subject=PatientRecord.subject_for("P001"),
        )
        assert decision.outcome == Decision.DENY
        assert decision.reason == "ExplicitDeny"

    def test_missing_subject_denied(self, evaluator):
        """Test that a record-scoped action without a subject is denied as MissingSubject."""
        decision = evaluator.evaluate(principal(Role.CLINICIAN), Action.VIEW, entity_type=EntityType.PATIENT)
        assert decision.outcome == Decision.DENY
        assert decision.is_missing_subject

    def test_collection_action_needs_no_subject(self, evaluator):
        """Test that search is evaluated against the entity type alone."""
        decision = evaluator.evaluate(principal(Role.FRONT_DESK), Action.SEARCH, entity_type=EntityType.PATIENT)
        assert decision.is_granted

    def test_no_rules_for_action_abstains(self, evaluator):
        """Test that an action no role mentions abstains."""
        decision = evaluator.evaluate(principal(Role.CLINICIAN), Action.IMPORT, entity_type=EntityType.PATIENT)
        assert decision.outcome == Decision.ABSTAIN
        assert decision.reason == "NoRulesForAction"

    def test_medical_knowledge_rules(self, evaluator):
        """Test medical knowledge grants for care support and front desk."""
        subject = MedicalKnowledgeRecord.subject_for("MK-001")
        assert evaluator.evaluate(principal(Role.CARE_SUPPORT), Action.VIEW, subject=subject).is_granted
        assert not evaluator.evaluate(principal(Role.FRONT_DESK), Action.VIEW, subject=subject).is_granted
        assert evaluator.evaluate(
            principal(Role.CARE_SUPPORT), Action.DRUG_INTERACTIONS, entity_type=EntityType.MEDICAL_KNOWLEDGE
        ).is_granted

    def test_entity_type_required(self, evaluator):
        """Test that evaluate needs either an entity type or a subject."""
        with pytest.raises(ValueError):
            evaluator.evaluate(principal(Role.CLINICIAN), Action.SEARCH)

    def test_exactly_one_audit_entry_per_evaluation(self, evaluator, audit_writer):
        """Test that each evaluation appends one POLICY_DECISION entry."""
        evaluator.evaluate(principal(Role.CLINICIAN), Action.SEARCH, entity_type=EntityType.PATIENT)
        evaluator.evaluate(
            principal(Role.FRONT_DESK), Action.VIEW_SSN, subject=PatientRecord.subject_for("P001")
        )

        entries = audit_writer.query(event_type=AuditEventType.POLICY_DECISION)
        assert len(entries) == 2
        assert audit_writer.count() == 2

    def test_audit_entry_content(self, evaluator, audit_writer):
        """Test that the audit entry records outcome, reason and actor."""
        decision = evaluator.evaluate(
            principal(Role.FRONT_DESK), Action.VIEW_SENSITIVE_SUBSET,
            subject=PatientRecord.subject_for("P001"),
        )

        entry = audit_writer.query()[0]
        assert entry.audit_id == decision.audit_id
        assert entry.actor_id == "actor-1"
        assert entry.actor_roles == ("front_desk",)
        assert entry.action == "view_sensitive_subset"
        assert entry.entity_type == "patient"
        assert entry.entity_id == "P001"
        assert entry.decision == AuditDecision.DENY
        assert entry.details["outcome"] == "abstain"
        assert entry.details["reason"] == "NoMatchingRole"

    def test_audit_failure_propagates(self):
        """Test that an unauditable decision raises instead of returning."""
        sink = Mock()
        sink.append.side_effect = AuditWriteFailure("down")
        evaluator = PolicyEvaluator(sink)

        with pytest.raises(AuditWriteFailure):
            evaluator.evaluate(principal(Role.CLINICIAN), Action.SEARCH, entity_type=EntityType.PATIENT)

    def test_custom_rule_table(self, audit_writer):
        """Test evaluation against an injected rule table."""
        rules = {EntityType.AUDIT_LOG: {Role.FRONT_DESK: {Action.SEARCH: Effect.ALLOW}}}
        evaluator = PolicyEvaluator(audit_writer, rules=rules)

        assert evaluator.evaluate(
            principal(Role.FRONT_DESK), Action.SEARCH, entity_type=EntityType.AUDIT_LOG
        ).is_granted
        assert evaluator.evaluate(
            principal(Role.ADMINISTRATOR), Action.SEARCH, entity_type=EntityType.AUDIT_LOG
        ).outcome == Decision.ABSTAIN

    def test_requires_subject(self, evaluator):
        """Test subject requirement lookup."""
        assert evaluator.requires_subject(EntityType.PATIENT, Action.VIEW)
        assert not evaluator.requires_subject(EntityType.PATIENT, Action.SEARCH)
        assert not evaluator.requires_subject(EntityType.AUDIT_LOG, Action.VIEW)
