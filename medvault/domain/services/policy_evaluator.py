"""Policy Evaluator.

Decides Grant / Deny / Abstain for a (role set, action, target) triple from a
declarative per-entity-type rule table, and records exactly one audit entry
per evaluation before returning.

Security Impact:
    - Empty role set is always denied without consulting the rule table
    - Explicit deny on any held role overrides allow on every other held role
    - Anything not granted is not granted: abstain is effective deny
    - Role sets arrive resolved; nothing is inferred from identity strings
    - If the audit entry cannot be written the evaluation raises (fail-closed)

Rule tables:
    RULES[entity_type][role][action] -> Effect
    An entity type with no entry for an action under any role abstains.
"""

import logging
from types import MappingProxyType
from typing import Mapping, Optional

from medvault.domain.access_models import AuditEntry, PolicyDecision, Principal, SubjectRef
from medvault.domain.enums import (
    Action,
    AuditDecision,
    AuditEventType,
    Decision,
    Effect,
    EntityType,
    Role,
)
from medvault.domain.ports import AuditSinkPort

logger = logging.getLogger(__name__)

A = Action
ADM, CLN, CS, FD, PS = (
    Role.ADMINISTRATOR, Role.CLINICIAN, Role.CARE_SUPPORT, Role.FRONT_DESK, Role.PATIENT_SELF,
)

RuleTable = Mapping[EntityType, Mapping[Role, Mapping[Action, Effect]]]

REASON_UNAUTHENTICATED = "Unauthenticated"
REASON_MISSING_SUBJECT = "MissingSubject"
REASON_NO_RULES = "NoRulesForAction"
REASON_EXPLICIT_DENY = "ExplicitDeny"
REASON_ALLOWED = "Allowed"
REASON_OWNER = "Owner"
REASON_NOT_OWNER = "NotOwner"
REASON_NO_MATCHING_ROLE = "NoMatchingRole"

_CLINICAL_ACTIONS = (
    A.VIEW_SENSITIVE_SUBSET, A.EDIT_SENSITIVE_SUBSET,
    A.VIEW_DIAGNOSIS, A.EDIT_DIAGNOSIS,
    A.VIEW_MEDICATIONS, A.EDIT_MEDICATIONS,
    A.VIEW_SSN,
)


def _allow(*actions: Action) -> dict:
    return {action: Effect.ALLOW for action in actions}


def _deny(*actions: Action) -> dict:
    return {action: Effect.DENY for action in actions}


def _freeze(table: dict) -> RuleTable:
    return MappingProxyType({
        entity_type: MappingProxyType({
            role: MappingProxyType(dict(actions)) for role, actions in roles.items()
        })
        for entity_type, roles in table.items()
    })


DEFAULT_RULES: RuleTable = _freeze({
    EntityType.PATIENT: {
        # Administrators keep system rights but are excluded from clinical content
        ADM: {
            **_allow(A.VIEW, A.SEARCH, A.VIEW_INSURANCE, A.EDIT_INSURANCE, A.VIEW_AGGREGATE_STATS),
            **_deny(*_CLINICAL_ACTIONS),
        },
        CLN: _allow(
            A.VIEW, A.CREATE, A.EDIT, A.DELETE, A.SEARCH, A.VIEW_AGGREGATE_STATS,
            A.VIEW_SENSITIVE_SUBSET, A.EDIT_SENSITIVE_SUBSET,
            A.VIEW_DIAGNOSIS, A.EDIT_DIAGNOSIS, A.VIEW_MEDICATIONS, A.EDIT_MEDICATIONS,
            A.VIEW_SSN, A.VIEW_INSURANCE, A.EDIT_INSURANCE,
        ),
        CS: _allow(
            A.VIEW, A.CREATE, A.EDIT, A.SEARCH,
            A.VIEW_SENSITIVE_SUBSET, A.VIEW_DIAGNOSIS, A.VIEW_MEDICATIONS, A.VIEW_INSURANCE,
        ),
        FD: _allow(A.VIEW, A.CREATE, A.SEARCH, A.VIEW_INSURANCE, A.EDIT_INSURANCE),
        PS: {
            A.VIEW: Effect.ALLOW_IF_OWNER,
            A.VIEW_OWN_RECORD_ONLY: Effect.ALLOW_IF_OWNER,
            A.VIEW_INSURANCE: Effect.ALLOW_IF_OWNER,
            **_deny(A.VIEW_SENSITIVE_SUBSET, A.VIEW_DIAGNOSIS, A.VIEW_MEDICATIONS, A.VIEW_SSN),
        },
    },
    EntityType.MEDICAL_KNOWLEDGE: {
        ADM: _allow(A.SEARCH, A.VIEW_AGGREGATE_STATS, A.CREATE, A.EDIT, A.DELETE, A.IMPORT),
        CLN: _allow(
            A.SEARCH, A.VIEW, A.CREATE, A.EDIT, A.VIEW_AGGREGATE_STATS,
            A.CLINICAL_DECISION_SUPPORT, A.TREATMENT_GUIDELINES, A.DIAGNOSTIC_CRITERIA,
            A.DRUG_INTERACTIONS,
        ),
        CS: _allow(A.VIEW, A.DRUG_INTERACTIONS),
    },
    EntityType.AUDIT_LOG: {
        ADM: _allow(A.VIEW, A.SEARCH, A.VIEW_AGGREGATE_STATS),
        CLN: _allow(A.VIEW, A.SEARCH),
    },
})

DEFAULT_SUBJECT_REQUIRED: Mapping[EntityType, frozenset] = MappingProxyType({
    EntityType.PATIENT: frozenset({
        A.VIEW, A.VIEW_SENSITIVE_SUBSET, A.EDIT, A.EDIT_SENSITIVE_SUBSET, A.DELETE,
        A.VIEW_OWN_RECORD_ONLY, A.VIEW_DIAGNOSIS, A.EDIT_DIAGNOSIS, A.VIEW_MEDICATIONS,
        A.EDIT_MEDICATIONS, A.VIEW_SSN, A.VIEW_INSURANCE, A.EDIT_INSURANCE,
    }),
    EntityType.MEDICAL_KNOWLEDGE: frozenset({A.VIEW, A.EDIT, A.DELETE}),
    EntityType.AUDIT_LOG: frozenset(),
})


class PolicyEvaluator:
    """Evaluates access requests against a rule table and audits each decision.

    Parameters:
        audit_sink: Audit writer receiving one POLICY_DECISION entry per call
        rules: Rule table (defaults to DEFAULT_RULES)
        subject_required: Actions that need a target record, per entity type

    Example Usage:
        ```python
        evaluator = PolicyEvaluator(audit_writer)
        decision = evaluator.evaluate(principal, Action.VIEW, subject=record.as_subject())
        if decision.is_granted:
            ...
        ```
    """

    def __init__(
        self,
        audit_sink: AuditSinkPort,
        rules: RuleTable = DEFAULT_RULES,
        subject_required: Mapping[EntityType, frozenset] = DEFAULT_SUBJECT_REQUIRED,
    ):
        self._audit_sink = audit_sink
        self._rules = rules
        self._subject_required = subject_required

    def requires_subject(self, entity_type: EntityType, action: Action) -> bool:
        return action in self._subject_required.get(entity_type, frozenset())

    def evaluate(
        self,
        principal: Principal,
        action: Action,
        entity_type: Optional[EntityType] = None,
        subject: Optional[SubjectRef] = None,
    ) -> PolicyDecision:
        """Decide whether ``principal`` may perform ``action``.

        Parameters:
            principal: Caller with a resolved role set
            action: Requested verb
            entity_type: Entity type of the action; taken from ``subject`` when given
            subject: Target record, required for record-scoped actions

        Returns:
            PolicyDecision: The outcome, already recorded in the audit trail

        Raises:
            ValueError: If neither entity_type nor subject is given
            AuditWriteFailure: If the decision could not be audited
        """
        if subject is not None:
            entity_type = subject.entity_type
        if entity_type is None:
            raise ValueError("evaluate() needs an entity_type or a subject")

        outcome, reason, matched = self._decide(principal, action, entity_type, subject)
        entry = self._audit_sink.append(AuditEntry(
            actor_id=principal.actor_id,
            actor_roles=tuple(principal.role_names()),
            event_type=AuditEventType.POLICY_DECISION,
            action=action.value,
            entity_type=entity_type.value,
            entity_id=subject.entity_id if subject else None,
            decision=AuditDecision.GRANT if outcome == Decision.GRANT else AuditDecision.DENY,
            details={"outcome": outcome.value, "reason": reason, "matched_roles": list(matched)},
        ))

        if outcome != Decision.GRANT:
            logger.info(
                f"Policy {outcome.value} for {principal.actor_id}: {action.value} on "
                f"{entity_type.value} ({reason})"
            )

        return PolicyDecision(
            outcome=outcome,
            action=action,
            entity_type=entity_type,
            entity_id=subject.entity_id if subject else None,
            reason=reason,
            matched_roles=matched,
            audit_id=entry.audit_id,
        )

    def _decide(
        self,
        principal: Principal,
        action: Action,
        entity_type: EntityType,
        subject: Optional[SubjectRef],
    ) -> tuple[Decision, str, tuple[str, ...]]:
        if not principal.is_authenticated:
            return Decision.DENY, REASON_UNAUTHENTICATED, ()

        if subject is None and self.requires_subject(entity_type, action):
            return Decision.DENY, REASON_MISSING_SUBJECT, ()

        role_rules = self._rules.get(entity_type, {})
        if not any(action in actions for actions in role_rules.values()):
            return Decision.ABSTAIN, REASON_NO_RULES, ()

        denying, allowing, owner_failed = [], [], []
        for role in sorted(principal.roles, key=lambda r: r.value):
            effect = role_rules.get(role, {}).get(action)
            if effect == Effect.DENY:
                denying.append(role.value)
            elif effect == Effect.ALLOW:
                allowing.append(role.value)
            elif effect == Effect.ALLOW_IF_OWNER:
                if self._is_owner(principal, subject):
                    allowing.append(role.value)
                else:
                    owner_failed.append(role.value)

        if denying:
            return Decision.DENY, REASON_EXPLICIT_DENY, tuple(denying)
        if allowing:
            owner_only = all(role_rules[Role(r)][action] == Effect.ALLOW_IF_OWNER for r in allowing)
            return Decision.GRANT, REASON_OWNER if owner_only else REASON_ALLOWED, tuple(allowing)
        if owner_failed:
            return Decision.DENY, REASON_NOT_OWNER, tuple(owner_failed)
        return Decision.ABSTAIN, REASON_NO_MATCHING_ROLE, ()

    @staticmethod
    def _is_owner(principal: Principal, subject: Optional[SubjectRef]) -> bool:
        return (
            subject is not None
            and subject.owner_id is not None
            and principal.linked_record_id is not None
            and subject.owner_id == principal.linked_record_id
        )
