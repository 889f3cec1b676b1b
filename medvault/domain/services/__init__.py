"""Domain Services.

This package contains domain services that implement access-control logic
without infrastructure dependencies.
"""

from medvault.domain.services.policy_evaluator import PolicyEvaluator
from medvault.domain.services.role_projection import RoleProjection

__all__ = ['PolicyEvaluator', 'RoleProjection']
