"""
Policy Evaluator

Matches every enabled policy's rules against a span and returns the combined
outcome. Evaluation is deterministic for a given (span, risk, identity, now)
and never raises for a rule that does not match.

Combination rules:
- ALL matching rules are applied; priority only orders the output.
- A single DENY match disallows the span regardless of other matches.
- A REQUIRE_APPROVAL match requires approval.
- ALLOW matches are recorded as applicable but cannot lift a DENY.

Condition semantics:
- Every specified criterion must hold (conjunction); an empty condition
  matches every span.
- target_domains are shell-style patterns ("*.gov") matched against the
  span's target domain(s).
- time_restrictions describe the ALLOWED window; the criterion matches when
  the evaluation instant falls outside it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from fnmatch import fnmatchcase
from typing import Iterable, List, Optional, Set
from urllib.parse import urlparse

from .governance_models import (
    Identity,
    PolicyCondition,
    PolicyRule,
    RiskAssessment,
    RuleType,
    SecurityPolicy,
    TimeWindow,
)
from .span_models import SpanContext

logger = logging.getLogger(__name__)

# Span args/metadata keys that may carry a target location
_DOMAIN_KEYS = ("target_domain", "domain", "host")
_URL_KEYS = ("url", "target_url", "href")


@dataclass
class RuleOutcome:
    allowed: bool = True
    requires_approval: bool = False
    violations: List[str] = field(default_factory=list)
    applicable_policies: List[str] = field(default_factory=list)


def span_domains(span: SpanContext) -> Set[str]:
    """Collect lower-cased target domains from span metadata and args."""
    domains: Set[str] = set()
    for source in (span.metadata, span.args):
        if not isinstance(source, dict):
            continue
        for key in _DOMAIN_KEYS:
            value = source.get(key)
            if isinstance(value, str) and value:
                domains.add(value.lower())
        for key in _URL_KEYS:
            value = source.get(key)
            if isinstance(value, str) and value:
                host = urlparse(value if "//" in value else f"//{value}").hostname
                if host:
                    domains.add(host.lower())
    return domains


def _weekday_sunday_zero(moment: datetime) -> int:
    # datetime.weekday() is Monday=0
    return (moment.weekday() + 1) % 7


def outside_window(window: TimeWindow, moment: datetime) -> bool:
    """True when moment falls outside the allowed hours/days."""
    if window.allowed_days is not None and _weekday_sunday_zero(moment) not in window.allowed_days:
        return True
    if window.allowed_hours is not None:
        start, end = window.allowed_hours
        if not (start <= moment.hour < end):
            return True
    return False


class PolicyEvaluator:
    """Stateless rule matcher used by SecurityGovernanceEngine."""

    def condition_matches(
        self,
        condition: PolicyCondition,
        span: SpanContext,
        risk: RiskAssessment,
        identity: Optional[Identity],
        now: datetime,
    ) -> bool:
        if condition.span_types is not None and span.type.value not in condition.span_types:
            return False

        if condition.risk_levels is not None and risk.level.value not in condition.risk_levels:
            return False

        if condition.target_domains is not None:
            domains = span_domains(span)
            if not any(
                fnmatchcase(domain, pattern.lower())
                for domain in domains
                for pattern in condition.target_domains
            ):
                return False

        if condition.user_roles is not None:
            roles = set(identity.roles) if identity else set()
            if not roles.intersection(condition.user_roles):
                return False

        if condition.time_restrictions is not None:
            if not outside_window(condition.time_restrictions, now):
                return False

        return True

    def rule_applies(
        self,
        rule: PolicyRule,
        span: SpanContext,
        risk: RiskAssessment,
        identity: Optional[Identity] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        return self.condition_matches(
            rule.condition, span, risk, identity, now or datetime.now(timezone.utc)
        )

    def evaluate(
        self,
        policies: Iterable[SecurityPolicy],
        span: SpanContext,
        risk: RiskAssessment,
        identity: Optional[Identity] = None,
        now: Optional[datetime] = None,
    ) -> RuleOutcome:
        """Apply every enabled policy's rules and combine the results."""
        now = now or datetime.now(timezone.utc)
        outcome = RuleOutcome()

        for policy in policies:
            if not policy.enabled:
                continue
            for rule in sorted(policy.rules, key=lambda r: r.priority):
                if not self.rule_applies(rule, span, risk, identity, now):
                    continue

                if policy.id not in outcome.applicable_policies:
                    outcome.applicable_policies.append(policy.id)

                if rule.type == RuleType.DENY:
                    outcome.allowed = False
                    outcome.violations.append(f"Policy '{policy.name}': {rule.action}")
                elif rule.type == RuleType.REQUIRE_APPROVAL:
                    outcome.requires_approval = True

                logger.debug(
                    "Rule matched (policy: %s, rule: %s, type: %s, span: %s)",
                    policy.id, rule.id, rule.type.value, span.id,
                )

        return outcome
