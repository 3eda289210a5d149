"""
Policy definition schemas.

Policies arrive from callers as untyped mappings (admin tooling, config
files). They are validated here with pydantic and narrowed into the
governance dataclasses before the engine ever sees them. Both snake_case and
the camelCase keys used by UI clients are accepted.
"""

from typing import Any, Dict, List, Mapping, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StrictBool, ValidationError, field_validator

from .errors import PolicyValidationError
from .governance_models import (
    PolicyCondition,
    PolicyRule,
    RiskLevel,
    RuleType,
    SecurityPolicy,
    TimeWindow,
)
from .span_models import SpanType


class AllowedHours(BaseModel):
    start: int = Field(..., ge=0, le=23)
    end: int = Field(..., ge=1, le=24)

    @field_validator('end')
    @classmethod
    def end_after_start(cls, v, info):
        start = info.data.get('start')
        if start is not None and v <= start:
            raise ValueError("allowed_hours.end must be greater than start")
        return v


class TimeRestrictions(BaseModel):
    allowed_hours: Optional[AllowedHours] = Field(
        None, validation_alias=AliasChoices('allowed_hours', 'allowedHours')
    )
    allowed_days: Optional[List[int]] = Field(
        None, validation_alias=AliasChoices('allowed_days', 'allowedDays')
    )

    @field_validator('allowed_days')
    @classmethod
    def days_in_week(cls, v):
        if v is not None and any(d < 0 or d > 6 for d in v):
            raise ValueError("allowed_days must be weekday numbers 0 (Sunday) to 6")
        return v


class ConditionSchema(BaseModel):
    span_types: Optional[List[str]] = Field(
        None, validation_alias=AliasChoices('span_types', 'spanType', 'spanTypes')
    )
    target_domains: Optional[List[str]] = Field(
        None, validation_alias=AliasChoices('target_domains', 'targetDomains')
    )
    risk_levels: Optional[List[str]] = Field(
        None, validation_alias=AliasChoices('risk_levels', 'riskLevel', 'riskLevels')
    )
    user_roles: Optional[List[str]] = Field(
        None, validation_alias=AliasChoices('user_roles', 'userRoles')
    )
    time_restrictions: Optional[TimeRestrictions] = Field(
        None, validation_alias=AliasChoices('time_restrictions', 'timeRestrictions')
    )

    @field_validator('span_types')
    @classmethod
    def known_span_types(cls, v):
        if v is not None:
            for item in v:
                SpanType(item)
        return v

    @field_validator('risk_levels')
    @classmethod
    def known_risk_levels(cls, v):
        if v is not None:
            for item in v:
                RiskLevel(item)
        return v


class RuleSchema(BaseModel):
    id: Optional[str] = None
    type: RuleType
    condition: ConditionSchema = Field(default_factory=ConditionSchema)
    action: str = Field(..., min_length=1)
    priority: int = 0


class PolicySchema(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str = ""
    enabled: bool = True
    rules: List[RuleSchema] = Field(default_factory=list)


class PolicyUpdateSchema(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    enabled: Optional[StrictBool] = None
    rules: Optional[List[RuleSchema]] = None

    model_config = ConfigDict(extra='forbid')


def _to_condition(schema: ConditionSchema) -> PolicyCondition:
    window = None
    if schema.time_restrictions is not None:
        hours = schema.time_restrictions.allowed_hours
        window = TimeWindow(
            allowed_hours=(hours.start, hours.end) if hours else None,
            allowed_days=schema.time_restrictions.allowed_days,
        )
    return PolicyCondition(
        span_types=schema.span_types,
        target_domains=schema.target_domains,
        risk_levels=schema.risk_levels,
        user_roles=schema.user_roles,
        time_restrictions=window,
    )


def _to_rules(rules: List[RuleSchema], policy_id: str) -> List[PolicyRule]:
    return [
        PolicyRule(
            id=rule.id or f"{policy_id}-rule-{index + 1}",
            type=rule.type,
            condition=_to_condition(rule.condition),
            action=rule.action,
            priority=rule.priority,
        )
        for index, rule in enumerate(rules)
    ]


def parse_policy(definition: Mapping[str, Any], policy_id: Optional[str] = None) -> SecurityPolicy:
    """
    Validate an untyped policy mapping and build a SecurityPolicy.

    Raises:
        PolicyValidationError: if the definition is malformed
    """
    try:
        schema = PolicySchema.model_validate(dict(definition))
    except ValidationError as e:
        raise PolicyValidationError(f"Invalid policy definition: {e}") from e

    policy_id = policy_id or f"policy_{uuid4().hex[:12]}"
    return SecurityPolicy(
        id=policy_id,
        name=schema.name,
        description=schema.description,
        enabled=schema.enabled,
        rules=_to_rules(schema.rules, policy_id),
    )


def parse_policy_update(updates: Mapping[str, Any], policy_id: str) -> Dict[str, Any]:
    """
    Validate a partial policy update. Only name, description, enabled and
    rules may change; rules are validated exactly like a new definition.

    Raises:
        PolicyValidationError: unknown field, null value or malformed rule
    """
    try:
        schema = PolicyUpdateSchema.model_validate(dict(updates))
    except ValidationError as e:
        raise PolicyValidationError(f"Invalid policy update: {e}") from e

    fields: Dict[str, Any] = {}
    for key in schema.model_fields_set:
        value = getattr(schema, key)
        if value is None:
            raise PolicyValidationError(f"Policy field '{key}' cannot be null")
        fields[key] = _to_rules(value, policy_id) if key == "rules" else value
    return fields
