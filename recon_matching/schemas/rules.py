"""Pydantic schemas for rule conditions, match configuration and the rules API."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from recon_matching.models.rule import ApprovalStatus, RuleChangeType, RuleStatus


class FieldType(str, Enum):
    """Declared type of a condition field."""

    STRING = "string"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"
    AMOUNT = "amount"


class Comparator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    BETWEEN = "between"
    IN = "in"
    NOT_IN = "not_in"
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class Condition(BaseModel):
    """One typed comparison against a transaction field.

    ``logical_operator`` says how this condition combines with the next one.
    """

    model_config = ConfigDict(frozen=True)

    id: str | None = None
    field: str = Field(min_length=1)
    field_type: FieldType
    comparator: Comparator
    value: Any = None
    value2: Any = None
    logical_operator: LogicalOperator | None = None
    case_sensitive: bool = True


class Tolerance(BaseModel):
    """Allowed disagreement between two transactions."""

    model_config = ConfigDict(frozen=True)

    amount: Decimal | None = Field(default=None, ge=0)
    # Percent of the larger absolute amount, e.g. 0.5 means 0.5%
    percentage: Decimal | None = Field(default=None, ge=0)
    days: int | None = Field(default=None, ge=0)


class ExactMatchConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    strategy: Literal["exact"] = "exact"
    # Amount is always compared in addition to these
    key_fields: list[str] = Field(default_factory=lambda: ["amount"])


class FuzzyMatchConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    strategy: Literal["fuzzy"] = "fuzzy"
    # None falls back to the configured fuzzy threshold
    threshold: float | None = Field(default=None, ge=0, le=100)
    tolerance: Tolerance = Field(default_factory=Tolerance)


class NWayMatchConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    strategy: Literal["n_way"] = "n_way"
    key_fields: list[str] = Field(min_length=1)
    tolerance: Tolerance = Field(default_factory=Tolerance)
    min_confidence: float = Field(default=0.0, ge=0, le=100)


class ManualMatchConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    strategy: Literal["manual"] = "manual"


MatchConfiguration = Annotated[
    ExactMatchConfig | FuzzyMatchConfig | NWayMatchConfig | ManualMatchConfig,
    Field(discriminator="strategy"),
]

match_configuration_adapter: TypeAdapter[MatchConfiguration] = TypeAdapter(MatchConfiguration)


class RuleScope(BaseModel):
    partners: list[str] = Field(default_factory=list)
    reconciliation_types: list[str] = Field(default_factory=list)


class RuleCreate(BaseModel):
    """Request body to create a rule (starts as draft)."""

    name: str
    description: str = ""
    conditions: list[Condition] = Field(default_factory=list)
    match_configuration: MatchConfiguration
    priority: int = 5
    is_enabled: bool = False
    tags: list[str] = Field(default_factory=list)
    applies_to: RuleScope = Field(default_factory=RuleScope)
    created_by: str


class RuleUpdate(BaseModel):
    """Partial update; every change bumps the rule version."""

    name: str | None = None
    description: str | None = None
    conditions: list[Condition] | None = None
    match_configuration: MatchConfiguration | None = None
    priority: int | None = None
    tags: list[str] | None = None
    applies_to: RuleScope | None = None
    updated_by: str
    change_description: str | None = None


class RuleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    rule_number: str
    name: str
    description: str
    status: RuleStatus
    version: int
    conditions: list[Condition]
    match_configuration: MatchConfiguration
    priority: int
    is_enabled: bool
    tags: list[str]
    applies_to: RuleScope
    created_by: str
    created_at: datetime
    updated_by: str
    updated_at: datetime
    approved_by: str | None
    approved_at: datetime | None
    rejected_by: str | None
    rejected_at: datetime | None
    rejection_reason: str | None
    times_applied: int
    successful_matches: int
    last_applied_at: datetime | None


class RuleVersionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    rule_id: str
    version: int
    name: str
    description: str
    conditions: list[Condition]
    match_configuration: dict[str, Any]
    changed_by: str
    changed_at: datetime
    change_type: RuleChangeType
    change_description: str
    previous_version: int | None


class FieldChange(BaseModel):
    field: str
    old_value: Any = None
    new_value: Any = None


class ApprovalRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    rule_id: str
    rule_name: str
    rule_version: int
    requested_by: str
    requested_at: datetime
    status: ApprovalStatus
    reviewed_by: str | None
    reviewed_at: datetime | None
    comments: str | None
    changes: list[FieldChange]


class RuleSubmitRequest(BaseModel):
    requested_by: str
    comments: str | None = None


class RuleDecisionRequest(BaseModel):
    actor: str
    comments: str | None = None


class RuleRejectRequest(BaseModel):
    actor: str
    reason: str


class RuleToggleRequest(BaseModel):
    actor: str


class RuleValidateRequest(BaseModel):
    """Loose rule draft checked by the validate endpoint; every field may be missing."""

    name: str | None = None
    conditions: list[dict[str, Any]] | None = None
    match_configuration: dict[str, Any] | None = None
    priority: int | None = None


class RuleValidationResponse(BaseModel):
    valid: bool
    errors: list[str]


class RuleTestRequest(BaseModel):
    sample: dict[str, Any]


class ConditionTrace(BaseModel):
    index: int
    field: str
    comparator: Comparator
    passed: bool
    running_result: bool


class RuleTestResponse(BaseModel):
    matched: bool
    details: str
    trace: list[ConditionTrace]
