from typing import Any, Dict, List, Literal, Optional
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from crm_automation.core.clock import utcnow

DelayUnit = Literal["minutes", "hours", "days", "weeks"]
ConditionOperator = Literal[
    "equals", "not-equals", "greater-than", "less-than",
    "in", "empty", "not-empty", "contains", "exists",
]


def normalize_event_type(event_type: Optional[str]) -> Optional[str]:
    """`contact:created` and `contact.created` both become `contact-created`."""
    if not event_type:
        return event_type
    return event_type.replace(".", "-").replace(":", "-")


# --- Nested Schemas ---
class ConditionSpec(BaseModel):
    field: str
    operator: ConditionOperator
    value: Any = None


class ActionSpec(BaseModel):
    type: str
    config: Dict[str, Any] = Field(default_factory=dict)


class TriggerSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: str
    stage_id: Optional[str] = Field(None, alias="stageId")
    pipeline_id: Optional[str] = Field(None, alias="pipelineId")
    calendar_id: Optional[str] = Field(None, alias="calendarId")
    entity_type: Optional[str] = Field(None, alias="entityType")
    # time-based triggers: {timing, amount, unit}
    timing: Optional[Literal["before", "after"]] = None
    amount: Optional[float] = None
    unit: Optional[DelayUnit] = None
    config: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("type")
    @classmethod
    def _normalize_type(cls, v: str) -> str:
        return normalize_event_type(v)


# --- Rule Requests / Responses ---
class RuleCreateRequest(BaseModel):
    tenant_id: str
    name: Optional[str] = None
    is_active: bool = True
    priority: int = 0
    trigger: TriggerSpec
    conditions: List[ConditionSpec] = Field(default_factory=list)
    actions: List[ActionSpec] = Field(default_factory=list)


class RuleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    rule_id: str
    tenant_id: str
    name: Optional[str]
    is_active: bool
    priority: int
    trigger: Dict[str, Any]
    conditions: List[Dict[str, Any]]
    actions: List[Dict[str, Any]]
    execution_count: int
    success_count: int
    failure_count: int
    last_executed: Optional[datetime]


# --- Domain Events ---
class DomainEvent(BaseModel):
    type: str
    tenant_id: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def normalized_type(self) -> str:
        return normalize_event_type(self.type)


class RuleOutcome(BaseModel):
    rule_id: str
    rule_name: Optional[str] = None
    conditions_met: bool = False
    queued: int = 0
    duplicates: int = 0
    discarded: int = 0  # relative schedules already in the past
    error: Optional[str] = None


class MatchReport(BaseModel):
    event_type: str
    tenant_id: str
    rules: List[RuleOutcome] = Field(default_factory=list)
    cancelled: int = 0

    @computed_field
    @property
    def queued(self) -> int:
        return sum(r.queued for r in self.rules)


# --- Queue ---
class QueueStats(BaseModel):
    total: int
    by_status: Dict[str, int] = Field(serialization_alias="byStatus")
    is_running: bool = Field(serialization_alias="isRunning")


class CleanupReport(BaseModel):
    deleted_completed: int
    deleted_old: int
    recent_failures: int
    failures_by_error: Dict[str, int]
