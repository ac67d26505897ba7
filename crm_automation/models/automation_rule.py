# models/automation_rule.py
from sqlalchemy import Column, String, Integer, Boolean, DateTime, JSON, Index
from uuid import uuid4
from crm_automation.db.base_class import Base


def new_id() -> str:
    return uuid4().hex


class AutomationRule(Base):
    __tablename__ = "automation_rules"

    rule_id = Column(String(32), primary_key=True, default=new_id)
    tenant_id = Column(String(64), nullable=False)
    name = Column(String(200), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    priority = Column(Integer, default=0, nullable=False)

    # Full trigger document; the filters below are copied out of it for querying
    trigger = Column(JSON, nullable=False)
    trigger_type = Column(String(60), nullable=False)
    stage_id = Column(String(64), nullable=True)
    pipeline_id = Column(String(64), nullable=True)
    calendar_id = Column(String(64), nullable=True)

    conditions = Column(JSON, nullable=False, default=list)  # [{field, operator, value}]
    actions = Column(JSON, nullable=False, default=list)     # [{type, config}]

    # Execution statistics
    execution_count = Column(Integer, default=0, nullable=False)
    success_count = Column(Integer, default=0, nullable=False)
    failure_count = Column(Integer, default=0, nullable=False)
    last_executed = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_rules_tenant_trigger_active", "tenant_id", "trigger_type", "is_active"),
        Index("idx_rules_stage", "stage_id"),
        Index("idx_rules_calendar", "calendar_id"),
    )
