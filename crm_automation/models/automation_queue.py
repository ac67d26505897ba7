# models/automation_queue.py
from sqlalchemy import Column, String, Integer, DateTime, Text, JSON, Index, CheckConstraint
from crm_automation.db.base_class import Base
from crm_automation.models.automation_rule import new_id

# scheduled -> pending -> processing -> completed | pending (retry) | failed
QUEUE_STATUSES = ("scheduled", "pending", "processing", "completed", "failed")
ACTIVE_STATUSES = ("pending", "scheduled", "processing")


class AutomationQueueEntry(Base):
    __tablename__ = "automation_queue"

    entry_id = Column(String(32), primary_key=True, default=new_id)
    rule_id = Column(String(32), nullable=True)
    tenant_id = Column(String(64), nullable=False)

    action = Column(JSON, nullable=False)        # snapshot of the rule action
    action_type = Column(String(60), nullable=False)
    trigger = Column(JSON, nullable=False)       # {type, tenantId, data}
    trigger_type = Column(String(60), nullable=False)

    status = Column(String(20), nullable=False, default="pending")
    scheduled_for = Column(DateTime, nullable=True)  # NULL means run now
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    result = Column(JSON, nullable=True)

    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=False, default=dict)

    # Copies of metadata used by dedup and cancellation lookups
    trigger_hash = Column(String(64), nullable=True)
    action_hash = Column(String(64), nullable=True)
    appointment_id = Column(String(64), nullable=True)
    project_id = Column(String(64), nullable=True)
    stage_id = Column(String(64), nullable=True)

    processing_started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('scheduled','pending','processing','completed','failed')",
            name="chk_queue_status"
        ),
        Index("idx_queue_status_scheduled", "status", "scheduled_for"),
        Index("idx_queue_action_hash", "action_hash"),
        Index("idx_queue_trigger_hash", "trigger_hash"),
        Index("idx_queue_appointment", "appointment_id"),
        Index("idx_queue_project", "project_id"),
    )
