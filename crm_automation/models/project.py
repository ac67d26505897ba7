# models/project.py
from sqlalchemy import Column, String, Float, Text, Index
from crm_automation.db.base_class import Base
from crm_automation.models.automation_rule import new_id


class Project(Base):
    __tablename__ = "projects"

    project_id = Column(String(32), primary_key=True, default=new_id)
    tenant_id = Column(String(64), nullable=False)
    external_id = Column(String(64), nullable=True)  # opportunity id in the external CRM
    contact_id = Column(String(64), nullable=True)
    title = Column(String(200), nullable=True)
    description = Column(Text, nullable=True)
    status = Column(String(30), nullable=True)
    pipeline_id = Column(String(64), nullable=True)
    stage_id = Column(String(64), nullable=True)
    monetary_value = Column(Float, nullable=True)
    assigned_user_id = Column(String(64), nullable=True)
    active_quote_id = Column(String(32), nullable=True)

    __table_args__ = (
        Index("idx_projects_tenant", "tenant_id"),
        Index("idx_projects_external", "external_id"),
    )

    def to_context(self) -> dict:
        return {
            "id": self.project_id,
            "externalId": self.external_id,
            "contactId": self.contact_id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "pipelineId": self.pipeline_id,
            "stageId": self.stage_id,
            "monetaryValue": self.monetary_value,
            "assignedUserId": self.assigned_user_id,
            "activeQuoteId": self.active_quote_id,
        }
