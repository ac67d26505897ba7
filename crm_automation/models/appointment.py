# models/appointment.py
from sqlalchemy import Column, String, DateTime, Index
from crm_automation.db.base_class import Base
from crm_automation.models.automation_rule import new_id


class Appointment(Base):
    __tablename__ = "appointments"

    appointment_id = Column(String(32), primary_key=True, default=new_id)
    tenant_id = Column(String(64), nullable=False)
    external_id = Column(String(64), nullable=True)  # calendar provider's event id
    calendar_id = Column(String(64), nullable=True)
    contact_id = Column(String(64), nullable=True)
    project_id = Column(String(64), nullable=True)
    assigned_user_id = Column(String(64), nullable=True)
    title = Column(String(200), nullable=True)
    start_time = Column(DateTime, nullable=True)
    end_time = Column(DateTime, nullable=True)
    status = Column(String(30), nullable=True)

    __table_args__ = (
        Index("idx_appointments_tenant", "tenant_id"),
        Index("idx_appointments_external", "external_id"),
    )

    def to_context(self) -> dict:
        return {
            "id": self.appointment_id,
            "externalId": self.external_id,
            "calendarId": self.calendar_id,
            "contactId": self.contact_id,
            "projectId": self.project_id,
            "assignedUserId": self.assigned_user_id,
            "title": self.title,
            "start": self.start_time,
            "end": self.end_time,
            "status": self.status,
        }
