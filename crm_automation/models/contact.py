# models/contact.py
from sqlalchemy import Column, String, JSON, Index
from crm_automation.db.base_class import Base
from crm_automation.models.automation_rule import new_id


class Contact(Base):
    __tablename__ = "contacts"

    contact_id = Column(String(32), primary_key=True, default=new_id)
    tenant_id = Column(String(64), nullable=False)
    external_id = Column(String(64), nullable=True)  # id in the external CRM
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    full_name = Column(String(200), nullable=True)
    email = Column(String(200), nullable=True)
    phone = Column(String(30), nullable=True)
    timezone = Column(String(64), nullable=True)
    assigned_to = Column(String(64), nullable=True)
    source = Column(String(100), nullable=True)
    tags = Column(JSON, nullable=True)

    __table_args__ = (
        Index("idx_contacts_tenant", "tenant_id"),
        Index("idx_contacts_external", "external_id"),
    )

    def to_context(self) -> dict:
        return {
            "id": self.contact_id,
            "externalId": self.external_id,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "fullName": self.full_name,
            "email": self.email,
            "phone": self.phone,
            "timezone": self.timezone,
            "assignedTo": self.assigned_to,
            "source": self.source,
            "tags": self.tags or [],
        }
