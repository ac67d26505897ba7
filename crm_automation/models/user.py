# models/user.py
from sqlalchemy import Column, String, Index
from crm_automation.db.base_class import Base
from crm_automation.models.automation_rule import new_id


class User(Base):
    __tablename__ = "users"

    user_id = Column(String(32), primary_key=True, default=new_id)
    tenant_id = Column(String(64), nullable=False)
    external_id = Column(String(64), nullable=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    name = Column(String(200), nullable=True)
    email = Column(String(200), nullable=True)
    phone = Column(String(30), nullable=True)
    timezone = Column(String(64), nullable=True)

    __table_args__ = (
        Index("idx_users_tenant", "tenant_id"),
        Index("idx_users_external", "external_id"),
    )

    def to_context(self) -> dict:
        return {
            "id": self.user_id,
            "externalId": self.external_id,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "timezone": self.timezone,
        }
