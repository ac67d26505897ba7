# models/location.py
from sqlalchemy import Column, String
from crm_automation.db.base_class import Base


class Location(Base):
    """A tenant's business location; `location_id` is the tenant id."""
    __tablename__ = "locations"

    location_id = Column(String(64), primary_key=True)
    name = Column(String(200), nullable=True)
    company_name = Column(String(200), nullable=True)
    business_name = Column(String(200), nullable=True)
    timezone = Column(String(64), nullable=True)

    def to_context(self) -> dict:
        return {
            "id": self.location_id,
            "name": self.name,
            "companyName": self.company_name,
            "businessName": self.business_name,
            "timezone": self.timezone,
        }
