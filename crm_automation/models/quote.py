# models/quote.py
from sqlalchemy import Column, String, Float, DateTime, Index
from crm_automation.db.base_class import Base
from crm_automation.models.automation_rule import new_id


class Quote(Base):
    __tablename__ = "quotes"

    quote_id = Column(String(32), primary_key=True, default=new_id)
    tenant_id = Column(String(64), nullable=False)
    project_id = Column(String(64), nullable=True)
    contact_id = Column(String(64), nullable=True)
    quote_number = Column(String(40), nullable=True)
    title = Column(String(200), nullable=True)
    total = Column(Float, nullable=True)
    deposit_amount = Column(Float, nullable=True)
    currency = Column(String(3), default="USD")
    status = Column(String(30), nullable=True)
    signed_at = Column(DateTime, nullable=True)
    expiration_date = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_quotes_tenant", "tenant_id"),
        Index("idx_quotes_project", "project_id"),
    )

    def to_context(self) -> dict:
        return {
            "id": self.quote_id,
            "projectId": self.project_id,
            "contactId": self.contact_id,
            "quoteNumber": self.quote_number,
            "title": self.title,
            "total": self.total,
            "depositAmount": self.deposit_amount,
            "currency": self.currency or "USD",
            "status": self.status,
            "signedAt": self.signed_at,
            "expirationDate": self.expiration_date,
        }
