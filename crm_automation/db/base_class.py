# db/base_class.py
from sqlalchemy.orm import as_declarative, declared_attr
from sqlalchemy import Column, DateTime

from crm_automation.core.clock import utcnow


@as_declarative()
class Base:
    id: any
    __name__: str

    # Generate __tablename__ automatically if not provided
    @declared_attr
    def __tablename__(cls) -> str:
        return cls.__name__.lower()

    # Timestamps for all tables
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
