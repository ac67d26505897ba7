# crud/entities.py
from typing import Optional, Type, TypeVar
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from crm_automation.models import Location

ModelType = TypeVar("ModelType")


def _primary_key(model: Type[ModelType]):
    return model.__mapper__.primary_key[0]


# Lookup by primary key, scoped to the tenant when given
async def get_by_primary(
    db: AsyncSession,
    model: Type[ModelType],
    entity_id: str,
    tenant_id: Optional[str] = None,
) -> Optional[ModelType]:
    stmt = select(model).where(_primary_key(model) == entity_id)
    if tenant_id is not None and hasattr(model, "tenant_id"):
        stmt = stmt.where(model.tenant_id == tenant_id)
    result = await db.execute(stmt)
    return result.scalars().first()


# Lookup by the id the external CRM uses
async def get_by_external(
    db: AsyncSession,
    model: Type[ModelType],
    external_id: str,
    tenant_id: Optional[str] = None,
) -> Optional[ModelType]:
    if not hasattr(model, "external_id"):
        return None
    stmt = select(model).where(model.external_id == external_id)
    if tenant_id is not None and hasattr(model, "tenant_id"):
        stmt = stmt.where(model.tenant_id == tenant_id)
    result = await db.execute(stmt)
    return result.scalars().first()


# Location of a tenant
async def get_location(db: AsyncSession, tenant_id: str) -> Optional[Location]:
    result = await db.execute(select(Location).where(Location.location_id == tenant_id))
    return result.scalar_one_or_none()
