from typing import Any, Optional, Union
from dataclasses import dataclass
import logging
import re

from sqlalchemy.ext.asyncio import AsyncSession

from crm_automation.crud import entities as entity_crud
from crm_automation.models import Contact, Project, Quote, Appointment, User, Location

logger = logging.getLogger(__name__)

PRIMARY_ID_RE = re.compile(r"^[a-f0-9]{32}$")


@dataclass(frozen=True)
class PrimaryRef:
    """An id issued by this service."""
    id: str


@dataclass(frozen=True)
class ExternalRef:
    """An id issued by the external CRM."""
    id: str


EntityRef = Union[PrimaryRef, ExternalRef]


def parse_entity_ref(raw: Any) -> Optional[EntityRef]:
    """Classify a loosely-typed id once, where it enters the system."""
    if isinstance(raw, (PrimaryRef, ExternalRef)):
        return raw
    if raw is None:
        return None
    value = str(raw).strip()
    if not value:
        return None
    if PRIMARY_ID_RE.match(value):
        return PrimaryRef(value)
    return ExternalRef(value)


class EntityResolver:
    """
    Loads the entities an action context needs.

    A PrimaryRef is looked up by primary key first and then by external id,
    an ExternalRef by external id only. Misses return None.
    """

    def __init__(self, db: AsyncSession, tenant_id: Optional[str] = None):
        self.db = db
        self.tenant_id = tenant_id

    async def _resolve(self, model, ref: Optional[EntityRef]):
        if ref is None:
            return None

        if isinstance(ref, PrimaryRef):
            found = await entity_crud.get_by_primary(self.db, model, ref.id, self.tenant_id)
            if found is not None:
                return found

        found = await entity_crud.get_by_external(self.db, model, ref.id, self.tenant_id)
        if found is None:
            logger.debug("%s %r not found", model.__name__, ref)
        return found

    async def contact(self, ref: Optional[EntityRef]) -> Optional[Contact]:
        return await self._resolve(Contact, ref)

    async def project(self, ref: Optional[EntityRef]) -> Optional[Project]:
        return await self._resolve(Project, ref)

    async def quote(self, ref: Optional[EntityRef]) -> Optional[Quote]:
        return await self._resolve(Quote, ref)

    async def appointment(self, ref: Optional[EntityRef]) -> Optional[Appointment]:
        return await self._resolve(Appointment, ref)

    async def user(self, ref: Optional[EntityRef]) -> Optional[User]:
        return await self._resolve(User, ref)

    async def location(self) -> Optional[Location]:
        if not self.tenant_id:
            return None
        return await entity_crud.get_location(self.db, self.tenant_id)
