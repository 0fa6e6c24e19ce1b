from __future__ import annotations

import logging

from portal.domain.models import SessionContext
from portal.domain.states import Role
from portal.infra.portal_client import PortalClient, PortalClientError
from portal.timeline.actors import ActorDirectory

logger = logging.getLogger(__name__)


class DirectoryService:
    """Keeps an ActorDirectory seeded from the backend user endpoints.

    Lookup failures are not fatal: the directory keeps whatever it held and
    labels degrade to "User <id>".
    """

    def __init__(self, client: PortalClient, directory: ActorDirectory | None = None) -> None:
        self.client = client
        self.directory = directory or ActorDirectory()

    async def refresh_hq_users(self) -> int:
        try:
            users = await self.client.list_hq_users()
        except PortalClientError as exc:
            logger.warning("HQ user directory unavailable: %s", exc)
            return 0
        count = self.directory.seed_hq_users(users)
        logger.info("Seeded %s HQ users", count)
        return count

    async def refresh_area_officers(self, area_id: str | None = None) -> int:
        try:
            users = await self.client.list_area_officers(area_id)
        except PortalClientError as exc:
            logger.warning("Area officer directory unavailable area=%s: %s", area_id, exc)
            return 0
        count = self.directory.seed_area_officers(users, area_id)
        logger.info("Seeded %s area officers area=%s", count, area_id or "*")
        return count

    async def refresh_for(self, ctx: SessionContext, area_id: str | None = None) -> dict[str, int]:
        # Area officers cannot list HQ staff upstream.
        hq = 0 if ctx.role == Role.NODAL else await self.refresh_hq_users()
        officers = await self.refresh_area_officers(area_id if area_id is not None else ctx.area_id)
        return {"hq_users": hq, "area_officers": officers}
