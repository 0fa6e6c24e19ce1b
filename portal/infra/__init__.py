from portal.infra.portal_client import PortalClient, PortalClientError
from portal.infra.repositories import ComplaintStore

__all__ = [
    "ComplaintStore",
    "PortalClient",
    "PortalClientError",
]
