"""Thin REST helpers that authenticate requests with an established session.

Responsibilities:
 - Attach a bearer token from the session (or its transport level credentials) to every request.
 - Stamp requests with the session's application name as User-Agent.
 - Present the client certificate of certificate based sessions for TLS client authentication.
 - Offer a few calls that prove a connection works (current web, tenant organization).

Tokens are fetched per request rather than once at construction so a long-lived client keeps
working across token refreshes.
"""

import logging
from typing import Any, Dict, Optional, Sequence

import requests

from .environment import graph_resource
from .errors import NotTenantAdminError
from .registry import SessionRegistry
from .session import Session
from .tokens import Audience

logger = logging.getLogger(__name__)


def require_tenant_admin(session: Session) -> Session:
    """Raise NotTenantAdminError unless ``session`` points at a tenant administration site."""
    if not session.is_tenant_admin:
        raise NotTenantAdminError(
            f"{session.endpoint or 'This connection'} is not a tenant administration site; "
            "connect to https://<tenant>-admin.sharepoint.com first"
        )
    return session


class _RestClient:
    audience: Audience = Audience.DOCUMENT_PLATFORM
    label = "REST"

    def __init__(self, session: Optional[Session] = None, registry: Optional[SessionRegistry] = None,
                 timeout: float = 30, http: Optional[requests.Session] = None,
                 machine_keys_path: Optional[str] = None):
        if session is None and registry is None:
            raise ValueError("Pass a session or the registry holding the current session")
        self.connection = registry.resolve(session) if registry is not None else session
        self.timeout = timeout
        self.machine_keys_path = machine_keys_path
        # Reuse an HTTP session across requests for connection pooling.
        self.http = http or requests.Session()
        self.http.headers.update({"Accept": "application/json"})

    def _auth_kwargs(self, all_of: Optional[Sequence[str]], any_of: Optional[Sequence[str]]) -> Dict[str, Any]:
        headers = {"User-Agent": self.connection.application_name}
        if self.connection.legacy_credentials is not None:
            return {"headers": headers, "auth": self.connection.legacy_credentials}
        token = self.connection.get_token(self.audience, all_of=all_of, any_of=any_of)
        headers["Authorization"] = f"Bearer {token}"
        kwargs = {"headers": headers}
        certificate = self.connection.certificate
        if certificate is not None and certificate.has_private_key:
            # TLS client certificate alongside the bearer token
            kwargs["cert"] = certificate.transport_cert(self.machine_keys_path)
        return kwargs

    def _get(self, url: str, all_of: Optional[Sequence[str]] = None,
             any_of: Optional[Sequence[str]] = None, **kwargs) -> Dict[str, Any]:
        """Perform a GET request and raise a descriptive error on failure."""
        request_kwargs = self._auth_kwargs(all_of, any_of)
        request_kwargs["headers"].update(kwargs.pop("headers", {}))
        logger.debug("%s GET %s", self.label, url)
        r = self.http.get(url, timeout=self.timeout, **request_kwargs, **kwargs)
        if not r.ok:
            raise RuntimeError(f"{self.label} GET failed {r.status_code}: {r.text}")
        return r.json()


class SharePointClient(_RestClient):
    """SharePoint REST calls against the session's endpoint."""

    audience = Audience.DOCUMENT_PLATFORM
    label = "SharePoint"

    def __init__(self, session: Optional[Session] = None, **kwargs):
        super().__init__(session, **kwargs)
        if not self.connection.endpoint:
            raise RuntimeError("This connection has no SharePoint URL")
        self.base = self.connection.endpoint.rstrip("/")

    def get_web(self) -> Dict[str, Any]:
        """Return title and URL of the connected web."""
        return self._get(f"{self.base}/_api/web", params={"$select": "Title,Url"},
                         headers={"Accept": "application/json;odata=nometadata"})

    def get_tenant_sites(self) -> Dict[str, Any]:
        """List site collections; only available on the tenant administration site."""
        require_tenant_admin(self.connection)
        return self._get(f"{self.base}/_api/SPO.Tenant/GetSitePropertiesFromSharePoint",
                         headers={"Accept": "application/json;odata=nometadata"})


class GraphClient(_RestClient):
    """Microsoft Graph calls for the session's sovereign cloud."""

    audience = Audience.DIRECTORY_GRAPH
    label = "Graph"

    def __init__(self, session: Optional[Session] = None, **kwargs):
        super().__init__(session, **kwargs)
        self.base = f"{graph_resource(self.connection.environment)}/v1.0"

    def get_organization(self) -> Dict[str, Any]:
        """Return the first organization object of the signed-in tenant."""
        data = self._get(f"{self.base}/organization", any_of=("Organization.Read.All", "Directory.Read.All",
                                                             "Directory.ReadWrite.All", "User.Read"))
        orgs = data.get("value", [])
        if not orgs:
            raise RuntimeError("Graph returned no organization for this tenant")
        return orgs[0]

    def list_groups(self, top: int = 10) -> list:
        data = self._get(f"{self.base}/groups", any_of=("Group.Read.All", "Group.ReadWrite.All",
                                                       "Directory.Read.All", "Directory.ReadWrite.All"),
                         params={"$top": top})
        return data.get("value", [])
