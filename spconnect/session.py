"""Session handle shared by every operation that talks to SharePoint or Microsoft Graph.

A ``Session`` is created once per login by ``SessionBuilder.build``. What it records never
changes afterwards: how it was created (provenance), whether it points at a tenant
administration site (classification), the scopes it asked for, the sovereign cloud. What does
change is the per-audience token cache, which lazily acquires and refreshes tokens through the
broker using the flow the session was created with.
"""

import datetime
import logging
import threading
from enum import Enum
from typing import TYPE_CHECKING, Dict, Optional, Sequence, Tuple
from urllib.parse import urlparse

from requests.auth import AuthBase

from .certificates import Certificate, cleanup_machine_key
from .environment import ADMIN_SITE_MARKER, Environment
from .errors import NoTokenAvailableError
from .tokens import DEFAULT_REFRESH_MARGIN, Audience, Token, check_permissions

if TYPE_CHECKING:
    from .auth import Flow, TokenBroker
    from .registry import SessionRegistry

logger = logging.getLogger(__name__)

APPLICATION_NAME = "spconnect:1.0"


class Classification(str, Enum):
    ORDINARY = "O365"
    TENANT_ADMIN = "TenantAdmin"


class Provenance(str, Enum):
    APP_SECRET = "AppSecret"
    DEVICE_CODE = "DeviceCode"
    CERTIFICATE_FILE = "CertificateFile"
    CERTIFICATE_STORE = "CertificateStore"
    CERTIFICATE_PEM = "CertificatePEM"
    CERTIFICATE_BASE64 = "CertificateBase64"
    CREDENTIALS = "Credentials"
    CREDENTIALS_ON_PREM = "CredentialsOnPrem"
    INTERACTIVE_BROWSER = "InteractiveBrowser"
    RAW_ACCESS_TOKEN = "RawAccessToken"
    GRAPH_DEVICE_CODE = "GraphDeviceCode"


CERTIFICATE_PROVENANCES = frozenset({
    Provenance.CERTIFICATE_FILE,
    Provenance.CERTIFICATE_STORE,
    Provenance.CERTIFICATE_PEM,
    Provenance.CERTIFICATE_BASE64,
})

# Logins whose token belongs to a user; their ``tid`` claim names the tenant.
DELEGATED_PROVENANCES = frozenset({
    Provenance.DEVICE_CODE,
    Provenance.CREDENTIALS,
    Provenance.INTERACTIVE_BROWSER,
    Provenance.RAW_ACCESS_TOKEN,
    Provenance.GRAPH_DEVICE_CODE,
})


def classify(endpoint: Optional[str]) -> Classification:
    host = (urlparse(endpoint).hostname or "") if endpoint else ""
    if ADMIN_SITE_MARKER in host.lower():
        return Classification.TENANT_ADMIN
    return Classification.ORDINARY


class TokenCache:
    """Audience-scoped token cache of one session.

    At most one acquisition per audience is in flight: callers for the same audience wait on
    that audience's lock and then find the freshly cached token.
    """

    def __init__(self, broker: Optional["TokenBroker"] = None, flow: Optional["Flow"] = None,
                 refresh_margin: datetime.timedelta = DEFAULT_REFRESH_MARGIN):
        self._broker = broker
        self._flow = flow
        self.refresh_margin = refresh_margin
        self._tokens: Dict[Audience, Token] = {}
        self._locks: Dict[Audience, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, audience: Audience) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(audience, threading.Lock())

    def peek(self, audience: Audience) -> Optional[Token]:
        return self._tokens.get(audience)

    def put(self, token: Token) -> None:
        with self._lock_for(token.audience):
            self._tokens[token.audience] = token

    def invalidate(self, audience: Optional[Audience] = None) -> None:
        if audience is None:
            with self._guard:
                self._tokens.clear()
            return
        with self._lock_for(audience):
            self._tokens.pop(audience, None)

    def get_token(self, audience: Audience, all_of: Optional[Sequence[str]] = None,
                  any_of: Optional[Sequence[str]] = None, bypass_permission_check: bool = False,
                  scopes: Optional[Sequence[str]] = None) -> Token:
        """Return a valid token for ``audience``, acquiring a new one when needed.

        Raises:
            NoTokenAvailableError: nothing cached and the session cannot refresh silently.
            InsufficientPermissionError: the token lacks the declared permissions.
        """
        if bypass_permission_check:
            all_of = any_of = None
        with self._lock_for(audience):
            cached = self._tokens.get(audience)
            if cached is not None and cached.is_valid(margin=self.refresh_margin) and not scopes:
                check_permissions(cached, all_of, any_of)
                logger.debug("Reusing cached %s token", audience.value)
                return cached
            if self._broker is None or self._flow is None:
                raise NoTokenAvailableError(f"No {audience.value} access token available on this connection")
            token = self._broker.acquire(self._flow, audience, all_of=all_of, any_of=any_of,
                                         interactive=False, scopes=scopes)
            if token is None:
                raise NoTokenAvailableError(f"No {audience.value} access token available on this connection")
            self._tokens[audience] = token
            logger.info("Acquired new %s token", audience.value)
            return token


class Session:
    """An authenticated, classified connection to a tenant."""

    def __init__(self, endpoint: str, provenance: Provenance, classification: Classification,
                 environment: Environment = Environment.PRODUCTION, tenant_id: str = "",
                 scopes: Sequence[str] = (), certificate: Optional[Certificate] = None,
                 delete_certificate_on_teardown: bool = False, tokens: Optional[TokenCache] = None,
                 legacy_credentials: Optional[AuthBase] = None,
                 tenant_admin_url: Optional[str] = None, client_id: Optional[str] = None,
                 application_name: str = APPLICATION_NAME):
        if (certificate is not None) != (provenance in CERTIFICATE_PROVENANCES):
            raise ValueError(f"A certificate must be attached exactly when provenance is certificate based ({provenance.value})")
        self._endpoint = endpoint or ""
        self._provenance = provenance
        self._classification = classification
        self._environment = environment
        self._scopes: Tuple[str, ...] = tuple(scopes)
        self.tenant_id = tenant_id or ""
        self.certificate = certificate
        self.delete_certificate_on_teardown = delete_certificate_on_teardown and certificate is not None
        self.tokens = tokens or TokenCache()
        self.legacy_credentials = legacy_credentials
        self.tenant_admin_url = tenant_admin_url
        self.client_id = client_id
        self.application_name = application_name
        self.closed = False

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def provenance(self) -> Provenance:
        return self._provenance

    @property
    def classification(self) -> Classification:
        return self._classification

    @property
    def environment(self) -> Environment:
        return self._environment

    @property
    def scopes(self) -> Tuple[str, ...]:
        return self._scopes

    @property
    def is_tenant_admin(self) -> bool:
        return self._classification is Classification.TENANT_ADMIN

    def get_token(self, audience: Audience = Audience.DOCUMENT_PLATFORM,
                  all_of: Optional[Sequence[str]] = None, any_of: Optional[Sequence[str]] = None,
                  bypass_permission_check: bool = False, scopes: Optional[Sequence[str]] = None) -> str:
        """Return a bearer string for ``audience`` (for an ``Authorization: Bearer`` header)."""
        if self.closed:
            raise NoTokenAvailableError("This connection has been closed")
        return self.tokens.get_token(audience, all_of, any_of, bypass_permission_check, scopes).access_token

    def close(self, machine_keys_path=None) -> None:
        """Tear the session down; removes cached key material of file based certificates."""
        if self.closed:
            return
        self.closed = True
        self.tokens.invalidate()
        if self.delete_certificate_on_teardown:
            cleanup_machine_key(self.certificate, machine_keys_path)
        elif self.certificate is not None:
            self.certificate.discard_transport_cert()
        logger.info("Closed %s", self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def __str__(self) -> str:
        return (f"Session(endpoint={self._endpoint or '-'}, provenance={self._provenance.value}, "
                f"classification={self._classification.value}, tenant={self.tenant_id or '-'})")


class SessionBuilder:
    """Wraps a login result into a ``Session`` and registers it.

    A session that becomes current closes the session it replaces.
    """

    def __init__(self, registry: "SessionRegistry", refresh_margin: datetime.timedelta = DEFAULT_REFRESH_MARGIN,
                 machine_keys_path=None):
        self.registry = registry
        self.refresh_margin = refresh_margin
        self.machine_keys_path = machine_keys_path

    def build(self, token: Optional[Token], endpoint: Optional[str], provenance: Provenance,
              scopes: Sequence[str] = (), environment: Environment = Environment.PRODUCTION, *,
              tenant: Optional[str] = None, certificate: Optional[Certificate] = None,
              delete_certificate_on_teardown: bool = False, broker: Optional["TokenBroker"] = None,
              flow: Optional["Flow"] = None, legacy_credentials: Optional[AuthBase] = None,
              tenant_admin_url: Optional[str] = None, client_id: Optional[str] = None,
              make_current: bool = True) -> Session:
        """Create, classify and register a session.

        ``token`` is the token obtained while authenticating (None for sessions that only carry
        transport level credentials). The tenant is the explicit ``tenant`` if given, else the
        ``tid`` claim of a delegated token, else empty.
        """
        tenant_id = tenant or ""
        if not tenant_id and token is not None and provenance in DELEGATED_PROVENANCES:
            tenant_id = token.tenant_id or ""
        cache = TokenCache(broker=broker, flow=flow, refresh_margin=self.refresh_margin)
        if token is not None:
            cache.put(token)
        session = Session(
            endpoint=endpoint or "",
            provenance=provenance,
            classification=classify(endpoint),
            environment=environment,
            tenant_id=tenant_id,
            scopes=scopes,
            certificate=certificate,
            delete_certificate_on_teardown=delete_certificate_on_teardown,
            tokens=cache,
            legacy_credentials=legacy_credentials,
            tenant_admin_url=tenant_admin_url,
            client_id=client_id,
        )
        replaced = self.registry.register(session, make_current=make_current)
        logger.info("Connected: %s", session)
        if replaced is not None:
            logger.info("Replacing %s", replaced)
            replaced.close(self.machine_keys_path)
        return session
