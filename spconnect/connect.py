"""Establishing sessions: one entry point per kind of credential.

Each ``Connector.connect_*`` method resolves whatever the flow needs up front (certificate,
realm), runs the broker once to prove the credentials work, and hands the result to the
``SessionBuilder``, which classifies the session and registers it. ``make_current=False``
returns the session without replacing the registry's current session.

Certificate problems are raised before anything goes over the network.
"""

import datetime
import logging
import threading
from typing import Callable, Dict, Optional

from requests.auth import HTTPBasicAuth

from .auth import (
    GRAPH_DEVICE_LOGIN_SCOPES,
    MANAGEMENT_SHELL_CLIENT_ID,
    AppCertificateFlow,
    AppSecretFlow,
    DeviceCodeFlow,
    DeviceCodePrompt,
    DirectAccessTokenFlow,
    InteractiveBrowserFlow,
    ResourceOwnerPasswordFlow,
    TokenBroker,
    print_device_code,
    sharepoint_app_scope,
    sharepoint_delegated_scope,
)
from .certificates import (
    Certificate,
    CertificateStore,
    resolve_from_base64,
    resolve_from_file,
    resolve_from_pem,
)
from .config import AppConfig, AuthSettings
from .environment import Environment
from .errors import ConsentRequiredError, CredentialError, TokenRequestRejectedError
from .realm import discover_realm
from .registry import SessionRegistry
from .session import Provenance, Session, SessionBuilder
from .tokens import Audience

logger = logging.getLogger(__name__)


class Connector:
    """Creates sessions for one configuration and registers them in ``registry``."""

    def __init__(self, config: Optional[AppConfig] = None, registry: Optional[SessionRegistry] = None,
                 broker: Optional[TokenBroker] = None, certificate_store: Optional[CertificateStore] = None):
        self.config = config
        self.registry = registry if registry is not None else SessionRegistry()
        self._broker = broker
        self._brokers: Dict[Environment, TokenBroker] = {}
        store_path = config.certificates.store_path if config else None
        self.certificate_store = certificate_store or CertificateStore(store_path)
        self.timeout = config.http.timeout if config else 30
        margin = config.token_refresh_margin if config else 300
        self.builder = SessionBuilder(self.registry, refresh_margin=datetime.timedelta(seconds=margin),
                                      machine_keys_path=self.machine_keys_path)
        self.allow_legacy_credentials_fallback = config.auth.allow_legacy_credentials_fallback if config else True

    @property
    def machine_keys_path(self) -> Optional[str]:
        return self.config.certificates.machine_keys_path if self.config else None

    def broker_for(self, environment: Environment) -> TokenBroker:
        if self._broker is not None:
            return self._broker
        environment = Environment.parse(environment)
        if environment not in self._brokers:
            self._brokers[environment] = TokenBroker(environment, timeout=self.timeout)
        return self._brokers[environment]

    # -- client id + secret (ACS) ---------------------------------------------

    def connect_app_secret(self, url: Optional[str], client_id: str, client_secret: str,
                           realm: Optional[str] = None, tenant_admin_url: Optional[str] = None,
                           environment: Environment = Environment.PRODUCTION, make_current: bool = True) -> Session:
        token = None
        flow = None
        broker = self.broker_for(environment)
        if url:
            if realm is None:
                realm = discover_realm(url, timeout=self.timeout)
            flow = AppSecretFlow(url=url, client_id=client_id, client_secret=client_secret, realm=realm)
            token = broker.acquire(flow, Audience.DOCUMENT_PLATFORM)
        return self.builder.build(
            token, url, Provenance.APP_SECRET, (), environment,
            tenant=realm, broker=broker, flow=flow, tenant_admin_url=tenant_admin_url,
            client_id=client_id, make_current=make_current,
        )

    # -- client id + certificate ----------------------------------------------

    def connect_certificate_file(self, url: str, client_id: str, tenant: Optional[str], path: str,
                                 password: Optional[str] = None, **kwargs) -> Session:
        certificate = resolve_from_file(path, password)
        return self._connect_certificate(url, client_id, tenant, certificate, Provenance.CERTIFICATE_FILE,
                                         delete_certificate_on_teardown=True, **kwargs)

    def connect_certificate_store(self, url: str, client_id: str, tenant: Optional[str], thumbprint: str,
                                  **kwargs) -> Session:
        certificate = self.certificate_store.resolve(thumbprint)
        return self._connect_certificate(url, client_id, tenant, certificate, Provenance.CERTIFICATE_STORE, **kwargs)

    def connect_certificate_pem(self, url: str, client_id: str, tenant: Optional[str], certificate_pem: str,
                                private_key_pem: str, password: Optional[str] = None, **kwargs) -> Session:
        certificate = resolve_from_pem(certificate_pem, private_key_pem, password)
        return self._connect_certificate(url, client_id, tenant, certificate, Provenance.CERTIFICATE_PEM, **kwargs)

    def connect_certificate_base64(self, url: str, client_id: str, tenant: Optional[str], blob: str,
                                   password: Optional[str] = None, **kwargs) -> Session:
        certificate = resolve_from_base64(blob, password)
        return self._connect_certificate(url, client_id, tenant, certificate, Provenance.CERTIFICATE_BASE64, **kwargs)

    def _connect_certificate(self, url: str, client_id: str, tenant: Optional[str], certificate: Certificate,
                             provenance: Provenance, delete_certificate_on_teardown: bool = False,
                             tenant_admin_url: Optional[str] = None,
                             environment: Environment = Environment.PRODUCTION, make_current: bool = True) -> Session:
        if not tenant:
            if not url:
                raise ValueError("A tenant or a site URL is required for certificate authentication")
            tenant = discover_realm(url, timeout=self.timeout)
        broker = self.broker_for(environment)
        flow = AppCertificateFlow(url=url, client_id=client_id, certificate=certificate, tenant=tenant)
        token = broker.acquire(flow, Audience.DOCUMENT_PLATFORM)
        return self.builder.build(
            token, url, provenance, (sharepoint_app_scope(url),), environment,
            tenant=tenant, certificate=certificate, delete_certificate_on_teardown=delete_certificate_on_teardown,
            broker=broker, flow=flow, tenant_admin_url=tenant_admin_url, client_id=client_id,
            make_current=make_current,
        )

    # -- username + password ----------------------------------------------------

    def connect_credentials(self, url: str, username: str, password: str, client_id: Optional[str] = None,
                            redirect_url: Optional[str] = None, on_prem: bool = False,
                            tenant_admin_url: Optional[str] = None,
                            environment: Environment = Environment.PRODUCTION, make_current: bool = True) -> Session:
        if on_prem:
            return self.builder.build(
                None, url, Provenance.CREDENTIALS_ON_PREM, (), environment,
                legacy_credentials=HTTPBasicAuth(username, password),
                tenant_admin_url=tenant_admin_url, client_id=client_id, make_current=make_current,
            )
        broker = self.broker_for(environment)
        flow = ResourceOwnerPasswordFlow(url=url, username=username, password=password,
                                         client_id=client_id, redirect_url=redirect_url)
        try:
            token = broker.acquire(flow, Audience.DOCUMENT_PLATFORM)
        except TokenRequestRejectedError as ex:
            if not self.allow_legacy_credentials_fallback:
                raise
            logger.warning("Token request for %s was rejected (%s); using transport level credentials", url, ex.error)
            return self.builder.build(
                None, url, Provenance.CREDENTIALS, (), environment,
                legacy_credentials=HTTPBasicAuth(username, password),
                tenant_admin_url=tenant_admin_url, client_id=client_id, make_current=make_current,
            )
        return self.builder.build(
            token, url, Provenance.CREDENTIALS, (sharepoint_delegated_scope(url),), environment,
            broker=broker, flow=flow, tenant_admin_url=tenant_admin_url,
            client_id=client_id or MANAGEMENT_SHELL_CLIENT_ID, make_current=make_current,
        )

    # -- device code ------------------------------------------------------------

    def connect_device_code(self, url: str, launch_browser: bool = False,
                            callback: Callable[[DeviceCodePrompt], None] = print_device_code,
                            cancel: Optional[threading.Event] = None, tenant_admin_url: Optional[str] = None,
                            environment: Environment = Environment.PRODUCTION, make_current: bool = True) -> Session:
        broker = self.broker_for(environment)
        flow = DeviceCodeFlow(url=url, launch_browser=launch_browser, callback=callback,
                              graph_scopes=GRAPH_DEVICE_LOGIN_SCOPES, timeout=self._device_code_timeout())
        token = self._run_device_flow(broker, flow, Audience.DOCUMENT_PLATFORM, cancel)
        return self.builder.build(
            token, url, Provenance.DEVICE_CODE, (sharepoint_delegated_scope(url),), environment,
            broker=broker, flow=flow, tenant_admin_url=tenant_admin_url,
            client_id=MANAGEMENT_SHELL_CLIENT_ID, make_current=make_current,
        )

    def connect_graph_device_code(self, launch_browser: bool = False,
                                  callback: Callable[[DeviceCodePrompt], None] = print_device_code,
                                  cancel: Optional[threading.Event] = None,
                                  environment: Environment = Environment.PRODUCTION,
                                  make_current: bool = True) -> Session:
        broker = self.broker_for(environment)
        flow = DeviceCodeFlow(url=None, launch_browser=launch_browser, callback=callback,
                              graph_scopes=GRAPH_DEVICE_LOGIN_SCOPES, timeout=self._device_code_timeout())
        token = self._run_device_flow(broker, flow, Audience.DIRECTORY_GRAPH, cancel)
        return self.builder.build(
            token, None, Provenance.GRAPH_DEVICE_CODE, GRAPH_DEVICE_LOGIN_SCOPES, environment,
            broker=broker, flow=flow, client_id=MANAGEMENT_SHELL_CLIENT_ID, make_current=make_current,
        )

    def _device_code_timeout(self) -> float:
        return self.config.auth.device_code_timeout if self.config else DeviceCodeFlow.timeout

    @staticmethod
    def _run_device_flow(broker: TokenBroker, flow: DeviceCodeFlow, audience: Audience,
                         cancel: Optional[threading.Event]):
        try:
            return broker.acquire(flow, audience, cancel=cancel)
        except ConsentRequiredError as ex:
            logger.error(ex.remediation.message)
            raise

    # -- interactive browser ----------------------------------------------------

    def connect_interactive(self, url: str, clear_cookies: bool = False, cancel: Optional[threading.Event] = None,
                            tenant_admin_url: Optional[str] = None,
                            environment: Environment = Environment.PRODUCTION,
                            make_current: bool = True) -> Optional[Session]:
        """Browser login; returns None when no browser can be shown on this machine."""
        broker = self.broker_for(environment)
        flow = InteractiveBrowserFlow(url=url, clear_cookies=clear_cookies)
        token = broker.acquire(flow, Audience.DOCUMENT_PLATFORM, cancel=cancel)
        if token is None:
            return None
        return self.builder.build(
            token, url, Provenance.INTERACTIVE_BROWSER, (sharepoint_delegated_scope(url),), environment,
            broker=broker, flow=flow, tenant_admin_url=tenant_admin_url,
            client_id=MANAGEMENT_SHELL_CLIENT_ID, make_current=make_current,
        )

    # -- raw bearer token -------------------------------------------------------

    def connect_access_token(self, access_token: str, url: Optional[str] = None,
                             audience: Audience = Audience.DIRECTORY_GRAPH,
                             environment: Environment = Environment.PRODUCTION, make_current: bool = True) -> Session:
        if not access_token:
            raise CredentialError("The access token is empty")
        broker = self.broker_for(environment)
        flow = DirectAccessTokenFlow(access_token=access_token, audience=audience)
        token = broker.acquire(flow, audience)
        return self.builder.build(
            token, url, Provenance.RAW_ACCESS_TOKEN, token.granted_scopes, environment,
            broker=broker, flow=flow, make_current=make_current,
        )

    # -- configuration driven ---------------------------------------------------

    def connect(self, config: Optional[AppConfig] = None, **kwargs) -> Optional[Session]:
        """Establish a session with the method named in ``config.auth.method``."""
        config = config or self.config
        if config is None:
            raise ValueError("No configuration to connect with")
        auth: AuthSettings = config.auth
        common = {"environment": config.environment, **kwargs}
        method = auth.method
        if method == "app_secret":
            return self.connect_app_secret(config.url, config.client_id, auth.client_secret, realm=auth.realm,
                                           tenant_admin_url=config.tenant_admin_url, **common)
        if method == "certificate_file":
            return self.connect_certificate_file(config.url, config.client_id, config.tenant, auth.certificate_path,
                                                 auth.certificate_password, tenant_admin_url=config.tenant_admin_url,
                                                 **common)
        if method == "certificate_store":
            return self.connect_certificate_store(config.url, config.client_id, config.tenant, auth.thumbprint,
                                                  tenant_admin_url=config.tenant_admin_url, **common)
        if method == "certificate_pem":
            return self.connect_certificate_pem(config.url, config.client_id, config.tenant, auth.certificate_pem,
                                                auth.private_key_pem, auth.certificate_password,
                                                tenant_admin_url=config.tenant_admin_url, **common)
        if method == "certificate_base64":
            return self.connect_certificate_base64(config.url, config.client_id, config.tenant,
                                                   auth.certificate_base64, auth.certificate_password,
                                                   tenant_admin_url=config.tenant_admin_url, **common)
        if method == "credentials":
            return self.connect_credentials(config.url, auth.username, auth.password, client_id=config.client_id,
                                            redirect_url=auth.redirect_url, on_prem=auth.on_prem,
                                            tenant_admin_url=config.tenant_admin_url, **common)
        if method == "device_code":
            return self.connect_device_code(config.url, launch_browser=auth.launch_browser,
                                            tenant_admin_url=config.tenant_admin_url, **common)
        if method == "graph_device_code":
            return self.connect_graph_device_code(launch_browser=auth.launch_browser, **common)
        if method == "interactive":
            return self.connect_interactive(config.url, clear_cookies=auth.clear_cookies,
                                            tenant_admin_url=config.tenant_admin_url, **common)
        if method == "access_token":
            return self.connect_access_token(auth.access_token, url=config.url, **common)
        raise ValueError(f"Unknown auth method '{method}'")

    # -- teardown ---------------------------------------------------------------

    def disconnect(self, session: Optional[Session] = None) -> None:
        """Close ``session`` (default: the current one) and drop it from the registry."""
        session = self.registry.resolve(session)
        self.registry.remove(session)
        session.close(self.machine_keys_path)

    def close(self) -> None:
        for session in self.registry.clear():
            session.close(self.machine_keys_path)
