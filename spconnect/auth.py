"""Token broker for SharePoint Online and Microsoft Graph.

This module turns one of the supported credential flows into an access token for an audience
(SharePoint or Microsoft Graph). Each flow is a small frozen dataclass; ``TokenBroker.acquire``
dispatches on the flow type to one handler per flow.

Design notes:
 - Azure AD flows go through MSAL (ConfidentialClientApplication for certificates,
   PublicClientApplication for password / device code / browser logins). MSAL application
   objects are kept per (client id, authority) so their in-memory token cache can serve
   silent refreshes later on.
 - The legacy ACS app-only exchange (client id + secret) is not something MSAL speaks, so it is
   a plain ``requests`` form post against the ACS endpoint advertised in its metadata document.
 - Every handler distinguishes a classified authentication failure (CredentialError,
   ConsentRequiredError) from a transport failure (TransportError). Retrying transport failures
   is the caller's decision; the broker never retries.
 - Device-code and browser logins block the calling thread. A ``threading.Event`` passed as
   ``cancel`` is checked on every poll and turns into CancelledError. The browser login runs
   MSAL on a worker thread so a cancel does not wait for the browser.
"""

import datetime
import logging
import threading
import time
import webbrowser
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Sequence, Tuple, Union
from urllib.parse import urlparse

import msal
import requests

from .certificates import Certificate
from .environment import Environment, acs_endpoint_for, endpoints_for, graph_resource
from .errors import (
    CancelledError,
    CredentialError,
    NoTokenAvailableError,
    TransportError,
    classify_msal_error,
    transport_error,
)
from .tokens import (
    Audience,
    Token,
    check_permissions,
    decode_claims,
    granted_scopes_from_claims,
    token_from_msal_result,
    utcnow,
)

logger = logging.getLogger(__name__)

# Multi-tenant public client ("PnP Management Shell") used for device code and password logins.
MANAGEMENT_SHELL_CLIENT_ID = "31359c7f-bd7e-475c-86db-fdb8c937548e"

# SharePoint Online service principal, the ACS resource prefix.
SHAREPOINT_PRINCIPAL = "00000003-0000-0ff1-ce00-000000000000"

GRAPH_DEVICE_LOGIN_SCOPES = (
    "Group.Read.All", "openid", "email", "profile", "Group.ReadWrite.All", "User.Read.All", "Directory.ReadWrite.All",
)

# Page on the site host the browser lands on after an interactive login.
LOGIN_LANDING_PATH = "/_layouts/15/settings.aspx"

DEFAULT_DEVICE_CODE_TIMEOUT = 900
DEFAULT_INTERACTIVE_TIMEOUT = 300

# Seconds between cancel checks while a browser login is pending.
CANCEL_POLL_INTERVAL = 0.1


@dataclass(frozen=True)
class DeviceCodePrompt:
    """What the user needs to complete a device code login."""

    user_code: str
    verification_uri: str
    message: str
    expires_at: Optional[float] = None


def print_device_code(prompt: DeviceCodePrompt) -> None:
    print(prompt.message)


# ---------------------------------------------------------------------------
# Flows
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AppSecretFlow:
    url: Optional[str]
    client_id: str
    client_secret: str = field(repr=False)
    realm: Optional[str] = None


@dataclass(frozen=True)
class AppCertificateFlow:
    url: Optional[str]
    client_id: str
    certificate: Certificate = field(repr=False)
    tenant: Optional[str] = None


@dataclass(frozen=True)
class ResourceOwnerPasswordFlow:
    url: str
    username: str
    password: str = field(repr=False)
    client_id: Optional[str] = None
    # Accepted and ignored: the password grant has no redirect.
    redirect_url: Optional[str] = None


@dataclass(frozen=True)
class DeviceCodeFlow:
    url: Optional[str]
    launch_browser: bool = False
    callback: Callable[[DeviceCodePrompt], None] = print_device_code
    client_id: str = MANAGEMENT_SHELL_CLIENT_ID
    graph_scopes: Tuple[str, ...] = ()
    timeout: float = DEFAULT_DEVICE_CODE_TIMEOUT


@dataclass(frozen=True)
class InteractiveBrowserFlow:
    url: str
    clear_cookies: bool = False
    client_id: str = MANAGEMENT_SHELL_CLIENT_ID
    timeout: float = DEFAULT_INTERACTIVE_TIMEOUT


@dataclass(frozen=True)
class DirectAccessTokenFlow:
    access_token: str = field(repr=False)
    audience: Audience = Audience.DIRECTORY_GRAPH


Flow = Union[AppSecretFlow, AppCertificateFlow, ResourceOwnerPasswordFlow, DeviceCodeFlow,
             InteractiveBrowserFlow, DirectAccessTokenFlow]


# ---------------------------------------------------------------------------
# Scope helpers
# ---------------------------------------------------------------------------

def sharepoint_app_scope(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}/.default"


def sharepoint_delegated_scope(url: str) -> str:
    # SharePoint expects the double slash for delegated .default requests
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}//.default"


def browser_available() -> bool:
    try:
        webbrowser.get()
    except webbrowser.Error:
        return False
    return True


class TokenBroker:
    """Acquire access tokens for one sovereign cloud ``environment``."""

    def __init__(self, environment: Environment = Environment.PRODUCTION,
                 http: Optional[requests.Session] = None, timeout: float = 30):
        self.environment = Environment.parse(environment)
        self.endpoints = endpoints_for(self.environment)
        self.http = http or requests.Session()
        self.timeout = timeout
        self._apps: Dict[Tuple[str, ...], msal.ClientApplication] = {}
        self._apps_lock = threading.Lock()
        self._acs_token_urls: Dict[Tuple[str, str], str] = {}
        self._handlers = {
            AppSecretFlow: self._acquire_app_secret,
            AppCertificateFlow: self._acquire_app_certificate,
            ResourceOwnerPasswordFlow: self._acquire_password,
            DeviceCodeFlow: self._acquire_device_code,
            InteractiveBrowserFlow: self._acquire_interactive,
            DirectAccessTokenFlow: self._acquire_direct,
        }

    def acquire(self, flow: Flow, audience: Audience = Audience.DOCUMENT_PLATFORM,
                all_of: Optional[Sequence[str]] = None, any_of: Optional[Sequence[str]] = None,
                cancel: Optional[threading.Event] = None, interactive: bool = True,
                scopes: Optional[Sequence[str]] = None) -> Optional[Token]:
        """Run ``flow`` and return a token for ``audience``.

        Args:
            flow: One of the flow dataclasses above.
            audience: Which API the token is for.
            all_of / any_of: Permission requirements the granted scopes/roles must satisfy.
            cancel: Cooperative cancellation signal for blocking flows.
            interactive: When False, delegated flows only try a silent refresh.
            scopes: Explicit delegated scopes (management shell callers), overrides the default.
        Returns:
            A Token, or None when an interactive browser login is not possible here.
        Raises:
            CredentialError, ConsentRequiredError, TransportError, CancelledError,
            NoTokenAvailableError, InsufficientPermissionError.
        """
        handler = self._handlers.get(type(flow))
        if handler is None:
            raise TypeError(f"Unsupported flow {type(flow).__name__}")
        if cancel is not None and cancel.is_set():
            raise CancelledError("Authentication was cancelled")
        token = handler(flow, audience, cancel=cancel, interactive=interactive, scopes=scopes)
        if token is None:
            return None
        check_permissions(token, all_of, any_of)
        logger.debug("Acquired %s token via %s", audience.value, type(flow).__name__)
        return token

    # -- MSAL plumbing -------------------------------------------------------

    def _authority(self, tenant: Optional[str]) -> str:
        return f"{self.endpoints.login_endpoint}/{tenant or 'organizations'}"

    def _public_app(self, client_id: str, tenant: Optional[str] = None) -> msal.PublicClientApplication:
        authority = self._authority(tenant)
        key = ("public", client_id, authority)
        with self._apps_lock:
            if key not in self._apps:
                self._apps[key] = msal.PublicClientApplication(client_id, authority=authority, http_client=self.http)
            return self._apps[key]

    def _confidential_app(self, client_id: str, certificate: Certificate, tenant: str) -> msal.ConfidentialClientApplication:
        authority = self._authority(tenant)
        key = ("confidential", client_id, authority, certificate.thumbprint)
        with self._apps_lock:
            if key not in self._apps:
                self._apps[key] = msal.ConfidentialClientApplication(
                    client_id,
                    client_credential=certificate.msal_credential(),
                    authority=authority,
                    http_client=self.http,
                )
            return self._apps[key]

    def _call(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """Invoke an MSAL call, turning network and parse failures into TransportError."""
        try:
            return func(*args, **kwargs)
        except requests.RequestException as exc:
            raise transport_error(exc, self.endpoints.login_endpoint) from exc
        except ValueError as exc:
            raise TransportError(f"Malformed response from {self.endpoints.login_endpoint}: {exc}") from exc

    def _token_or_raise(self, result: Optional[Dict[str, Any]], audience: Audience, client_id: str) -> Token:
        if not result:
            raise TransportError("Empty response from the token endpoint")
        if "access_token" in result:
            return token_from_msal_result(result, audience)
        raise classify_msal_error(result, client_id)

    def _silent(self, app: msal.ClientApplication, scopes: Sequence[str], audience: Audience,
                username: Optional[str] = None) -> Optional[Token]:
        accounts = self._call(app.get_accounts, username=username)
        for account in accounts or []:
            result = self._call(app.acquire_token_silent, list(scopes), account=account)
            if result and "access_token" in result:
                return token_from_msal_result(result, audience)
        return None

    def _delegated_scopes(self, url: Optional[str], audience: Audience,
                          explicit: Optional[Sequence[str]] = None) -> Tuple[str, ...]:
        if explicit:
            return tuple(explicit)
        if audience is Audience.DIRECTORY_GRAPH:
            return (f"{graph_resource(self.environment)}/.default",)
        if not url:
            raise NoTokenAvailableError("No SharePoint URL on this connection; SharePoint tokens are unavailable")
        return (sharepoint_delegated_scope(url),)

    # -- ACS: client id + client secret ----------------------------------------

    def acs_token_url(self, url: str, realm: str) -> str:
        endpoints = acs_endpoint_for(url, self.environment)
        key = (endpoints.acs_host, realm)
        if key in self._acs_token_urls:
            return self._acs_token_urls[key]
        metadata_url = f"https://{endpoints.acs_prefix}.{endpoints.acs_host}/metadata/json/1"
        try:
            response = self.http.get(metadata_url, params={"realm": realm}, timeout=self.timeout)
            response.raise_for_status()
            metadata = response.json()
        except requests.RequestException as exc:
            raise transport_error(exc, metadata_url) from exc
        except ValueError as exc:
            raise TransportError(f"Malformed ACS metadata from {metadata_url}: {exc}") from exc
        for endpoint in metadata.get("endpoints", []):
            if endpoint.get("protocol") == "OAuth2" and endpoint.get("location"):
                self._acs_token_urls[key] = endpoint["location"]
                return endpoint["location"]
        raise TransportError(f"ACS metadata at {metadata_url} does not advertise an OAuth2 endpoint")

    def _acquire_app_secret(self, flow: AppSecretFlow, audience: Audience, **_) -> Token:
        if audience is not Audience.DOCUMENT_PLATFORM or not flow.url:
            raise NoTokenAvailableError(f"Client secret (ACS) connections cannot issue {audience.value} tokens")
        if not flow.realm:
            raise CredentialError("The realm of the target site is unknown; pass it explicitly")
        token_url = self.acs_token_url(flow.url, flow.realm)
        host = urlparse(flow.url).hostname
        data = {
            "grant_type": "client_credentials",
            "client_id": f"{flow.client_id}@{flow.realm}",
            "client_secret": flow.client_secret,
            "resource": f"{SHAREPOINT_PRINCIPAL}/{host}@{flow.realm}",
        }
        try:
            response = self.http.post(token_url, data=data, timeout=self.timeout)
        except requests.RequestException as exc:
            raise transport_error(exc, token_url) from exc
        if response.status_code >= 500:
            raise TransportError(f"ACS token endpoint failed {response.status_code}: {response.text}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise TransportError(f"Malformed ACS token response ({response.status_code})") from exc
        if not response.ok:
            raise CredentialError(
                f"ACS rejected the client credentials: {payload.get('error')}: {payload.get('error_description')}"
            )
        if not payload.get("access_token"):
            raise TransportError("ACS token response does not contain an access token")
        expires_at = None
        if payload.get("expires_in"):
            expires_at = utcnow() + datetime.timedelta(seconds=int(payload["expires_in"]))
        return Token(access_token=payload["access_token"], audience=audience,
                     expires_at=expires_at, tenant_id=flow.realm)

    # -- Azure AD app-only: client id + certificate -----------------------------

    def _acquire_app_certificate(self, flow: AppCertificateFlow, audience: Audience, **_) -> Token:
        if not flow.tenant:
            raise CredentialError("A tenant is required for certificate based app-only authentication")
        if audience is Audience.DIRECTORY_GRAPH:
            scope = f"{graph_resource(self.environment)}/.default"
        elif flow.url:
            scope = sharepoint_app_scope(flow.url)
        else:
            raise NoTokenAvailableError("No SharePoint URL on this connection; SharePoint tokens are unavailable")
        app = self._confidential_app(flow.client_id, flow.certificate, flow.tenant)
        result = self._call(app.acquire_token_for_client, scopes=[scope])
        return self._token_or_raise(result, audience, flow.client_id)

    # -- Delegated: username + password -----------------------------------------

    def _acquire_password(self, flow: ResourceOwnerPasswordFlow, audience: Audience,
                          scopes: Optional[Sequence[str]] = None, **_) -> Token:
        client_id = flow.client_id or MANAGEMENT_SHELL_CLIENT_ID
        wanted = self._delegated_scopes(flow.url, audience, scopes)
        app = self._public_app(client_id)
        token = self._silent(app, wanted, audience, username=flow.username)
        if token is not None:
            return token
        result = self._call(app.acquire_token_by_username_password, flow.username, flow.password, scopes=list(wanted))
        return self._token_or_raise(result, audience, client_id)

    # -- Delegated: device code -------------------------------------------------

    def _acquire_device_code(self, flow: DeviceCodeFlow, audience: Audience,
                             cancel: Optional[threading.Event] = None, interactive: bool = True,
                             scopes: Optional[Sequence[str]] = None, **_) -> Token:
        explicit = scopes or (flow.graph_scopes if audience is Audience.DIRECTORY_GRAPH else None)
        wanted = self._delegated_scopes(flow.url, audience, explicit)
        app = self._public_app(flow.client_id)
        token = self._silent(app, wanted, audience)
        if token is not None:
            return token
        if not interactive:
            raise NoTokenAvailableError(f"A new device code login is required for a {audience.value} token")

        device_flow = self._call(app.initiate_device_flow, scopes=list(wanted))
        if "user_code" not in device_flow:
            raise classify_msal_error(device_flow, flow.client_id)
        prompt = DeviceCodePrompt(
            user_code=device_flow["user_code"],
            verification_uri=device_flow.get("verification_uri", ""),
            message=device_flow.get("message", ""),
            expires_at=device_flow.get("expires_at"),
        )
        flow.callback(prompt)
        if flow.launch_browser and prompt.verification_uri:
            webbrowser.open(prompt.verification_uri)

        deadline = time.time() + flow.timeout

        def should_stop(polled: Dict[str, Any]) -> bool:
            if cancel is not None and cancel.is_set():
                return True
            return polled.get("expires_at", 0) < time.time() or time.time() > deadline

        result = self._call(app.acquire_token_by_device_flow, device_flow, exit_condition=should_stop)
        if cancel is not None and cancel.is_set():
            raise CancelledError("Device code login was cancelled")
        if result and "access_token" in result:
            return token_from_msal_result(result, audience)
        if result and result.get("error") in ("authorization_pending", "slow_down", "expired_token"):
            raise CredentialError("The device code expired before the sign-in was completed")
        return self._token_or_raise(result, audience, flow.client_id)

    # -- Delegated: interactive browser ------------------------------------------

    def _acquire_interactive(self, flow: InteractiveBrowserFlow, audience: Audience,
                             cancel: Optional[threading.Event] = None, interactive: bool = True,
                             scopes: Optional[Sequence[str]] = None, **_) -> Optional[Token]:
        wanted = self._delegated_scopes(flow.url, audience, scopes)
        app = self._public_app(flow.client_id)
        if not flow.clear_cookies:
            token = self._silent(app, wanted, audience)
            if token is not None:
                return token
        if not interactive:
            raise NoTokenAvailableError(f"A new browser login is required for a {audience.value} token")
        if not browser_available():
            logger.info("No browser available for an interactive login")
            return None
        parsed = urlparse(flow.url)
        landing = f"{parsed.scheme}://{parsed.netloc}{LOGIN_LANDING_PATH}"
        outcome: Dict[str, Any] = {}

        def run() -> None:
            try:
                outcome["result"] = self._call(
                    app.acquire_token_interactive,
                    list(wanted),
                    prompt="login" if flow.clear_cookies else "select_account",
                    timeout=flow.timeout,
                    success_template=f'<html><head><meta http-equiv="refresh" content="0; url={landing}"></head>'
                                     f'<body>Signed in. You can close this window.</body></html>',
                )
            except Exception as exc:
                outcome["error"] = exc

        # MSAL blocks until the browser redirects back; wait on the worker and the cancel signal together
        worker = threading.Thread(target=run, name="spconnect-browser-login", daemon=True)
        worker.start()
        while worker.is_alive():
            if cancel is not None and cancel.wait(CANCEL_POLL_INTERVAL):
                raise CancelledError("Browser login was cancelled")
            worker.join(CANCEL_POLL_INTERVAL)
        if cancel is not None and cancel.is_set():
            raise CancelledError("Browser login was cancelled")
        if "error" in outcome:
            raise outcome["error"]
        return self._token_or_raise(outcome.get("result"), audience, flow.client_id)

    # -- Caller supplied bearer token -------------------------------------------

    def _acquire_direct(self, flow: DirectAccessTokenFlow, audience: Audience, **_) -> Token:
        if not flow.access_token:
            raise CredentialError("The access token is empty")
        if audience is not flow.audience:
            raise NoTokenAvailableError(f"The supplied access token is for {flow.audience.value}, not {audience.value}")
        claims = decode_claims(flow.access_token)
        return Token(
            access_token=flow.access_token,
            audience=flow.audience,
            expires_at=None,
            granted_scopes=granted_scopes_from_claims(claims),
            tenant_id=claims.get("tid"),
        )
