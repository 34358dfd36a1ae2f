"""Error taxonomy of the connection core.

``CredentialError`` and ``ConsentRequiredError`` are terminal: they carry text the user can
act on and must not be retried automatically. ``TransportError`` wraps network, TLS, timeout
and malformed-response failures; callers may retry those with backoff.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Tuple

import requests


class AuthError(Exception):
    """Base class for every failure raised by the connection core."""


class CredentialError(AuthError):
    """Credentials are missing, malformed or were rejected by the authentication service."""


class TokenRequestRejectedError(CredentialError):
    """The token endpoint refused the request itself (unsupported grant, server error)."""

    def __init__(self, message: str, error: Optional[str] = None):
        super().__init__(message)
        self.error = error


class CertificateLoadError(CredentialError):
    """A certificate could not be loaded or is unusable for app-only authentication."""


class CertificateNotFoundError(CertificateLoadError):
    """No certificate with the requested thumbprint exists in the store."""


class NoPrivateKeyError(CertificateLoadError):
    """The certificate was found but carries no usable private key."""


@dataclass(frozen=True)
class ConsentRemediation:
    message: str
    client_id: Optional[str] = None
    suggested_action: Optional[str] = None
    requires_admin: bool = True


class ConsentRequiredError(AuthError):
    """The directory requires (administrator) consent for the requesting application."""

    def __init__(self, remediation: ConsentRemediation):
        super().__init__(remediation.message)
        self.remediation = remediation


class TransportError(AuthError):
    """An authentication or resource endpoint could not be reached or answered garbage."""


class CancelledError(AuthError):
    """A blocking interactive flow was cancelled by the caller."""


class NoTokenAvailableError(AuthError):
    """The session cannot produce a token for the requested audience."""


class InsufficientPermissionError(AuthError):
    """A token was obtained but lacks the permissions the caller declared as required."""

    def __init__(self, message: str, missing: Iterable[str] = ()):
        super().__init__(message)
        self.missing: Tuple[str, ...] = tuple(missing)


class NotTenantAdminError(AuthError):
    """An operation that needs a tenant administration site ran against an ordinary site."""


# AADSTS codes that mean "an administrator has to consent first".
_CONSENT_ERROR_CODES = {65001, 65004, 90094}

# Token endpoint errors that mean the grant itself was refused for these credentials.
_CREDENTIAL_ERRORS = {"invalid_grant", "invalid_client", "access_denied", "authorization_declined",
                      "expired_token", "bad_verification_code", "invalid_resource", "invalid_scope"}

# Token endpoint errors where the request never got a verdict on the credentials.
REQUEST_REJECTED_ERRORS = {"invalid_request", "unauthorized_client", "unsupported_grant_type",
                           "server_error", "temporarily_unavailable"}


def is_consent_error(result: Dict[str, Any]) -> bool:
    codes = set(result.get("error_codes") or [])
    if codes & _CONSENT_ERROR_CODES:
        return True
    return result.get("suberror") == "consent_required" or result.get("error") == "consent_required"


def classify_msal_error(result: Dict[str, Any], client_id: Optional[str] = None) -> AuthError:
    """Turn an MSAL error dictionary into the matching exception instance (not raised)."""
    error = result.get("error") or "unknown_error"
    description = result.get("error_description") or ""
    if is_consent_error(result):
        return ConsentRequiredError(ConsentRemediation(
            message=(
                "You need to provide consent to the application for your tenant. Sign in once as an "
                "Azure AD administrator who is allowed to grant consent and accept the requested permissions."
            ),
            client_id=client_id,
            suggested_action="Run the device-code login with launch_browser enabled and sign in as an administrator.",
        ))
    if error in _CREDENTIAL_ERRORS:
        return CredentialError(f"{error}: {description}".strip())
    if error in REQUEST_REJECTED_ERRORS:
        return TokenRequestRejectedError(f"Token request rejected ({error}): {description}".strip(), error)
    return TransportError(f"Token endpoint returned {error}: {description}".strip())


def transport_error(exc: requests.RequestException, target: str) -> TransportError:
    err = TransportError(f"Request to {target} failed: {exc}")
    err.__cause__ = exc
    return err
