"""Access token model and claim helpers.

Tokens are opaque to the rest of the code base except for a handful of claims we read
without verifying the signature (the issuing service already did that for us):
 - ``tid``: tenant id, used to fill in the session's tenant for delegated logins,
 - ``exp``: expiry, used when an MSAL response carries no ``expires_in``,
 - ``scp`` / ``roles``: granted delegated scopes / application roles.
"""

import datetime
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Tuple

import jwt

from .errors import InsufficientPermissionError

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_MARGIN = datetime.timedelta(minutes=5)


class Audience(str, Enum):
    DOCUMENT_PLATFORM = "SharePoint"
    DIRECTORY_GRAPH = "MicrosoftGraph"


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass(frozen=True)
class Token:
    """A bearer token for one audience.

    ``expires_at`` is ``None`` when the expiry is unknown (raw tokens that are not JWTs);
    such tokens are treated as valid but can never be refreshed.
    """

    access_token: str
    audience: Audience
    expires_at: Optional[datetime.datetime] = None
    granted_scopes: Tuple[str, ...] = field(default_factory=tuple)
    tenant_id: Optional[str] = None

    def is_valid(self, now: Optional[datetime.datetime] = None,
                 margin: datetime.timedelta = DEFAULT_REFRESH_MARGIN) -> bool:
        if self.expires_at is None:
            return True
        now = now or utcnow()
        return now < self.expires_at - margin

    def __repr__(self) -> str:
        # never print the bearer string
        return f"Token(audience={self.audience.value}, expires_at={self.expires_at}, scopes={list(self.granted_scopes)})"


def decode_claims(access_token: str) -> Dict[str, Any]:
    """Return the claims of a JWT access token, or an empty dict when it is not a JWT."""
    try:
        return jwt.decode(access_token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return {}


def granted_scopes_from_claims(claims: Dict[str, Any]) -> Tuple[str, ...]:
    scopes = []
    scp = claims.get("scp")
    if isinstance(scp, str):
        scopes.extend(s for s in scp.split(" ") if s)
    roles = claims.get("roles")
    if isinstance(roles, list):
        scopes.extend(str(r) for r in roles)
    return tuple(scopes)


def expiry_from_claims(claims: Dict[str, Any]) -> Optional[datetime.datetime]:
    exp = claims.get("exp")
    if exp is None:
        return None
    try:
        return datetime.datetime.fromtimestamp(int(exp), tz=datetime.timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def token_from_msal_result(result: Dict[str, Any], audience: Audience,
                           now: Optional[datetime.datetime] = None) -> Token:
    """Build a Token from a successful MSAL response dictionary."""
    access_token = result["access_token"]
    claims = decode_claims(access_token)
    expires_at = expiry_from_claims(claims)
    if "expires_in" in result:
        expires_at = (now or utcnow()) + datetime.timedelta(seconds=int(result["expires_in"]))
    scopes = granted_scopes_from_claims(claims)
    if not scopes and result.get("scope"):
        scopes = tuple(s for s in str(result["scope"]).split(" ") if s)
    tenant_id = claims.get("tid") or (result.get("id_token_claims") or {}).get("tid")
    return Token(
        access_token=access_token,
        audience=audience,
        expires_at=expires_at,
        granted_scopes=scopes,
        tenant_id=tenant_id,
    )


def check_permissions(token: Token, all_of: Optional[Sequence[str]] = None,
                      any_of: Optional[Sequence[str]] = None) -> None:
    """Raise InsufficientPermissionError if the token does not satisfy the requirement sets.

    Tokens whose grants are unknown (opaque tokens, tokens without scp/roles) pass.
    Scope names compare case-insensitively and ignore a resource prefix
    (``https://graph.microsoft.com/Group.Read.All`` matches ``Group.Read.All``).
    """
    if not token.granted_scopes:
        return
    granted = {_short_scope(s) for s in token.granted_scopes}
    if all_of:
        missing = [s for s in all_of if _short_scope(s) not in granted]
        if missing:
            raise InsufficientPermissionError(
                f"Token for {token.audience.value} lacks required permissions: {', '.join(missing)}", missing)
    if any_of:
        if not any(_short_scope(s) in granted for s in any_of):
            raise InsufficientPermissionError(
                f"Token for {token.audience.value} needs at least one of: {', '.join(any_of)}", any_of)


def _short_scope(scope: str) -> str:
    return scope.rsplit("/", 1)[-1].lower()
