"""Realm (tenant id) discovery from a SharePoint endpoint.

SharePoint answers an anonymous request carrying an empty bearer token with ``401`` and a
challenge of the form ``Bearer realm="<tenant guid>", client_id="..."``. The realm is only an
optimization for the ACS flow, so anything other than a well-formed challenge yields ``None``.
Network failures are not "no realm" and propagate as ``TransportError``.
"""

import logging
import re
from typing import Optional

import requests

from .errors import transport_error

logger = logging.getLogger(__name__)

REALM_PROBE_PATH = "/_vti_bin/client.svc"
_BEARER_REALM = 'Bearer realm="'
_REALM_LENGTH = 36
_GUID = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")


def parse_realm(challenge: Optional[str]) -> Optional[str]:
    """Extract the 36 character realm GUID from a WWW-Authenticate header value."""
    if not challenge:
        return None
    start = challenge.find(_BEARER_REALM)
    if start < 0:
        return None
    start += len(_BEARER_REALM)
    candidate = challenge[start:start + _REALM_LENGTH]
    if len(candidate) != _REALM_LENGTH:
        return None
    if not _GUID.match(candidate):
        return None
    # "1111...-1111" followed by more hex before the closing quote is not a GUID
    if not challenge[start + _REALM_LENGTH:].startswith('"'):
        return None
    return candidate


def discover_realm(target_url: str, session: Optional[requests.Session] = None, timeout: float = 30) -> Optional[str]:
    """Probe ``target_url`` anonymously and return its realm, or None.

    Raises:
        TransportError: DNS, TLS, connection or timeout failures.
    """
    url = target_url.rstrip("/") + REALM_PROBE_PATH
    http = session or requests
    try:
        response = http.get(url, headers={"Authorization": "Bearer "}, timeout=timeout, allow_redirects=False)
    except requests.RequestException as exc:
        raise transport_error(exc, url) from exc
    if response.ok:
        logger.debug("Realm probe of %s unexpectedly succeeded (%s)", url, response.status_code)
        return None
    realm = parse_realm(response.headers.get("WWW-Authenticate"))
    if realm:
        logger.info("Discovered realm %s for %s", realm, target_url)
    else:
        logger.debug("No realm in challenge from %s (status %s)", url, response.status_code)
    return realm
