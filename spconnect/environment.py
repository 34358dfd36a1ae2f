"""Sovereign-cloud endpoint tables.

Every base URL the connection core talks to depends on which Microsoft cloud the tenant
lives in. The tables below map each ``Environment`` to:
 - the ACS host and host prefix used by the legacy app-only (client secret) exchange,
 - the Azure AD login endpoint used by MSAL authorities,
 - the Microsoft Graph host,
 - the SharePoint domain suffix (``contoso.sharepoint.<suffix>``).
"""

from dataclasses import dataclass
from enum import Enum
from urllib.parse import urlparse


class Environment(str, Enum):
    PRODUCTION = "Production"
    PPE = "PPE"
    CHINA = "China"
    GERMANY = "Germany"
    US_GOVERNMENT = "USGovernment"
    US_GOVERNMENT_HIGH = "USGovernmentHigh"
    US_GOVERNMENT_DOD = "USGovernmentDoD"

    @classmethod
    def parse(cls, value: str) -> "Environment":
        """Resolve an environment from its name, case-insensitively."""
        if isinstance(value, Environment):
            return value
        for env in cls:
            if env.value.lower() == (value or "").lower():
                return env
        raise ValueError(f"Unknown environment '{value}'. Expected one of: {', '.join(e.value for e in cls)}")


@dataclass(frozen=True)
class EnvironmentEndpoints:
    acs_host: str
    acs_prefix: str
    login_endpoint: str
    graph_host: str
    sharepoint_suffix: str


_ENDPOINTS = {
    Environment.PRODUCTION: EnvironmentEndpoints(
        "accesscontrol.windows.net", "accounts", "https://login.microsoftonline.com", "graph.microsoft.com", "com"),
    Environment.PPE: EnvironmentEndpoints(
        "windows-ppe.net", "login", "https://login.windows-ppe.net", "graph.microsoft.com", "com"),
    Environment.CHINA: EnvironmentEndpoints(
        "accesscontrol.chinacloudapi.cn", "accounts", "https://login.chinacloudapi.cn",
        "microsoftgraph.chinacloudapi.cn", "cn"),
    Environment.GERMANY: EnvironmentEndpoints(
        "microsoftonline.de", "login", "https://login.microsoftonline.de", "graph.microsoft.de", "de"),
    Environment.US_GOVERNMENT: EnvironmentEndpoints(
        "microsoftonline.us", "login", "https://login.microsoftonline.us", "graph.microsoft.com", "us"),
    Environment.US_GOVERNMENT_HIGH: EnvironmentEndpoints(
        "microsoftonline.us", "login", "https://login.microsoftonline.us", "graph.microsoft.us", "us"),
    Environment.US_GOVERNMENT_DOD: EnvironmentEndpoints(
        "microsoftonline.us", "login", "https://login.microsoftonline.us", "dod-graph.microsoft.us", "us"),
}

# Target hosts under this domain authenticate against the pre-production ACS.
PPE_HOST_MARKER = "spoppe.com"

# Host marker of a tenant administration site (contoso-admin.sharepoint.com).
ADMIN_SITE_MARKER = "-admin.sharepoint."


def endpoints_for(environment: Environment) -> EnvironmentEndpoints:
    return _ENDPOINTS[Environment.parse(environment)]


def acs_endpoint_for(url: str, environment: Environment) -> EnvironmentEndpoints:
    """Return endpoints for an ACS exchange, switching to PPE for pre-production hosts."""
    host = (urlparse(url).hostname or "").lower()
    if PPE_HOST_MARKER in host:
        return _ENDPOINTS[Environment.PPE]
    return endpoints_for(environment)


def graph_resource(environment: Environment) -> str:
    return f"https://{endpoints_for(environment).graph_host}"
