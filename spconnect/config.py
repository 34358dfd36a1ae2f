"""Configuration loading and strongly-typed settings models.

Centralizes parsing of `config.json` (or an override via SPCONNECT_CONFIG env var) into
dataclasses. Only the `auth` section is required; the remaining sections fall back to defaults.

Security recommendations:
 - Prefer environment variables for secrets (client secret, password, certificate password,
   access token). They override whatever the file contains.
 - Do not commit real secrets in source control. `config.example.json` shows structure only.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Optional

from .environment import Environment

CONFIG_FILENAME = os.environ.get("SPCONNECT_CONFIG", "config.json")

AUTH_METHODS = (
    "app_secret",
    "certificate_file",
    "certificate_store",
    "certificate_pem",
    "certificate_base64",
    "credentials",
    "device_code",
    "graph_device_code",
    "interactive",
    "access_token",
)

# Environment variable -> AuthSettings field
_SECRET_OVERRIDES = {
    "SPCONNECT_CLIENT_SECRET": "client_secret",
    "SPCONNECT_PASSWORD": "password",
    "SPCONNECT_CERTIFICATE_PASSWORD": "certificate_password",
    "SPCONNECT_ACCESS_TOKEN": "access_token",
}


@dataclass
class AuthSettings:
    method: str
    client_secret: Optional[str] = None
    realm: Optional[str] = None
    certificate_path: Optional[str] = None
    certificate_password: Optional[str] = None
    thumbprint: Optional[str] = None
    certificate_pem: Optional[str] = None
    private_key_pem: Optional[str] = None
    certificate_base64: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    redirect_url: Optional[str] = None
    on_prem: bool = False
    launch_browser: bool = False
    clear_cookies: bool = False
    access_token: Optional[str] = None
    # When the token endpoint refuses a password login outright, send the username and
    # password as transport level credentials instead of failing.
    allow_legacy_credentials_fallback: bool = True
    device_code_timeout: int = 900


@dataclass
class HttpSettings:
    timeout: float = 30


@dataclass
class CertificateSettings:
    store_path: Optional[str] = None
    machine_keys_path: Optional[str] = None


@dataclass
class AppConfig:
    auth: AuthSettings
    url: Optional[str] = None
    tenant: Optional[str] = None
    client_id: Optional[str] = None
    tenant_admin_url: Optional[str] = None
    environment: Environment = Environment.PRODUCTION
    http: HttpSettings = field(default_factory=HttpSettings)
    certificates: CertificateSettings = field(default_factory=CertificateSettings)
    token_refresh_margin: int = 300
    log_level: str = "INFO"

    @staticmethod
    def from_dict(raw: dict) -> "AppConfig":
        if not raw.get("auth"):
            raise ValueError("Configuration is missing the 'auth' section")
        auth_dict = {**raw["auth"]}
        # Environment variable overrides to avoid storing secrets in file
        for env_name, attr in _SECRET_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value:
                auth_dict[attr] = value
        auth = AuthSettings(**auth_dict)
        auth.method = (auth.method or "").lower()
        if auth.method not in AUTH_METHODS:
            raise ValueError(f"Unknown auth method '{auth.method}'. Expected one of: {', '.join(AUTH_METHODS)}")
        log_level = (raw.get("log_level") or "INFO").upper()
        if not isinstance(logging.getLevelName(log_level), int):
            log_level = "INFO"
        return AppConfig(
            auth=auth,
            url=raw.get("url"),
            tenant=raw.get("tenant"),
            client_id=raw.get("client_id"),
            tenant_admin_url=raw.get("tenant_admin_url"),
            environment=Environment.parse(raw.get("environment") or Environment.PRODUCTION.value),
            http=HttpSettings(**(raw.get("http") or {})),
            certificates=CertificateSettings(**(raw.get("certificates") or {})),
            token_refresh_margin=int(raw.get("token_refresh_margin", 300)),
            log_level=log_level,
        )

    @staticmethod
    def load(path: Optional[str] = None) -> "AppConfig":
        config_path = path or CONFIG_FILENAME
        if not os.path.exists(config_path):
            raise FileNotFoundError(
                f"Config file '{config_path}' not found. Copy 'config.example.json' to 'config.json' and fill values."
            )
        with open(config_path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        return AppConfig.from_dict(raw)
