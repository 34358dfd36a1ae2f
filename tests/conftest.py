"""Shared fixtures for tests."""

from __future__ import annotations

import base64
import datetime
import pathlib
import threading
from typing import Any, Dict, List, Optional

import jwt
import pytest
import requests
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from spconnect.registry import SessionRegistry
from spconnect.tokens import Audience, Token

TENANT_ID = "11111111-2222-3333-4444-555555555555"


def make_jwt(**claims: Any) -> str:
    """Unsigned-for-our-purposes JWT carrying ``claims`` (signature is never verified)."""
    return jwt.encode(claims, "test-secret-key-with-enough-length!", algorithm="HS256")


def make_token(audience: Audience = Audience.DOCUMENT_PLATFORM, *, seconds: int = 3600,
               scopes=(), tenant_id: Optional[str] = TENANT_ID, value: str = "tok") -> Token:
    expires_at = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(seconds=seconds)
    return Token(access_token=value, audience=audience, expires_at=expires_at,
                 granted_scopes=tuple(scopes), tenant_id=tenant_id)


class FakeResponse:
    """Just enough of ``requests.Response`` for the code under test."""

    def __init__(self, status_code: int = 200, json_data: Any = None, headers: Optional[Dict[str, str]] = None,
                 text: str = ""):
        self.status_code = status_code
        self._json = json_data
        self.headers = headers or {}
        self.text = text

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self) -> Any:
        if self._json is None:
            raise ValueError("No JSON body")
        return self._json

    def raise_for_status(self) -> None:
        if not self.ok:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeBroker:
    """Stands in for TokenBroker; hands out tokens from ``tokens`` and records calls."""

    def __init__(self, tokens: Optional[List[Token]] = None, error: Optional[Exception] = None,
                 delay: float = 0):
        self.tokens = list(tokens or [])
        self.error = error
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def acquire(self, flow, audience=Audience.DOCUMENT_PLATFORM, all_of=None, any_of=None,
                cancel=None, interactive=True, scopes=None):
        with self._lock:
            self.calls.append({"flow": flow, "audience": audience, "interactive": interactive, "scopes": scopes})
        if self.delay:
            threading.Event().wait(self.delay)
        if self.error is not None:
            raise self.error
        if self.tokens:
            return self.tokens.pop(0)
        return make_token(audience)


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry()


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def self_signed(rsa_key) -> x509.Certificate:
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "spconnect-test")])
    now = datetime.datetime.now(datetime.timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(rsa_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
        .sign(rsa_key, hashes.SHA256())
    )


@pytest.fixture(scope="session")
def cert_pem(self_signed) -> str:
    return self_signed.public_bytes(serialization.Encoding.PEM).decode("ascii")


@pytest.fixture(scope="session")
def key_pem(rsa_key) -> str:
    return rsa_key.private_bytes(
        serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, serialization.NoEncryption()
    ).decode("ascii")


@pytest.fixture(scope="session")
def thumbprint(self_signed) -> str:
    return self_signed.fingerprint(hashes.SHA1()).hex().upper()


@pytest.fixture(scope="session")
def pfx_bytes(rsa_key, self_signed) -> bytes:
    return pkcs12.serialize_key_and_certificates(
        b"spconnect", rsa_key, self_signed, None, serialization.BestAvailableEncryption(b"pfx-pass"))


@pytest.fixture(scope="session")
def pfx_base64(pfx_bytes) -> str:
    return base64.b64encode(pfx_bytes).decode("ascii")


@pytest.fixture
def pfx_file(tmp_path: pathlib.Path, pfx_bytes) -> pathlib.Path:
    path = tmp_path / "app.pfx"
    path.write_bytes(pfx_bytes)
    return path


@pytest.fixture
def pem_file(tmp_path: pathlib.Path, cert_pem, key_pem) -> pathlib.Path:
    path = tmp_path / "app.pem"
    path.write_text(cert_pem + key_pem, encoding="ascii")
    return path


@pytest.fixture
def cert_only_file(tmp_path: pathlib.Path, cert_pem) -> pathlib.Path:
    path = tmp_path / "public.cer"
    path.write_text(cert_pem, encoding="ascii")
    return path


@pytest.fixture
def store_dir(tmp_path: pathlib.Path, cert_pem, key_pem) -> pathlib.Path:
    store = tmp_path / "store"
    store.mkdir()
    (store / "app.pem").write_text(cert_pem + key_pem, encoding="ascii")
    (store / "notes.txt").write_text("not a certificate", encoding="ascii")
    return store
