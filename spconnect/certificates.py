"""X.509 client certificate loading for app-only authentication.

A certificate can come from four places: a PFX/PEM file on disk, a certificate store looked
up by thumbprint, a PEM certificate + private key pair, or a base64 encoded PFX blob. Every
loader returns a ``Certificate`` that is guaranteed to hold a private key matching the
certificate; otherwise it raises before any network call is made.

The "store" is a directory of certificate files (``.pem``, ``.crt``, ``.cer``, ``.pfx``,
``.p12``) matched on their SHA-1 thumbprint.

When a key has to live on disk (``requests`` only accepts client certificates as file paths)
it is written to a key container file under the machine keys directory. Session teardown
deletes that file for every certificate; ``cleanup_machine_key`` also drops the in-memory key
of certificates loaded from a transient file.
"""

import base64
import binascii
import hashlib
import logging
import os
import re
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Tuple, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from .errors import CertificateLoadError, CertificateNotFoundError, NoPrivateKeyError

logger = logging.getLogger(__name__)

STORE_EXTENSIONS = (".pem", ".crt", ".cer", ".pfx", ".p12")

_CERT_BLOCK = re.compile(rb"-----BEGIN CERTIFICATE-----.+?-----END CERTIFICATE-----", re.DOTALL)
_KEY_BLOCK = re.compile(rb"-----BEGIN ([A-Z ]*)PRIVATE KEY-----.+?-----END \1PRIVATE KEY-----", re.DOTALL)


def default_machine_keys_path() -> Path:
    if os.name == "nt":
        program_data = os.environ.get("ProgramData") or r"C:\ProgramData"
        return Path(program_data) / "spconnect" / "MachineKeys"
    return Path.home() / ".spconnect" / "MachineKeys"


def default_store_path() -> Path:
    return Path.home() / ".spconnect" / "certificates"


def normalize_thumbprint(thumbprint: str) -> str:
    return "".join(c for c in (thumbprint or "") if c not in " :-\u200e").upper()


@dataclass
class Certificate:
    """A client certificate together with its private key."""

    certificate: x509.Certificate
    private_key: Optional[Any]
    source: str
    source_path: Optional[str] = None
    chain: List[x509.Certificate] = field(default_factory=list)
    key_container_name: str = ""
    transport_path: Optional[Path] = field(default=None, init=False, repr=False)

    def __post_init__(self):
        if not self.key_container_name:
            spki = self.certificate.public_key().public_bytes(
                serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo)
            self.key_container_name = f"{hashlib.sha1(spki).hexdigest()}_{uuid.uuid4().hex}"

    @property
    def has_private_key(self) -> bool:
        return self.private_key is not None

    @property
    def thumbprint(self) -> str:
        return self.certificate.fingerprint(hashes.SHA1()).hex().upper()

    @property
    def subject(self) -> str:
        return self.certificate.subject.rfc4514_string()

    def public_certificate_pem(self) -> str:
        pems = [c.public_bytes(serialization.Encoding.PEM) for c in [self.certificate] + self.chain]
        return b"".join(pems).decode("ascii")

    def private_key_pem(self) -> str:
        if self.private_key is None:
            raise NoPrivateKeyError(f"Certificate {self.thumbprint} has no private key")
        return self.private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode("ascii")

    def msal_credential(self) -> dict:
        """The ``client_credential`` dictionary ConfidentialClientApplication expects."""
        return {
            "private_key": self.private_key_pem(),
            "thumbprint": self.thumbprint,
            "public_certificate": self.public_certificate_pem(),
        }

    def transport_cert(self, machine_keys_path: Optional[Union[str, Path]] = None) -> str:
        """Write certificate + key to the key container file and return its path.

        The result can be passed as ``cert=`` to ``requests`` for TLS client authentication.
        """
        directory = Path(machine_keys_path) if machine_keys_path else default_machine_keys_path()
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / self.key_container_name
        if not path.exists():
            fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="ascii") as f:
                f.write(self.public_certificate_pem())
                f.write(self.private_key_pem())
            logger.debug("Wrote key container %s", self.key_container_name)
        self.transport_path = path
        return str(path)

    def discard_transport_cert(self) -> None:
        """Delete the key container written by ``transport_cert``; the in-memory key is kept."""
        path, self.transport_path = self.transport_path, None
        if path is None:
            return
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as ex:
            logger.debug("Could not remove key container %s: %s", path.name, ex)

    def reset(self) -> None:
        """Drop the in-memory private key."""
        self.private_key = None


def _password_bytes(password: Optional[Union[str, bytes]]) -> Optional[bytes]:
    if password is None or password == "":
        return None
    if isinstance(password, bytes):
        return password
    return password.encode("utf-8")


def _ensure_key_matches(cert: x509.Certificate, key: Any) -> None:
    fmt = (serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo)
    if cert.public_key().public_bytes(*fmt) != key.public_key().public_bytes(*fmt):
        raise CertificateLoadError("The private key does not belong to the certificate")


def _load_pkcs12(data: bytes, password: Optional[bytes]) -> Tuple[x509.Certificate, Any, List[x509.Certificate]]:
    try:
        key, cert, additional = pkcs12.load_key_and_certificates(data, password)
    except ValueError as ex:
        raise CertificateLoadError(f"Failed to read PKCS#12 certificate: {ex}") from ex
    if cert is None:
        raise CertificateLoadError("The PKCS#12 data does not contain a certificate")
    return cert, key, list(additional or [])


def _load_private_key(data: bytes, password: Optional[bytes]) -> Any:
    try:
        return serialization.load_pem_private_key(data, password)
    except TypeError as ex:
        # password supplied for an unencrypted key, or missing for an encrypted one
        if password is not None:
            try:
                return serialization.load_pem_private_key(data, None)
            except (ValueError, TypeError):
                pass
        raise CertificateLoadError(f"Failed to read PEM private key: {ex}") from ex
    except ValueError as ex:
        raise CertificateLoadError(f"Failed to read PEM private key: {ex}") from ex


def _load_pem(data: bytes, password: Optional[bytes]) -> Tuple[x509.Certificate, Any, List[x509.Certificate]]:
    cert_blocks = _CERT_BLOCK.findall(data)
    if not cert_blocks:
        raise CertificateLoadError("No PEM certificate found")
    try:
        certs = [x509.load_pem_x509_certificate(block) for block in cert_blocks]
    except ValueError as ex:
        raise CertificateLoadError(f"Failed to read PEM certificate: {ex}") from ex
    key = None
    key_block = _KEY_BLOCK.search(data)
    if key_block:
        key = _load_private_key(key_block.group(0), password)
    return certs[0], key, certs[1:]


def _load_any(data: bytes, password: Optional[bytes]) -> Tuple[x509.Certificate, Any, List[x509.Certificate]]:
    if b"-----BEGIN" in data:
        return _load_pem(data, password)
    try:
        return x509.load_der_x509_certificate(data), None, []
    except ValueError:
        return _load_pkcs12(data, password)


def _build(cert, key, chain, source: str, source_path: Optional[str] = None) -> Certificate:
    certificate = Certificate(certificate=cert, private_key=key, source=source,
                              source_path=source_path, chain=chain)
    if key is None:
        raise NoPrivateKeyError(
            f"Certificate {certificate.thumbprint} does not have a private key; "
            "app-only certificate authentication needs one"
        )
    _ensure_key_matches(cert, key)
    return certificate


def resolve_from_file(path: Union[str, Path], password: Optional[str] = None) -> Certificate:
    """Load a PFX/P12 or PEM (certificate + key) file."""
    path = Path(path)
    try:
        data = path.read_bytes()
    except OSError as ex:
        raise CertificateLoadError(f"Certificate file '{path}' could not be read: {ex}") from ex
    cert, key, chain = _load_any(data, _password_bytes(password))
    certificate = _build(cert, key, chain, "file", str(path))
    logger.debug("Loaded certificate %s from %s", certificate.thumbprint, path)
    return certificate


def resolve_from_pem(certificate_pem: str, private_key_pem: str, password: Optional[str] = None) -> Certificate:
    """Load a certificate from a PEM certificate string and a (possibly encrypted) PEM key string."""
    cert, key, chain = _load_pem((certificate_pem or "").encode("ascii"), None)
    if private_key_pem:
        key = _load_private_key(private_key_pem.encode("ascii"), _password_bytes(password))
    return _build(cert, key, chain, "pem")


def resolve_from_base64(blob: str, password: Optional[str] = None) -> Certificate:
    """Load a base64 encoded PFX (PKCS#12) blob."""
    try:
        data = base64.b64decode("".join((blob or "").split()), validate=True)
    except (binascii.Error, ValueError) as ex:
        raise CertificateLoadError(f"Certificate is not valid base64: {ex}") from ex
    if not data:
        raise CertificateLoadError("Certificate blob is empty")
    cert, key, chain = _load_pkcs12(data, _password_bytes(password))
    return _build(cert, key, chain, "base64")


class CertificateStore:
    """Directory of certificate files addressed by SHA-1 thumbprint."""

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else default_store_path()

    def _candidates(self):
        if not self.path.is_dir():
            return
        for entry in sorted(self.path.iterdir()):
            if entry.is_file() and entry.suffix.lower() in STORE_EXTENSIONS:
                yield entry

    def find(self, thumbprint: str) -> Optional[Tuple[x509.Certificate, Any, List[x509.Certificate], Path]]:
        wanted = normalize_thumbprint(thumbprint)
        for entry in self._candidates():
            try:
                cert, key, chain = _load_any(entry.read_bytes(), None)
            except (CertificateLoadError, OSError) as ex:
                logger.debug("Skipping unreadable store entry %s: %s", entry, ex)
                continue
            if cert.fingerprint(hashes.SHA1()).hex().upper() == wanted:
                return cert, key, chain, entry
        return None

    def resolve(self, thumbprint: str) -> Certificate:
        found = self.find(thumbprint)
        if found is None:
            raise CertificateNotFoundError(f"Certificate with thumbprint '{thumbprint}' not found in {self.path}")
        cert, key, chain, entry = found
        if key is None:
            raise NoPrivateKeyError(f"Certificate with thumbprint '{thumbprint}' does not have a private key")
        return _build(cert, key, chain, "store", str(entry))


def resolve_from_store(thumbprint: str, store: Optional[CertificateStore] = None) -> Certificate:
    return (store or CertificateStore()).resolve(thumbprint)


def cleanup_machine_key(certificate: Optional[Certificate], machine_keys_path: Optional[Union[str, Path]] = None) -> None:
    """Best effort removal of the cached key container of ``certificate``. Never raises."""
    if certificate is None or not certificate.has_private_key:
        return
    container = certificate.key_container_name
    certificate.discard_transport_cert()
    certificate.reset()
    directory = Path(machine_keys_path) if machine_keys_path else default_machine_keys_path()
    try:
        path = directory / container
        if path.exists():
            path.unlink()
            logger.debug("Removed cached key container %s", container)
    except OSError as ex:
        logger.debug("Could not remove cached key container %s: %s", container, ex)
