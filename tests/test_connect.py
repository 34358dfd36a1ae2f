"""End-to-end tests for establishing sessions through the Connector."""

from __future__ import annotations

import logging
import threading

import pytest
from requests.auth import HTTPBasicAuth

from conftest import TENANT_ID, FakeBroker, make_jwt, make_token
from spconnect import connect as connect_module
from spconnect.auth import (
    GRAPH_DEVICE_LOGIN_SCOPES,
    AppCertificateFlow,
    AppSecretFlow,
    DeviceCodeFlow,
    ResourceOwnerPasswordFlow,
)
from spconnect.config import AppConfig
from spconnect.connect import Connector
from spconnect.errors import (
    CancelledError,
    CertificateNotFoundError,
    ConsentRemediation,
    ConsentRequiredError,
    NoPrivateKeyError,
    NoTokenAvailableError,
    TokenRequestRejectedError,
    TransportError,
)
from spconnect.session import Classification, Provenance
from spconnect.tokens import Audience

REALM = "aaaabbbb-cccc-dddd-eeee-ffff00001111"
SITE = "https://contoso.sharepoint.com/sites/project"
ADMIN = "https://contoso-admin.sharepoint.com"


@pytest.fixture
def events():
    return []


@pytest.fixture
def realm_probe(monkeypatch, events):
    def fake_discover(url, timeout=30):
        events.append(("discover_realm", url))
        return REALM

    monkeypatch.setattr(connect_module, "discover_realm", fake_discover)
    return fake_discover


class RecordingBroker(FakeBroker):
    def __init__(self, events, **kwargs):
        super().__init__(**kwargs)
        self.events = events

    def acquire(self, flow, audience=Audience.DOCUMENT_PLATFORM, **kwargs):
        self.events.append(("acquire", flow))
        return super().acquire(flow, audience, **kwargs)


class TestConnectAppSecret:
    def test_discovers_realm_then_exchanges(self, registry, realm_probe, events) -> None:
        broker = RecordingBroker(events)
        connector = Connector(registry=registry, broker=broker)

        session = connector.connect_app_secret("https://contoso.sharepoint.com", "abc", "xyz")

        assert [e[0] for e in events] == ["discover_realm", "acquire"]
        flow = events[1][1]
        assert isinstance(flow, AppSecretFlow)
        assert flow.realm == REALM
        assert flow.client_id == "abc"
        assert session.provenance is Provenance.APP_SECRET
        assert session.classification is Classification.ORDINARY
        assert session.tenant_id == REALM
        assert registry.current is session

    def test_explicit_realm_skips_probe(self, registry, realm_probe, events) -> None:
        connector = Connector(registry=registry, broker=RecordingBroker(events))
        connector.connect_app_secret(ADMIN, "client", "secret", realm="given")
        assert [e[0] for e in events] == ["acquire"]

    def test_admin_site(self, registry, realm_probe, events) -> None:
        session = Connector(registry=registry, broker=RecordingBroker(events)).connect_app_secret(
            ADMIN, "client", "secret")
        assert session.classification is Classification.TENANT_ADMIN

    def test_without_url(self, registry, events) -> None:
        broker = RecordingBroker(events)
        session = Connector(registry=registry, broker=broker).connect_app_secret(None, "client", "secret")
        assert events == []
        assert session.classification is Classification.ORDINARY
        with pytest.raises(NoTokenAvailableError):
            session.get_token()

    def test_probe_failure_propagates(self, registry, monkeypatch) -> None:
        def failing(url, timeout=30):
            raise TransportError("dns")

        monkeypatch.setattr(connect_module, "discover_realm", failing)
        with pytest.raises(TransportError):
            Connector(registry=registry, broker=FakeBroker()).connect_app_secret(SITE, "client", "secret")
        assert registry.current is None


class TestConnectCertificate:
    def test_file(self, registry, realm_probe, pfx_file) -> None:
        broker = FakeBroker()
        session = Connector(registry=registry, broker=broker).connect_certificate_file(
            SITE, "client", "contoso.onmicrosoft.com", str(pfx_file), "pfx-pass")

        assert session.provenance is Provenance.CERTIFICATE_FILE
        assert session.certificate is not None
        assert session.delete_certificate_on_teardown
        assert session.tenant_id == "contoso.onmicrosoft.com"
        assert session.scopes == ("https://contoso.sharepoint.com/.default",)
        assert isinstance(broker.calls[0]["flow"], AppCertificateFlow)

    def test_store(self, registry, store_dir, thumbprint) -> None:
        from spconnect.certificates import CertificateStore

        connector = Connector(registry=registry, broker=FakeBroker(), certificate_store=CertificateStore(store_dir))
        session = connector.connect_certificate_store(ADMIN, "client", "tenant", thumbprint)

        assert session.provenance is Provenance.CERTIFICATE_STORE
        assert session.is_tenant_admin
        assert not session.delete_certificate_on_teardown

    def test_store_missing_thumbprint_fails_before_network(self, registry, store_dir) -> None:
        from spconnect.certificates import CertificateStore

        broker = FakeBroker()
        connector = Connector(registry=registry, broker=broker, certificate_store=CertificateStore(store_dir))
        with pytest.raises(CertificateNotFoundError):
            connector.connect_certificate_store(SITE, "client", "tenant", "00" * 20)
        assert broker.calls == []

    def test_pem_without_key(self, registry, cert_pem) -> None:
        broker = FakeBroker()
        with pytest.raises(NoPrivateKeyError):
            Connector(registry=registry, broker=broker).connect_certificate_pem(SITE, "client", "t", cert_pem, "")
        assert broker.calls == []

    def test_base64_discovers_tenant(self, registry, realm_probe, events, pfx_base64) -> None:
        session = Connector(registry=registry, broker=FakeBroker()).connect_certificate_base64(
            SITE, "client", None, pfx_base64, "pfx-pass")
        assert session.provenance is Provenance.CERTIFICATE_BASE64
        assert session.tenant_id == REALM
        assert events == [("discover_realm", SITE)]

    def test_disconnect_removes_key_container(self, tmp_path, registry, pfx_file) -> None:
        config = AppConfig.from_dict({"auth": {"method": "certificate_file"},
                                      "certificates": {"machine_keys_path": str(tmp_path / "keys")}})
        connector = Connector(config, registry=registry, broker=FakeBroker())
        session = connector.connect_certificate_file(SITE, "client", "tenant", str(pfx_file), "pfx-pass")
        session.certificate.transport_cert(tmp_path / "keys")

        connector.disconnect()

        assert list((tmp_path / "keys").iterdir()) == []
        assert registry.current is None
        assert session.closed

    def test_tenant_or_url_required(self, registry, cert_pem, key_pem, monkeypatch) -> None:
        def unreachable(url, timeout=30):
            raise AssertionError("realm discovery must not run without a URL")

        monkeypatch.setattr(connect_module, "discover_realm", unreachable)
        broker = FakeBroker()
        with pytest.raises(ValueError):
            Connector(registry=registry, broker=broker).connect_certificate_pem(None, "client", None, cert_pem, key_pem)
        assert broker.calls == []
        assert registry.current is None

    def test_reconnect_removes_previous_key_container(self, tmp_path, registry, pfx_file) -> None:
        config = AppConfig.from_dict({"auth": {"method": "certificate_file"},
                                      "certificates": {"machine_keys_path": str(tmp_path / "keys")}})
        connector = Connector(config, registry=registry, broker=FakeBroker())
        first = connector.connect_certificate_file(SITE, "client", "tenant", str(pfx_file), "pfx-pass")
        first.certificate.transport_cert(tmp_path / "keys")

        second = connector.connect_certificate_file(SITE, "client", "tenant", str(pfx_file), "pfx-pass")

        assert first.closed
        assert list((tmp_path / "keys").iterdir()) == []
        assert registry.sessions() == [second]


class TestConnectCredentials:
    def test_password_login(self, registry) -> None:
        broker = FakeBroker([make_token(tenant_id=TENANT_ID)])
        session = Connector(registry=registry, broker=broker).connect_credentials(SITE, "user@contoso.com", "pw")

        assert session.provenance is Provenance.CREDENTIALS
        assert session.tenant_id == TENANT_ID
        assert session.legacy_credentials is None
        assert session.scopes == ("https://contoso.sharepoint.com//.default",)
        assert isinstance(broker.calls[0]["flow"], ResourceOwnerPasswordFlow)

    def test_rejected_falls_back_to_legacy_credentials(self, registry, caplog) -> None:
        broker = FakeBroker(error=TokenRequestRejectedError("nope", "unsupported_grant_type"))
        with caplog.at_level(logging.WARNING, logger="spconnect.connect"):
            session = Connector(registry=registry, broker=broker).connect_credentials(SITE, "user", "pw")

        assert isinstance(session.legacy_credentials, HTTPBasicAuth)
        assert session.provenance is Provenance.CREDENTIALS
        assert session.tenant_id == ""
        assert "pw" not in caplog.text
        assert any(r.levelno == logging.WARNING for r in caplog.records)

    def test_fallback_can_be_disabled(self, registry) -> None:
        config = AppConfig.from_dict({"auth": {"method": "credentials",
                                               "allow_legacy_credentials_fallback": False}})
        broker = FakeBroker(error=TokenRequestRejectedError("nope", "unsupported_grant_type"))
        with pytest.raises(TokenRequestRejectedError):
            Connector(config, registry=registry, broker=broker).connect_credentials(SITE, "user", "pw")

    def test_on_prem(self, registry) -> None:
        broker = FakeBroker()
        session = Connector(registry=registry, broker=broker).connect_credentials(SITE, "user", "pw", on_prem=True)
        assert session.provenance is Provenance.CREDENTIALS_ON_PREM
        assert broker.calls == []


class TestConnectDeviceCode:
    def test_device_code(self, registry) -> None:
        broker = FakeBroker([make_token(tenant_id=TENANT_ID)])
        session = Connector(registry=registry, broker=broker).connect_device_code(ADMIN)

        assert session.provenance is Provenance.DEVICE_CODE
        assert session.is_tenant_admin
        assert session.tenant_id == TENANT_ID
        assert isinstance(broker.calls[0]["flow"], DeviceCodeFlow)

    def test_graph_device_code(self, registry) -> None:
        broker = FakeBroker([make_token(Audience.DIRECTORY_GRAPH)])
        session = Connector(registry=registry, broker=broker).connect_graph_device_code()

        assert session.provenance is Provenance.GRAPH_DEVICE_CODE
        assert session.endpoint == ""
        assert session.scopes == GRAPH_DEVICE_LOGIN_SCOPES
        assert broker.calls[0]["audience"] is Audience.DIRECTORY_GRAPH

    def test_consent_is_logged_and_raised(self, registry, caplog) -> None:
        error = ConsentRequiredError(ConsentRemediation("Grant consent first", client_id="app"))
        with caplog.at_level(logging.ERROR, logger="spconnect.connect"):
            with pytest.raises(ConsentRequiredError):
                Connector(registry=registry, broker=FakeBroker(error=error)).connect_device_code(SITE)
        assert "Grant consent first" in caplog.text
        assert registry.current is None

    def test_cancelled(self, registry) -> None:
        cancel = threading.Event()
        broker = FakeBroker(error=CancelledError("cancelled"))
        with pytest.raises(CancelledError):
            Connector(registry=registry, broker=broker).connect_device_code(SITE, cancel=cancel)
        assert registry.current is None

    def test_repeated_logins_hold_one_session(self, registry) -> None:
        connector = Connector(registry=registry, broker=FakeBroker())
        sessions = [connector.connect_device_code(SITE) for _ in range(4)]

        assert registry.sessions() == [sessions[-1]]
        assert registry.current is sessions[-1]
        assert all(s.closed for s in sessions[:-1])
        assert not sessions[-1].closed


class TestConnectInteractive:
    def test_no_browser(self, registry) -> None:
        broker = FakeBroker()
        broker.acquire = lambda *a, **kw: None
        assert Connector(registry=registry, broker=broker).connect_interactive(SITE) is None
        assert registry.current is None

    def test_browser_login(self, registry) -> None:
        session = Connector(registry=registry, broker=FakeBroker()).connect_interactive(SITE)
        assert session.provenance is Provenance.INTERACTIVE_BROWSER


class TestConnectAccessToken:
    def test_raw_graph_token(self, registry) -> None:
        from spconnect.auth import TokenBroker

        raw = make_jwt(tid=TENANT_ID, scp="Group.Read.All")
        session = Connector(registry=registry, broker=TokenBroker()).connect_access_token(raw)

        assert session.provenance is Provenance.RAW_ACCESS_TOKEN
        assert session.tenant_id == TENANT_ID
        assert session.get_token(Audience.DIRECTORY_GRAPH) == raw
        with pytest.raises(NoTokenAvailableError):
            session.get_token(Audience.DOCUMENT_PLATFORM)


class TestConnectFromConfig:
    def test_dispatches_on_method(self, registry, realm_probe, events) -> None:
        config = AppConfig.from_dict({"url": SITE, "client_id": "client",
                                      "auth": {"method": "app_secret", "client_secret": "s"}})
        session = Connector(config, registry=registry, broker=RecordingBroker(events)).connect()
        assert session.provenance is Provenance.APP_SECRET

    def test_close_tears_down_everything(self, registry) -> None:
        connector = Connector(registry=registry, broker=FakeBroker())
        first = connector.connect_device_code(SITE)
        second = connector.connect_interactive(ADMIN, make_current=False)

        connector.close()

        assert first.closed and second.closed
        assert registry.sessions() == []
