"""Tests for the authorization flow coordinator."""

import threading
from datetime import datetime, timedelta, timezone
from unittest import mock

import pytest

from src.nordigen.auth_client import AccessToken, NordigenAuthClient, Requisition
from src.nordigen.auth_server import CallbackListener
from src.nordigen.config import CallbackConfig
from src.nordigen.consent_storage import BankConsentStore
from src.nordigen.coordinator import AuthorizationFlow, PendingHandshake, TokenState
from src.nordigen.exceptions import (
    AuthorizationError,
    BindError,
    CallbackTimeoutError,
    CorruptStateError,
    HandshakeError,
    NetworkError,
    ProtocolError,
    ProviderError,
    StateError,
    StateNotFoundError,
    TokenExpiredError,
)
from src.nordigen.token_storage import CredentialStore, TokenPair

T0 = datetime(2026, 1, 25, 10, 0, 0, tzinfo=timezone.utc)
ACCESS_TTL = 3600
REFRESH_TTL = 7776000


class FakeClock:
    """Settable clock for driving expiry."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += timedelta(seconds=seconds)


class FakeListener:
    """Listener stand-in returning a fixed reference (or raising)."""

    def __init__(self, result=None, bind_error=None):
        self.result = result
        self.bind_error = bind_error
        self.bound = False
        self.closed = False
        self.wait_kwargs = None

    def bind(self):
        if self.bind_error:
            raise self.bind_error
        self.bound = True

    def wait(self, timeout=None, cancel_event=None):
        self.wait_kwargs = {"timeout": timeout, "cancel_event": cancel_event}
        if isinstance(self.result, Exception):
            raise self.result
        return self.result

    def close(self):
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def client():
    client = mock.Mock(spec=NordigenAuthClient)
    client.issue_token.return_value = TokenPair(
        access="access_1", access_expires=ACCESS_TTL,
        refresh="refresh_1", refresh_expires=REFRESH_TTL,
    )
    client.refresh_token.return_value = AccessToken(access="access_2", access_expires=ACCESS_TTL)
    client.start_bank_consent.return_value = Requisition(
        requisition_id="req-123",
        link="https://ob.nordigen.com/psd2/start/req-123/BANK",
        reference="expected-ref",
        status="CR",
    )
    client.poll_requisition.return_value = Requisition(
        requisition_id="req-123",
        link="https://ob.nordigen.com/psd2/start/req-123/BANK",
        reference="expected-ref",
        status="LN",
        raw={"id": "req-123", "status": "LN", "accounts": ["acc-1"]},
    )
    return client


@pytest.fixture
def store(tmp_path):
    return CredentialStore(tmp_path / "state.json")


@pytest.fixture
def flow(client, store, clock):
    return AuthorizationFlow(client, store, CallbackConfig(port=1337, timeout=120), clock=clock)


class TestEnsureApplicationToken:
    """Tests for ensure_application_token."""

    def test_issues_and_saves_when_no_record(self, flow, client, store):
        result = flow.ensure_application_token("id", "key")

        assert result.state is TokenState.ISSUED
        client.issue_token.assert_called_once_with("id", "key")
        loaded = store.load()
        assert loaded == result.credentials
        assert loaded.issued == T0

    def test_issued_at_is_taken_when_persisting(self, flow, client, clock, store):
        """issued_at is read after the response arrives, not before."""

        def slow_issue(secret_id, secret_key):
            clock.advance(5)
            return TokenPair("a", ACCESS_TTL, "r", REFRESH_TTL)

        client.issue_token.side_effect = slow_issue

        flow.ensure_application_token("id", "key")

        assert store.load().issued == T0 + timedelta(seconds=5)

    def test_valid_record_returned_without_network(self, flow, client, store, clock):
        flow.ensure_application_token("id", "key")
        client.issue_token.reset_mock()
        clock.advance(60)

        result = flow.ensure_application_token("id", "key")

        assert result.state is TokenState.VALID
        client.issue_token.assert_not_called()

    def test_access_expired_is_reported_not_refreshed(self, flow, client, clock):
        flow.ensure_application_token("id", "key")
        client.issue_token.reset_mock()
        clock.advance(ACCESS_TTL + 1)

        result = flow.ensure_application_token("id", "key")

        assert result.state is TokenState.ACCESS_EXPIRED
        client.issue_token.assert_not_called()
        client.refresh_token.assert_not_called()

    def test_expired_refresh_reissues(self, flow, client, clock, store):
        flow.ensure_application_token("id", "key")
        clock.advance(REFRESH_TTL)
        client.issue_token.return_value = TokenPair("access_new", ACCESS_TTL, "refresh_new", REFRESH_TTL)

        result = flow.ensure_application_token("id", "key")

        assert result.state is TokenState.ISSUED
        assert store.load().refresh_token == "refresh_new"
        assert store.load().issued == T0 + timedelta(seconds=REFRESH_TTL)

    def test_corrupt_record_is_not_overwritten(self, flow, client, store):
        store.path.write_text("{ garbage")

        with pytest.raises(CorruptStateError):
            flow.ensure_application_token("id", "key")

        client.issue_token.assert_not_called()
        assert store.path.read_text() == "{ garbage"

    @pytest.mark.parametrize(
        "error",
        [NetworkError("unreachable"), ProviderError("denied", status=401, body="no")],
    )
    def test_network_failure_raises_authorization_error(self, flow, client, store, error):
        client.issue_token.side_effect = error

        with pytest.raises(AuthorizationError, match="Unable to obtain token"):
            flow.ensure_application_token("id", "key")

        assert not store.exists()


class TestRefreshApplicationToken:
    """Tests for refresh_application_token."""

    def test_missing_record_is_state_error(self, flow):
        with pytest.raises(StateNotFoundError):
            flow.refresh_application_token()

    def test_corrupt_record_is_state_error(self, flow, store):
        store.path.write_text("[]")

        with pytest.raises(StateError):
            flow.refresh_application_token()

    def test_valid_access_token_is_a_noop(self, flow, client, store, clock):
        """Refreshing a still-valid token leaves the file byte-identical."""
        flow.ensure_application_token("id", "key")
        before = store.path.read_bytes()
        clock.advance(ACCESS_TTL - 1)

        result = flow.refresh_application_token()

        assert result.refreshed is False
        assert store.path.read_bytes() == before
        client.refresh_token.assert_not_called()

    def test_expired_refresh_token_fails_without_mutation(self, flow, client, store, clock):
        flow.ensure_application_token("id", "key")
        before = store.path.read_bytes()
        clock.advance(REFRESH_TTL)

        with pytest.raises(TokenExpiredError):
            flow.refresh_application_token()

        assert store.path.read_bytes() == before
        client.refresh_token.assert_not_called()

    def test_refresh_keeps_refresh_token_and_its_expiry(self, flow, client, store, clock):
        """Scenario: issue at t0, refresh at t0+3601, refresh expiry unchanged."""
        issued = flow.ensure_application_token("id", "key").credentials
        clock.advance(ACCESS_TTL + 1)
        now = clock()
        assert issued.is_access_expired(now) is True
        assert issued.is_refresh_expired(now) is False

        result = flow.refresh_application_token()

        client.refresh_token.assert_called_once_with("refresh_1")
        creds = result.credentials
        assert result.refreshed is True
        assert creds.access_token == "access_2"
        assert creds.refresh_token == "refresh_1"
        assert creds.issued == T0 + timedelta(seconds=ACCESS_TTL + 1)
        assert creds.access_expires_at == now + timedelta(seconds=ACCESS_TTL)
        assert creds.refresh_expires_at == T0 + timedelta(seconds=REFRESH_TTL)
        assert store.load() == creds

    def test_repeated_refreshes_keep_original_baseline(self, flow, clock, store):
        flow.ensure_application_token("id", "key")
        for _ in range(3):
            clock.advance(ACCESS_TTL)
            flow.refresh_application_token()

        assert store.load().refresh_expires_at == T0 + timedelta(seconds=REFRESH_TTL)

    def test_provider_failure_propagates(self, flow, client, store, clock):
        flow.ensure_application_token("id", "key")
        before = store.path.read_bytes()
        clock.advance(ACCESS_TTL)
        client.refresh_token.side_effect = ProviderError("bad", status=401, body="")

        with pytest.raises(ProviderError):
            flow.refresh_application_token()

        assert store.path.read_bytes() == before


class TestGetStatus:
    def test_not_authorized(self, flow):
        assert flow.get_status() == {"authorized": False, "message": "No credentials stored"}

    def test_reports_expiry(self, flow, clock):
        flow.ensure_application_token("id", "key")
        clock.advance(600)

        status = flow.get_status()

        assert status["authorized"] is True
        assert status["access_expired"] is False
        assert status["access_expires_in_seconds"] == ACCESS_TTL - 600
        assert status["refresh_expires_at"] == (T0 + timedelta(seconds=REFRESH_TTL)).isoformat()


class TestAuthorizeBank:
    """Tests for the bank consent handshake."""

    @pytest.fixture
    def consent_store(self, tmp_path):
        return BankConsentStore(tmp_path / "bank.json")

    def make_flow(self, client, store, clock, listener):
        factory = mock.Mock(return_value=listener)
        flow = AuthorizationFlow(
            client, store, CallbackConfig(port=1337, timeout=120),
            listener_factory=factory, clock=clock,
        )
        return flow, factory

    def test_start_bank_authorization_captures_pending_handshake(self, flow, client):
        pending = flow.start_bank_authorization("tok", "BANK")

        client.start_bank_consent.assert_called_once_with("tok", "BANK", "http://127.0.0.1:1337/")
        assert pending == PendingHandshake(
            bank_id="BANK",
            requisition_id="req-123",
            consent_link="https://ob.nordigen.com/psd2/start/req-123/BANK",
            expected_ref="expected-ref",
        )

    def test_matching_reference_persists_consent(self, client, store, clock, consent_store):
        listener = FakeListener(result="expected-ref")
        flow, factory = self.make_flow(client, store, clock, listener)
        shown = []

        consent = flow.authorize_bank("tok", "BANK", consent_store, present_link=shown.append)

        factory.assert_called_once_with("127.0.0.1", 1337)
        assert shown == ["https://ob.nordigen.com/psd2/start/req-123/BANK"]
        assert listener.wait_kwargs["timeout"] == 120
        assert listener.closed is True
        client.poll_requisition.assert_called_once_with("tok", "req-123")
        assert consent.bank_id == "BANK"
        assert consent.requisition_id == "req-123"
        assert consent.requisition_ref == "expected-ref"
        assert consent.raw_provider_payload["status"] == "LN"
        assert consent_store.load() == consent

    def test_listener_bound_before_link_is_shown(self, client, store, clock, consent_store):
        listener = FakeListener(result="expected-ref")
        flow, _ = self.make_flow(client, store, clock, listener)
        bound_when_shown = []

        flow.authorize_bank(
            "tok", "BANK", consent_store,
            present_link=lambda link: bound_when_shown.append(listener.bound),
        )

        assert bound_when_shown == [True]

    def test_mismatched_reference_persists_nothing(self, client, store, clock, consent_store):
        listener = FakeListener(result="someone-elses-ref")
        flow, _ = self.make_flow(client, store, clock, listener)

        with pytest.raises(HandshakeError, match="does not match"):
            flow.authorize_bank("tok", "BANK", consent_store, present_link=lambda link: None)

        assert not consent_store.exists()
        assert listener.closed is True
        client.poll_requisition.assert_not_called()

    @pytest.mark.parametrize(
        "error",
        [ProtocolError("missing ref"), CallbackTimeoutError("no callback")],
    )
    def test_listener_failure_is_handshake_error(self, client, store, clock, consent_store, error):
        listener = FakeListener(result=error)
        flow, _ = self.make_flow(client, store, clock, listener)

        with pytest.raises(HandshakeError) as exc_info:
            flow.authorize_bank("tok", "BANK", consent_store, present_link=lambda link: None)

        assert exc_info.value.__cause__ is error
        assert not consent_store.exists()

    def test_bind_failure_is_handshake_error(self, client, store, clock, consent_store):
        listener = FakeListener(bind_error=BindError("port in use"))
        flow, _ = self.make_flow(client, store, clock, listener)
        shown = []

        with pytest.raises(HandshakeError, match="port in use"):
            flow.authorize_bank("tok", "BANK", consent_store, present_link=shown.append)

        assert shown == []
        assert not consent_store.exists()

    def test_provider_failure_starting_consent_propagates(self, client, store, clock, consent_store):
        listener = FakeListener(result="expected-ref")
        flow, factory = self.make_flow(client, store, clock, listener)
        client.start_bank_consent.side_effect = NetworkError("down")

        with pytest.raises(NetworkError):
            flow.authorize_bank("tok", "BANK", consent_store)

        factory.assert_not_called()

    def test_explicit_timeout_and_cancel_are_forwarded(self, client, store, clock, consent_store):
        listener = FakeListener(result="expected-ref")
        flow, _ = self.make_flow(client, store, clock, listener)
        cancel = threading.Event()

        flow.authorize_bank(
            "tok", "BANK", consent_store, present_link=lambda link: None,
            timeout=7, cancel_event=cancel,
        )

        assert listener.wait_kwargs == {"timeout": 7, "cancel_event": cancel}

    def test_zero_configured_timeout_waits_forever(self, client, store, clock, consent_store):
        listener = FakeListener(result="expected-ref")
        flow = AuthorizationFlow(
            client, store, CallbackConfig(timeout=0),
            listener_factory=lambda host, port: listener, clock=clock,
        )

        flow.authorize_bank("tok", "BANK", consent_store, present_link=lambda link: None)

        assert listener.wait_kwargs["timeout"] is None

    def test_explicit_zero_timeout_waits_forever(self, client, store, clock, consent_store):
        listener = FakeListener(result="expected-ref")
        flow = AuthorizationFlow(
            client, store, CallbackConfig(timeout=30),
            listener_factory=lambda host, port: listener, clock=clock,
        )

        flow.authorize_bank(
            "tok", "BANK", consent_store, present_link=lambda link: None, timeout=0
        )

        assert listener.wait_kwargs["timeout"] is None

    def test_end_to_end_with_real_listener(self, client, store, clock, consent_store):
        """The full handshake over a loopback socket."""
        import socket

        holder = {}

        def factory(host, port):
            holder["listener"] = CallbackListener(host, 0)
            return holder["listener"]

        def follow_link(link):
            port = holder["listener"].port
            with socket.create_connection(("127.0.0.1", port), timeout=5) as conn:
                conn.sendall(b"GET /?ref=expected-ref HTTP/1.1\r\n\r\n")

        flow = AuthorizationFlow(
            client, store, CallbackConfig(timeout=5),
            listener_factory=factory, clock=clock,
        )

        consent = flow.authorize_bank("tok", "BANK", consent_store, present_link=follow_link)

        assert consent.requisition_ref == "expected-ref"
        assert consent_store.load() == consent
        assert holder["listener"].bound is False
