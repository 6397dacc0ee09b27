"""
Transport Tests

1. RetryingTransport: transient retry with backoff, single re-auth,
   per-call timeout, fatal errors raised immediately
2. Fault classification for both protocols and HTTP statuses
3. JSON-RPC and XML-RPC envelopes over a fake aiohttp session
4. Protocol registry and RemoteClient helpers
"""

import asyncio
import json
import xmlrpc.client
from datetime import datetime, timedelta, timezone

import aiohttp
import pytest

from connectors.erp_base import (
    Credentials,
    Session,
    Transport,
    create_transport,
    list_available_transports,
)
from connectors.odoo.client import RemoteClient
from connectors.odoo.faults import (
    classify_http_status,
    classify_jsonrpc_error,
    classify_xmlrpc_fault,
)
from connectors.odoo.jsonrpc import JsonRpcTransport
from connectors.odoo.xmlrpc import XmlRpcTransport
from connectors.retry import RetryingTransport
from core.config import ConnectionSettings, RetryConfig
from core.errors import (
    AuthenticationError,
    AuthenticationExpiredError,
    MappingWriteError,
    TransientNetworkError,
    ValidationError,
    is_retryable,
)
from core.observability.metrics import SyncMetrics


SETTINGS = ConnectionSettings(
    url="http://odoo.test/", database="odoo", username="sync", api_key="secret", timeout_seconds=5,
)
CREDENTIALS = Credentials.from_settings(SETTINGS)


# =============================================================================
# Test doubles
# =============================================================================

class ScriptedTransport(Transport):
    """Returns (or raises) the scripted results in order.

    Exceptions in ``auth_failures`` are raised by the next logins.
    """

    def __init__(self, results, delay: float = 0, auth_failures=()):
        super().__init__(SETTINGS)
        self.results = list(results)
        self.delay = delay
        self.auth_failures = list(auth_failures)
        self.auth_count = 0
        self.execute_count = 0

    async def authenticate(self, credentials):
        self.auth_count += 1
        if self.auth_failures:
            raise self.auth_failures.pop(0)
        self._session = Session(uid=2)
        return self._session

    async def execute(self, model, method, args=None, kwargs=None):
        self.execute_count += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class FakeResponse:
    def __init__(self, status: int = 200, text: str = ""):
        self.status = status
        self._text = text

    async def text(self):
        return self._text

    async def json(self, content_type=None):
        return json.loads(self._text)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeHttp:
    """Stands in for aiohttp.ClientSession.post()."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []
        self.closed = False

    def post(self, url, **kwargs):
        self.requests.append((url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self):
        self.closed = True


def json_result(result) -> FakeResponse:
    return FakeResponse(200, json.dumps({"jsonrpc": "2.0", "id": 1, "result": result}))


def json_error(name: str, message: str, code: int = 200) -> FakeResponse:
    return FakeResponse(200, json.dumps({
        "jsonrpc": "2.0",
        "id": 1,
        "error": {"code": code, "message": "Odoo Server Error", "data": {"name": name, "message": message}},
    }))


def xml_result(value) -> FakeResponse:
    return FakeResponse(200, xmlrpc.client.dumps((value,), methodresponse=True, allow_none=True))


def xml_fault(code, text) -> FakeResponse:
    return FakeResponse(200, xmlrpc.client.dumps(xmlrpc.client.Fault(code, text), methodresponse=True))


def retrying(inner, **kwargs):
    delays = []

    async def fake_sleep(seconds):
        delays.append(seconds)

    kwargs.setdefault("retry", RetryConfig(max_retries=3, base_delay=0.5, max_delay=10))
    transport = RetryingTransport(inner, credentials=CREDENTIALS, sleep=fake_sleep, **kwargs)
    return transport, delays


# =============================================================================
# RetryingTransport
# =============================================================================

class TestRetryingTransport:

    def test_logs_in_before_first_call(self):
        inner = ScriptedTransport(["ok"])
        transport, _ = retrying(inner)

        assert asyncio.run(transport.execute("res.partner", "search", [[]])) == "ok"
        assert inner.auth_count == 1
        assert transport.current_session_id() == 2

    def test_transient_errors_retried_with_exponential_delay(self):
        inner = ScriptedTransport([TransientNetworkError("502")] * 3 + [[1, 2]])
        metrics = SyncMetrics()
        transport, delays = retrying(inner, metrics=metrics)

        assert asyncio.run(transport.execute("res.partner", "search", [[]])) == [1, 2]
        assert delays == [0.5, 1.0, 2.0]
        assert metrics.get_summary()["transport"] == {"retry": 3}

    def test_transient_errors_beyond_budget_raise(self):
        inner = ScriptedTransport([TransientNetworkError("502")] * 4)
        transport, delays = retrying(inner)

        with pytest.raises(TransientNetworkError):
            asyncio.run(transport.execute("res.partner", "search", [[]]))
        assert inner.execute_count == 4
        assert len(delays) == 3

    def test_validation_error_not_retried(self):
        inner = ScriptedTransport([ValidationError("bad"), "unused"])
        transport, delays = retrying(inner)

        with pytest.raises(ValidationError):
            asyncio.run(transport.execute("res.partner", "create", [{}]))
        assert inner.execute_count == 1
        assert delays == []

    def test_expired_session_reauthenticates_once(self):
        inner = ScriptedTransport([AuthenticationExpiredError("expired"), "ok"])
        metrics = SyncMetrics()
        transport, _ = retrying(inner, metrics=metrics)

        assert asyncio.run(transport.execute("res.partner", "read", [[1]])) == "ok"
        assert inner.auth_count == 2
        assert metrics.get_summary()["transport"] == {"reauth": 1}

    def test_second_rejection_is_raised(self):
        inner = ScriptedTransport([AuthenticationExpiredError("expired")] * 2)
        transport, _ = retrying(inner)

        with pytest.raises(AuthenticationExpiredError):
            asyncio.run(transport.execute("res.partner", "read", [[1]]))
        assert inner.auth_count == 2

    def test_transient_login_failure_retried(self):
        inner = ScriptedTransport(["ok"], auth_failures=[TransientNetworkError("login timed out")])
        transport, delays = retrying(inner)

        assert asyncio.run(transport.execute("res.partner", "read", [[1]])) == "ok"
        assert inner.auth_count == 2
        assert delays == [0.5]

    def test_transient_failure_during_reauthentication_retried(self):
        inner = ScriptedTransport(
            [AuthenticationExpiredError("expired"), "ok"],
            auth_failures=[ConnectionResetError("reset")],
        )
        inner._session = Session(uid=2)
        transport, delays = retrying(inner)

        assert asyncio.run(transport.execute("res.partner", "read", [[1]])) == "ok"
        assert inner.auth_count == 2
        assert delays == [0.5]

    def test_login_failures_beyond_budget_raise(self):
        inner = ScriptedTransport(["unused"], auth_failures=[TransientNetworkError("502")] * 4)
        transport, delays = retrying(inner)

        with pytest.raises(TransientNetworkError):
            asyncio.run(transport.execute("res.partner", "read", [[1]]))
        assert inner.auth_count == 4
        assert inner.execute_count == 0
        assert len(delays) == 3

    def test_timeout_becomes_transient(self):
        inner = ScriptedTransport(["late"], delay=1)
        transport, _ = retrying(inner, retry=RetryConfig(max_retries=0), timeout_seconds=0.01)

        with pytest.raises(TransientNetworkError, match="timed out"):
            asyncio.run(transport.execute("res.partner", "read", [[1]]))

    def test_connection_error_becomes_transient(self):
        inner = ScriptedTransport([ConnectionRefusedError("refused")])
        transport, _ = retrying(inner, retry=RetryConfig(max_retries=0))

        with pytest.raises(TransientNetworkError):
            asyncio.run(transport.execute("res.partner", "read", [[1]]))

    def test_stale_session_refreshed_before_call(self):
        inner = ScriptedTransport(["ok"])
        inner._session = Session(
            uid=2, ttl_seconds=3600, obtained_at=datetime.now(timezone.utc) - timedelta(hours=2),
        )
        transport, _ = retrying(inner)

        asyncio.run(transport.execute("res.partner", "read", [[1]]))
        assert inner.auth_count == 1

    def test_missing_credentials(self):
        transport = RetryingTransport(ScriptedTransport([]))
        with pytest.raises(AuthenticationError):
            asyncio.run(transport.authenticate())


class TestSession:

    def test_session_expiry_has_buffer(self):
        fresh = Session(uid=1, ttl_seconds=3600)
        almost = Session(
            uid=1, ttl_seconds=3600, obtained_at=datetime.now(timezone.utc) - timedelta(seconds=3570),
        )
        assert not fresh.is_expired
        assert almost.is_expired
        assert fresh.expires_at - fresh.obtained_at == timedelta(hours=1)

    def test_credentials_hide_api_key(self):
        assert "secret" not in repr(CREDENTIALS)


# =============================================================================
# Fault classification
# =============================================================================

class TestFaultClassification:

    def test_jsonrpc_business_rule_is_validation(self):
        error = classify_jsonrpc_error({
            "code": 200, "message": "Odoo Server Error",
            "data": {"name": "odoo.exceptions.UserError", "message": "Missing VAT"},
        })
        assert isinstance(error, ValidationError)
        assert "Missing VAT" in str(error)

    def test_jsonrpc_session_expired(self):
        error = classify_jsonrpc_error({
            "code": 100, "message": "Odoo Session Expired",
            "data": {"name": "odoo.http.SessionExpiredException", "message": "Session expired"},
        })
        assert isinstance(error, AuthenticationExpiredError)

    def test_jsonrpc_unknown_server_fault_is_transient(self):
        error = classify_jsonrpc_error({
            "code": 200, "message": "Odoo Server Error",
            "data": {"name": "psycopg2.errors.SerializationFailure", "message": "could not serialize"},
        })
        assert isinstance(error, TransientNetworkError)

    def test_xmlrpc_faults(self):
        assert isinstance(
            classify_xmlrpc_fault(3, "Traceback ...\nodoo.exceptions.AccessDenied: Access Denied"),
            AuthenticationExpiredError,
        )
        assert isinstance(
            classify_xmlrpc_fault(2, "odoo.exceptions.ValidationError: Email is invalid"),
            ValidationError,
        )
        assert isinstance(classify_xmlrpc_fault(1, "psycopg2.OperationalError: server closed"), TransientNetworkError)

    @pytest.mark.parametrize("status,expected", [
        (401, AuthenticationExpiredError),
        (403, AuthenticationExpiredError),
        (404, ValidationError),
        (429, TransientNetworkError),
        (500, TransientNetworkError),
        (503, TransientNetworkError),
    ])
    def test_http_status(self, status, expected):
        assert isinstance(classify_http_status(status, "body"), expected)

    def test_http_success_is_not_an_error(self):
        assert classify_http_status(200) is None

    def test_is_retryable(self):
        assert is_retryable(TransientNetworkError("x"))
        assert is_retryable(AuthenticationExpiredError("x"))
        assert is_retryable(MappingWriteError("x", remote_id="5"))
        assert is_retryable(asyncio.TimeoutError())
        assert is_retryable(ConnectionResetError())
        assert not is_retryable(ValidationError("x"))
        assert not is_retryable(AuthenticationError("x"))
        assert not is_retryable(KeyError("x"))


# =============================================================================
# Wire protocols
# =============================================================================

class TestJsonRpcTransport:

    def test_authenticate_and_execute(self):
        http = FakeHttp([json_result({"uid": 7}), json_result([1, 2])])
        transport = JsonRpcTransport(SETTINGS, http=http)

        async def scenario():
            session = await transport.authenticate(CREDENTIALS)
            ids = await transport.execute("res.partner", "search", [[]], {"limit": 2})
            return session, ids

        session, ids = asyncio.run(scenario())

        assert session.uid == 7
        assert ids == [1, 2]
        auth_url, auth_kwargs = http.requests[0]
        assert auth_url == "http://odoo.test/web/session/authenticate"
        assert auth_kwargs["json"]["params"] == {"db": "odoo", "login": "sync", "password": "secret"}
        call_url, call_kwargs = http.requests[1]
        assert call_url == "http://odoo.test/jsonrpc"
        assert call_kwargs["json"]["params"]["args"] == [
            "odoo", 7, "secret", "res.partner", "search", [[]], {"limit": 2},
        ]

    def test_rejected_credentials(self):
        transport = JsonRpcTransport(SETTINGS, http=FakeHttp([json_result({"uid": False})]))
        with pytest.raises(AuthenticationError):
            asyncio.run(transport.authenticate(CREDENTIALS))

    def test_access_denied_on_login_is_authentication_error(self):
        http = FakeHttp([json_error("odoo.exceptions.AccessDenied", "Access Denied")])
        transport = JsonRpcTransport(SETTINGS, http=http)
        with pytest.raises(AuthenticationError):
            asyncio.run(transport.authenticate(CREDENTIALS))

    def test_execute_requires_session(self):
        transport = JsonRpcTransport(SETTINGS, http=FakeHttp([]))
        with pytest.raises(AuthenticationExpiredError):
            asyncio.run(transport.execute("res.partner", "search", [[]]))

    def test_remote_error_classified(self):
        http = FakeHttp([json_result({"uid": 7}), json_error("odoo.exceptions.ValidationError", "bad email")])
        transport = JsonRpcTransport(SETTINGS, http=http)

        async def scenario():
            await transport.authenticate(CREDENTIALS)
            await transport.execute("res.partner", "create", [{"email": "x"}])

        with pytest.raises(ValidationError, match="bad email"):
            asyncio.run(scenario())

    def test_http_5xx_is_transient(self):
        http = FakeHttp([FakeResponse(502, "Bad Gateway")])
        transport = JsonRpcTransport(SETTINGS, http=http)
        with pytest.raises(TransientNetworkError) as exc:
            asyncio.run(transport.authenticate(CREDENTIALS))
        assert exc.value.status_code == 502

    def test_connection_failure_is_transient(self):
        http = FakeHttp([aiohttp.ClientConnectionError("refused")])
        transport = JsonRpcTransport(SETTINGS, http=http)
        with pytest.raises(TransientNetworkError):
            asyncio.run(transport.authenticate(CREDENTIALS))

    def test_invalid_json_is_transient(self):
        http = FakeHttp([FakeResponse(200, "<html>maintenance</html>")])
        transport = JsonRpcTransport(SETTINGS, http=http)
        with pytest.raises(TransientNetworkError):
            asyncio.run(transport.authenticate(CREDENTIALS))

    def test_borrowed_http_session_not_closed(self):
        http = FakeHttp([])
        transport = JsonRpcTransport(SETTINGS, http=http)
        asyncio.run(transport.close())
        assert http.closed is False


class TestXmlRpcTransport:

    def test_authenticate_and_execute(self):
        http = FakeHttp([xml_result(7), xml_result([{"id": 1, "name": "Ada"}])])
        transport = XmlRpcTransport(SETTINGS, http=http)

        async def scenario():
            await transport.authenticate(CREDENTIALS)
            return await transport.execute("res.partner", "read", [[1]], {"fields": ["name"]})

        records = asyncio.run(scenario())

        assert records == [{"id": 1, "name": "Ada"}]
        assert transport.current_session_id() == 7
        url, kwargs = http.requests[1]
        assert url == "http://odoo.test/xmlrpc/2/object"
        params, method = xmlrpc.client.loads(kwargs["data"].decode("utf-8"))
        assert method == "execute_kw"
        assert params == ("odoo", 7, "secret", "res.partner", "read", [[1]], {"fields": ["name"]})

    def test_rejected_credentials(self):
        transport = XmlRpcTransport(SETTINGS, http=FakeHttp([xml_result(False)]))
        with pytest.raises(AuthenticationError):
            asyncio.run(transport.authenticate(CREDENTIALS))

    def test_fault_classified(self):
        http = FakeHttp([xml_result(7), xml_fault(1, "odoo.exceptions.UserError: Not allowed")])
        transport = XmlRpcTransport(SETTINGS, http=http)

        async def scenario():
            await transport.authenticate(CREDENTIALS)
            await transport.execute("res.partner", "unlink", [[1]])

        with pytest.raises(ValidationError, match="Not allowed"):
            asyncio.run(scenario())

    def test_malformed_response_is_transient(self):
        transport = XmlRpcTransport(SETTINGS, http=FakeHttp([FakeResponse(200, "not xml")]))
        with pytest.raises(TransientNetworkError):
            asyncio.run(transport.authenticate(CREDENTIALS))


class TestRegistry:

    def test_both_protocols_registered(self):
        assert set(list_available_transports()) >= {"jsonrpc", "xmlrpc"}

    def test_create_transport_by_protocol(self):
        xml_settings = ConnectionSettings(url="http://odoo.test", protocol="xmlrpc")
        assert isinstance(create_transport(xml_settings), XmlRpcTransport)
        assert isinstance(create_transport(SETTINGS), JsonRpcTransport)

    def test_unknown_protocol_rejected(self):
        with pytest.raises(ValueError):
            ConnectionSettings(protocol="soap")


# =============================================================================
# RemoteClient
# =============================================================================

class TestRemoteClient:

    def test_crud_round_trip(self, transport):
        client = RemoteClient(transport, CREDENTIALS)

        async def scenario():
            new_id = await client.create("res.partner", {"name": "Ada"})
            await client.write("res.partner", [new_id], {"email": "ada@example.com"})
            found = await client.search("res.partner", [["email", "=", "ada@example.com"]], limit=1)
            records = await client.read("res.partner", found, ["name"])
            count = await client.search_count("res.partner")
            await client.unlink("res.partner", [new_id])
            return new_id, found, records, count

        new_id, found, records, count = asyncio.run(scenario())

        assert found == [new_id]
        assert records == [{"id": new_id, "name": "Ada"}]
        assert count == 1
        assert transport.records["res.partner"] == {}
        assert transport.auth_count == 1
        assert client.is_connected

    def test_create_accepts_list_result(self):
        client = RemoteClient(ScriptedTransport([[42]]), CREDENTIALS)
        assert asyncio.run(client.create("res.partner", {"name": "Ada"})) == 42

    def test_paging_arguments(self, transport):
        client = RemoteClient(transport, CREDENTIALS)
        asyncio.run(client.search("res.partner", [], offset=10, limit=5, order="id desc"))

        _, method, args, kwargs = transport.calls[0]
        assert method == "search"
        assert args == [[]]
        assert kwargs == {"offset": 10, "limit": 5, "order": "id desc"}
