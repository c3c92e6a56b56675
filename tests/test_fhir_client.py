import base64

import pytest
import requests

from conftest import FakeResponse
from fhir_browser.gateways.auth import BasicAuth, BearerAuth, ClientCredentialsAuth, NoAuth
from fhir_browser.gateways.fhir_client import FhirClient
from fhir_browser.gateways.fhir_gateway import (
    FhirError,
    FhirPreconditionError,
    FhirProtocolError,
    FhirTransportError,
)
from fhir_browser.gateways.servers import FHIR_SERVERS, ServerConfig

BASE = "https://fhir.example.org/r4"


class Clock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _client(auth=None, clock=None) -> FhirClient:
    cfg = ServerConfig(type="custom", base_url=BASE, name="Test", auth=auth or NoAuth())
    return FhirClient(cfg, clock=clock or Clock())


OUTCOME = {
    "resourceType": "OperationOutcome",
    "issue": [
        {"severity": "error", "code": "not-found", "diagnostics": "Resource Patient/9 is not known"},
        {"severity": "warning", "code": "informational"},
    ],
}


def test_get_resource_by_id_sends_fhir_headers(fake_http):
    fake_http.queue(FakeResponse(200, {"resourceType": "Patient", "id": "1"}))
    out = _client().get_resource_by_id("Patient", "1")
    assert out == {"resourceType": "Patient", "id": "1"}
    call = fake_http.calls[0]
    assert call["method"] == "GET"
    assert call["url"] == f"{BASE}/Patient/1"
    assert call["headers"]["Accept"] == "application/fhir+json"
    assert call["headers"]["Content-Type"] == "application/fhir+json"
    assert "Authorization" not in call["headers"]


def test_basic_auth_header(fake_http):
    _client(BasicAuth(username="u", password="p")).get_resource_by_id("Patient", "1")
    expected = "Basic " + base64.b64encode(b"u:p").decode("ascii")
    assert fake_http.calls[0]["headers"]["Authorization"] == expected


def test_bearer_auth_header(fake_http):
    _client(BearerAuth(token="abc.def")).get_resource_by_id("Patient", "1")
    assert fake_http.calls[0]["headers"]["Authorization"] == "Bearer abc.def"


CC = ClientCredentialsAuth(token_url="https://auth.example.org/token", client_id="cid", client_secret="sec")


def test_client_credentials_exchange_then_reuse(fake_http):
    clock = Clock(1000.0)
    client = _client(CC, clock)
    fake_http.queue_token(FakeResponse(200, {"access_token": "T", "expires_in": 60}))
    client.get_resource_by_id("Patient", "1")
    client.get_resource_by_id("Patient", "2")
    assert len(fake_http.token_calls) == 1
    tok = fake_http.token_calls[0]
    assert tok["url"] == CC.token_url
    assert tok["data"] == {"grant_type": "client_credentials", "client_id": "cid", "client_secret": "sec"}
    assert tok["headers"]["Content-Type"] == "application/x-www-form-urlencoded"
    assert [c["headers"]["Authorization"] for c in fake_http.calls] == ["Bearer T", "Bearer T"]
    assert client.token_state.expires_at == 1060.0


def test_expired_token_triggers_exactly_one_exchange(fake_http):
    clock = Clock(1000.0)
    client = _client(CC, clock)
    fake_http.queue_token(FakeResponse(200, {"access_token": "T", "expires_in": 60}),
                          FakeResponse(200, {"access_token": "T2", "expires_in": 60}))
    client.get_resource_by_id("Patient", "1")
    clock.now = 1061.0
    client.get_resource_by_id("Patient", "1")
    assert len(fake_http.token_calls) == 2
    assert fake_http.calls[-1]["headers"]["Authorization"] == "Bearer T2"


def test_token_without_lifetime_never_expires(fake_http):
    clock = Clock(0.0)
    client = _client(CC, clock)
    fake_http.queue_token(FakeResponse(200, {"access_token": "T"}))
    client.get_resource_by_id("Patient", "1")
    clock.now = 10 ** 9
    client.get_resource_by_id("Patient", "1")
    assert len(fake_http.token_calls) == 1


@pytest.mark.parametrize("failure", [
    FakeResponse(401, {"error": "invalid_client"}),
    FakeResponse(200, {"token_type": "bearer"}),
    requests.ConnectionError("auth host down"),
])
def test_token_exchange_failure_is_absorbed(fake_http, failure):
    clock = Clock(1000.0)
    client = _client(CC, clock)
    # seed an expired token so we can see it cleared
    fake_http.queue_token(FakeResponse(200, {"access_token": "OLD", "expires_in": 1}))
    client.get_resource_by_id("Patient", "1")
    clock.now = 2000.0
    fake_http.queue_token(failure)
    fake_http.queue(FakeResponse(401, OUTCOME))
    with pytest.raises(FhirProtocolError) as exc:
        client.get_resource_by_id("Patient", "1")
    assert exc.value.status == 401
    assert "Authorization" not in fake_http.calls[-1]["headers"]
    assert client.token_state is None


def test_set_server_drops_token(fake_http):
    client = _client(CC)
    client.get_resource_by_id("Patient", "1")
    assert client.token_state is not None
    client.set_server(ServerConfig(type="custom", base_url=BASE, name="Again", auth=CC))
    assert client.token_state is None
    client.get_resource_by_id("Patient", "1")
    assert len(fake_http.token_calls) == 2


def test_set_authentication_replaces_config(fake_http):
    client = _client()
    before = client.get_server_config()
    client.set_authentication(BearerAuth(token="x"))
    after = client.get_server_config()
    assert before.auth == NoAuth()
    assert after is not before
    assert after.base_url == before.base_url
    client.get_resource_by_id("Patient", "1")
    assert fake_http.calls[0]["headers"]["Authorization"] == "Bearer x"


def test_get_resource_by_url_same_server_is_authenticated(fake_http):
    client = _client(BearerAuth(token="x"))
    client.get_resource_by_url(f"{BASE}/Patient/42")
    call = fake_http.calls[0]
    assert call["url"] == f"{BASE}/Patient/42"
    assert call["headers"]["Authorization"] == "Bearer x"


def test_get_resource_by_url_relative_reference(fake_http):
    _client(BearerAuth(token="x")).get_resource_by_url("Patient/42")
    assert fake_http.calls[0]["url"] == f"{BASE}/Patient/42"
    assert fake_http.calls[0]["headers"]["Authorization"] == "Bearer x"


@pytest.mark.parametrize("url", [
    "https://other.example.com/fhir/Patient/42",
    f"{BASE}x/Patient/42",
])
def test_get_resource_by_url_foreign_host_is_bare(fake_http, url):
    client = _client(BearerAuth(token="x"))
    client.get_resource_by_url(url)
    call = fake_http.calls[0]
    assert call["url"] == url
    assert call["headers"] == {"Accept": "application/fhir+json"}


def test_foreign_url_does_not_trigger_token_exchange(fake_http):
    _client(CC).get_resource_by_url("https://other.example.com/fhir/Patient/42")
    assert fake_http.token_calls == []


def test_search_expands_list_params(fake_http):
    fake_http.queue(FakeResponse(200, {
        "resourceType": "Bundle", "type": "searchset", "total": 2,
        "entry": [{"resource": {"resourceType": "Observation", "id": "a"}}, {"fullUrl": "x"}],
    }))
    bundle = _client().search_resources("Observation", {"code": ["a", "b"], "patient": "1", "x": None})
    call = fake_http.calls[0]
    assert call["url"] == f"{BASE}/Observation"
    assert call["params"] == [("code", "a"), ("code", "b"), ("patient", "1")]
    assert bundle.total == 2
    assert len(bundle.entries) == 2
    assert bundle.entries[1].resource is None
    assert bundle.resources() == [{"resourceType": "Observation", "id": "a"}]


def test_convenience_wrappers(fake_http):
    client = _client()
    client.get_patient_observations("7")
    client.get_patient("7")
    client.search_patients({"name": "smith"})
    assert fake_http.calls[0]["url"] == f"{BASE}/Observation"
    assert fake_http.calls[0]["params"] == [("patient", "7")]
    assert fake_http.calls[1]["url"] == f"{BASE}/Patient/7"
    assert fake_http.calls[2]["params"] == [("name", "smith")]


def test_next_page(fake_http):
    client = _client()
    fake_http.queue(FakeResponse(200, {
        "resourceType": "Bundle", "link": [{"relation": "next", "url": f"{BASE}?_getpages=abc"}],
    }), FakeResponse(200, {"resourceType": "Bundle", "total": 0}))
    first = client.search_resources("Patient")
    second = client.next_page(first)
    assert fake_http.calls[1]["url"] == f"{BASE}?_getpages=abc"
    assert second.total == 0
    assert client.next_page(second) is None


def test_create_posts_to_type_endpoint(fake_http):
    fake_http.queue(FakeResponse(201, {"resourceType": "Patient", "id": "new"}))
    out = _client().create_resource({"resourceType": "Patient", "active": True})
    call = fake_http.calls[0]
    assert (call["method"], call["url"]) == ("POST", f"{BASE}/Patient")
    assert call["json"] == {"resourceType": "Patient", "active": True}
    assert out["id"] == "new"


def test_update_puts_to_type_and_id(fake_http):
    _client().update_resource({"resourceType": "Patient", "id": "5"})
    call = fake_http.calls[0]
    assert (call["method"], call["url"]) == ("PUT", f"{BASE}/Patient/5")


def test_update_without_id_fails_before_network(fake_http):
    with pytest.raises(FhirPreconditionError) as exc:
        _client().update_resource({"resourceType": "Patient"})
    assert isinstance(exc.value, FhirError)
    assert exc.value.status == 400
    assert fake_http.calls == []


def test_delete_returns_none(fake_http):
    fake_http.queue(FakeResponse(204))
    assert _client().delete_resource("Patient", "5") is None
    assert fake_http.calls[0]["method"] == "DELETE"


def test_batch_posts_to_root_and_returns_verbatim(fake_http):
    response = {"resourceType": "Bundle", "type": "batch-response", "entry": [{"response": {"status": "201"}}]}
    fake_http.queue(FakeResponse(200, response))
    out = _client().execute_batch({"resourceType": "Bundle", "type": "batch", "entry": []})
    assert fake_http.calls[0]["url"] == f"{BASE}/"
    assert out == response


def test_protocol_error_uses_first_issue_diagnostics(fake_http):
    fake_http.queue(FakeResponse(404, OUTCOME, reason="Not Found"))
    with pytest.raises(FhirProtocolError) as exc:
        _client().get_resource_by_id("Patient", "9")
    err = exc.value
    assert err.status == 404
    assert err.message == "Resource Patient/9 is not known"
    assert [(i.severity, i.code) for i in err.issue] == [("error", "not-found"), ("warning", "informational")]


def test_protocol_error_without_outcome(fake_http):
    fake_http.queue(FakeResponse(502, text="<html>bad gateway</html>", reason="Bad Gateway"))
    with pytest.raises(FhirProtocolError) as exc:
        _client().get_resource_by_id("Patient", "9")
    assert exc.value.status == 502
    assert "502" in exc.value.message
    assert exc.value.issue == []


def test_transport_error_is_normalized(fake_http):
    fake_http.queue(requests.ConnectionError("Name or service not known"))
    with pytest.raises(FhirTransportError) as exc:
        _client().get_capability_statement()
    assert exc.value.status == 500
    assert "Name or service not known" in exc.value.message


def test_test_connection_true_and_false(fake_http):
    client = _client()
    fake_http.queue(FakeResponse(200, {"resourceType": "CapabilityStatement"}))
    assert client.test_connection() is True
    fake_http.queue(FakeResponse(500, text="boom"))
    assert client.test_connection() is False
    fake_http.queue(requests.Timeout("slow"))
    assert client.test_connection() is False
    assert all(c["url"] == f"{BASE}/metadata" for c in fake_http.calls)


def test_default_config_is_a_preset():
    client = FhirClient()
    assert client.get_server_config() in FHIR_SERVERS.values()


@pytest.mark.parametrize("body", [
    {"issue": [{"details": {"coding": {"code": "x"}}}]},
    {"issue": [{"details": {"coding": "x", "text": 5}}]},
    {"issue": [{"details": {"coding": [None, {"code": "y"}]}}]},
    {"issue": [7, {"severity": "error"}]},
])
def test_malformed_outcome_still_normalized(fake_http, body):
    fake_http.queue(FakeResponse(400, body, reason="Bad Request"))
    with pytest.raises(FhirProtocolError) as exc:
        _client().get_resource_by_id("Patient", "1")
    assert exc.value.status == 400
    assert exc.value.message


def test_outcome_coding_object_is_ignored(fake_http):
    fake_http.queue(FakeResponse(400, {"issue": [{"severity": "error", "code": "invalid",
                                                  "details": {"coding": {"code": "x"}}}]}, reason="Bad Request"))
    with pytest.raises(FhirProtocolError) as exc:
        _client().get_resource_by_id("Patient", "1")
    assert exc.value.message == "Request failed with status code 400 (Bad Request)"
    assert [(i.code, i.details) for i in exc.value.issue] == [("invalid", None)]


def test_token_is_not_attached_to_a_server_switched_mid_exchange(fake_http, monkeypatch):
    client = _client(CC)
    other = ServerConfig(type="custom", base_url="https://other.example.org/fhir", name="Other", auth=CC)

    def post_and_switch(url, data=None, headers=None, timeout=None, verify=None):
        fake_http.token_calls.append({"url": url})
        client.set_server(other)
        return FakeResponse(200, {"access_token": "STALE", "expires_in": 3600})

    monkeypatch.setattr(requests, "post", post_and_switch)
    client.get_resource_by_id("Patient", "1")
    assert client.token_state is None
    assert client.get_server_config() is other

    monkeypatch.setattr(requests, "post", fake_http.post)
    client.get_resource_by_id("Patient", "2")
    assert len(fake_http.token_calls) == 2
    assert fake_http.calls[-1]["url"] == "https://other.example.org/fhir/Patient/2"
    assert fake_http.calls[-1]["headers"]["Authorization"] == "Bearer T"
    assert client.token_state.access_token == "T"
