"""
Tests for authentication and authorization functionality.
"""
import httpx
import pytest
from grappa import should

from .conftest import CHAT_REQUEST, MOCK_GEMINI_RESPONSE


@pytest.fixture
def protected_client(make_client):
    """Client with a configured proxy key"""
    return make_client(
        lambda request: httpx.Response(200, json=MOCK_GEMINI_RESPONSE), api_key="proxy-secret"
    )


def test_no_key_configured_allows_requests(gemini_ok):
    client, _ = gemini_ok
    response = client.post("/v1/chat/completions", json=CHAT_REQUEST)
    response.status_code | should.equal(200)


def test_missing_key_is_rejected(protected_client):
    client, recorder = protected_client
    response = client.post("/v1/chat/completions", json=CHAT_REQUEST)

    response.status_code | should.equal(401)
    response.json() | should.equal(
        {
            "error": {
                "message": "Invalid API key",
                "type": "invalid_request_error",
                "code": "invalid_api_key",
            }
        }
    )
    recorder.requests | should.have.length(0)


def test_wrong_key_is_rejected(protected_client):
    client, recorder = protected_client
    response = client.post(
        "/v1/chat/completions",
        json=CHAT_REQUEST,
        headers={"Authorization": "Bearer wrong"},
    )

    response.status_code | should.equal(401)
    response.json()["error"]["code"] | should.equal("invalid_api_key")
    recorder.requests | should.have.length(0)


def test_bearer_token(protected_client):
    client, _ = protected_client
    response = client.post(
        "/v1/chat/completions",
        json=CHAT_REQUEST,
        headers={"Authorization": "Bearer proxy-secret"},
    )
    response.status_code | should.equal(200)


def test_goog_api_key_header(protected_client):
    client, _ = protected_client
    response = client.get("/v1/models", headers={"x-goog-api-key": "proxy-secret"})
    response.status_code | should.equal(200)


def test_key_query_parameter(protected_client):
    client, _ = protected_client
    response = client.get("/gemini/v1beta/models?key=proxy-secret")
    response.status_code | should.equal(200)


def test_non_bearer_authorization_is_ignored(protected_client):
    client, _ = protected_client
    response = client.get("/v1/models", headers={"Authorization": "proxy-secret"})
    response.status_code | should.equal(401)


def test_health_is_public(protected_client):
    client, _ = protected_client
    response = client.get("/health")
    response.status_code | should.equal(200)
