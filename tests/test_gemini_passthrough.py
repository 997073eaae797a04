"""
Tests for the Gemini-native passthrough routes.
"""
import httpx
from grappa import should

from .conftest import MOCK_GEMINI_RESPONSE, MOCK_GEMINI_STREAM_CHUNKS, MOCK_UPSTREAM_ERROR, sse_body

BODY = b'{"contents": [{"role": "user", "parts": [{"text": "Hi"}]}]}'


def test_gemini_models_listing(gemini_ok):
    client, _ = gemini_ok
    response = client.get("/gemini/v1beta/models")

    response.status_code | should.equal(200)
    models = response.json()["models"]
    models | should.contain({"name": "models/gemini-2.5-pro", "displayName": "gemini-2.5-pro"})
    models | should.contain(
        {"name": "models/gemini-3-pro-preview-high", "displayName": "gemini-3-pro-preview-high"}
    )


def test_generate_content_is_forwarded_unchanged(gemini_ok):
    client, recorder = gemini_ok
    response = client.post(
        "/gemini/v1beta/models/gemini-2.5-flash:generateContent",
        content=BODY,
        headers={"content-type": "application/json"},
    )

    response.status_code | should.equal(200)
    response.json() | should.equal(MOCK_GEMINI_RESPONSE)
    request = recorder.requests[0]
    request.content | should.equal(BODY)
    request.url.host | should.equal("aiplatform.googleapis.com")
    request.url.path | should.equal(
        "/v1/projects/test-project/locations/global/publishers/google/models/"
        "gemini-2.5-flash:generateContent"
    )


def test_older_models_use_configured_location(make_client):
    client, recorder = make_client(
        lambda request: httpx.Response(200, json=MOCK_GEMINI_RESPONSE), location="us-central1"
    )
    client.post("/gemini/v1beta/models/gemini-2.0-flash:generateContent", content=BODY)
    client.post("/gemini/v1beta/models/gemini-3-pro-preview:generateContent", content=BODY)

    recorder.requests[0].url.host | should.equal("us-central1-aiplatform.googleapis.com")
    recorder.requests[0].url.path | should.contain("/locations/us-central1/")
    recorder.requests[1].url.host | should.equal("aiplatform.googleapis.com")
    recorder.requests[1].url.path | should.contain("/locations/global/")


def test_upstream_error_is_forwarded(make_client):
    client, recorder = make_client(
        lambda request: httpx.Response(429, json=MOCK_UPSTREAM_ERROR), max_retries=0
    )
    response = client.post("/gemini/v1beta/models/gemini-2.5-pro:generateContent", content=BODY)

    response.status_code | should.equal(429)
    response.json() | should.equal(MOCK_UPSTREAM_ERROR)
    recorder.requests | should.have.length(1)


def test_stream_generate_content_is_relayed(make_client):
    upstream_body = sse_body(MOCK_GEMINI_STREAM_CHUNKS)
    client, recorder = make_client(
        lambda request: httpx.Response(
            200, content=upstream_body, headers={"content-type": "text/event-stream"}
        )
    )
    response = client.post(
        "/gemini/v1beta/models/gemini-2.5-pro:streamGenerateContent", content=BODY
    )

    response.status_code | should.equal(200)
    response.headers["content-type"].split(";")[0] | should.equal("text/event-stream")
    data_lines = [line for line in response.iter_lines() if line.startswith("data: ")]
    data_lines | should.equal(
        [line for line in upstream_body.decode().splitlines() if line.startswith("data: ")]
    )
    recorder.requests[0].url.params["alt"] | should.equal("sse")
