"""
Tests for health check endpoint.
"""
from datetime import datetime

from grappa import should

from vertexgate.api import format_uptime


def test_health_check(gemini_ok):
    """Test health check endpoint"""
    client, recorder = gemini_ok
    response = client.get("/health")

    response.status_code | should.equal(200)
    response.headers["content-type"] | should.equal("application/json")
    data = response.json()
    data | should.have.keys("status", "timestamp", "uptime")
    data["status"] | should.equal("ok")
    datetime.strptime(data["timestamp"], "%Y-%m-%dT%H:%M:%SZ")
    data["uptime"].endswith("s") | should.be.true
    recorder.requests | should.have.length(0)


def test_root_redirects_to_health(gemini_ok):
    client, _ = gemini_ok
    response = client.get("/", follow_redirects=False)

    response.status_code | should.equal(302)
    response.headers["location"] | should.equal("/health")


def test_format_uptime():
    format_uptime(5) | should.equal("5s")
    format_uptime(125) | should.equal("2m5s")
    format_uptime(3723.9) | should.equal("1h2m3s")
