"""Tests for request ID and metrics middleware."""

import pytest

from studygate.app.core.metrics import get_metrics_collector


@pytest.mark.asyncio
async def test_request_id_is_generated(client):
    resp = await client.get("/health")

    assert len(resp.headers["X-Request-ID"]) == 36


@pytest.mark.asyncio
async def test_request_id_is_propagated(client):
    resp = await client.get("/health", headers={"X-Request-ID": "trace-123"})

    assert resp.headers["X-Request-ID"] == "trace-123"


@pytest.mark.asyncio
async def test_request_id_reaches_the_relay(client, auth_headers, assignment, provider, gate):
    outcomes = []
    original_open = gate.relay.open

    def open_and_watch(request, request_id=None):
        stream = original_open(request, request_id=request_id)
        stream.add_done_callback(outcomes.append)
        return stream

    gate.relay.open = open_and_watch
    await client.post(
        "/api/step-chat",
        json={
            "assignment_id": assignment.id,
            "step_id": assignment.steps[0].id,
            "message": "hi",
        },
        headers={**auth_headers, "X-Request-ID": "trace-456"},
    )

    assert outcomes[0].request_id == "trace-456"


@pytest.mark.asyncio
async def test_metrics_middleware_records_status(client):
    await client.get("/api/assignments")

    summary = await get_metrics_collector().get_summary()
    assert summary["endpoints"]["/api/assignments"]["error_count"] == 1
