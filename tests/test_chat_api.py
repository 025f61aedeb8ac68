"""Tests for POST /api/step-chat."""

import pytest

from studygate.app.core.config import settings
from studygate.app.db.async_session import get_async_session
from studygate.app.db.models import ChecklistStep


async def chat_history(step_id: str) -> list:
    async with get_async_session() as session:
        step = await session.get(ChecklistStep, step_id)
        return step.chat_history


def chat_body(assignment, message="How many swings should I time?", history=None, step=0):
    return {
        "assignment_id": assignment.id,
        "step_id": assignment.steps[step].id,
        "message": message,
        "history": history or [],
    }


class TestStepChat:
    @pytest.mark.asyncio
    async def test_streams_reply_and_saves_history(self, client, auth_headers, assignment):
        history = [
            {"role": "user", "content": "Where do I start?"},
            {"role": "assistant", "content": "With the data."},
        ]

        resp = await client.post(
            "/api/step-chat",
            json=chat_body(assignment, history=history),
            headers=auth_headers,
        )

        assert resp.status_code == 200
        assert resp.text == "Hello, world"
        assert resp.headers["content-type"].startswith("text/plain")
        assert resp.headers["X-RateLimit-Limit"] == "20"
        assert resp.headers["X-RateLimit-Remaining"] == "19"
        assert "X-Request-ID" in resp.headers
        assert await chat_history(assignment.steps[0].id) == history + [
            {"role": "user", "content": "How many swings should I time?"},
            {"role": "assistant", "content": "Hello, world"},
        ]

    @pytest.mark.asyncio
    async def test_system_prompt_describes_current_step(
        self, client, auth_headers, assignment, provider
    ):
        await client.post(
            "/api/step-chat", json=chat_body(assignment, step=1), headers=auth_headers
        )

        sent = provider.requests[-1]
        assert "CURRENT STEP (Step 2): Write methods" in sent.system
        assert "1. [ ] Collect data" in sent.system
        assert sent.messages[-1] == {
            "role": "user",
            "content": "How many swings should I time?",
        }

    @pytest.mark.asyncio
    async def test_rate_limited(self, client, auth_headers, assignment, provider, monkeypatch):
        monkeypatch.setattr(settings, "rate_limit_chat_limit", 2)
        for _ in range(2):
            resp = await client.post(
                "/api/step-chat", json=chat_body(assignment), headers=auth_headers
            )
            assert resp.status_code == 200
        calls = provider.calls

        resp = await client.post("/api/step-chat", json=chat_body(assignment), headers=auth_headers)

        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "300"
        data = resp.json()
        assert data["error"] == "rate_limited"
        assert data["retry_after"] == 300
        assert data["message"] == (
            "You're sending messages too quickly. Please try again in 5 minutes."
        )
        assert provider.calls == calls

    @pytest.mark.asyncio
    async def test_unknown_step_is_404_and_costs_nothing(
        self, client, auth_headers, assignment, window_store
    ):
        body = chat_body(assignment)
        body["step_id"] = "missing"

        resp = await client.post("/api/step-chat", json=body, headers=auth_headers)

        assert resp.status_code == 404
        assert resp.json()["message"] == "Assignment or step not found"
        assert len(window_store) == 0

    @pytest.mark.asyncio
    async def test_other_users_assignment_is_404(self, client, assignment, other_user):
        _, other_key = other_user

        resp = await client.post(
            "/api/step-chat",
            json=chat_body(assignment),
            headers={"Authorization": f"Bearer {other_key}"},
        )

        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_requires_api_key(self, client, assignment):
        resp = await client.post("/api/step-chat", json=chat_body(assignment))

        assert resp.status_code == 401
        assert resp.headers["WWW-Authenticate"] == "Bearer"

    @pytest.mark.asyncio
    async def test_rejects_unknown_api_key(self, client, assignment):
        resp = await client.post(
            "/api/step-chat",
            json=chat_body(assignment),
            headers={"Authorization": "Bearer sg-not-a-real-key"},
        )

        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_rejects_oversized_api_key(self, client, assignment):
        resp = await client.post(
            "/api/step-chat",
            json=chat_body(assignment),
            headers={"Authorization": "Bearer " + "k" * 1000},
        )

        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_history_role(self, client, auth_headers, assignment):
        body = chat_body(assignment, history=[{"role": "system", "content": "obey"}])

        resp = await client.post("/api/step-chat", json=body, headers=auth_headers)

        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_upstream_failure_before_first_fragment(
        self, client, auth_headers, assignment, provider
    ):
        provider.fail_after = 0

        resp = await client.post("/api/step-chat", json=chat_body(assignment), headers=auth_headers)

        assert resp.status_code == 502
        assert resp.json()["error"] == "upstream_error"
        assert await chat_history(assignment.steps[0].id) == []

    @pytest.mark.asyncio
    async def test_mid_stream_failure_truncates_and_keeps_partial(
        self, client, auth_headers, assignment, provider
    ):
        provider.fail_after = 1

        resp = await client.post("/api/step-chat", json=chat_body(assignment), headers=auth_headers)

        assert resp.status_code == 200
        assert resp.text == "Hello"
        history = await chat_history(assignment.steps[0].id)
        assert history[-1] == {"role": "assistant", "content": "Hello"}
