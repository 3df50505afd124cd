"""Tests for the generative backend client: quotas, cost and error mapping."""

import asyncio

import httpx
import openai
import pytest

from ensemble.backend import (
    DEFAULT_SYSTEM_PROMPT,
    GenerativeBackend,
    RateLimiter,
    build_agent_user_prompt,
    compute_cost,
    rates_for,
)
from ensemble.config import EnsembleConfig, ModelRates, default_cost_rates
from ensemble.errors import BackendError, RateLimited
from ensemble.models import Agent, AgentKind, PriorMessage, TokenUsage

API_URL = "https://api.openai.com/v1/chat/completions"


def _sent_messages(client):
    return client.chat.completions.create.await_args.kwargs["messages"]


class TestComplete:
    async def test_returns_text_usage_and_cost(self, backend, client):
        completion = await backend.complete("hello")

        assert completion.text == "OK"
        assert completion.model == "gpt-4"
        assert completion.usage.prompt_tokens == 1000
        assert completion.usage.completion_tokens == 500
        assert completion.usage.total_tokens == 1500
        assert completion.cost == pytest.approx(0.06)

        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["model"] == "gpt-4"
        assert kwargs["temperature"] == 0.7
        assert kwargs["max_tokens"] == 1000
        assert _sent_messages(client) == [
            {"role": "system", "content": DEFAULT_SYSTEM_PROMPT},
            {"role": "user", "content": "hello"},
        ]

    async def test_overrides(self, backend, client):
        await backend.complete("hi", system_prompt="Be terse.", temperature=0, max_tokens=5, model="gpt-4o")

        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["model"] == "gpt-4o"
        assert kwargs["temperature"] == 0
        assert kwargs["max_tokens"] == 5
        assert _sent_messages(client)[0]["content"] == "Be terse."

    async def test_accumulates_usage_stats(self, backend):
        await backend.complete("one")
        await backend.complete("two")

        stats = backend.usage_stats()
        assert stats["total_requests"] == 2
        assert stats["total_tokens"] == 3000
        assert stats["total_cost"] == pytest.approx(0.12)
        assert stats["rate_limit"]["minute_remaining"] == 58

    async def test_missing_usage_costs_nothing(self, backend, client):
        response = client.chat.completions.create.return_value
        response.usage = None

        completion = await backend.complete("hello")

        assert completion.usage == TokenUsage()
        assert completion.cost == 0.0

    async def test_empty_choice_gives_empty_text(self, backend, reply_with):
        reply_with(None)

        completion = await backend.complete("hello")

        assert completion.text == ""

    async def test_timeout_maps_to_backend_error(self, config, client, clock):
        async def slow(**kwargs):
            await asyncio.sleep(1)

        config.backend.timeout = 0.01
        client.chat.completions.create.side_effect = slow
        backend = GenerativeBackend(config, client=client, clock=clock)

        with pytest.raises(BackendError, match="AI service error: request timed out"):
            await backend.complete("hello")

        assert backend.total_requests == 0

    async def test_api_error_maps_to_backend_error(self, backend, client):
        client.chat.completions.create.side_effect = openai.APIConnectionError(
            request=httpx.Request("POST", API_URL)
        )

        with pytest.raises(BackendError, match="AI service error") as exc_info:
            await backend.complete("hello")

        assert isinstance(exc_info.value.__cause__, openai.APIConnectionError)

    async def test_missing_api_key(self, clock):
        backend = GenerativeBackend(EnsembleConfig(), clock=clock)

        with pytest.raises(BackendError, match="No API key"):
            await backend.complete("hello")

    async def test_close(self, backend, client):
        await backend.close()
        client.close.assert_awaited_once()


class TestRateLimits:
    async def test_minute_quota_then_boundary(self, config, client, clock):
        config.rate_limit.requests_per_minute = 3
        backend = GenerativeBackend(config, client=client, clock=clock)

        for _ in range(3):
            await backend.complete("hello")
        with pytest.raises(RateLimited, match="per minute"):
            await backend.complete("hello")

        assert client.chat.completions.create.await_count == 3

        clock.advance(60)
        await backend.complete("hello")
        assert client.chat.completions.create.await_count == 4

    async def test_hour_quota(self, config, client, clock):
        config.rate_limit.requests_per_hour = 2
        backend = GenerativeBackend(config, client=client, clock=clock)

        await backend.complete("one")
        clock.advance(61)
        await backend.complete("two")
        clock.advance(61)

        with pytest.raises(RateLimited) as exc_info:
            await backend.complete("three")
        assert exc_info.value.window == "hour"
        assert str(exc_info.value) == "Rate limit exceeded: Too many requests per hour"

        clock.advance(3600)
        await backend.complete("four")

    async def test_concurrent_acquires_never_exceed_quota(self, clock):
        limiter = RateLimiter(5, 100, clock=clock)

        results = await asyncio.gather(*(limiter.acquire() for _ in range(8)), return_exceptions=True)

        assert sum(1 for r in results if r is None) == 5
        assert sum(1 for r in results if isinstance(r, RateLimited)) == 3
        assert limiter.minute_count == 5

    def test_remaining_resets_lazily(self, clock):
        limiter = RateLimiter(2, 10, clock=clock)
        limiter.minute_count = 2
        limiter.hour_count = 2

        clock.advance(60)

        assert limiter.remaining() == {"minute_remaining": 2, "hour_remaining": 8}


class TestCost:
    def test_known_rates(self):
        usage = TokenUsage(prompt_tokens=1000, completion_tokens=500, total_tokens=1500)

        assert compute_cost(usage, ModelRates(input=0.03, output=0.06)) == pytest.approx(0.06)

    def test_longest_family_wins(self):
        rates = default_cost_rates()

        assert rates_for("gpt-4o-mini-2024-07-18", rates) == rates["gpt-4o-mini"]
        assert rates_for("gpt-4o-2024-08-06", rates) == rates["gpt-4o"]
        assert rates_for("gpt-4-0613", rates) == rates["gpt-4"]

    def test_unknown_model_uses_default(self):
        rates = default_cost_rates()

        assert rates_for("some-local-model", rates) == rates["default"]


class TestHelpers:
    async def test_agent_reply_prompt(self, backend, client):
        await backend.agent_reply(
            "agent-7",
            "Can you review this?",
            task_id="task-1",
            previous_messages=[PriorMessage(sender_id="u1", content="Hi there")],
        )

        system, user = _sent_messages(client)
        assert "Your agent ID is agent-7" in system["content"]
        assert "You are working on task ID: task-1" in system["content"]
        assert user["content"] == "Can you review this?\n\nPrevious conversation:\nu1: Hi there\n"
        assert client.chat.completions.create.await_args.kwargs["temperature"] == 0.3

    def test_user_prompt_without_history(self):
        assert build_agent_user_prompt("Just this", []) == "Just this"

    async def test_analyze_task_prompt(self, backend, client):
        await backend.analyze_task("Fix login bug", "Users get logged out")

        kwargs = client.chat.completions.create.await_args.kwargs
        assert "Task Title: Fix login bug" in _sent_messages(client)[1]["content"]
        assert "Task Summary:" in _sent_messages(client)[0]["content"]
        assert kwargs["temperature"] == 0.2
        assert kwargs["max_tokens"] == 800

    async def test_suggest_assignment_lists_agents(self, backend, client):
        agents = [Agent(id="a1", name="Alice", kind=AgentKind.AI, capabilities=["python", "sql"])]

        await backend.suggest_assignment("Migrate the database", agents)

        prompt = _sent_messages(client)[1]["content"]
        assert "- Alice (a1): python, sql - Status: active" in prompt
        assert client.chat.completions.create.await_args.kwargs["temperature"] == 0.1


class TestHealthCheck:
    async def test_ok_reply(self, backend, reply_with):
        reply_with(" OK \n", prompt_tokens=10, completion_tokens=1)
        assert await backend.health_check()

    async def test_unexpected_reply(self, backend, reply_with):
        reply_with("Okay!")
        assert not await backend.health_check()

    async def test_backend_failure(self, backend, client):
        client.chat.completions.create.side_effect = openai.APIConnectionError(
            request=httpx.Request("POST", API_URL)
        )
        assert not await backend.health_check()

    async def test_counts_against_quota(self, config, client, clock):
        config.rate_limit.requests_per_minute = 1
        backend = GenerativeBackend(config, client=client, clock=clock)

        assert await backend.health_check()
        assert not await backend.health_check()
        assert client.chat.completions.create.await_count == 1
