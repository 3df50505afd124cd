"""Tests for the conversation router and the model-output parsers."""

import httpx
import openai
import pytest

from ensemble.backend import GenerativeBackend
from ensemble.errors import (
    AgentNotFound,
    AIGenerationFailed,
    BackendError,
    BudgetExhausted,
    RateLimited,
    RoutingFailed,
    TaskNotFound,
)
from ensemble.models import (
    Agent,
    AgentKind,
    AgentStatus,
    ConversationMessage,
    MessageType,
    Priority,
    Task,
)
from ensemble.notify import AI_REPLY, MESSAGE_DELIVERED, Notifier
from ensemble.router import (
    ConversationRouter,
    ConversationStore,
    parse_agent_recommendation,
    parse_task_analysis,
)

FULL_ANALYSIS = """Task Summary: Users are logged out right after signing in.
Key Requirements:
- Reproduce the logout
- Fix session token validation
Estimated Complexity: medium
Required Skills:
- Python
- OAuth
Potential Challenges:
- Flaky session store in staging
Recommended Approach: Add a failing test first,
then patch the token validator."""

MARKDOWN_ANALYSIS = """**Task Summary:** Speed up the report export.
1. **Key Requirements:**
   1. Stream rows
   2. Keep CSV format
**Estimated Complexity:** simple"""

RECOMMENDATION = """Recommendation:
- Agent: Alice (a1)
- Reason: Strong Python and SQL background
- Confidence: high
- Alternative: Bob (b2)
- Estimated Success Rate: 85%"""


class RecordingNotifier(Notifier):
    def __init__(self):
        self.events = []

    async def emit(self, event, agent_id, payload):
        self.events.append((event, agent_id, payload))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def router(directory, backend, costs, notifier):
    return ConversationRouter(directory, backend, costs, notifier=notifier)


@pytest.fixture
async def ai_agent(directory):
    return await directory.add_agent(Agent(id="A", name="Coder", kind=AgentKind.AI, capabilities=["coding"]))


@pytest.fixture
async def human(directory):
    return await directory.add_agent(Agent(id="H", name="Hana", kind=AgentKind.HUMAN))


@pytest.fixture
async def task(directory):
    return await directory.add_task(Task(id="t1", title="Fix login bug", description="Users get logged out"))


def _api_failure():
    return openai.APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))


class TestRouting:
    async def test_human_receiver_never_calls_backend(self, router, client, human, notifier):
        message = ConversationMessage(sender_id="U", receiver_id="H", content="ping", priority=Priority.HIGH)

        reply = await router.handle_message_routing(message)

        assert reply is None
        client.chat.completions.create.assert_not_awaited()
        assert router.get_history("H") == [message]
        assert [(e, a) for e, a, _ in notifier.events] == [(MESSAGE_DELIVERED, "H")]
        assert notifier.events[0][2]["priority"] == "high"

    async def test_bot_receiver_is_forwarded(self, router, client, directory):
        await directory.add_agent(Agent(id="B", name="ci-bot", kind=AgentKind.BOT))

        await router.handle_message_routing(ConversationMessage(sender_id="U", receiver_id="B", content="run"))

        client.chat.completions.create.assert_not_awaited()
        assert len(router.get_history("B")) == 1

    async def test_review_request_end_to_end(self, router, client, reply_with, ai_agent, notifier):
        reply_with("Sure, I'll review PR#42 now.")
        message = ConversationMessage(sender_id="U", receiver_id="A", content="please review PR#42")

        reply = await router.handle_message_routing(message)

        assert client.chat.completions.create.await_count == 1
        assert reply.sender_id == "A"
        assert reply.receiver_id == "U"
        assert reply.type == MessageType.RESPONSE
        assert reply.content == "Sure, I'll review PR#42 now."
        assert reply.metadata["response_to"] == message.id

        history = router.get_history("A")
        assert len(history) == 2
        assert history[0].id == message.id
        assert history[0].metadata["role"] == "user"
        assert history[1].metadata["role"] == "assistant"
        assert history[1].content == reply.content

        assert router.get_history("U") == [reply]
        assert [e for e, _, _ in notifier.events] == [AI_REPLY, MESSAGE_DELIVERED]

    async def test_ai_reply_sees_recent_history(self, router, client, ai_agent):
        for n in range(4):
            await router.handle_message_routing(
                ConversationMessage(sender_id="U", receiver_id="A", content=f"message {n}")
            )

        assert client.chat.completions.create.await_count == 4
        prompt = client.chat.completions.create.await_args.kwargs["messages"][1]["content"]
        assert prompt.startswith("message 3\n\nPrevious conversation:\n")
        # six entries exist; only the last five are passed on
        assert "U: message 0" not in prompt
        assert "A: OK" in prompt
        assert "U: message 2" in prompt

    async def test_ai_reply_carries_task_and_user(self, router, client, ai_agent, costs):
        message = ConversationMessage(
            sender_id="U", receiver_id="A", content="status?", metadata={"task_id": "t9", "user_id": "u1"}
        )

        await router.handle_message_routing(message)

        system = client.chat.completions.create.await_args.kwargs["messages"][0]["content"]
        assert "You are working on task ID: t9" in system
        [event] = costs.events()
        assert event.user_id == "u1"
        assert event.agent_id == "A"
        assert event.task_id == "t9"

    async def test_unknown_receiver(self, router, client):
        with pytest.raises(AgentNotFound) as exc_info:
            await router.handle_message_routing(ConversationMessage(sender_id="U", receiver_id="ghost", content="hi"))

        assert exc_info.value.agent_id == "ghost"
        client.chat.completions.create.assert_not_awaited()

    async def test_backend_failure_is_wrapped_with_detail(self, router, client, ai_agent):
        client.chat.completions.create.side_effect = _api_failure()

        with pytest.raises(RoutingFailed) as exc_info:
            await router.handle_message_routing(ConversationMessage(sender_id="U", receiver_id="A", content="hi"))

        error = exc_info.value
        assert error.sender_id == "U"
        assert error.receiver_id == "A"
        assert "AI service error" in error.detail
        assert isinstance(error.__cause__, AIGenerationFailed)
        assert isinstance(error.__cause__.__cause__, BackendError)
        assert router.get_history("A") == []

    async def test_rate_limit_detail_survives_wrapping(self, config, client, clock, directory, costs, ai_agent):
        config.rate_limit.requests_per_minute = 0
        router = ConversationRouter(directory, GenerativeBackend(config, client=client, clock=clock), costs)

        with pytest.raises(RoutingFailed, match="Too many requests per minute") as exc_info:
            await router.handle_message_routing(ConversationMessage(sender_id="U", receiver_id="A", content="hi"))

        assert isinstance(exc_info.value.__cause__.__cause__, RateLimited)


class TestSendAIMessage:
    async def test_records_both_turns_and_cost(self, router, costs, ai_agent):
        text = await router.send_ai_message("A", "hello", task_id="t1")

        assert text == "OK"
        history = router.get_history("A")
        assert [m.sender_id for m in history] == ["user", "A"]
        assert history[1].metadata["response_to"] == history[0].id

        summary = costs.summarize()
        assert summary.total_requests == 1
        assert summary.by_request_type["agent_communication"].cost == pytest.approx(0.06)

    async def test_failure_is_wrapped(self, router, client):
        client.chat.completions.create.side_effect = _api_failure()

        with pytest.raises(AIGenerationFailed, match="Failed to process AI message: AI service error"):
            await router.send_ai_message("A", "hello")

    async def test_budget_enforcement(self, directory, backend, costs, client):
        router = ConversationRouter(directory, backend, costs, enforce_budgets=True)
        await costs.emergency_stop()

        with pytest.raises(AIGenerationFailed) as exc_info:
            await router.send_ai_message("A", "hello")

        assert isinstance(exc_info.value.__cause__, BudgetExhausted)
        with pytest.raises(BudgetExhausted):
            await router.chat("hello")
        client.chat.completions.create.assert_not_awaited()

    async def test_budgets_are_advisory_by_default(self, router, costs, client):
        await costs.emergency_stop()

        await router.send_ai_message("A", "hello")

        client.chat.completions.create.assert_awaited_once()


class TestProtocols:
    async def test_introduction(self, router, ai_agent, client):
        text = await router.generate_agent_introduction("A", task_id="t1", team_name="core")

        assert text == (
            "Hello! I'm Coder, an AI agent with expertise in coding. "
            "I'm here to help you with working on task t1. How can I assist you today?"
        )
        client.chat.completions.create.assert_not_awaited()

    async def test_introduction_without_task(self, router, ai_agent):
        assert "available to assist" in await router.generate_agent_introduction("A")

    async def test_introduction_unknown_agent(self, router):
        with pytest.raises(AgentNotFound):
            await router.generate_agent_introduction("ghost")

    async def test_collaboration_request(self, router, client, ai_agent):
        response = await router.request_agent_collaboration(
            "H", "A", "a billing migration", "SQL", "moving invoices to the new schema"
        )

        assert response == "OK"
        prompt = client.chat.completions.create.await_args.kwargs["messages"][1]["content"]
        assert prompt.startswith("Hi Coder, I'm working on a billing migration")
        assert "\n\nPrevious conversation:\nH: Hi Coder" in prompt
        assert router.get_history("A")[0].sender_id == "H"

    async def test_collaboration_unknown_target(self, router, client):
        with pytest.raises(AgentNotFound):
            await router.request_agent_collaboration("H", "ghost", "x", "y", "z")
        client.chat.completions.create.assert_not_awaited()

    async def test_status_update(self, router, client, ai_agent):
        await router.provide_status_update("A", "Login fix", "tests written", "in progress", "patch validator")

        prompt = client.chat.completions.create.await_args.kwargs["messages"][1]["content"]
        assert prompt == (
            "Status update for Login fix: tests written. "
            "Current status: in progress. Next steps: patch validator."
        )


class TestTaskIntelligence:
    async def test_analysis_of_full_response(self, router, reply_with, directory, task, costs):
        reply_with(FULL_ANALYSIS)

        result = await router.analyze_task_with_ai("t1")

        analysis = result.analysis
        assert analysis.summary == "Users are logged out right after signing in."
        assert analysis.complexity == "medium"
        assert analysis.requirements == ["Reproduce the logout", "Fix session token validation"]
        assert analysis.skills == ["Python", "OAuth"]
        assert analysis.challenges == ["Flaky session store in staging"]
        assert analysis.approach == "Add a failing test first, then patch the token validator."
        assert result.raw_response == FULL_ANALYSIS

        stored = await directory.get_task("t1")
        assert stored.metadata["ai_analysis"]["complexity"] == "medium"
        assert stored.metadata["ai_analysis_timestamp"] == result.timestamp.isoformat()
        assert costs.summarize().by_request_type["task_analysis"].requests == 1

    async def test_analysis_of_malformed_response(self, router, reply_with, task):
        reply_with("I cannot help with that.")

        result = await router.analyze_task_with_ai("t1")

        assert result.analysis.summary == ""
        assert result.analysis.complexity == ""
        assert result.analysis.requirements == []
        assert result.raw_response == "I cannot help with that."

    async def test_analysis_unknown_task(self, router, client):
        with pytest.raises(TaskNotFound):
            await router.analyze_task_with_ai("missing")
        client.chat.completions.create.assert_not_awaited()

    async def test_analysis_failure_is_wrapped(self, router, client, task):
        client.chat.completions.create.side_effect = _api_failure()

        with pytest.raises(AIGenerationFailed, match="Failed to analyze task with AI"):
            await router.analyze_task_with_ai("t1")

    async def test_suggestion(self, router, client, reply_with, directory, task, ai_agent, costs):
        await directory.add_agent(Agent(id="Z", name="Idle", kind=AgentKind.AI, status=AgentStatus.INACTIVE))
        reply_with(RECOMMENDATION)

        suggestion = await router.suggest_agent_for_task("t1")

        recommendation = suggestion.recommendation
        assert recommendation.agent_name == "Alice"
        assert recommendation.agent_id == "a1"
        assert recommendation.reasoning == "Strong Python and SQL background"
        assert recommendation.confidence == "high"
        assert recommendation.alternative == "Bob (b2)"
        assert recommendation.success_rate == "85%"

        prompt = client.chat.completions.create.await_args.kwargs["messages"][1]["content"]
        assert "Coder (A)" in prompt
        assert "Idle (Z)" not in prompt
        assert costs.summarize().by_request_type["agent_suggestion"].requests == 1

    async def test_suggestion_unknown_task(self, router):
        with pytest.raises(TaskNotFound):
            await router.suggest_agent_for_task("missing")


class TestParsers:
    def test_markdown_decorated_analysis(self):
        analysis = parse_task_analysis(MARKDOWN_ANALYSIS)

        assert analysis.summary == "Speed up the report export."
        assert analysis.requirements == ["Stream rows", "Keep CSV format"]
        assert analysis.complexity == "simple"

    def test_inline_list_entry(self):
        analysis = parse_task_analysis("Required Skills: Go\n- Rust")

        assert analysis.skills == ["Go", "Rust"]

    def test_recommendation_without_id(self):
        recommendation = parse_agent_recommendation("Agent: Alice\nConfidence: low")

        assert recommendation.agent_name == "Alice"
        assert recommendation.agent_id == ""
        assert recommendation.confidence == "low"

    def test_empty_recommendation(self):
        recommendation = parse_agent_recommendation("")

        assert recommendation.agent_id == ""
        assert recommendation.reasoning == ""


class TestHistory:
    async def test_last_two_in_order(self, router):
        messages = [ConversationMessage(sender_id="U", receiver_id="A", content=str(n)) for n in range(3)]
        for message in messages:
            await router.queue("A", message)

        assert router.get_history("A", 2) == messages[1:]

    async def test_limits(self):
        store = ConversationStore()
        await store.append("A", ConversationMessage(sender_id="U", receiver_id="A", content="x"))

        assert store.history("A", 0) == []
        assert store.history("A", 10)[0].content == "x"
        assert store.history("nobody") == []

    async def test_clear_and_stats(self, router):
        await router.queue("A", ConversationMessage(sender_id="U", receiver_id="A", content="x"))
        await router.queue("B", ConversationMessage(sender_id="U", receiver_id="B", content="y"))

        stats = router.stats()
        assert stats["queue_count"] == 2
        assert stats["total_messages"] == 2
        assert stats["backend"]["total_requests"] == 0

        assert await router.clear_history("A")
        assert not await router.clear_history("A")
        assert router.stats()["queue_count"] == 1


class TestPassThrough:
    async def test_chat_is_tracked(self, router, costs):
        completion = await router.chat("hello", user_id="u1")

        assert completion.text == "OK"
        assert costs.summarize(user_id="u1").by_request_type["chat"].requests == 1

    async def test_chat_errors_propagate_unchanged(self, router, client):
        client.chat.completions.create.side_effect = _api_failure()

        with pytest.raises(BackendError):
            await router.chat("hello")

    async def test_health_check(self, router, reply_with):
        reply_with("OK")
        assert await router.health_check()


class TestUnexpectedFailures:
    async def test_send_wraps_any_backend_exception(self, router, client):
        client.chat.completions.create.side_effect = ValueError("malformed payload")

        with pytest.raises(AIGenerationFailed, match="malformed payload") as exc_info:
            await router.send_ai_message("A", "hello")

        assert isinstance(exc_info.value.__cause__, ValueError)

    async def test_routing_wraps_notifier_failure(self, router, notifier, human):
        async def broken(event, agent_id, payload):
            raise OSError("transport down")

        notifier.emit = broken

        with pytest.raises(RoutingFailed, match="transport down") as exc_info:
            await router.handle_message_routing(ConversationMessage(sender_id="U", receiver_id="H", content="hi"))

        assert isinstance(exc_info.value.__cause__, OSError)

    async def test_analysis_and_suggestion_wrap_unexpected_errors(self, router, client, task):
        client.chat.completions.create.side_effect = KeyError("choices")

        with pytest.raises(AIGenerationFailed, match="Failed to analyze task with AI"):
            await router.analyze_task_with_ai("t1")
        with pytest.raises(AIGenerationFailed, match="Failed to suggest agent for task"):
            await router.suggest_agent_for_task("t1")

    async def test_enforced_stop_survives_budget_reset(self, directory, backend, costs, client):
        router = ConversationRouter(directory, backend, costs, enforce_budgets=True)
        await costs.emergency_stop()
        await costs.set_budget("default_daily", 10.0, "daily")
        await costs.set_budget("default_monthly", 200.0, "monthly")

        with pytest.raises(BudgetExhausted):
            await router.chat("hello")
        client.chat.completions.create.assert_not_awaited()


def test_complexity_on_following_line():
    analysis = parse_task_analysis("Estimated Complexity:\nhigh\nThe schema change is risky.\nRequired Skills:\n- SQL")

    assert analysis.complexity == "high"
    assert analysis.skills == ["SQL"]
