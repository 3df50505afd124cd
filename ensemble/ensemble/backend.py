"""Generative backend client - quota-guarded, metered calls to an OpenAI-compatible API."""

import asyncio
import logging
import time
from typing import Callable, Optional

from openai import AsyncOpenAI, OpenAIError

from .config import EnsembleConfig, ModelRates
from .errors import BackendError, RateLimited
from .models import Agent, Completion, PriorMessage, TokenUsage

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant in a multi-agent collaboration platform."

HEALTH_SYSTEM_PROMPT = 'Respond with "OK" only.'

TASK_ANALYSIS_PROMPT = """You are a task analysis AI assistant. Analyze the task you are given.

Answer using exactly these labeled sections, each label at the start of its own line:
Task Summary: <one or two sentences>
Key Requirements:
- <requirement>
Estimated Complexity: <simple, medium or complex>
Required Skills:
- <skill>
Potential Challenges:
- <challenge>
Recommended Approach: <one or two sentences>

Keep your response concise and structured."""

ASSIGNMENT_PROMPT = """You are a task assignment AI assistant. Based on the task description and available agents, recommend the best agent for this task.
Consider:
1. Agent capabilities and how they match task requirements
2. Agent current status (prefer 'active' agents)
3. Task complexity and agent expertise

Respond with this block and nothing else:
Recommendation:
- Agent: <agent name> (<agent id>)
- Reason: <reasoning>
- Confidence: <high, medium or low>
- Alternative: <alternative agent name and id, or none>
- Estimated Success Rate: <percentage>"""


def build_agent_system_prompt(agent_id: str, task_id: Optional[str] = None) -> str:
    """Identity prompt for an AI agent taking part in a conversation."""
    prompt = f"""You are an AI agent in a multi-agent collaboration platform. Your agent ID is {agent_id}.

Your role is to:
1. Communicate professionally and helpfully with other agents
2. Provide insightful responses based on the task context
3. Collaborate effectively to achieve common goals
4. Ask clarifying questions when needed
5. Share relevant information and expertise
"""
    if task_id:
        prompt += f"\nYou are working on task ID: {task_id}\n"
    prompt += "Keep your responses focused, professional, and actionable."
    return prompt


def build_agent_user_prompt(content: str, previous_messages: Optional[list[PriorMessage]] = None) -> str:
    prompt = content
    if previous_messages:
        prompt += "\n\nPrevious conversation:\n"
        for msg in previous_messages:
            prompt += f"{msg.sender_id}: {msg.content}\n"
    return prompt


def format_agent_list(agents: list[Agent]) -> str:
    return "\n".join(
        f"- {agent.name} ({agent.id}): {', '.join(agent.capabilities)} - Status: {agent.status.value}"
        for agent in agents
    )


def rates_for(model: str, cost_rates: dict[str, ModelRates]) -> ModelRates:
    """Rates of the longest configured family that prefixes the model name."""
    families = [f for f in cost_rates if f != "default" and model.startswith(f)]
    if families:
        return cost_rates[max(families, key=len)]
    return cost_rates["default"]


def compute_cost(usage: TokenUsage, rates: ModelRates) -> float:
    input_cost = usage.prompt_tokens / 1000 * rates.input
    output_cost = usage.completion_tokens / 1000 * rates.output
    return input_cost + output_cost


class RateLimiter:
    """Per-minute and per-hour request counters with lazy window resets."""

    def __init__(
        self,
        requests_per_minute: int,
        requests_per_hour: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.requests_per_minute = requests_per_minute
        self.requests_per_hour = requests_per_hour
        self._clock = clock
        self._lock = asyncio.Lock()
        self.minute_count = 0
        self.hour_count = 0
        self._minute_reset = clock()
        self._hour_reset = clock()

    def _roll_windows(self):
        now = self._clock()
        if now - self._minute_reset >= 60:
            self.minute_count = 0
            self._minute_reset = now
        if now - self._hour_reset >= 3600:
            self.hour_count = 0
            self._hour_reset = now

    async def acquire(self):
        """Reserve one request or raise RateLimited."""
        async with self._lock:
            self._roll_windows()
            if self.minute_count >= self.requests_per_minute:
                raise RateLimited("minute")
            if self.hour_count >= self.requests_per_hour:
                raise RateLimited("hour")
            self.minute_count += 1
            self.hour_count += 1

    def remaining(self) -> dict[str, int]:
        self._roll_windows()
        return {
            "minute_remaining": max(0, self.requests_per_minute - self.minute_count),
            "hour_remaining": max(0, self.requests_per_hour - self.hour_count),
        }


class GenerativeBackend:
    """Wraps the completion API with quotas, cost accounting and prompt helpers."""

    def __init__(
        self,
        config: Optional[EnsembleConfig] = None,
        client: Optional[AsyncOpenAI] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or EnsembleConfig()
        self._client = client
        self.limiter = RateLimiter(
            self.config.rate_limit.requests_per_minute,
            self.config.rate_limit.requests_per_hour,
            clock=clock,
        )
        self.total_requests = 0
        self.total_tokens = 0
        self.total_cost = 0.0

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            settings = self.config.backend
            if not settings.api_key:
                raise BackendError("No API key configured. Set OPENAI_API_KEY.")
            self._client = AsyncOpenAI(
                api_key=settings.api_key,
                base_url=settings.base_url,
                timeout=settings.timeout,
                max_retries=0,  # no retries in this layer
            )
        return self._client

    async def close(self):
        if self._client is not None:
            await self._client.close()

    def cost_for(self, usage: TokenUsage, model: str) -> float:
        return compute_cost(usage, rates_for(model, self.config.cost_rates))

    async def complete(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
    ) -> Completion:
        """Issue one completion. Raises RateLimited before the call, BackendError on failure."""
        settings = self.config.backend
        model = model or settings.model
        temperature = settings.temperature if temperature is None else temperature
        max_tokens = settings.max_tokens if max_tokens is None else max_tokens

        await self.limiter.acquire()

        logger.info(f"Generating AI response with {model} (prompt {len(prompt)} chars, max_tokens {max_tokens})")

        try:
            client = self._get_client()
            response = await asyncio.wait_for(
                client.chat.completions.create(
                    model=model,
                    messages=[
                        {"role": "system", "content": system_prompt or DEFAULT_SYSTEM_PROMPT},
                        {"role": "user", "content": prompt},
                    ],
                    temperature=temperature,
                    max_tokens=max_tokens,
                ),
                timeout=settings.timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"AI request timed out after {settings.timeout}s")
            raise BackendError(f"AI service error: request timed out after {settings.timeout}s") from e
        except OpenAIError as e:
            logger.error(f"AI request failed: {e}")
            raise BackendError(f"AI service error: {e}") from e

        text = ""
        if response.choices and response.choices[0].message.content:
            text = response.choices[0].message.content

        usage = TokenUsage()
        if response.usage is not None:
            usage = TokenUsage(
                prompt_tokens=response.usage.prompt_tokens or 0,
                completion_tokens=response.usage.completion_tokens or 0,
                total_tokens=response.usage.total_tokens or 0,
            )
        cost = self.cost_for(usage, model)

        self.total_requests += 1
        self.total_tokens += usage.total_tokens
        self.total_cost += cost

        logger.info(f"AI response generated: {usage.total_tokens} tokens, cost {cost:.4f}, {len(text)} chars")
        return Completion(text=text, usage=usage, cost=cost, model=model)

    # ─────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────

    async def agent_reply(
        self,
        agent_id: str,
        content: str,
        task_id: Optional[str] = None,
        previous_messages: Optional[list[PriorMessage]] = None,
    ) -> Completion:
        """Reply in the voice of an AI agent; low temperature for consistency."""
        return await self.complete(
            prompt=build_agent_user_prompt(content, previous_messages),
            system_prompt=build_agent_system_prompt(agent_id, task_id),
            temperature=0.3,
            max_tokens=1000,
        )

    async def analyze_task(self, title: str, description: str) -> Completion:
        prompt = f"Task Title: {title}\n\nTask Description: {description}\n\nPlease analyze this task."
        return await self.complete(
            prompt=prompt,
            system_prompt=TASK_ANALYSIS_PROMPT,
            temperature=0.2,
            max_tokens=800,
        )

    async def suggest_assignment(self, description: str, agents: list[Agent]) -> Completion:
        prompt = (
            f"Task Description: {description}\n\n"
            f"Available Agents:\n{format_agent_list(agents)}\n\n"
            "Recommend the best agent for this task."
        )
        return await self.complete(
            prompt=prompt,
            system_prompt=ASSIGNMENT_PROMPT,
            temperature=0.1,
            max_tokens=600,
        )

    async def health_check(self) -> bool:
        """Probe the backend with a fixed prompt. Counts against the quotas."""
        try:
            completion = await self.complete(
                prompt="test",
                system_prompt=HEALTH_SYSTEM_PROMPT,
                max_tokens=5,
            )
        except (RateLimited, BackendError) as e:
            logger.error(f"AI service health check failed: {e}")
            return False
        return completion.text.strip() == "OK"

    def usage_stats(self) -> dict:
        return {
            "total_requests": self.total_requests,
            "total_tokens": self.total_tokens,
            "total_cost": self.total_cost,
            "rate_limit": self.limiter.remaining(),
        }
