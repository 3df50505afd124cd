"""Agent conversation router - delivery decisions, AI replies and task intelligence."""

import asyncio
import logging
import re
from typing import Optional

from .backend import GenerativeBackend
from .config import EnsembleConfig
from .costs import CostTracker
from .directory import Directory
from .errors import (
    AgentNotFound,
    AIGenerationFailed,
    BudgetExhausted,
    EnsembleError,
    RoutingFailed,
    TaskNotFound,
)
from .models import (
    AgentKind,
    AgentRecommendation,
    AgentStatus,
    AgentSuggestion,
    Completion,
    ConversationMessage,
    CostEvent,
    MessageType,
    PriorMessage,
    RequestType,
    TaskAnalysis,
    TaskAnalysisResult,
    utcnow,
)
from .notify import AI_REPLY, MESSAGE_DELIVERED, Notifier
from .templates import TemplateRegistry

logger = logging.getLogger(__name__)

# History entries handed to the model as context when an AI agent replies
CONTEXT_WINDOW = 5


# ─────────────────────────────────────────────────────────────────────────────
# Parsing of free-text model output
# ─────────────────────────────────────────────────────────────────────────────

ANALYSIS_SECTIONS = {
    "Task Summary:": "summary",
    "Key Requirements:": "requirements",
    "Estimated Complexity:": "complexity",
    "Required Skills:": "skills",
    "Potential Challenges:": "challenges",
    "Recommended Approach:": "approach",
}
LIST_SECTIONS = {"requirements", "skills", "challenges"}
TEXT_SECTIONS = {"summary", "approach"}

RECOMMENDATION_FIELDS = {
    "Agent:": "agent",
    "Reason:": "reasoning",
    "Confidence:": "confidence",
    "Alternative:": "alternative",
    "Estimated Success Rate:": "success_rate",
}

ENUMERATOR = re.compile(r"^\d+[.)]\s*")
BULLET = re.compile(r"^(?:[-*•]|\d+[.)])\s+(.*)$")
PARENTHESIZED = re.compile(r"\(([^)]+)\)")


def _detail(error: Exception) -> str:
    return error.detail if isinstance(error, EnsembleError) else str(error)


def _match_prefix(line: str, prefixes: dict[str, str]) -> Optional[tuple[str, str]]:
    for prefix, name in prefixes.items():
        if line.startswith(prefix):
            return name, line[len(prefix):].strip()
    return None


def parse_task_analysis(text: str) -> TaskAnalysis:
    """Best-effort extraction of the six labeled analysis sections.

    Lines that match no section header or bullet are ignored; a response
    without any header yields an empty analysis.
    """
    analysis = TaskAnalysis()
    section = None

    for raw in text.splitlines():
        line = raw.strip().replace("**", "").strip()
        if not line:
            continue

        header = _match_prefix(ENUMERATOR.sub("", line), ANALYSIS_SECTIONS)
        if header:
            section, rest = header
            if section in LIST_SECTIONS:
                if rest:
                    getattr(analysis, section).append(rest)
            else:
                setattr(analysis, section, rest)
            continue

        bullet = BULLET.match(line)
        if bullet and section in LIST_SECTIONS:
            getattr(analysis, section).append(bullet.group(1).strip())
        elif not bullet and section in TEXT_SECTIONS:
            current = getattr(analysis, section)
            setattr(analysis, section, f"{current} {line}".strip())
        elif not bullet and section == "complexity" and not analysis.complexity:
            analysis.complexity = line

    return analysis


def parse_agent_recommendation(text: str) -> AgentRecommendation:
    """Best-effort extraction of the labeled recommendation block."""
    recommendation = AgentRecommendation()

    for raw in text.splitlines():
        line = raw.strip().replace("**", "")
        line = re.sub(r"^[-*•]\s*", "", line.strip())
        matched = _match_prefix(line, RECOMMENDATION_FIELDS)
        if not matched:
            continue

        name, value = matched
        if name == "agent":
            recommendation.agent_name = value.split("(")[0].strip()
            agent_id = PARENTHESIZED.search(value)
            recommendation.agent_id = agent_id.group(1).strip() if agent_id else ""
        else:
            setattr(recommendation, name, value)

    return recommendation


# ─────────────────────────────────────────────────────────────────────────────
# Conversation store
# ─────────────────────────────────────────────────────────────────────────────

class ConversationStore:
    """Per-agent, append-only message history held in memory."""

    def __init__(self):
        self._queues: dict[str, list[ConversationMessage]] = {}
        self._lock = asyncio.Lock()

    async def append(self, agent_id: str, message: ConversationMessage):
        async with self._lock:
            self._queues.setdefault(agent_id, []).append(message)

    def history(self, agent_id: str, limit: int = 50) -> list[ConversationMessage]:
        """The last ``limit`` messages for an agent, oldest first."""
        if limit <= 0:
            return []
        return list(self._queues.get(agent_id, [])[-limit:])

    async def clear(self, agent_id: str) -> bool:
        async with self._lock:
            cleared = self._queues.pop(agent_id, None) is not None
        logger.info(f"Agent message queue cleared: {agent_id}")
        return cleared

    def stats(self) -> dict:
        return {
            "queue_count": len(self._queues),
            "total_messages": sum(len(q) for q in self._queues.values()),
        }


# ─────────────────────────────────────────────────────────────────────────────
# Router
# ─────────────────────────────────────────────────────────────────────────────

class ConversationRouter:
    """Routes messages between agents and drives every AI-backed protocol.

    Collaborators are injected so that each instance owns isolated counters,
    budgets and histories.
    """

    def __init__(
        self,
        directory: Directory,
        backend: GenerativeBackend,
        costs: CostTracker,
        templates: Optional[TemplateRegistry] = None,
        notifier: Optional[Notifier] = None,
        store: Optional[ConversationStore] = None,
        enforce_budgets: bool = False,
    ):
        self.directory = directory
        self.backend = backend
        self.costs = costs
        self.templates = templates or TemplateRegistry()
        self.notifier = notifier or Notifier()
        self.store = store or ConversationStore()
        self.enforce_budgets = enforce_budgets

    @classmethod
    def from_config(
        cls,
        config: EnsembleConfig,
        directory: Directory,
        notifier: Optional[Notifier] = None,
        backend: Optional[GenerativeBackend] = None,
    ) -> "ConversationRouter":
        return cls(
            directory=directory,
            backend=backend or GenerativeBackend(config),
            costs=CostTracker.from_config(config),
            notifier=notifier,
            enforce_budgets=config.budget.enforce,
        )

    # ─────────────────────────────────────────────────────────────
    # Bookkeeping
    # ─────────────────────────────────────────────────────────────

    def _check_budget(self, user_id: Optional[str] = None):
        if not self.enforce_budgets:
            return
        status = self.costs.exhausted(user_id)
        if status is not None:
            raise BudgetExhausted(f"Budget {status.key} exhausted ({status.spent:.4f} of {status.limit:.4f})")

    async def _track(
        self,
        completion: Completion,
        request_type: RequestType,
        user_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        task_id: Optional[str] = None,
    ):
        await self.costs.track(CostEvent(
            user_id=user_id,
            agent_id=agent_id,
            task_id=task_id,
            request_type=request_type,
            model=completion.model,
            usage=completion.usage,
            cost=completion.cost,
        ))

    async def _deliver(self, message: ConversationMessage):
        """Forward to the receiver's channel and queue it. No generation happens here."""
        await self.notifier.emit(MESSAGE_DELIVERED, message.receiver_id, {
            "message_id": message.id,
            "sender_id": message.sender_id,
            "type": message.type.value,
            "priority": message.priority.value,
            "content": message.content,
        })
        await self.store.append(message.receiver_id, message)

    # ─────────────────────────────────────────────────────────────
    # Pass-through
    # ─────────────────────────────────────────────────────────────

    async def chat(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Completion:
        """Plain completion, metered like every other call. Errors propagate unchanged."""
        self._check_budget(user_id)
        completion = await self.backend.complete(prompt, system_prompt, temperature, max_tokens, model)
        await self._track(completion, RequestType.CHAT, user_id=user_id)
        return completion

    async def health_check(self) -> bool:
        return await self.backend.health_check()

    # ─────────────────────────────────────────────────────────────
    # Agent messaging
    # ─────────────────────────────────────────────────────────────

    async def send_ai_message(
        self,
        agent_id: str,
        content: str,
        task_id: Optional[str] = None,
        previous_messages: Optional[list[PriorMessage]] = None,
        sender_id: str = "user",
        user_id: Optional[str] = None,
        message: Optional[ConversationMessage] = None,
    ) -> str:
        """Generate a reply as ``agent_id`` and record both turns in its history.

        ``message`` is the routed message being answered, when there is one; it is
        recorded as the inbound turn instead of a freshly built entry.
        """
        logger.info(
            f"Processing AI agent message for {agent_id} "
            f"(task {task_id or '-'}, {len(content)} chars, {len(previous_messages or [])} prior)"
        )

        try:
            self._check_budget(user_id)
            completion = await self.backend.agent_reply(agent_id, content, task_id, previous_messages)
        except Exception as e:
            logger.error(f"AI message processing failed for {agent_id}: {_detail(e)}")
            raise AIGenerationFailed(f"Failed to process AI message: {_detail(e)}") from e

        await self._track(
            completion, RequestType.AGENT_COMMUNICATION, user_id=user_id, agent_id=agent_id, task_id=task_id
        )

        if message is None:
            inbound = ConversationMessage(
                sender_id=sender_id,
                receiver_id=agent_id,
                content=content,
                metadata={"role": "user"},
            )
        else:
            inbound = message.model_copy(update={"metadata": {**message.metadata, "role": "user"}})

        reply = ConversationMessage(
            sender_id=agent_id,
            receiver_id=inbound.sender_id,
            content=completion.text,
            type=MessageType.RESPONSE,
            priority=inbound.priority,
            metadata={"role": "assistant", "response_to": inbound.id},
        )
        await self.store.append(agent_id, inbound)
        await self.store.append(agent_id, reply)

        await self.notifier.emit(AI_REPLY, agent_id, {
            "message_id": reply.id,
            "sender_id": agent_id,
            "content": completion.text,
        })
        return completion.text

    async def handle_message_routing(self, message: ConversationMessage) -> Optional[ConversationMessage]:
        """Deliver one message.

        AI receivers answer once: the reply is generated, then delivered back to
        the sender without further generation. Human and bot receivers only get
        the message forwarded. Returns the synthesized reply, if any.
        """
        logger.info(
            f"Routing agent message {message.id} from {message.sender_id} to {message.receiver_id} "
            f"({message.type.value}, {message.priority.value})"
        )

        receiver = await self.directory.get_agent(message.receiver_id)
        if receiver is None:
            logger.error(f"Message routing failed from {message.sender_id}: receiver {message.receiver_id} not found")
            raise AgentNotFound(message.receiver_id)

        try:
            if receiver.kind == AgentKind.AI:
                response = await self._reply_as_ai(message)
                await self._deliver(response)
                return response

            await self._deliver(message)
            return None
        except Exception as e:
            logger.error(f"Message routing failed from {message.sender_id} to {message.receiver_id}: {_detail(e)}")
            raise RoutingFailed(
                f"Failed to route message: {_detail(e)}", message.sender_id, message.receiver_id
            ) from e

    async def _reply_as_ai(self, message: ConversationMessage) -> ConversationMessage:
        previous = [
            PriorMessage(sender_id=m.sender_id, content=m.content, timestamp=m.timestamp)
            for m in self.store.history(message.receiver_id, CONTEXT_WINDOW)
        ]
        text = await self.send_ai_message(
            message.receiver_id,
            message.content,
            task_id=message.metadata.get("task_id"),
            previous_messages=previous,
            sender_id=message.sender_id,
            user_id=message.metadata.get("user_id"),
            message=message,
        )
        return ConversationMessage(
            sender_id=message.receiver_id,
            receiver_id=message.sender_id,
            content=text,
            type=MessageType.RESPONSE,
            priority=message.priority,
            metadata={**message.metadata, "response_to": message.id},
        )

    # ─────────────────────────────────────────────────────────────
    # Conversational protocols
    # ─────────────────────────────────────────────────────────────

    async def generate_agent_introduction(
        self, agent_id: str, task_id: Optional[str] = None, team_name: Optional[str] = None
    ) -> str:
        agent = await self.directory.get_agent(agent_id)
        if agent is None:
            raise AgentNotFound(agent_id)

        logger.info(f"Generating introduction for {agent_id} (task {task_id or '-'}, team {team_name or '-'})")
        task_context = f"working on task {task_id}" if task_id else "available to assist"
        return self.templates.render("agent-introduction", {
            "agentName": agent.name,
            "capabilities": ", ".join(agent.capabilities),
            "taskContext": task_context,
        })

    async def request_agent_collaboration(
        self,
        requester_id: str,
        target_agent_id: str,
        task_description: str,
        required_capability: str,
        task_details: str,
    ) -> str:
        target = await self.directory.get_agent(target_agent_id)
        if target is None:
            raise AgentNotFound(target_agent_id)

        request = self.templates.render("agent-collaboration-request", {
            "targetAgent": target.name,
            "taskDescription": task_description,
            "requiredCapability": required_capability,
            "taskDetails": task_details,
        })
        return await self.send_ai_message(
            target_agent_id,
            request,
            previous_messages=[PriorMessage(sender_id=requester_id, content=request)],
            sender_id=requester_id,
        )

    async def provide_status_update(
        self,
        agent_id: str,
        task_name: str,
        progress_description: str,
        current_status: str,
        next_steps: str,
    ) -> str:
        update = self.templates.render("agent-status-update", {
            "taskName": task_name,
            "progressDescription": progress_description,
            "currentStatus": current_status,
            "nextSteps": next_steps,
        })
        return await self.send_ai_message(agent_id, update, previous_messages=[])

    # ─────────────────────────────────────────────────────────────
    # Task intelligence
    # ─────────────────────────────────────────────────────────────

    async def analyze_task_with_ai(self, task_id: str) -> TaskAnalysisResult:
        task = await self.directory.get_task(task_id)
        if task is None:
            raise TaskNotFound(task_id)

        try:
            self._check_budget()
            completion = await self.backend.analyze_task(task.title, task.description)
        except Exception as e:
            logger.error(f"Task AI analysis failed for {task_id}: {_detail(e)}")
            raise AIGenerationFailed(f"Failed to analyze task with AI: {_detail(e)}") from e

        await self._track(completion, RequestType.TASK_ANALYSIS, task_id=task_id)

        analysis = parse_task_analysis(completion.text)
        result = TaskAnalysisResult(task_id=task_id, analysis=analysis, raw_response=completion.text)

        updated = await self.directory.update_task(task_id, {
            "metadata": {
                **task.metadata,
                "ai_analysis": analysis.model_dump(),
                "ai_analysis_timestamp": result.timestamp.isoformat(),
            }
        })
        if updated is None:
            raise TaskNotFound(task_id)

        return result

    async def suggest_agent_for_task(self, task_id: str) -> AgentSuggestion:
        task = await self.directory.get_task(task_id)
        if task is None:
            raise TaskNotFound(task_id)

        candidates = await self.directory.get_agents_by_status(AgentStatus.ACTIVE)

        try:
            self._check_budget()
            completion = await self.backend.suggest_assignment(task.description, candidates)
        except Exception as e:
            logger.error(f"Agent suggestion failed for {task_id}: {_detail(e)}")
            raise AIGenerationFailed(f"Failed to suggest agent for task: {_detail(e)}") from e

        await self._track(completion, RequestType.AGENT_SUGGESTION, task_id=task_id)

        return AgentSuggestion(
            task_id=task_id,
            recommendation=parse_agent_recommendation(completion.text),
            raw_response=completion.text,
            timestamp=utcnow(),
        )

    # ─────────────────────────────────────────────────────────────
    # Conversation queues
    # ─────────────────────────────────────────────────────────────

    async def queue(self, agent_id: str, message: ConversationMessage):
        await self.store.append(agent_id, message)

    def get_history(self, agent_id: str, limit: int = 50) -> list[ConversationMessage]:
        return self.store.history(agent_id, limit)

    async def clear_history(self, agent_id: str) -> bool:
        return await self.store.clear(agent_id)

    def stats(self) -> dict:
        return {
            **self.store.stats(),
            "backend": self.backend.usage_stats(),
        }
