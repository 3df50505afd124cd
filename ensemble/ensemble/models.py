"""Data models for Ensemble agent orchestration and cost governance."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AgentKind(str, Enum):
    AI = "ai"
    HUMAN = "human"
    BOT = "bot"


class AgentStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    BUSY = "busy"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TaskStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class MessageType(str, Enum):
    TEXT = "text"
    ACTION = "action"
    REQUEST = "request"
    RESPONSE = "response"


class TemplateCategory(str, Enum):
    AGENT = "agent"
    TASK = "task"
    COMMUNICATION = "communication"
    ANALYSIS = "analysis"


class RequestType(str, Enum):
    CHAT = "chat"
    AGENT_COMMUNICATION = "agent_communication"
    TASK_ANALYSIS = "task_analysis"
    AGENT_SUGGESTION = "agent_suggestion"
    OTHER = "other"


class BudgetPeriod(str, Enum):
    DAILY = "daily"
    MONTHLY = "monthly"
    PROJECT = "project"


class AlertSeverity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


# ─────────────────────────────────────────────────────────────────────────────
# Directory entities
# ─────────────────────────────────────────────────────────────────────────────

class Agent(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    kind: AgentKind
    capabilities: list[str] = Field(default_factory=list)
    status: AgentStatus = AgentStatus.ACTIVE
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Task(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    title: str
    description: str
    status: TaskStatus = TaskStatus.PENDING
    priority: Priority = Priority.MEDIUM
    assigned_to: Optional[str] = None
    created_by: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


# ─────────────────────────────────────────────────────────────────────────────
# Conversation
# ─────────────────────────────────────────────────────────────────────────────

class ConversationMessage(BaseModel):
    id: str = Field(default_factory=lambda: f"msg_{uuid.uuid4().hex[:12]}")
    sender_id: str
    receiver_id: str
    content: str
    type: MessageType = MessageType.TEXT
    priority: Priority = Priority.MEDIUM
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class PriorMessage(BaseModel):
    """One line of earlier conversation handed to the agent-reply prompt."""
    sender_id: str
    content: str
    timestamp: datetime = Field(default_factory=utcnow)


class PromptTemplate(BaseModel):
    id: str
    name: str
    description: str = ""
    category: TemplateCategory
    template: str
    variables: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ─────────────────────────────────────────────────────────────────────────────
# Backend usage and cost
# ─────────────────────────────────────────────────────────────────────────────

class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class Completion(BaseModel):
    text: str
    usage: TokenUsage = Field(default_factory=TokenUsage)
    cost: float = 0.0
    model: str


class CostEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"cost_{uuid.uuid4().hex[:12]}")
    timestamp: datetime = Field(default_factory=utcnow)
    user_id: Optional[str] = None
    agent_id: Optional[str] = None
    task_id: Optional[str] = None
    request_type: RequestType = RequestType.OTHER
    model: str
    usage: TokenUsage = Field(default_factory=TokenUsage)
    cost: float = 0.0
    metadata: dict[str, Any] = Field(default_factory=dict)


class Budget(BaseModel):
    key: str
    user_id: Optional[str] = None
    limit: float
    spent: float = 0.0
    period: BudgetPeriod

    def applies_to(self, user_id: Optional[str]) -> bool:
        """Global budgets match every event; scoped ones only their user."""
        return self.user_id is None or self.user_id == user_id

    def percentage(self, spent: Optional[float] = None) -> float:
        spent = self.spent if spent is None else spent
        if self.limit <= 0:
            return 100.0
        return spent * 100 / self.limit


class BudgetAlert(BaseModel):
    id: str = Field(default_factory=lambda: f"alert_{uuid.uuid4().hex[:12]}")
    timestamp: datetime = Field(default_factory=utcnow)
    user_id: Optional[str] = None
    budget_key: str
    budget_type: BudgetPeriod
    limit: float
    spent: float
    severity: AlertSeverity
    message: str


class BudgetStatus(BaseModel):
    key: str
    user_id: Optional[str] = None
    limit: float
    spent: float
    remaining: float
    percentage: float
    period: BudgetPeriod
    status: str  # healthy, warning, critical


class Breakdown(BaseModel):
    cost: float = 0.0
    tokens: int = 0
    requests: int = 0


class CostSummary(BaseModel):
    total_cost: float = 0.0
    total_tokens: int = 0
    total_requests: int = 0
    by_model: dict[str, Breakdown] = Field(default_factory=dict)
    by_request_type: dict[str, Breakdown] = Field(default_factory=dict)
    by_day: dict[str, Breakdown] = Field(default_factory=dict)
    start: datetime
    end: datetime


class CostForecast(BaseModel):
    days: int
    projected_cost: float
    projected_tokens: float
    confidence: str  # low, medium, high
    daily_average: float
    trend: str  # increasing, stable, decreasing


# ─────────────────────────────────────────────────────────────────────────────
# Structured model output
# ─────────────────────────────────────────────────────────────────────────────

class TaskAnalysis(BaseModel):
    summary: str = ""
    requirements: list[str] = Field(default_factory=list)
    complexity: str = ""
    skills: list[str] = Field(default_factory=list)
    challenges: list[str] = Field(default_factory=list)
    approach: str = ""


class TaskAnalysisResult(BaseModel):
    task_id: str
    analysis: TaskAnalysis
    raw_response: str
    timestamp: datetime = Field(default_factory=utcnow)


class AgentRecommendation(BaseModel):
    agent_id: str = ""
    agent_name: str = ""
    reasoning: str = ""
    confidence: str = ""
    alternative: str = ""
    success_rate: str = ""


class AgentSuggestion(BaseModel):
    task_id: str
    recommendation: AgentRecommendation
    raw_response: str
    timestamp: datetime = Field(default_factory=utcnow)


class DirectoryState(BaseModel):
    """Full state of the agent/task directory, persisted as JSON."""
    agents: list[Agent] = Field(default_factory=list)
    tasks: list[Task] = Field(default_factory=list)
