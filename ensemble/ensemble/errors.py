"""Error taxonomy for Ensemble."""


class EnsembleError(Exception):
    """Base exception for Ensemble domain errors."""

    def __init__(self, detail: str = ""):
        super().__init__(detail)
        self.detail = detail


class NotFound(EnsembleError):
    """Raised when an agent, task or template cannot be found."""


class AgentNotFound(NotFound):
    def __init__(self, agent_id: str):
        super().__init__(f"Agent not found: {agent_id}")
        self.agent_id = agent_id


class TaskNotFound(NotFound):
    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class TemplateNotFound(NotFound):
    def __init__(self, template_id: str):
        super().__init__(f"Template not found: {template_id}")
        self.template_id = template_id


class ValidationFailed(EnsembleError):
    """Raised when input to an operation is incomplete or malformed."""


class MissingVariables(ValidationFailed):
    """Raised when a template render is missing declared variables."""

    def __init__(self, names: list[str]):
        super().__init__(f"Missing required variables: {', '.join(names)}")
        self.names = list(names)


class RateLimited(EnsembleError):
    """Raised before a backend call when a request quota is exhausted."""

    def __init__(self, window: str):
        super().__init__(f"Rate limit exceeded: Too many requests per {window}")
        self.window = window


class BackendError(EnsembleError):
    """Raised when the remote completion call fails or times out."""


class BudgetExhausted(EnsembleError):
    """Raised only when budget enforcement is switched on."""


class AIGenerationFailed(EnsembleError):
    """Wraps a lower-layer failure while generating an AI reply or analysis."""


class RoutingFailed(EnsembleError):
    """Wraps a lower-layer failure while routing a message."""

    def __init__(self, detail: str, sender_id: str = "", receiver_id: str = ""):
        super().__init__(detail)
        self.sender_id = sender_id
        self.receiver_id = receiver_id
