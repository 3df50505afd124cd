"""Prompt template registry - named, parameterized prompts."""

import logging
import re
from typing import Optional

from .errors import MissingVariables, TemplateNotFound
from .models import PromptTemplate, TemplateCategory, utcnow

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\{([^}]+)\}")


DEFAULT_TEMPLATES = [
    # Agent communication
    PromptTemplate(
        id="agent-introduction",
        name="Agent Introduction",
        description="Template for agent self-introduction",
        category=TemplateCategory.AGENT,
        template=(
            "Hello! I'm {agentName}, an AI agent with expertise in {capabilities}. "
            "I'm here to help you with {taskContext}. How can I assist you today?"
        ),
        variables=["agentName", "capabilities", "taskContext"],
    ),
    PromptTemplate(
        id="agent-collaboration-request",
        name="Agent Collaboration Request",
        description="Template for requesting collaboration between agents",
        category=TemplateCategory.COMMUNICATION,
        template=(
            "Hi {targetAgent}, I'm working on {taskDescription} and could use your expertise "
            "in {requiredCapability}. Would you be available to collaborate? "
            "The task involves {taskDetails}."
        ),
        variables=["targetAgent", "taskDescription", "requiredCapability", "taskDetails"],
    ),
    PromptTemplate(
        id="agent-status-update",
        name="Agent Status Update",
        description="Template for providing status updates",
        category=TemplateCategory.COMMUNICATION,
        template=(
            "Status update for {taskName}: {progressDescription}. "
            "Current status: {currentStatus}. Next steps: {nextSteps}."
        ),
        variables=["taskName", "progressDescription", "currentStatus", "nextSteps"],
    ),
    # Task analysis
    PromptTemplate(
        id="task-analysis",
        name="Task Analysis",
        description="Template for analyzing task requirements and complexity",
        category=TemplateCategory.ANALYSIS,
        template="""Analyze the following task:

Title: {taskTitle}
Description: {taskDescription}
Priority: {taskPriority}

Please provide:
1. Task Summary: {summary}
2. Key Requirements: {requirements}
3. Estimated Complexity: {complexity}
4. Required Skills: {skills}
5. Potential Challenges: {challenges}
6. Recommended Approach: {approach}""",
        variables=[
            "taskTitle", "taskDescription", "taskPriority", "summary", "requirements",
            "complexity", "skills", "challenges", "approach",
        ],
    ),
    PromptTemplate(
        id="task-breakdown",
        name="Task Breakdown",
        description="Template for breaking down complex tasks into subtasks",
        category=TemplateCategory.TASK,
        template="""Break down the following task into manageable subtasks:

Main Task: {taskTitle}
Description: {taskDescription}

Please provide a structured breakdown with:
1. Subtask 1: {subtask1}
   - Estimated time: {time1}
   - Dependencies: {deps1}
   - Required skills: {skills1}

2. Overall Timeline: {timeline}
3. Critical Path: {criticalPath}""",
        variables=[
            "taskTitle", "taskDescription", "subtask1", "time1", "deps1", "skills1",
            "timeline", "criticalPath",
        ],
    ),
    # Decision support
    PromptTemplate(
        id="agent-recommendation",
        name="Agent Recommendation",
        description="Template for recommending agents for task assignment",
        category=TemplateCategory.ANALYSIS,
        template="""Based on the task requirements and available agents, recommend the best agent:

Task: {taskDescription}
Required Skills: {requiredSkills}
Available Agents: {agentsList}

Recommendation:
- Agent: {recommendedAgent}
- Reason: {reasoning}
- Confidence: {confidenceLevel}
- Alternative: {alternativeAgent}
- Estimated Success Rate: {successRate}""",
        variables=[
            "taskDescription", "requiredSkills", "agentsList", "recommendedAgent", "reasoning",
            "confidenceLevel", "alternativeAgent", "successRate",
        ],
    ),
    PromptTemplate(
        id="escalation-request",
        name="Escalation Request",
        description="Template for escalating issues to higher-level agents",
        category=TemplateCategory.COMMUNICATION,
        template="""Issue Escalation Request:
- Task: {taskName}
- Current Agent: {currentAgent}
- Issue Description: {issueDescription}
- Impact: {impactLevel}
- Attempts Made: {attemptsMade}
- Required Assistance: {assistanceNeeded}
- Urgency: {urgencyLevel}""",
        variables=[
            "taskName", "currentAgent", "issueDescription", "impactLevel", "attemptsMade",
            "assistanceNeeded", "urgencyLevel",
        ],
    ),
    PromptTemplate(
        id="completion-report",
        name="Task Completion Report",
        description="Template for reporting task completion",
        category=TemplateCategory.COMMUNICATION,
        template="""Task Completion Report:

Task: {taskName}
Assigned to: {agentName}
Started: {startTime}
Completed: {completionTime}
Duration: {duration}

Results:
- {result1}
- {result2}
- {result3}

Challenges Overcome: {challenges}
Lessons Learned: {lessonsLearned}
Recommendations: {recommendations}""",
        variables=[
            "taskName", "agentName", "startTime", "completionTime", "duration", "result1",
            "result2", "result3", "challenges", "lessonsLearned", "recommendations",
        ],
    ),
]


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]", "-", name.lower())
    return re.sub(r"-+", "-", slug).strip("-")


def validate_template(text: str, variables: list[str]) -> tuple[bool, list[str]]:
    """Check that the placeholders in ``text`` and the declared variables agree.

    Returns ``(ok, errors)``. Independent of rendering; meant for authoring tools.
    """
    errors = []
    found = PLACEHOLDER.findall(text)

    if not found:
        if variables:
            errors.append("Template contains no variable placeholders but variables are defined")
        return not errors, errors

    for name in dict.fromkeys(found):
        if name not in variables:
            errors.append(f"Undefined variable: {name}")
    for name in variables:
        if name not in found:
            errors.append(f"Variable not used in template: {name}")

    return not errors, errors


class TemplateRegistry:
    """In-memory registry of prompt templates."""

    def __init__(self, load_defaults: bool = True):
        self._templates: dict[str, PromptTemplate] = {}
        if load_defaults:
            for template in DEFAULT_TEMPLATES:
                self._templates[template.id] = template.model_copy()

    def get(self, template_id: str) -> Optional[PromptTemplate]:
        return self._templates.get(template_id)

    def all(self) -> list[PromptTemplate]:
        return list(self._templates.values())

    def list_by_category(self, category: TemplateCategory) -> list[PromptTemplate]:
        category = TemplateCategory(category)
        return [t for t in self._templates.values() if t.category == category]

    def render(self, template_id: str, bindings: dict[str, str]) -> str:
        """Render a template.

        Every declared variable must have a non-empty binding. Placeholders that
        are not declared are left in the output untouched.
        """
        template = self._templates.get(template_id)
        if template is None:
            raise TemplateNotFound(template_id)

        missing = [name for name in template.variables if not bindings.get(name)]
        if missing:
            raise MissingVariables(missing)

        rendered = template.template
        for name in template.variables:
            rendered = rendered.replace("{" + name + "}", str(bindings[name]))
        return rendered

    def validate(self, text: str, variables: list[str]) -> tuple[bool, list[str]]:
        return validate_template(text, variables)

    def add(
        self,
        name: str,
        template: str,
        variables: list[str],
        category: TemplateCategory,
        description: str = "",
    ) -> PromptTemplate:
        """Add a custom template; its id is derived from the name."""
        prompt = PromptTemplate(
            id=slugify(name),
            name=name,
            description=description,
            category=TemplateCategory(category),
            template=template,
            variables=list(variables),
        )
        self._templates[prompt.id] = prompt
        logger.info(f"Custom prompt template added: {prompt.id}")
        return prompt

    def update(self, template_id: str, **changes) -> Optional[PromptTemplate]:
        existing = self._templates.get(template_id)
        if existing is None:
            return None

        changes.pop("id", None)
        changes.pop("created_at", None)
        data = existing.model_dump()
        data.update(changes)
        data["updated_at"] = utcnow()

        updated = PromptTemplate.model_validate(data)
        self._templates[template_id] = updated
        logger.info(f"Prompt template updated: {template_id}")
        return updated

    def delete(self, template_id: str) -> bool:
        deleted = self._templates.pop(template_id, None) is not None
        if deleted:
            logger.info(f"Prompt template deleted: {template_id}")
        return deleted
