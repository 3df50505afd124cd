"""Agent/task directory - the lookups the router depends on, plus a JSON-file store."""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

import aiofiles

from .models import (
    Agent,
    AgentStatus,
    DirectoryState,
    Task,
    TaskStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


class Directory(ABC):
    """Lookups the router consumes. Misses return None."""

    @abstractmethod
    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        pass

    @abstractmethod
    async def get_agents_by_status(self, status: AgentStatus) -> list[Agent]:
        pass

    @abstractmethod
    async def get_task(self, task_id: str) -> Optional[Task]:
        pass

    @abstractmethod
    async def update_task(self, task_id: str, patch: dict[str, Any]) -> Optional[Task]:
        pass


class StateDirectory(Directory):
    """Keeps agents and tasks in memory and mirrors them to a JSON file.

    With ``state_dir=None`` nothing is written to disk.
    """

    def __init__(self, state_dir: Optional[str] = ".ensemble"):
        self.state_dir = Path(state_dir) if state_dir else None
        self.state_file = self.state_dir / "directory.json" if self.state_dir else None
        self._state: Optional[DirectoryState] = None

    async def initialize(self) -> DirectoryState:
        """Initialize or load existing state."""
        if self._state is not None:
            return self._state

        if self.state_file is None:
            self._state = DirectoryState()
            return self._state

        self.state_dir.mkdir(parents=True, exist_ok=True)
        if self.state_file.exists():
            async with aiofiles.open(self.state_file, "r") as f:
                data = json.loads(await f.read())
                self._state = DirectoryState(**data)
        else:
            self._state = DirectoryState()
            await self._save()

        return self._state

    async def _save(self):
        """Persist state to disk."""
        if self.state_file is None:
            return
        async with aiofiles.open(self.state_file, "w") as f:
            await f.write(self.state.model_dump_json(indent=2))

    @property
    def state(self) -> DirectoryState:
        if self._state is None:
            raise RuntimeError("Directory not initialized. Call initialize() first.")
        return self._state

    # ─────────────────────────────────────────────────────────────
    # Agent Operations
    # ─────────────────────────────────────────────────────────────

    async def add_agent(self, agent: Agent) -> Agent:
        await self.initialize()
        self.state.agents = [a for a in self.state.agents if a.id != agent.id]
        self.state.agents.append(agent)
        await self._save()
        logger.info(f"Agent registered: {agent.id} ({agent.name}, {agent.kind.value})")
        return agent

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        await self.initialize()
        for agent in self.state.agents:
            if agent.id == agent_id:
                return agent
        return None

    async def get_agents_by_status(self, status: AgentStatus) -> list[Agent]:
        await self.initialize()
        return [a for a in self.state.agents if a.status == status]

    async def list_agents(self) -> list[Agent]:
        await self.initialize()
        return list(self.state.agents)

    # ─────────────────────────────────────────────────────────────
    # Task Operations
    # ─────────────────────────────────────────────────────────────

    async def add_task(self, task: Task) -> Task:
        await self.initialize()
        self.state.tasks = [t for t in self.state.tasks if t.id != task.id]
        self.state.tasks.append(task)
        await self._save()
        logger.info(f"Task created: {task.id} ({task.title}, {task.priority.value})")
        return task

    async def get_task(self, task_id: str) -> Optional[Task]:
        await self.initialize()
        for task in self.state.tasks:
            if task.id == task_id:
                return task
        return None

    async def list_tasks(self, status: Optional[TaskStatus] = None) -> list[Task]:
        await self.initialize()
        tasks = self.state.tasks
        if status:
            tasks = [t for t in tasks if t.status == status]
        return list(tasks)

    async def update_task(self, task_id: str, patch: dict[str, Any]) -> Optional[Task]:
        """Apply a partial update. Completing a task stamps ``completed_at``."""
        await self.initialize()
        for index, task in enumerate(self.state.tasks):
            if task.id != task_id:
                continue

            data = task.model_dump()
            data.update({k: v for k, v in patch.items() if k not in ("id", "created_at")})
            data["updated_at"] = utcnow()
            if TaskStatus(data["status"]) == TaskStatus.COMPLETED and data.get("completed_at") is None:
                data["completed_at"] = utcnow()

            updated = Task.model_validate(data)
            self.state.tasks[index] = updated
            await self._save()
            return updated

        return None
