"""Ensemble MCP Server - agent messaging, task intelligence and cost governance as tools."""

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import aiofiles
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import Tool, TextContent

from .config import EnsembleConfig
from .directory import StateDirectory
from .errors import EnsembleError
from .logs import setup_logging
from .models import (
    Agent,
    AgentKind,
    AgentStatus,
    BudgetPeriod,
    ConversationMessage,
    MessageType,
    PriorMessage,
    Priority,
    Task,
    TemplateCategory,
)
from .notify import TranscriptNotifier
from .router import ConversationRouter

logger = logging.getLogger(__name__)

server = Server("ensemble")
_router: Optional[ConversationRouter] = None


def get_router() -> ConversationRouter:
    """Build the router and its collaborators on first use."""
    global _router
    if _router is None:
        config = EnsembleConfig.load()
        directory = StateDirectory(config.state_dir)
        notifier = TranscriptNotifier(str(Path(config.state_dir) / "transcript.md"))
        _router = ConversationRouter.from_config(config, directory, notifier=notifier)
    return _router


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _dump(items) -> list[dict]:
    return [item.model_dump(mode="json") for item in items]


# ─────────────────────────────────────────────────────────────────────────────
# Tool Definitions
# ─────────────────────────────────────────────────────────────────────────────

_PRIORITIES = ["low", "medium", "high"]

TOOLS = [
    # Directory
    Tool(
        name="ensemble_register_agent",
        description="Register an agent (ai, human or bot) with its capabilities.",
        inputSchema={
            "type": "object",
            "properties": {
                "name": {"type": "string"},
                "kind": {"type": "string", "enum": ["ai", "human", "bot"]},
                "capabilities": {"type": "array", "items": {"type": "string"}},
                "status": {"type": "string", "enum": ["active", "inactive", "busy"], "default": "active"},
                "agent_id": {"type": "string", "description": "Explicit id (optional)"}
            },
            "required": ["name", "kind"]
        }
    ),
    Tool(
        name="ensemble_create_task",
        description="Create a task in the directory.",
        inputSchema={
            "type": "object",
            "properties": {
                "title": {"type": "string"},
                "description": {"type": "string"},
                "priority": {"type": "string", "enum": _PRIORITIES, "default": "medium"},
                "created_by": {"type": "string"}
            },
            "required": ["title", "description"]
        }
    ),

    # Messaging
    Tool(
        name="ensemble_chat",
        description="Plain completion against the generative backend.",
        inputSchema={
            "type": "object",
            "properties": {
                "prompt": {"type": "string"},
                "system_prompt": {"type": "string"},
                "temperature": {"type": "number", "minimum": 0, "maximum": 2},
                "max_tokens": {"type": "integer", "minimum": 1, "maximum": 4000},
                "model": {"type": "string"},
                "user_id": {"type": "string"}
            },
            "required": ["prompt"]
        }
    ),
    Tool(
        name="ensemble_send_agent_message",
        description="Ask an AI agent for a reply, optionally with task context and prior messages.",
        inputSchema={
            "type": "object",
            "properties": {
                "agent_id": {"type": "string"},
                "content": {"type": "string"},
                "task_id": {"type": "string"},
                "previous_messages": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "sender_id": {"type": "string"},
                            "content": {"type": "string"}
                        },
                        "required": ["sender_id", "content"]
                    }
                }
            },
            "required": ["agent_id", "content"]
        }
    ),
    Tool(
        name="ensemble_route_message",
        description="Route a message to an agent. AI agents reply once; humans and bots are notified.",
        inputSchema={
            "type": "object",
            "properties": {
                "sender_id": {"type": "string"},
                "receiver_id": {"type": "string"},
                "content": {"type": "string"},
                "type": {"type": "string", "enum": ["text", "action", "request", "response"], "default": "text"},
                "priority": {"type": "string", "enum": _PRIORITIES, "default": "medium"},
                "metadata": {"type": "object"}
            },
            "required": ["sender_id", "receiver_id", "content"]
        }
    ),
    Tool(
        name="ensemble_agent_introduction",
        description="Render an agent's self-introduction.",
        inputSchema={
            "type": "object",
            "properties": {
                "agent_id": {"type": "string"},
                "task_id": {"type": "string"},
                "team_name": {"type": "string"}
            },
            "required": ["agent_id"]
        }
    ),
    Tool(
        name="ensemble_request_collaboration",
        description="Send a collaboration request from one agent to another.",
        inputSchema={
            "type": "object",
            "properties": {
                "requester_id": {"type": "string"},
                "target_agent_id": {"type": "string"},
                "task_description": {"type": "string"},
                "required_capability": {"type": "string"},
                "task_details": {"type": "string"}
            },
            "required": ["requester_id", "target_agent_id", "task_description", "required_capability", "task_details"]
        }
    ),
    Tool(
        name="ensemble_status_update",
        description="Have an agent report progress on a task.",
        inputSchema={
            "type": "object",
            "properties": {
                "agent_id": {"type": "string"},
                "task_name": {"type": "string"},
                "progress_description": {"type": "string"},
                "current_status": {"type": "string"},
                "next_steps": {"type": "string"}
            },
            "required": ["agent_id", "task_name", "progress_description", "current_status", "next_steps"]
        }
    ),
    Tool(
        name="ensemble_get_conversation",
        description="Get the most recent messages in an agent's conversation queue.",
        inputSchema={
            "type": "object",
            "properties": {
                "agent_id": {"type": "string"},
                "limit": {"type": "integer", "default": 50}
            },
            "required": ["agent_id"]
        }
    ),
    Tool(
        name="ensemble_clear_conversation",
        description="Discard an agent's conversation queue.",
        inputSchema={
            "type": "object",
            "properties": {"agent_id": {"type": "string"}},
            "required": ["agent_id"]
        }
    ),

    # Task intelligence
    Tool(
        name="ensemble_analyze_task",
        description="Analyze a task with AI and store the analysis in its metadata.",
        inputSchema={
            "type": "object",
            "properties": {"task_id": {"type": "string"}},
            "required": ["task_id"]
        }
    ),
    Tool(
        name="ensemble_suggest_agent",
        description="Recommend an active agent for a task.",
        inputSchema={
            "type": "object",
            "properties": {"task_id": {"type": "string"}},
            "required": ["task_id"]
        }
    ),

    # Templates
    Tool(
        name="ensemble_list_templates",
        description="List prompt templates, optionally by category.",
        inputSchema={
            "type": "object",
            "properties": {
                "category": {"type": "string", "enum": ["agent", "task", "communication", "analysis"]}
            }
        }
    ),
    Tool(
        name="ensemble_render_template",
        description="Render a prompt template with variable bindings.",
        inputSchema={
            "type": "object",
            "properties": {
                "template_id": {"type": "string"},
                "variables": {"type": "object", "additionalProperties": {"type": "string"}}
            },
            "required": ["template_id", "variables"]
        }
    ),
    Tool(
        name="ensemble_add_template",
        description="Add a custom prompt template; its id is derived from the name.",
        inputSchema={
            "type": "object",
            "properties": {
                "name": {"type": "string"},
                "template": {"type": "string"},
                "variables": {"type": "array", "items": {"type": "string"}},
                "category": {"type": "string", "enum": ["agent", "task", "communication", "analysis"]},
                "description": {"type": "string"}
            },
            "required": ["name", "template", "variables", "category"]
        }
    ),
    Tool(
        name="ensemble_delete_template",
        description="Delete a prompt template.",
        inputSchema={
            "type": "object",
            "properties": {"template_id": {"type": "string"}},
            "required": ["template_id"]
        }
    ),
    Tool(
        name="ensemble_validate_template",
        description="Check template text against its declared variables.",
        inputSchema={
            "type": "object",
            "properties": {
                "template": {"type": "string"},
                "variables": {"type": "array", "items": {"type": "string"}}
            },
            "required": ["template", "variables"]
        }
    ),

    # Cost governance
    Tool(
        name="ensemble_cost_summary",
        description="Aggregate tracked cost by model, request type and day.",
        inputSchema={
            "type": "object",
            "properties": {
                "start": {"type": "string", "description": "ISO timestamp with offset"},
                "end": {"type": "string", "description": "ISO timestamp with offset"},
                "user_id": {"type": "string"},
                "agent_id": {"type": "string"},
                "task_id": {"type": "string"}
            }
        }
    ),
    Tool(
        name="ensemble_cost_forecast",
        description="Project cost from the last seven days.",
        inputSchema={
            "type": "object",
            "properties": {"days": {"type": "integer", "default": 7}}
        }
    ),
    Tool(
        name="ensemble_set_budget",
        description="Create or replace a budget.",
        inputSchema={
            "type": "object",
            "properties": {
                "key": {"type": "string"},
                "limit": {"type": "number"},
                "period": {"type": "string", "enum": ["daily", "monthly", "project"]},
                "user_id": {"type": "string"}
            },
            "required": ["key", "limit", "period"]
        }
    ),
    Tool(
        name="ensemble_budget_status",
        description="Status of one budget, or all budgets if no key is given.",
        inputSchema={
            "type": "object",
            "properties": {
                "key": {"type": "string"},
                "user_id": {"type": "string"}
            }
        }
    ),
    Tool(
        name="ensemble_get_alerts",
        description="List budget alerts, optionally for one user.",
        inputSchema={
            "type": "object",
            "properties": {"user_id": {"type": "string"}}
        }
    ),
    Tool(
        name="ensemble_clear_alerts",
        description="Clear budget alerts, optionally only one user's.",
        inputSchema={
            "type": "object",
            "properties": {"user_id": {"type": "string"}}
        }
    ),
    Tool(
        name="ensemble_emergency_stop",
        description="Zero every budget limit until restart. Use with caution.",
        inputSchema={"type": "object", "properties": {}}
    ),

    # Operations
    Tool(
        name="ensemble_health",
        description="Probe the generative backend and report queue statistics.",
        inputSchema={"type": "object", "properties": {}}
    ),
    Tool(
        name="ensemble_stats",
        description="Usage, quota and conversation statistics.",
        inputSchema={"type": "object", "properties": {}}
    ),
]


@server.list_tools()
async def list_tools() -> list[Tool]:
    """List all available Ensemble tools."""
    return TOOLS


# ─────────────────────────────────────────────────────────────────────────────
# Tool Handlers
# ─────────────────────────────────────────────────────────────────────────────

@server.call_tool()
async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
    """Handle tool calls."""
    router = get_router()

    try:
        result = await _handle_tool(name, arguments, router)
    except EnsembleError as e:
        result = {"error": str(e), "kind": type(e).__name__}
    except Exception as e:
        logger.exception(f"Tool {name} failed")
        result = {"error": str(e), "kind": type(e).__name__}

    await write_status_snapshot(router)
    return [TextContent(type="text", text=json.dumps(result, indent=2, default=str))]


async def _handle_tool(name: str, args: dict[str, Any], router: ConversationRouter) -> dict:
    """Route tool calls to handlers."""

    # ─── Directory ───
    if name == "ensemble_register_agent":
        fields = {
            "name": args["name"],
            "kind": AgentKind(args["kind"]),
            "capabilities": args.get("capabilities", []),
            "status": AgentStatus(args.get("status", "active")),
        }
        if args.get("agent_id"):
            fields["id"] = args["agent_id"]
        agent = await router.directory.add_agent(Agent(**fields))
        return {"success": True, "agent": agent.model_dump(mode="json")}

    elif name == "ensemble_create_task":
        task = await router.directory.add_task(Task(
            title=args["title"],
            description=args["description"],
            priority=Priority(args.get("priority", "medium")),
            created_by=args.get("created_by"),
        ))
        return {"success": True, "task": task.model_dump(mode="json")}

    # ─── Messaging ───
    elif name == "ensemble_chat":
        completion = await router.chat(
            prompt=args["prompt"],
            system_prompt=args.get("system_prompt"),
            temperature=args.get("temperature"),
            max_tokens=args.get("max_tokens"),
            model=args.get("model"),
            user_id=args.get("user_id"),
        )
        return {"success": True, "data": completion.model_dump(mode="json")}

    elif name == "ensemble_send_agent_message":
        previous = [PriorMessage(**m) for m in args.get("previous_messages", [])]
        response = await router.send_ai_message(
            args["agent_id"],
            args["content"],
            task_id=args.get("task_id"),
            previous_messages=previous,
        )
        return {"success": True, "agent_id": args["agent_id"], "response": response}

    elif name == "ensemble_route_message":
        message = ConversationMessage(
            sender_id=args["sender_id"],
            receiver_id=args["receiver_id"],
            content=args["content"],
            type=MessageType(args.get("type", "text")),
            priority=Priority(args.get("priority", "medium")),
            metadata=args.get("metadata") or {},
        )
        reply = await router.handle_message_routing(message)
        return {
            "success": True,
            "message_id": message.id,
            "reply": reply.model_dump(mode="json") if reply else None,
        }

    elif name == "ensemble_agent_introduction":
        introduction = await router.generate_agent_introduction(
            args["agent_id"], task_id=args.get("task_id"), team_name=args.get("team_name")
        )
        return {"success": True, "agent_id": args["agent_id"], "introduction": introduction}

    elif name == "ensemble_request_collaboration":
        response = await router.request_agent_collaboration(
            args["requester_id"],
            args["target_agent_id"],
            args["task_description"],
            args["required_capability"],
            args["task_details"],
        )
        return {
            "success": True,
            "requester_id": args["requester_id"],
            "target_agent_id": args["target_agent_id"],
            "response": response,
        }

    elif name == "ensemble_status_update":
        response = await router.provide_status_update(
            args["agent_id"],
            args["task_name"],
            args["progress_description"],
            args["current_status"],
            args["next_steps"],
        )
        return {"success": True, "agent_id": args["agent_id"], "response": response}

    elif name == "ensemble_get_conversation":
        messages = router.get_history(args["agent_id"], args.get("limit", 50))
        return {
            "agent_id": args["agent_id"],
            "message_count": len(messages),
            "messages": _dump(messages),
        }

    elif name == "ensemble_clear_conversation":
        cleared = await router.clear_history(args["agent_id"])
        return {"success": True, "cleared": cleared}

    # ─── Task intelligence ───
    elif name == "ensemble_analyze_task":
        result = await router.analyze_task_with_ai(args["task_id"])
        return {"success": True, "data": result.model_dump(mode="json")}

    elif name == "ensemble_suggest_agent":
        suggestion = await router.suggest_agent_for_task(args["task_id"])
        return {"success": True, "data": suggestion.model_dump(mode="json")}

    # ─── Templates ───
    elif name == "ensemble_list_templates":
        if args.get("category"):
            templates = router.templates.list_by_category(TemplateCategory(args["category"]))
        else:
            templates = router.templates.all()
        return {"count": len(templates), "templates": _dump(templates)}

    elif name == "ensemble_render_template":
        rendered = router.templates.render(args["template_id"], args["variables"])
        return {"success": True, "template_id": args["template_id"], "rendered": rendered}

    elif name == "ensemble_add_template":
        ok, errors = router.templates.validate(args["template"], args["variables"])
        if not ok:
            return {"success": False, "errors": errors}
        template = router.templates.add(
            args["name"],
            args["template"],
            args["variables"],
            TemplateCategory(args["category"]),
            description=args.get("description", ""),
        )
        return {"success": True, "template": template.model_dump(mode="json")}

    elif name == "ensemble_delete_template":
        deleted = router.templates.delete(args["template_id"])
        return {"success": deleted, "template_id": args["template_id"]}

    elif name == "ensemble_validate_template":
        ok, errors = router.templates.validate(args["template"], args["variables"])
        return {"valid": ok, "errors": errors}

    # ─── Cost governance ───
    elif name == "ensemble_cost_summary":
        summary = router.costs.summarize(
            start=_parse_time(args.get("start")),
            end=_parse_time(args.get("end")),
            user_id=args.get("user_id"),
            agent_id=args.get("agent_id"),
            task_id=args.get("task_id"),
        )
        return summary.model_dump(mode="json")

    elif name == "ensemble_cost_forecast":
        return router.costs.forecast(args.get("days", 7)).model_dump(mode="json")

    elif name == "ensemble_set_budget":
        budget = await router.costs.set_budget(
            args["key"], float(args["limit"]), BudgetPeriod(args["period"]), user_id=args.get("user_id")
        )
        return {"success": True, "budget": budget.model_dump(mode="json")}

    elif name == "ensemble_budget_status":
        if args.get("key"):
            status = router.costs.get_budget_status(args["key"], user_id=args.get("user_id"))
            if status is None:
                return {"success": False, "error": f"Budget not found: {args['key']}"}
            return status.model_dump(mode="json")
        return {"budgets": _dump(router.costs.budgets())}

    elif name == "ensemble_get_alerts":
        alerts = router.costs.alerts(args.get("user_id"))
        return {"alert_count": len(alerts), "alerts": _dump(alerts)}

    elif name == "ensemble_clear_alerts":
        await router.costs.clear_alerts(args.get("user_id"))
        return {"success": True}

    elif name == "ensemble_emergency_stop":
        await router.costs.emergency_stop()
        return {"success": True, "message": "All budgets set to zero until restart"}

    # ─── Operations ───
    elif name == "ensemble_health":
        healthy = await router.health_check()
        return {"healthy": healthy, "stats": router.stats()}

    elif name == "ensemble_stats":
        return router.stats()

    else:
        return {"error": f"Unknown tool: {name}"}


async def write_status_snapshot(router: ConversationRouter, path: Optional[Path] = None):
    """Write the figures the status dashboard shows."""
    if path is None:
        path = Path(EnsembleConfig.load().state_dir) / "status.json"
    path.parent.mkdir(parents=True, exist_ok=True)

    summary = router.costs.summarize()
    snapshot = {
        "updated_at": datetime.now().astimezone().isoformat(),
        "stats": router.stats(),
        "cost": {
            "total_cost": summary.total_cost,
            "total_tokens": summary.total_tokens,
            "total_requests": summary.total_requests,
        },
        "forecast": router.costs.forecast().model_dump(mode="json"),
        "budgets": _dump(router.costs.budgets()),
        "alerts": _dump(router.costs.alerts()[-5:]),
        "emergency_stop": router.costs.stopped,
    }
    async with aiofiles.open(path, "w") as f:
        await f.write(json.dumps(snapshot, indent=2, default=str))


# ─────────────────────────────────────────────────────────────────────────────
# Main Entry Point
# ─────────────────────────────────────────────────────────────────────────────

def main():
    """Run the Ensemble MCP server."""
    setup_logging()

    async def run():
        router = get_router()
        router.costs.start()
        try:
            async with stdio_server() as (read_stream, write_stream):
                await server.run(read_stream, write_stream, server.create_initialization_options())
        finally:
            await router.costs.stop()
            await router.backend.close()

    asyncio.run(run())


if __name__ == "__main__":
    main()
