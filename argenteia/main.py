"""Application entrypoint."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

import uvicorn

from argenteia.agent_runtime import AgentRuntime
from argenteia.chat_service import ChatService
from argenteia.commands import CommandDispatcher
from argenteia.config import Settings, allowed_senders, load_settings
from argenteia.db import Database
from argenteia.experts import ExpertRunner
from argenteia.gateway import Gateway, create_app
from argenteia.llm.resolver import ModelResolver
from argenteia.models import InboundMessage, ScheduledTask
from argenteia.prompt import SystemPromptBuilder, load_skills
from argenteia.scheduler import TaskScheduler
from argenteia.session import ActiveConversations, SessionStore
from argenteia.signal_adapter import SignalAdapter
from argenteia.tools.expert_tool import CallExpertTool
from argenteia.tools.memory_tool import ForgetFactTool, MemorizeFactTool, RecallFactsTool
from argenteia.tools.profile_tool import UpdateProfileTool
from argenteia.tools.read_url_tool import ReadUrlTool
from argenteia.tools.registry import ToolRegistry
from argenteia.tools.scheduler_tool import DeleteScheduledTaskTool, ListScheduledTasksTool, ScheduleTaskTool
from argenteia.tools.time_tool import GetCurrentTimeTool
from argenteia.tools.weather_tool import GetWeatherTool
from argenteia.tools.web_search_tool import WebSearchTool

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
LOGGER = logging.getLogger(__name__)


def build_tool_registry(
    settings: Settings,
    db: Database,
    scheduler: TaskScheduler,
    expert_runner: ExpertRunner,
) -> ToolRegistry:
    """Register every built-in tool; must complete before serving traffic."""

    tools = ToolRegistry(db)
    tools.register(GetCurrentTimeTool(db, settings.default_timezone))
    tools.register(GetWeatherTool())
    tools.register(WebSearchTool(settings.tools))
    tools.register(ReadUrlTool(settings.tools))
    tools.register(MemorizeFactTool(db))
    tools.register(RecallFactsTool(db))
    tools.register(ForgetFactTool(db))
    tools.register(UpdateProfileTool(db, settings.default_timezone))
    tools.register(ScheduleTaskTool(scheduler))
    tools.register(ListScheduledTasksTool(db))
    tools.register(DeleteScheduledTaskTool(db))
    tools.register(CallExpertTool(expert_runner))
    return tools


async def _signal_loop(adapter: SignalAdapter, service: ChatService) -> None:
    async for message in adapter.poll_messages():
        try:
            reply = await service.reply(message)
            await adapter.send_message(message.route_id or message.sender_id, reply, is_group=message.is_group)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Failed to answer Signal message %s", message.message_id)


async def run() -> None:
    """Initialize app layers and start the gateway, Signal and scheduler loops."""

    settings = load_settings()

    db = Database(settings.database_path)
    db.initialize()

    resolver = ModelResolver(settings, db)
    seeded = resolver.seed_models_from_config()
    if seeded:
        LOGGER.info("Seeded %d model(s) from configuration", seeded)

    scheduler = TaskScheduler(db, default_timezone=settings.default_timezone)
    expert_runner = ExpertRunner(db, resolver, max_tokens=settings.agent.max_tokens)
    tools = build_tool_registry(settings, db, scheduler, expert_runner)

    sessions = SessionStore()
    active = ActiveConversations()
    runtime = AgentRuntime(
        settings=settings,
        tool_registry=tools,
        sessions=sessions,
        db=db,
        resolver=resolver,
        prompt_builder=SystemPromptBuilder(load_skills(settings.skills_dir)),
        active=active,
    )
    commands = CommandDispatcher(settings, sessions, tools, resolver, active)
    service = ChatService(runtime, db, commands)

    signal_adapter: SignalAdapter | None = None
    if settings.signal.enabled:
        signal_adapter = SignalAdapter(
            signal_cli_path=settings.signal.cli_path,
            account=settings.signal.account,
            poll_interval_seconds=settings.signal.poll_interval_seconds,
            allowed_senders=allowed_senders(settings),
        )

    async def handle_scheduled_task(task: ScheduledTask) -> None:
        message = InboundMessage(
            conversation_id=task.conversation_id,
            sender_id=task.user_id,
            text=f"[Tarea programada] {task.task}",
            timestamp=datetime.now(timezone.utc),
            origin=task.origin,
            route_id=task.route_id,
            is_group=bool(task.route_id) and not str(task.route_id).startswith("+"),
        )
        reply = await service.reply(message)
        if task.origin == "signal" and signal_adapter is not None and task.route_id:
            await signal_adapter.send_message(task.route_id, reply, is_group=message.is_group)

    scheduler.set_handler(handle_scheduled_task)

    app = create_app(Gateway(service, db, settings, sessions, tools, active))
    server = uvicorn.Server(
        uvicorn.Config(app, host=settings.gateway.host, port=settings.gateway.port, log_level="info")
    )

    background = [
        asyncio.create_task(scheduler.run_forever(), name="task-scheduler"),
    ]
    if signal_adapter is not None:
        background.append(asyncio.create_task(_signal_loop(signal_adapter, service), name="signal-poll"))

    LOGGER.info("Gateway listening on http://%s:%d", settings.gateway.host, settings.gateway.port)
    try:
        await server.serve()
    finally:
        scheduler.stop()
        for task in background:
            task.cancel()
        LOGGER.info("Assistant shutdown complete")


def main() -> None:
    """Synchronous wrapper for asyncio entrypoint."""

    asyncio.run(run())


if __name__ == "__main__":
    main()
