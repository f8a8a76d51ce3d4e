"""Wiring of the engine's services around one store.

The FastAPI lifespan, the maintenance CLI and the tests all build the same
object graph through ``build_services``.
"""

from dataclasses import dataclass
from pathlib import Path

import structlog

from agents import create_agent_loop
from cancellation import CancellationCoordinator
from chunk_log import ChunkLog, PollService
from clock import Clock, SystemClock
from config import settings
from context_usage import ContextUsageService
from conversation_service import ConversationService
from execution_handler import AgentFactory, ExecutionHandler
from models.database import EditorStore
from reaper import HeartbeatService, StaleSessionReaper
from session_manager import SessionManager

logger = structlog.get_logger(__name__)


@dataclass
class EngineServices:
    store: EditorStore
    clock: Clock
    chunk_log: ChunkLog
    context_usage: ContextUsageService
    poll: PollService
    cancellation: CancellationCoordinator
    handler: ExecutionHandler
    session_manager: SessionManager
    conversations: ConversationService
    heartbeat: HeartbeatService
    reaper: StaleSessionReaper


def build_services(
    store: EditorStore,
    clock: Clock | None = None,
    agent_factory: AgentFactory | None = None,
) -> EngineServices:
    """Assemble every service on top of an initialized store."""
    clock = clock or SystemClock()
    chunk_log = ChunkLog(store, clock)
    context_usage = ContextUsageService(store)
    poll = PollService(
        store,
        chunk_log,
        context_usage,
        limit=settings.poll_chunk_limit,
    )
    cancellation = CancellationCoordinator(store, clock)
    handler = ExecutionHandler(
        store,
        chunk_log,
        cancellation,
        agent_factory or create_agent_loop,
        clock,
    )
    session_manager = SessionManager(handler, store)
    conversations = ConversationService(
        store,
        session_manager,
        chunk_log,
        context_usage,
        cancellation,
        clock,
    )
    return EngineServices(
        store=store,
        clock=clock,
        chunk_log=chunk_log,
        context_usage=context_usage,
        poll=poll,
        cancellation=cancellation,
        handler=handler,
        session_manager=session_manager,
        conversations=conversations,
        heartbeat=HeartbeatService(store, clock),
        reaper=StaleSessionReaper(store, chunk_log, cancellation, clock),
    )


async def register_workspace_folders(store: EditorStore, workspace_root: str) -> int:
    """Register every folder under ``workspace_root`` as a workspace.

    The folder name is the workspace id. Already-known workspaces keep their
    current status.

    Returns:
        Number of folders seen.
    """
    root = Path(workspace_root)
    if not root.is_dir():
        logger.warning("workspace_root_missing", workspace_root=workspace_root)
        return 0

    folders = sorted(p for p in root.iterdir() if p.is_dir() and not p.name.startswith("."))
    for folder in folders:
        await store.add_workspace(folder.name, str(folder.resolve()))

    logger.info("workspaces_registered", count=len(folders), workspace_root=workspace_root)
    return len(folders)
