"""Tests for session_manager.py -- background scheduling of edit sessions."""

import asyncio

import pytest

from agents.simulated import ScriptedAgentLoop
from clock import FrozenClock
from events.types import TextItem
from models.database import EditorStore
from models.records import ConversationRecord
from models.schemas import SessionStatus
from services import EngineServices, build_services
from tests.conftest import factory_for, successful_script


async def new_session(
    store: EditorStore,
    clock: FrozenClock,
    conversation_id: str,
    session_id: str,
) -> str:
    session = await store.create_session(
        session_id=session_id,
        conversation_id=conversation_id,
        instruction="Change the headline",
        created_at=clock.now(),
    )
    return session.id


def services_with(store: EditorStore, clock: FrozenClock, loop: ScriptedAgentLoop) -> EngineServices:
    return build_services(store, clock=clock, agent_factory=factory_for(loop))


class TestSubmit:
    async def test_submitted_session_runs_to_completion(
        self,
        store: EditorStore,
        clock: FrozenClock,
        conversation: ConversationRecord,
    ) -> None:
        services = services_with(store, clock, successful_script())
        session_id = await new_session(store, clock, conversation.id, "es_1")

        await services.session_manager.submit(session_id)
        await services.session_manager.wait_for(session_id)

        session = await store.get_session(session_id)
        assert session is not None
        assert session.status == SessionStatus.COMPLETED
        assert not services.session_manager.is_running(session_id)

    async def test_double_submit_schedules_once(
        self,
        store: EditorStore,
        clock: FrozenClock,
        conversation: ConversationRecord,
    ) -> None:
        gate = asyncio.Event()
        loop = ScriptedAgentLoop([gate.wait, TextItem(content="Done.")])
        services = services_with(store, clock, loop)
        session_id = await new_session(store, clock, conversation.id, "es_1")

        await services.session_manager.submit(session_id)
        await services.session_manager.submit(session_id)
        await asyncio.sleep(0)
        assert services.session_manager.is_running(session_id)

        gate.set()
        await services.session_manager.wait_for(session_id)
        assert len(loop.calls) == 1

    async def test_wait_for_unknown_session_returns(
        self, store: EditorStore, clock: FrozenClock
    ) -> None:
        services = services_with(store, clock, successful_script())
        await services.session_manager.wait_for("es_missing")


class TestResumeUnstarted:
    async def test_pending_and_cancelling_sessions_are_picked_up(
        self,
        store: EditorStore,
        clock: FrozenClock,
        conversation: ConversationRecord,
    ) -> None:
        services = services_with(store, clock, successful_script())
        pending = await new_session(store, clock, conversation.id, "es_pending")
        cancelling = await new_session(store, clock, conversation.id, "es_cancelling")
        await services.cancellation.cancel(cancelling)

        assert await services.session_manager.resume_unstarted() == 2
        await services.session_manager.wait_for(pending)
        await services.session_manager.wait_for(cancelling)

        first = await store.get_session(pending)
        second = await store.get_session(cancelling)
        assert first is not None and first.status == SessionStatus.COMPLETED
        assert second is not None and second.status == SessionStatus.CANCELLED

    async def test_nothing_to_resume(self, store: EditorStore, clock: FrozenClock) -> None:
        services = services_with(store, clock, successful_script())
        assert await services.session_manager.resume_unstarted() == 0


class TestCleanup:
    async def test_cleanup_cancels_running_tasks(
        self,
        store: EditorStore,
        clock: FrozenClock,
        conversation: ConversationRecord,
    ) -> None:
        never = asyncio.Event()
        services = services_with(store, clock, ScriptedAgentLoop([never.wait]))
        session_id = await new_session(store, clock, conversation.id, "es_1")

        await services.session_manager.submit(session_id)
        for _ in range(20):
            session = await store.get_session(session_id)
            if session is not None and session.status == SessionStatus.RUNNING:
                break
            await asyncio.sleep(0.01)

        await services.session_manager.cleanup_all()
        assert not services.session_manager.is_running(session_id)

        # Left for stuck-session recovery
        session = await store.get_session(session_id)
        assert session is not None
        assert session.status == SessionStatus.RUNNING

    async def test_crashing_handler_is_contained(
        self,
        store: EditorStore,
        clock: FrozenClock,
        conversation: ConversationRecord,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        services = services_with(store, clock, successful_script())

        async def broken_run(session_id: str) -> None:
            raise RuntimeError("database is locked")

        monkeypatch.setattr(services.handler, "run", broken_run)
        session_id = await new_session(store, clock, conversation.id, "es_1")

        await services.session_manager.submit(session_id)
        await services.session_manager.wait_for(session_id)
        assert not services.session_manager.is_running(session_id)
