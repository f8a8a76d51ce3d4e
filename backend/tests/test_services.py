"""Tests for services.py -- service wiring and workspace folder discovery."""

from pathlib import Path

from clock import FrozenClock
from models.database import EditorStore
from models.schemas import WorkspaceStatus
from services import build_services, register_workspace_folders


class TestRegisterWorkspaceFolders:
    async def test_each_visible_folder_becomes_a_workspace(
        self, store: EditorStore, tmp_path: Path
    ) -> None:
        root = tmp_path / "workspaces"
        for name in ("ws_landing", "ws_blog", ".git"):
            (root / name).mkdir(parents=True)
        (root / "README.md").write_text("not a workspace")

        assert await register_workspace_folders(store, str(root)) == 2

        landing = await store.get_workspace("ws_landing")
        assert landing is not None
        assert landing.path == str((root / "ws_landing").resolve())
        assert landing.status == WorkspaceStatus.AVAILABLE_FOR_CONVERSATION
        assert await store.get_workspace(".git") is None

    async def test_missing_root(self, store: EditorStore, tmp_path: Path) -> None:
        assert await register_workspace_folders(store, str(tmp_path / "nope")) == 0

    async def test_registration_keeps_status_of_known_workspace(
        self, store: EditorStore, clock: FrozenClock, tmp_path: Path
    ) -> None:
        root = tmp_path / "workspaces"
        (root / "ws_landing").mkdir(parents=True)
        await register_workspace_folders(store, str(root))
        await store.create_conversation("conv_1", "ws_landing", "user_owner", clock.now())

        await register_workspace_folders(store, str(root))

        workspace = await store.get_workspace("ws_landing")
        assert workspace is not None
        assert workspace.status == WorkspaceStatus.IN_CONVERSATION


class TestBuildServices:
    async def test_services_share_store_and_clock(
        self, store: EditorStore, clock: FrozenClock
    ) -> None:
        services = build_services(store, clock=clock)
        assert services.chunk_log.store is store
        assert services.reaper.clock is clock
        assert services.conversations.session_manager is services.session_manager
        assert services.handler.cancellation is services.cancellation
