"""Tests for cli.py -- the release-stale-conversations maintenance command."""

import asyncio
from datetime import UTC, datetime, timedelta
from pathlib import Path

from typer.testing import CliRunner

from cli import app
from models.database import EditorStore
from models.schemas import ConversationStatus, WorkspaceStatus

runner = CliRunner()


async def _seed(db_path: str, minutes_ago: int) -> None:
    store = EditorStore(db_path)
    await store.init()
    await store.add_workspace("ws_landing", "/tmp/ws_landing")
    await store.create_conversation(
        conversation_id="conv_1",
        workspace_id="ws_landing",
        user_id="user_owner",
        created_at=datetime.now(UTC) - timedelta(minutes=minutes_ago),
    )


async def _state(db_path: str) -> tuple[ConversationStatus, WorkspaceStatus]:
    store = EditorStore(db_path)
    conversation = await store.get_conversation("conv_1")
    workspace = await store.get_workspace("ws_landing")
    assert conversation is not None and workspace is not None
    return conversation.status, workspace.status


def test_help():
    result = runner.invoke(app, ["release-stale-conversations", "--help"])
    assert result.exit_code == 0
    assert "--timeout" in result.stdout


def test_releases_stale_conversation(tmp_path: Path):
    db_path = str(tmp_path / "cli.db")
    asyncio.run(_seed(db_path, minutes_ago=10))

    result = runner.invoke(
        app, ["--database", db_path, "release-stale-conversations", "--timeout", "5"]
    )

    assert result.exit_code == 0, result.stdout
    assert "Released 1 stale workspace(s), recovered 0 stuck session(s)." in result.stdout
    assert "  ws_landing" in result.stdout
    assert asyncio.run(_state(db_path)) == (
        ConversationStatus.FINISHED,
        WorkspaceStatus.AVAILABLE_FOR_CONVERSATION,
    )


def test_recent_conversation_is_kept(tmp_path: Path):
    db_path = str(tmp_path / "cli.db")
    asyncio.run(_seed(db_path, minutes_ago=2))

    result = runner.invoke(
        app, ["--database", db_path, "release-stale-conversations", "--timeout", "5"]
    )

    assert result.exit_code == 0
    assert "Released 0 stale workspace(s)" in result.stdout
    assert asyncio.run(_state(db_path))[0] == ConversationStatus.ONGOING


def test_timeout_must_be_positive(tmp_path: Path):
    result = runner.invoke(
        app,
        ["--database", str(tmp_path / "cli.db"), "release-stale-conversations", "--timeout", "0"],
    )
    assert result.exit_code != 0
