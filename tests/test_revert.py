"""Revert and unrevert against a real git worktree."""
from __future__ import annotations

import pytest

from codeagent.engine.config import EngineConfig
from codeagent.engine.errors import SessionBusyError
from codeagent.engine.instance import ProjectContext
from codeagent.engine.prompt import PromptInput
from codeagent.engine.yaml_config import ProjectConfig
from codeagent.shared.models.message import PatchPart, UserMessage
from codeagent.shared.services.project import ProjectInfo
from codeagent.shared.services.snapshot import SnapshotService
from codeagent.tools.base import ToolInfo, ToolResult

from conftest import ScriptedProvider, fake_registry, init_git_repo, requires_git, text_step, tool_step

pytestmark = requires_git


def _write_tool(root):
    async def execute(args, tool_ctx):
        (root / args["path"]).write_text(args["content"])
        return ToolResult(title=args["path"], output="written")

    return ToolInfo(
        id="write",
        description="Write a file",
        parameters={
            "type": "object",
            "properties": {"path": {"type": "string"}, "content": {"type": "string"}},
            "required": ["path", "content"],
        },
        execute=execute,
    )


@pytest.fixture
def repo(tmp_path):
    work = tmp_path / "repo"
    init_git_repo(work)
    (work / "a.txt").write_text("original")
    return work


@pytest.fixture
def git_ctx(tmp_path, repo):
    provider = ScriptedProvider([
        tool_step("write", {"path": "a.txt", "content": "changed"}),
        text_step("edited a"),
        tool_step("write", {"path": "b.txt", "content": "new file"}),
        text_step("created b"),
    ])
    ctx = ProjectContext(
        repo,
        config=EngineConfig(data_dir=tmp_path / "data"),
        project_config=ProjectConfig(),
        providers=fake_registry(provider),
    )
    ctx.tools.register(_write_tool(repo))
    ctx.test_provider = provider
    return ctx


def _text(session_id: str, text: str) -> PromptInput:
    return PromptInput(session_id=session_id, parts=[{"type": "text", "text": text}])


async def _two_turns(ctx):
    session = ctx.store.create()
    await ctx.prompt.prompt(_text(session.id, "change a"))
    await ctx.prompt.prompt(_text(session.id, "add b"))
    await ctx.prompt.dispose()
    return session


@pytest.mark.asyncio
async def test_tool_steps_record_patches(git_ctx, repo):
    assert git_ctx.project.is_git
    session = await _two_turns(git_ctx)

    patches = [
        p for m in git_ctx.store.messages(session.id) for p in m.parts
        if isinstance(p, PatchPart)
    ]
    assert [p.files for p in patches] == [
        [str((repo / "a.txt").resolve())],
        [str((repo / "b.txt").resolve())],
    ]


@pytest.mark.asyncio
async def test_revert_restores_files_and_unrevert_brings_them_back(git_ctx, repo):
    session = await _two_turns(git_ctx)
    first_user = next(
        m.info for m in git_ctx.store.messages(session.id) if isinstance(m.info, UserMessage)
    )

    info = await git_ctx.revert.revert(session.id, first_user.id)

    assert info.revert.message_id == first_user.id
    assert info.revert.part_id is None
    assert info.revert.snapshot
    assert (repo / "a.txt").read_text() == "original"
    assert not (repo / "b.txt").exists()
    assert "changed" in info.revert.diff

    info = await git_ctx.revert.unrevert(session.id)

    assert info.revert is None
    assert (repo / "a.txt").read_text() == "changed"
    assert (repo / "b.txt").read_text() == "new file"


@pytest.mark.asyncio
async def test_next_prompt_drops_reverted_messages(git_ctx, repo):
    session = await _two_turns(git_ctx)
    users = [
        m.info for m in git_ctx.store.messages(session.id) if isinstance(m.info, UserMessage)
    ]
    await git_ctx.revert.revert(session.id, users[1].id)
    assert not (repo / "b.txt").exists()
    assert (repo / "a.txt").read_text() == "changed"

    git_ctx.test_provider.steps = [text_step("fresh")]
    await git_ctx.prompt.prompt(_text(session.id, "something else"))
    await git_ctx.prompt.dispose()

    messages = git_ctx.store.messages(session.id)
    kept_users = [m.info.id for m in messages if isinstance(m.info, UserMessage)]
    assert users[0].id in kept_users
    assert users[1].id not in kept_users
    assert git_ctx.store.get(session.id).revert is None


@pytest.mark.asyncio
async def test_revert_refuses_a_busy_session(git_ctx):
    session = git_ctx.store.create()
    lock = git_ctx.locks.lock(session.id)
    try:
        with pytest.raises(SessionBusyError):
            await git_ctx.revert.revert(session.id, "msg_any")
        with pytest.raises(SessionBusyError):
            await git_ctx.revert.unrevert(session.id)
    finally:
        lock.release()


def test_overlapping_patches_restore_the_earliest_state(tmp_path, repo):
    snapshot = SnapshotService(
        ProjectInfo(id="p", worktree=str(repo), vcs="git"), tmp_path / "snapshots"
    )
    f1, f2, f3 = repo / "f1.txt", repo / "f2.txt", repo / "f3.txt"
    f1.write_text("f1 A")
    f2.write_text("f2 A")
    hash_a = snapshot.track_sync()
    f1.write_text("f1 B")
    f2.write_text("f2 B")
    first = snapshot.patch_sync(hash_a)

    hash_b = snapshot.track_sync()
    f2.write_text("f2 C")
    f3.write_text("f3 C")
    second = snapshot.patch_sync(hash_b)
    assert sorted(first.files) == [str(f1), str(f2)]
    assert sorted(second.files) == [str(f2), str(f3)]

    snapshot.revert_sync([first, second])

    assert f1.read_text() == "f1 A"
    assert f2.read_text() == "f2 A"
    assert not f3.exists()
