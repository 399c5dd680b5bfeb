"""Unit tests for the code edit agent loop."""

import json

import pytest

from autopilot_engine.agents.base import (
    BudgetExceededError,
    LLMClient,
    LocalProjectTools,
    LoopDetectedError,
)
from autopilot_engine.agents.code_edit import (
    INVALID_REPLY_MESSAGE,
    MISSING_ACTION_MESSAGE,
    MISSING_CONTENT_MESSAGE,
    SYSTEM_PROMPT,
    TARGETED_STYLE_MESSAGE,
    AgentAction,
    CodeEditAgent,
    truncate_for_observation,
)
from autopilot_engine.config.models import AgentConfig


class ScriptedLLM(LLMClient):
    """Returns canned replies in order and records every transcript it sees."""

    def __init__(self, replies):
        self.replies = list(replies)
        self.transcripts = []
        self.options = []

    async def generate_response(self, messages, options):
        self.transcripts.append([dict(m) for m in messages])
        self.options.append(dict(options))
        if not self.replies:
            return '{"action": "finalize", "summary": "out of script"}'
        reply = self.replies.pop(0)
        return reply if isinstance(reply, str) else json.dumps(reply)


@pytest.fixture
def project(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.js").write_text("export const answer = 41;\n")
    (tmp_path / "src" / "index.css").write_text("body { margin: 0; }\n")
    (tmp_path / "node_modules").mkdir()
    return tmp_path


def make_agent(project, replies, **config):
    llm = ScriptedLLM(replies)
    tools = LocalProjectTools({"p1": project})
    return CodeEditAgent(llm, tools, AgentConfig(**config)), llm


def last_user_message(transcript):
    return [m for m in transcript if m["role"] == "user"][-1]["content"]


class TestLocalProjectTools:
    """Test the local file sandbox."""

    @pytest.mark.asyncio
    async def test_write_creates_parents_and_reads_back(self, project):
        tools = LocalProjectTools({"p1": project})
        await tools.write_project_file("p1", "src/styles/nav.css", ".navbar { color: red; }\n")

        assert (project / "src" / "styles" / "nav.css").exists()
        assert await tools.read_project_file("p1", "src/styles/nav.css") == ".navbar { color: red; }\n"

    @pytest.mark.asyncio
    async def test_rejects_escape_and_unknown_project(self, project):
        tools = LocalProjectTools({"p1": project})
        with pytest.raises(PermissionError):
            await tools.read_project_file("p1", "../outside.txt")
        with pytest.raises(FileNotFoundError, match="Unknown project"):
            await tools.read_project_file("p2", "src/app.js")


class TestAgentAction:
    """Test action name parsing."""

    def test_known_actions(self):
        assert AgentAction.parse("read_file") == AgentAction.READ_FILE
        assert AgentAction.parse("finalize") == AgentAction.FINALIZE

    def test_answer_alias(self):
        assert AgentAction.parse("answer") == AgentAction.FINALIZE

    def test_unknown_action(self):
        assert AgentAction.parse("delete_file") is None


def test_truncate_for_observation():
    assert truncate_for_observation("abc", 5) == "abc"
    assert truncate_for_observation("abcdef", 3) == "abc\n…truncated…"
    assert truncate_for_observation(None, 3) == ""


@pytest.mark.asyncio
async def test_read_write_finalize(project):
    """Test a normal run edits the file and returns the trace."""
    agent, llm = make_agent(
        project,
        [
            {"action": "read_file", "path": "src/app.js", "reason": "inspect"},
            {"action": "write_file", "path": "src/app.js", "content": "export const answer = 42;\n"},
            {"action": "finalize", "summary": "Bumped the answer"},
        ],
    )

    result = await agent.apply_code_change("p1", "Change the answer to 42")

    assert result.summary == "Bumped the answer"
    assert (project / "src" / "app.js").read_text() == "export const answer = 42;\n"
    assert [(s.type, s.action) for s in result.steps] == [
        ("action", "read_file"),
        ("observation", "read_file"),
        ("action", "write_file"),
        ("observation", "write_file"),
        ("action", "finalize"),
    ]
    assert result.steps[0].meta == "inspect"
    assert result.steps[1].summary == "Read 26 characters"
    assert result.steps[3].summary == "Wrote 26 characters"

    first = llm.transcripts[0]
    assert first[0] == {"role": "system", "content": SYSTEM_PROMPT}
    assert "- src/app.js" in first[1]["content"]
    assert "node_modules" not in first[1]["content"]
    assert first[1]["content"].endswith("Change the answer to 42")
    assert llm.options[0]["phase"] == "autopilot-edit"
    assert llm.options[0]["request_type"] == "code_edit"

    observation = json.loads(last_user_message(llm.transcripts[1]))
    assert observation["content"] == "export const answer = 41;\n"


@pytest.mark.asyncio
async def test_answer_and_default_summary(project):
    agent, _ = make_agent(project, [{"action": "answer", "answer": "Nothing to change"}])
    assert (await agent.apply_code_change("p1", "check")).summary == "Nothing to change"

    agent, _ = make_agent(project, [{"action": "finalize"}])
    assert (await agent.apply_code_change("p1", "check")).summary == "Completed edit session."


@pytest.mark.asyncio
async def test_requires_project_and_prompt(project):
    agent, llm = make_agent(project, [])
    with pytest.raises(ValueError, match="projectId is required"):
        await agent.apply_code_change("", "x")
    with pytest.raises(ValueError, match="prompt is required"):
        await agent.apply_code_change("p1", "  ")
    assert llm.transcripts == []


@pytest.mark.asyncio
async def test_invalid_reply_recovers(project):
    """Test malformed replies produce a corrective message and the loop continues."""
    agent, llm = make_agent(
        project,
        [
            "I think we should read the file first.",
            {"path": "src/app.js"},
            '```json\n{"action": "finalize", "summary": "done"}\n```',
        ],
    )

    result = await agent.apply_code_change("p1", "do something")

    assert result.summary == "done"
    assert last_user_message(llm.transcripts[1]) == INVALID_REPLY_MESSAGE
    assert last_user_message(llm.transcripts[2]) == MISSING_ACTION_MESSAGE


@pytest.mark.asyncio
async def test_loop_detection_aborts(project):
    """Test repeated reads without a write abort the run."""
    replies = [{"action": "read_file", "path": "src/app.js"}] * 10
    agent, llm = make_agent(project, replies)

    with pytest.raises(LoopDetectedError, match="potential infinite loop"):
        await agent.apply_code_change("p1", "do something")

    assert len(llm.transcripts) == 6


@pytest.mark.asyncio
async def test_loop_window_is_configurable(project):
    replies = [{"action": "list_dir", "path": "src"}] * 10
    agent, llm = make_agent(project, replies, loop_window=3)

    with pytest.raises(LoopDetectedError):
        await agent.apply_code_change("p1", "do something")

    assert len(llm.transcripts) == 3


@pytest.mark.asyncio
async def test_action_ceiling(project):
    """Test the run fails once every allowed round-trip is spent."""
    agent, llm = make_agent(project, ["nope"] * 10, max_actions=3)

    with pytest.raises(BudgetExceededError, match="maximum number of steps"):
        await agent.apply_code_change("p1", "do something")

    assert len(llm.transcripts) == 3


@pytest.mark.asyncio
async def test_write_ceiling(project):
    agent, _ = make_agent(
        project,
        [
            {"action": "write_file", "path": "a.txt", "content": "a"},
            {"action": "write_file", "path": "b.txt", "content": "b"},
        ],
        max_writes=1,
    )

    with pytest.raises(BudgetExceededError, match="Write limit reached"):
        await agent.apply_code_change("p1", "write files")

    assert (project / "a.txt").read_text() == "a"
    assert not (project / "b.txt").exists()


@pytest.mark.asyncio
async def test_write_without_content(project):
    agent, llm = make_agent(
        project,
        [{"action": "write_file", "path": "a.txt"}, {"action": "finalize", "summary": "ok"}],
    )

    await agent.apply_code_change("p1", "write files")

    assert last_user_message(llm.transcripts[1]) == MISSING_CONTENT_MESSAGE
    assert not (project / "a.txt").exists()


@pytest.mark.asyncio
async def test_oversized_write_rejected(project):
    agent, llm = make_agent(
        project,
        [
            {"action": "write_file", "path": "big.txt", "content": "x" * 11},
            {"action": "finalize", "summary": "ok"},
        ],
        max_file_chars=10,
    )

    result = await agent.apply_code_change("p1", "write files")

    assert not (project / "big.txt").exists()
    assert result.steps[1].summary.startswith("Rejected:")
    assert json.loads(last_user_message(llm.transcripts[1]))["status"] == "rejected"


@pytest.mark.asyncio
async def test_targeted_style_scope(project):
    """Test a global selector edit is rejected and the targeted fix is accepted."""
    agent, llm = make_agent(
        project,
        [
            {"action": "read_file", "path": "src/index.css"},
            {"action": "write_file", "path": "src/index.css", "content": "body { background: black; }\n"},
            {
                "action": "write_file",
                "path": "src/index.css",
                "content": ".navbar { background: black; }\n",
            },
            {"action": "finalize", "summary": "Navbar is black"},
        ],
    )

    result = await agent.apply_code_change("p1", "Make the navbar background black")

    assert llm.transcripts[0][2] == {"role": "user", "content": TARGETED_STYLE_MESSAGE}
    rejected = json.loads(last_user_message(llm.transcripts[2]))
    assert rejected["status"] == "rejected"
    assert "global selectors" in rejected["error"]
    assert result.steps[3].summary.startswith("Rejected:")
    assert result.summary == "Navbar is black"


@pytest.mark.asyncio
async def test_untargeted_prompt_has_no_style_message(project):
    agent, llm = make_agent(project, [{"action": "finalize"}])
    await agent.apply_code_change("p1", "Add a health endpoint")
    assert len(llm.transcripts[0]) == 2


@pytest.mark.asyncio
async def test_traversal_is_observed_not_fatal(project):
    agent, llm = make_agent(
        project,
        [
            {"action": "read_file", "path": "../outside.txt"},
            {"action": "write_file", "path": "../outside.txt", "content": "x"},
            {"action": "finalize", "summary": "stopped"},
        ],
    )

    result = await agent.apply_code_change("p1", "read things")

    assert result.steps[1].summary.startswith("Error:")
    assert "error" in json.loads(last_user_message(llm.transcripts[1]))
    assert result.steps[3].summary.startswith("Rejected:")
    assert not (project.parent / "outside.txt").exists()


@pytest.mark.asyncio
async def test_read_missing_file(project):
    agent, llm = make_agent(
        project,
        [{"action": "read_file", "path": "src/missing.js"}, {"action": "finalize"}],
    )

    result = await agent.apply_code_change("p1", "read things")

    assert result.steps[1].summary.startswith("Error:")
    assert json.loads(last_user_message(llm.transcripts[1]))["path"] == "src/missing.js"


@pytest.mark.asyncio
async def test_list_dir(project):
    agent, llm = make_agent(
        project,
        [{"action": "list_dir", "path": ""}, {"action": "list_dir", "path": "../.."}, {"action": "finalize"}],
    )

    result = await agent.apply_code_change("p1", "look around")

    listing = json.loads(last_user_message(llm.transcripts[1]))
    assert listing["path"] == "."
    assert listing["entries"] == [{"name": "src", "type": "dir"}]
    assert result.steps[1].summary == "Listed 1 entries"

    escaped = json.loads(last_user_message(llm.transcripts[2]))
    assert "outside of project root" in escaped["error"]


@pytest.mark.asyncio
async def test_plan_and_unsupported_actions(project):
    agent, llm = make_agent(
        project,
        [
            {"action": "plan", "note": "Read then write"},
            {"action": "delete_file", "path": "src/app.js"},
            {"action": "finalize", "summary": "done"},
        ],
    )

    result = await agent.apply_code_change("p1", "plan it")

    assert json.loads(last_user_message(llm.transcripts[1])) == {
        "action": "plan_ack",
        "note": "Read then write",
    }
    assert json.loads(last_user_message(llm.transcripts[2])) == {
        "error": 'Action "delete_file" is not supported.'
    }
    assert result.steps[0].meta == "Read then write"
    assert [s.summary for s in result.steps if s.action == "delete_file"] == [None, "Action rejected."]
    assert (project / "src" / "app.js").exists()
