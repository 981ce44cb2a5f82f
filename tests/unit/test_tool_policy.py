"""Tests for ToolPolicy class."""

from yoke.agent.tool_policy import BUILTIN_TOOLS, ORCHESTRATION_TOOLS, ToolPolicy

EXTERNAL = frozenset({"mcp.github.list_issues"})


class TestToolPolicyToolSets:
    """Tests for tool set constants."""

    def test_builtin_tools_present(self) -> None:
        """Built-in tools should be defined."""
        assert "Read" in BUILTIN_TOOLS
        assert "Edit" in BUILTIN_TOOLS
        assert "Bash" in BUILTIN_TOOLS
        assert "Task" in BUILTIN_TOOLS

    def test_orchestration_tools(self) -> None:
        assert ORCHESTRATION_TOOLS == frozenset({"Task", "ActivateSkill"})


class TestToolPolicyConstruction:
    """Tests for ToolPolicy construction."""

    def test_unrestricted(self) -> None:
        """With no restriction every available tool is effective."""
        policy = ToolPolicy(available=BUILTIN_TOOLS | EXTERNAL)

        assert policy.effective_tools == BUILTIN_TOOLS | EXTERNAL

    def test_no_delegation(self) -> None:
        """Loops that may not delegate never see Task."""
        policy = ToolPolicy(available=BUILTIN_TOOLS, may_delegate=False)

        assert "Task" not in policy.effective_tools
        assert "ActivateSkill" in policy.effective_tools


class TestToolPolicySkills:
    """Skill restrictions filter capabilities, not orchestration."""

    def test_skill_restriction(self) -> None:
        policy = ToolPolicy(available=BUILTIN_TOOLS | EXTERNAL, skill_allowed=frozenset({"Read"}))

        assert policy.effective_tools == frozenset({"Read"}) | ORCHESTRATION_TOOLS

    def test_skill_cannot_grant_unavailable_tool(self) -> None:
        policy = ToolPolicy(available=frozenset({"Read"}), skill_allowed=frozenset({"Read", "Write"}))

        assert policy.effective_tools == frozenset({"Read"})


class TestToolPolicySubagentRestriction:
    """Subagent restrictions intersect with everything else."""

    def test_restriction_removes_orchestration(self) -> None:
        """A child's tool set is exact, orchestration included."""
        policy = ToolPolicy(
            available=BUILTIN_TOOLS,
            skill_allowed=frozenset({"Read", "Grep"}),
            restriction=frozenset({"Read", "Bash"}),
            may_delegate=False,
        )

        assert policy.effective_tools == frozenset({"Read"})


class TestToolPolicyAllowedTools:
    """Tests for get_allowed_tools method."""

    def test_returns_sorted_list(self) -> None:
        """Should return sorted list of tools."""
        policy = ToolPolicy(available=BUILTIN_TOOLS)
        allowed = policy.get_allowed_tools()

        assert allowed == sorted(allowed)


class TestToolPolicyIsToolAvailable:
    """Tests for is_tool_available method."""

    def test_builtin_available(self) -> None:
        policy = ToolPolicy(available=BUILTIN_TOOLS)

        for tool in BUILTIN_TOOLS:
            assert policy.is_tool_available(tool)

    def test_unknown_tool_unavailable(self) -> None:
        """Tools the registry doesn't know are never available."""
        policy = ToolPolicy(available=BUILTIN_TOOLS)

        assert not policy.is_tool_available("mcp.custom.my_tool")
