from __future__ import annotations

import json

import pytest
import yaml

from stockpot.engine.agent_registry import AgentRegistry, agent_from_dict
from stockpot.engine.config import EngineConfig
from stockpot.engine.errors import AgentNotFoundError
from stockpot.engine.lifecycle import validate_transition
from stockpot.engine.mcp.config import (
    expand_env_vars,
    load_server_configs,
    parse_server_configs,
)
from stockpot.engine.model_client import ScriptedModelClient
from stockpot.engine.models import ServerState
from stockpot.engine.yaml_config import load_yaml_config


class TestEngineConfig:
    def test_defaults(self) -> None:
        config = EngineConfig()
        assert config.max_iterations == 50
        assert config.max_nesting_depth == 3
        assert config.diff_fuzz_lines == 3

    def test_from_env(self, monkeypatch) -> None:
        monkeypatch.setenv("STOCKPOT_MAX_ITERATIONS", "7")
        monkeypatch.setenv("STOCKPOT_SHELL_TIMEOUT", "2.5")
        monkeypatch.setenv("STOCKPOT_SEQUENTIAL_TOOLS", "true")
        config = EngineConfig.from_env()
        assert config.max_iterations == 7
        assert config.shell_timeout_seconds == 2.5
        assert config.max_parallel_tools == 1

    def test_merged_ignores_unknown_keys(self) -> None:
        base = EngineConfig(max_iterations=10)
        merged = base.merged({"max_nesting_depth": 1, "bogus": True})
        assert merged.max_nesting_depth == 1
        assert merged.max_iterations == 10
        assert base.max_nesting_depth == 3
        assert not hasattr(merged, "bogus")


class TestServerConfig:
    def test_expand_env_vars(self) -> None:
        env = {"HOME": "/home/me"}
        assert expand_env_vars("${HOME}/idx", env) == "/home/me/idx"
        assert expand_env_vars("${MISSING}x", env) == "x"
        assert expand_env_vars("${}y", env) == "y"
        assert expand_env_vars("${UNCLOSED", env) == "${UNCLOSED"

    def test_parse_accepts_both_top_level_keys(self) -> None:
        entry = {"command": "srv", "args": ["--key", "${TOKEN}"], "env": {"A": "${TOKEN}"}}
        for key in ("servers", "mcpServers"):
            configs = parse_server_configs({key: {"s": entry}}, environ={"TOKEN": "t"})
            assert configs["s"].args == ("--key", "t")
            assert configs["s"].env_dict == {"A": "t"}

    def test_skips_disabled_and_invalid(self) -> None:
        configs = parse_server_configs({"servers": {
            "off": {"command": "x", "enabled": False},
            "nocmd": {"args": []},
            "remote": {"type": "http", "url": "http://x", "command": "x"},
            "ok": {"command": "x"},
        }})
        assert list(configs) == ["ok"]

    def test_load_missing_file_is_empty(self, tmp_path) -> None:
        assert load_server_configs(tmp_path / "none.json") == {}

    def test_load_json_file(self, tmp_path) -> None:
        path = tmp_path / "servers.json"
        path.write_text(json.dumps({"mcpServers": {"a": {"command": "run-a"}}}), encoding="utf-8")
        assert load_server_configs(path)["a"].command == "run-a"


def test_load_yaml_config(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("SEARCH_KEY", "secret")
    (tmp_path / "project").mkdir()
    path = tmp_path / "stockpot.yaml"
    path.write_text(yaml.safe_dump({
        "engine": {"max_iterations": 12, "working_dir": "project"},
        "agents": {
            "reviewer": {
                "system_prompt": "Review code.",
                "tools": ["read_file", "grep"],
                "capabilities": {"file_write": False, "shell": False},
            },
        },
        "mcp_servers": {
            "search": {"command": "search-srv", "env": {"KEY": "${SEARCH_KEY}"}},
        },
    }), encoding="utf-8")

    config = load_yaml_config(path)

    assert config.engine.max_iterations == 12
    assert config.engine.working_dir == str((tmp_path / "project").resolve())
    reviewer = config.agents[0]
    assert reviewer.name == "reviewer"
    assert reviewer.tools == ("read_file", "grep")
    assert reviewer.capabilities.file_read
    assert not reviewer.capabilities.shell
    assert config.servers["search"].env_dict == {"KEY": "secret"}


def test_load_yaml_config_missing_file(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        load_yaml_config(tmp_path / "missing.yaml")


class TestAgents:
    def test_agent_without_capabilities_gets_none(self) -> None:
        agent = agent_from_dict({"name": "bare", "system_prompt": "x"})
        assert agent.capabilities.granted() == []

    def test_agent_requires_prompt(self) -> None:
        with pytest.raises(ValueError, match="system_prompt"):
            agent_from_dict({"name": "empty"})

    def test_agent_mcp_servers_are_loaded(self) -> None:
        agent = agent_from_dict({
            "name": "searcher", "system_prompt": "x", "mcp_servers": ["search", "docs"],
        })
        assert agent.mcp_servers == ("search", "docs")
        assert agent_from_dict({"name": "any", "system_prompt": "x"}).mcp_servers == ()

    def test_registry_has_builtins(self) -> None:
        registry = AgentRegistry()
        assert registry.list_names() == ["code-reviewer", "explore", "planning", "stockpot"]
        with pytest.raises(AgentNotFoundError):
            registry.get("ghost")

    def test_load_directory_skips_templates_and_broken_files(self, tmp_path) -> None:
        (tmp_path / "good.json").write_text(
            json.dumps({"name": "good", "system_prompt": "hi"}), encoding="utf-8"
        )
        (tmp_path / "_template.json").write_text(
            json.dumps({"name": "tmpl", "system_prompt": "hi"}), encoding="utf-8"
        )
        (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")

        registry = AgentRegistry(include_builtins=False)
        assert registry.load_directory(tmp_path) == ["good"]
        assert registry.list_names() == ["good"]


class TestLifecycle:
    def test_valid_transitions(self) -> None:
        validate_transition(ServerState.STOPPED, ServerState.STARTING)
        validate_transition(ServerState.STARTING, ServerState.RUNNING)
        validate_transition(ServerState.RUNNING, ServerState.FAILED)
        validate_transition(ServerState.FAILED, ServerState.STARTING)

    def test_invalid_transition_raises(self) -> None:
        with pytest.raises(ValueError, match="Invalid state transition"):
            validate_transition(ServerState.STOPPED, ServerState.RUNNING)


def test_scripted_client_from_yaml_file(tmp_path) -> None:
    path = tmp_path / "turns.yaml"
    path.write_text(yaml.safe_dump({"turns": [
        {"text": "Looking", "tool_calls": [{"name": "grep", "arguments": {"pattern": "x"}}]},
        "Done.",
    ]}), encoding="utf-8")

    client = ScriptedModelClient.from_file(path)

    assert client.remaining == 2
    assert client._turns[0].tool_calls[0].call_id == "call_0_0"
    assert client._turns[1].text == "Done."
