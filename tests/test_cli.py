"""Tests for the lb-client command line."""

import json

import pytest
from click.testing import CliRunner

from lb_client import __version__
from lb_client import cli as cli_module
from lb_client import retry as retry_module
from lb_client.cli import cli
from lb_client.client import LoadBalancedClient

from .conftest import FakeProvider, server_error

ENDPOINTS = {
    "endpoints": [
        {"api_key": "sk-a", "base_url": "https://a.example/v1", "name": "primary"},
        {"api_key": "sk-b", "base_url": "https://b.example/v1", "model_map": {"gpt-4o": "gpt-4o-2024-08-06"}},
    ]
}


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "endpoints.json"
    path.write_text(json.dumps(ENDPOINTS), encoding="utf-8")
    return str(path)


@pytest.fixture
def providers(monkeypatch):
    """Serve each configured base URL from a FakeProvider instead of the network."""
    by_url = {
        "https://a.example/v1": FakeProvider("primary"),
        "https://b.example/v1": FakeProvider("secondary"),
    }

    def build(config):
        config.provider_factory = lambda endpoint_config: by_url[endpoint_config.base_url]
        return LoadBalancedClient(config)

    monkeypatch.setattr(cli_module, "LoadBalancedClient", build)
    return by_url


class TestSend:
    def test_prints_completion(self, runner, config_file, providers):
        result = runner.invoke(cli, ["-c", config_file, "send", "Hello"])

        assert result.exit_code == 0
        assert result.output == "Hello from primary\n"
        sent = providers["https://a.example/v1"].requests[0]
        assert sent.max_tokens == 1024
        assert sent.temperature == 0.7

    def test_system_prompt_and_model(self, runner, config_file, providers):
        result = runner.invoke(cli, ["-c", config_file, "send", "Hi", "-s", "Be brief", "-m", "gpt-4o"])

        assert result.exit_code == 0
        sent = providers["https://a.example/v1"].requests[0]
        assert [m.role for m in sent.messages] == ["system", "user"]
        assert sent.model == "gpt-4o"

    def test_json_output(self, runner, config_file, providers):
        result = runner.invoke(cli, ["-c", config_file, "send", "Hello", "-j"])

        assert result.exit_code == 0
        output = json.loads(result.output)
        assert output["content"] == "Hello from primary"
        assert set(output) == {"content", "model", "finish_reason", "usage"}

    def test_stream(self, runner, config_file, providers):
        result = runner.invoke(cli, ["-c", config_file, "send", "Hello", "--stream"])

        assert result.exit_code == 0
        assert result.output == "Hello\n"

    def test_retries_move_to_next_endpoint(self, runner, config_file, providers, monkeypatch):
        monkeypatch.setattr(retry_module.time, "sleep", lambda seconds: None)
        providers["https://a.example/v1"].error = server_error()

        result = runner.invoke(cli, ["-c", config_file, "send", "Hello", "--retries", "1"])

        assert result.exit_code == 0
        assert result.output.strip() == "Hello from secondary"

    def test_upstream_error_exits_nonzero(self, runner, config_file, providers):
        providers["https://a.example/v1"].error = server_error()

        result = runner.invoke(cli, ["-c", config_file, "send", "Hello"])

        assert result.exit_code == 1
        assert "Error: Server error: upstream exploded" in result.output

    def test_missing_config_file(self, runner, tmp_path):
        result = runner.invoke(cli, ["-c", str(tmp_path / "nope.json"), "send", "Hello"])

        assert result.exit_code == 1
        assert "Cannot read config file" in result.output


class TestEndpoints:
    def test_lists_endpoints_with_state(self, runner, config_file):
        result = runner.invoke(cli, ["-c", config_file, "endpoints"])

        assert result.exit_code == 0
        lines = result.output.splitlines()
        assert lines[0] == "[CLOSED] primary  https://a.example/v1"
        assert lines[1] == "[CLOSED] Client-1  https://b.example/v1"
        assert lines[2].strip() == "gpt-4o -> gpt-4o-2024-08-06"

    def test_json_output(self, runner, config_file):
        result = runner.invoke(cli, ["-c", config_file, "endpoints", "--json-output"])

        assert result.exit_code == 0
        stats = json.loads(result.output)
        assert list(stats) == ["primary", "Client-1"]
        assert stats["primary"]["state"] == "closed"

    def test_reads_environment_without_config_file(self, runner):
        result = runner.invoke(
            cli,
            ["endpoints"],
            env={"LB_BASE_URLS": "https://a.example/v1,https://b.example/v1", "LB_API_KEYS": "sk-a,sk-b"},
        )

        assert result.exit_code == 0
        assert "Client-0" in result.output
        assert "Client-1" in result.output

    def test_missing_environment(self, runner, monkeypatch):
        monkeypatch.delenv("LB_BASE_URLS", raising=False)
        result = runner.invoke(cli, ["endpoints"])

        assert result.exit_code == 1
        assert "LB_BASE_URLS is not set" in result.output


def test_version(runner):
    result = runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output
