"""
Unit tests for the agg-admin CLI.

Each test points AGG_DB_PATH at a fresh SQLite file.
"""

import json

import pytest
from click.testing import CliRunner

from agg_admin.cli import cli


@pytest.fixture
def runner(tmp_path, monkeypatch):
    monkeypatch.setenv("AGG_DB_PATH", str(tmp_path / "nodes.db"))
    return CliRunner()


def add_node(runner, host="ci.example.com", port="8080", account="svc"):
    return runner.invoke(
        cli,
        [
            "node",
            "add",
            "--host",
            host,
            "--port",
            port,
            "--account",
            account,
            "--password",
            "s3cret",
        ],
    )


def list_json(runner):
    result = runner.invoke(cli, ["node", "list", "--json"])
    assert result.exit_code == 0
    return json.loads(result.output)


class TestNodeCommands:
    """Test suite for the node subcommands."""

    def test_add_node(self, runner):
        result = add_node(runner)

        assert result.exit_code == 0
        assert "✓ Node registered successfully" in result.output
        assert "ci.example.com:8080" in result.output
        assert "s3cret" not in result.output

    def test_list_nodes(self, runner):
        add_node(runner)
        add_node(runner, host="ci.example.org")

        result = runner.invoke(cli, ["node", "list"])

        assert result.exit_code == 0
        assert "ci.example.com:8080" in result.output
        assert "ci.example.org:8080" in result.output
        assert "s3cret" not in result.output

    def test_list_json_has_no_credential(self, runner):
        add_node(runner)

        nodes = list_json(runner)

        assert len(nodes) == 1
        assert nodes[0]["account"] == "svc"
        assert "credential" not in nodes[0]
        assert "password" not in nodes[0]

    def test_list_filter_by_account(self, runner):
        add_node(runner, account="svc")
        add_node(runner, account="ops")

        result = runner.invoke(cli, ["node", "list", "--json", "--account", "ops"])

        assert [n["account"] for n in json.loads(result.output)] == ["ops"]

    def test_list_empty(self, runner):
        result = runner.invoke(cli, ["node", "list"])

        assert result.exit_code == 0
        assert "No nodes found." in result.output

    def test_add_duplicate_fails(self, runner):
        add_node(runner)

        result = add_node(runner)

        assert result.exit_code == 1
        assert "Error:" in result.output
        assert len(list_json(runner)) == 1

    def test_add_invalid_port_fails(self, runner):
        result = add_node(runner, port="0")

        assert result.exit_code == 1
        assert "port" in result.output

    def test_get_node(self, runner):
        add_node(runner)
        node_id = list_json(runner)[0]["id"]

        result = runner.invoke(cli, ["node", "get", node_id])

        assert result.exit_code == 0
        assert node_id in result.output
        assert "svc" in result.output

    def test_get_unknown_node(self, runner):
        result = runner.invoke(cli, ["node", "get", "missing"])

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_update_node(self, runner):
        add_node(runner)
        node_id = list_json(runner)[0]["id"]

        result = runner.invoke(cli, ["node", "update", node_id, "--port", "9090"])

        assert result.exit_code == 0
        assert "✓ Node updated" in result.output
        assert list_json(runner)[0]["port"] == 9090

    def test_update_without_fields(self, runner):
        add_node(runner)
        node_id = list_json(runner)[0]["id"]

        result = runner.invoke(cli, ["node", "update", node_id])

        assert result.exit_code == 1
        assert "Nothing to update" in result.output

    def test_remove_node(self, runner):
        add_node(runner)
        node_id = list_json(runner)[0]["id"]

        result = runner.invoke(cli, ["node", "remove", node_id])

        assert result.exit_code == 0
        assert "✓ Node removed: svc@ci.example.com:8080" in result.output
        assert list_json(runner) == []
