"""Tests for the watch, sidebar and disks commands."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from nodepulse.cli.main import cli
from tests.stream._fakes import FakeConnector, FakeSocket

if TYPE_CHECKING:
    from pytest_httpx import HTTPXMock


class _ScriptedConnector(FakeConnector):
    """Connector whose sockets start out holding a fixed list of frames."""

    def __init__(self, frames: list[dict[str, Any]]) -> None:
        super().__init__()
        self.frames = frames

    async def __call__(self, url: str) -> FakeSocket:
        sock = await super().__call__(url)
        for frame in self.frames:
            sock.feed(frame)
        return sock


def _lines(output: str) -> list[dict[str, Any]]:
    return [json.loads(line) for line in output.splitlines() if line.strip()]


@pytest.fixture()
def sidebar_frames() -> list[dict[str, Any]]:
    return [
        {
            "type": "minigraphs_metrics",
            "data": {
                "cpu": {"usage": 15},
                "memory": {"usage_percent": 40, "used_gb": 3.2, "total_gb": 8},
                "disks": [{"id": 0, "usage_percent": 70, "name": "root"}],
                "networks": [{"interface": "eth0", "rx_kbps": 12, "tx_kbps": 3}],
            },
        }
    ]


class TestWatch:
    def test_streams_samples_as_json_lines(self, cli_env: dict[str, str]) -> None:
        connector = _ScriptedConnector(
            [
                {"type": "ping"},
                {"type": "cpu_metrics", "data": {"usage": 10}},
                {"type": "cpu_metrics", "data": {"usage": 20}},
                {"type": "cpu_metrics", "data": {"usage": 30}},
            ]
        )
        runner = CliRunner()
        with patch("nodepulse.stream.session.websocket_connector", connector):
            result = runner.invoke(
                cli, ["watch", "cpu", "--node", "n1", "--count", "2", "--format", "json"]
            )

        assert result.exit_code == 0, result.output
        lines = _lines(result.stdout)
        assert [line["data"]["value"] for line in lines] == [10.0, 20.0]
        assert [line["data"]["t"] for line in lines] == [0, 1]
        assert all(line["command"] == "watch" for line in lines)
        assert lines[0]["data"]["node_id"] == "n1"
        assert connector.urls == [
            "ws://127.0.0.1:8000/performance/ws/cpu/n1?token=test-token-123"
        ]
        assert json.loads(connector.last.sent[0]) == {"type": "pong"}
        assert connector.last.closed

    def test_duration_ends_quiet_stream(self, cli_env: dict[str, str]) -> None:
        connector = _ScriptedConnector([])
        runner = CliRunner()
        with patch("nodepulse.stream.session.websocket_connector", connector):
            result = runner.invoke(
                cli, ["watch", "memory", "--node", "n1", "--duration", "0.05", "--format", "json"]
            )

        assert result.exit_code == 0
        assert result.stdout.strip() == ""
        assert connector.last.closed

    def test_unknown_topic_rejected(self, cli_env: dict[str, str]) -> None:
        runner = CliRunner()
        result = runner.invoke(cli, ["watch", "gpu", "--node", "n1"])
        assert result.exit_code == 2


class TestSidebar:
    def test_one_frame_feeds_every_resource(
        self, cli_env: dict[str, str], sidebar_frames: list[dict[str, Any]]
    ) -> None:
        connector = _ScriptedConnector(sidebar_frames)
        runner = CliRunner()
        with patch("nodepulse.stream.session.websocket_connector", connector):
            result = runner.invoke(
                cli,
                ["sidebar", "--node", "n1", "--disk", "0", "--count", "1", "--format", "json"],
            )

        assert result.exit_code == 0, result.output
        by_key = {line["data"]["key"]: line["data"]["value"] for line in _lines(result.stdout)}
        assert by_key == {"cpu": 15.0, "memory": 40.0, "disk:0": 70.0, "network:0": 15.0}
        assert len(connector.urls) == 1
        assert "/ws/minigraphs/n1?" in connector.urls[0]

    def test_discovers_disks(
        self,
        cli_env: dict[str, str],
        sidebar_frames: list[dict[str, Any]],
        httpx_mock: HTTPXMock,
    ) -> None:
        httpx_mock.add_response(
            url="http://127.0.0.1:8000/performance/disk_list/n1",
            json={"disks": [{"id": 0, "name": "root"}]},
        )
        connector = _ScriptedConnector(sidebar_frames)
        runner = CliRunner()
        with patch("nodepulse.stream.session.websocket_connector", connector):
            result = runner.invoke(
                cli, ["sidebar", "--node", "n1", "--count", "1", "--format", "json"]
            )

        assert result.exit_code == 0, result.output
        keys = {line["data"]["key"] for line in _lines(result.stdout)}
        assert "disk:0" in keys

    def test_discovery_failure_falls_back_to_disk_zero(
        self,
        cli_env: dict[str, str],
        sidebar_frames: list[dict[str, Any]],
        httpx_mock: HTTPXMock,
    ) -> None:
        httpx_mock.add_response(
            url="http://127.0.0.1:8000/performance/disk_list/n1", status_code=500
        )
        connector = _ScriptedConnector(sidebar_frames)
        runner = CliRunner()
        with patch("nodepulse.stream.session.websocket_connector", connector):
            result = runner.invoke(
                cli, ["sidebar", "--node", "n1", "--count", "1", "--format", "json"]
            )

        assert result.exit_code == 0, result.output
        keys = {line["data"]["key"] for line in _lines(result.stdout)}
        assert "disk:0" in keys


class TestDisks:
    def test_json(self, cli_env: dict[str, str], httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            url="http://127.0.0.1:8000/performance/disk_list/n1",
            json={"disks": [{"id": 0, "name": "root", "model": "Samsung SSD"}]},
        )
        runner = CliRunner()
        result = runner.invoke(cli, ["--format", "json", "disks", "--node", "n1"])

        assert result.exit_code == 0, result.output
        parsed = json.loads(result.stdout)
        assert parsed["command"] == "disks"
        assert parsed["data"] == [{"id": 0, "name": "root", "model": "Samsung SSD"}]
        request = httpx_mock.get_requests()[0]
        assert request.headers["authorization"] == "Bearer test-token-123"

    def test_rich(self, cli_env: dict[str, str], httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            url="http://127.0.0.1:8000/performance/disk_list/n1",
            json={"disks": [{"id": 3, "name": "data", "type": "HDD"}]},
        )
        runner = CliRunner()
        result = runner.invoke(cli, ["--format", "rich", "disks", "--node", "n1"])

        assert result.exit_code == 0
        assert "Disks on n1" in result.stdout
        assert "HDD" in result.stdout
