from __future__ import annotations

import json

from nodepulse.models.metadata import DiskInfo, DiskList
from nodepulse.output.formatter import OutputFormatter
from nodepulse.output.json_output import format_json_error, format_json_response, sample_payload
from nodepulse.stream.buffer import StreamBuffer


class TestFormatJsonResponse:
    """Tests for :func:`format_json_response`."""

    def test_with_model(self) -> None:
        disks = DiskList(disks=[DiskInfo(id=0, name="root", device="/dev/sda")])
        raw = format_json_response(data=disks, command="disks")
        parsed = json.loads(raw)

        assert parsed["ok"] is True
        assert parsed["command"] == "disks"
        assert parsed["data"]["disks"][0] == {"id": 0, "name": "root", "device": "/dev/sda"}
        assert "timestamp" in parsed

    def test_with_list_of_models(self) -> None:
        disks = [DiskInfo(id=0), DiskInfo(id=1, type="HDD")]
        parsed = json.loads(format_json_response(data=disks, command="disks"))

        assert parsed["data"] == [{"id": 0}, {"id": 1, "type": "HDD"}]

    def test_with_dict(self) -> None:
        data = {"key": "value", "count": 42}
        parsed = json.loads(format_json_response(data=data, command="raw.get"))
        assert parsed["data"] == {"key": "value", "count": 42}

    def test_compact_is_single_line(self) -> None:
        raw = format_json_response(data={"x": 1}, command="watch", compact=True)
        assert "\n" not in raw
        assert json.loads(raw)["data"] == {"x": 1}

    def test_timestamp_is_iso_utc(self) -> None:
        parsed = json.loads(format_json_response(data={"x": 1}, command="test"))
        assert parsed["timestamp"].endswith("+00:00")


class TestSamplePayload:
    def test_shape(self) -> None:
        buf = StreamBuffer()
        buf.append(1.0)
        sample = buf.append(42.0, {"cores": 8.0, "model": "Xeon"})

        payload = sample_payload("cpu", sample, node_id="n1")

        assert payload == {
            "key": "cpu",
            "t": 1,
            "value": 42.0,
            "aux": {"cores": 8.0, "model": "Xeon"},
            "node_id": "n1",
        }

    def test_without_node(self) -> None:
        sample = StreamBuffer().append(1.0)
        assert "node_id" not in sample_payload("memory", sample)


class TestFormatJsonError:
    """Tests for :func:`format_json_error`."""

    def test_basic_error(self) -> None:
        raw = format_json_error(code="http_404", message="no such node", command="disks")
        parsed = json.loads(raw)

        assert parsed["ok"] is False
        assert parsed["command"] == "disks"
        assert parsed["error"] == {"code": "http_404", "message": "no such node"}

    def test_extra_fields(self) -> None:
        raw = format_json_error(code="x", message="y", command="z", retry_after=3)
        assert json.loads(raw)["error"]["retry_after"] == 3


class TestOutputFormatter:
    def test_non_tty_defaults_to_json(self) -> None:
        class _Pipe:
            def isatty(self) -> bool:
                return False

        assert OutputFormatter(stream=_Pipe()).format == "json"

    def test_tty_defaults_to_rich(self) -> None:
        class _Tty:
            def isatty(self) -> bool:
                return True

        assert OutputFormatter(stream=_Tty()).format == "rich"

    def test_output_sample_json_line(self, capsys) -> None:
        formatter = OutputFormatter(force_format="json")
        buf = StreamBuffer()
        sample = buf.append(5.0)

        formatter.output_sample("cpu", sample, buf, command="watch", node_id="n1")

        line = capsys.readouterr().out.strip()
        parsed = json.loads(line)
        assert parsed["command"] == "watch"
        assert parsed["data"]["value"] == 5.0
        assert parsed["data"]["node_id"] == "n1"

    def test_output_sample_quiet_prints_nothing(self, capsys) -> None:
        formatter = OutputFormatter(force_format="quiet")
        buf = StreamBuffer()
        formatter.output_sample("cpu", buf.append(1.0), buf, command="watch")
        assert capsys.readouterr().out == ""

    def test_output_error_json(self, capsys) -> None:
        OutputFormatter(force_format="json").output_error(
            code="config_error", message="bad host", command="watch"
        )
        parsed = json.loads(capsys.readouterr().out)
        assert parsed["error"]["code"] == "config_error"
