# tests/unit/test_observability.py
"""遥测上下文与日志初始化。"""

import json
import logging
from typing import Any

import pytest

from shoptrans.observability import Telemetry, setup_logging
from shoptrans.observability.logging_config import PanelRenderer


class RecordingSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, event: str, **fields: Any) -> None:
        self.events.append((event, fields))


class BrokenSink:
    def emit(self, event: str, **fields: Any) -> None:
        raise RuntimeError("sink down")


@pytest.mark.asyncio
async def test_pipeline_emits_start_and_end() -> None:
    sink = RecordingSink()
    telemetry = Telemetry(sink)
    async with telemetry.pipeline("scan", shop_id="s1"):
        pass

    names = [name for name, _ in sink.events]
    assert names == ["pipeline.start", "pipeline.end"]
    end = sink.events[-1][1]
    assert end["operation"] == "scan"
    assert end["outcome"] == "success"
    assert end["shop_id"] == "s1"
    assert end["duration_ms"] >= 0


@pytest.mark.asyncio
async def test_pipeline_reports_failure_and_reraises() -> None:
    sink = RecordingSink()
    with pytest.raises(ValueError):
        async with Telemetry(sink).pipeline("scan"):
            raise ValueError("boom")
    assert sink.events[-1][1]["outcome"] == "failure"


@pytest.mark.asyncio
async def test_step_success_and_fail_events() -> None:
    sink = RecordingSink()
    telemetry = Telemetry(sink)
    async with telemetry.step("job", job_id="j1"):
        pass
    with pytest.raises(KeyError):
        async with telemetry.step("job", job_id="j2"):
            raise KeyError("missing")

    names = [name for name, _ in sink.events]
    assert names == ["step.start", "step.success", "step.start", "step.fail"]
    failed = sink.events[-1][1]
    assert failed["job_id"] == "j2"
    assert failed["error"].startswith("KeyError")


@pytest.mark.asyncio
async def test_broken_sink_never_breaks_the_operation() -> None:
    telemetry = Telemetry(BrokenSink())
    async with telemetry.step("job"):
        result = 1 + 1
    assert result == 2


def test_setup_logging_configures_levels() -> None:
    setup_logging(log_level="DEBUG", log_format="json", service="test")
    assert logging.getLogger("shoptrans").level == logging.DEBUG
    assert logging.getLogger().level == logging.WARNING
    assert logging.getLogger("aiosqlite").level == logging.WARNING
    setup_logging(log_level="WARNING")


def test_json_logging_renders_structured_output(
    capsys: pytest.CaptureFixture[str],
) -> None:
    import structlog

    setup_logging(log_level="INFO", log_format="json", service="svc")
    structlog.get_logger("shoptrans.test").info("hello", answer=42)
    line = capsys.readouterr().err.strip().splitlines()[-1]
    payload = json.loads(line)
    assert payload["event"] == "hello"
    assert payload["answer"] == 42
    assert payload["service"] == "svc"
    setup_logging(log_level="WARNING")


def test_panel_renderer_skips_empty_events() -> None:
    renderer = PanelRenderer()
    assert renderer(None, "info", {"event": ""}) == ""
    rendered = renderer(None, "info", {"event": "saved", "level": "info", "count": 3})
    assert "saved" in rendered
    assert "count" in rendered
