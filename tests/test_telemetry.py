import asyncio
import logging

import pytest

from rawwire.core.config import Settings
from rawwire.core.telemetry import (
    NO_EXECUTION,
    bind_execution,
    current_execution_id,
    install_record_factory,
    parse_otlp_headers,
    setup_telemetry,
)
from rawwire.pipeline.engine import PipelineEngine
from rawwire.schemas.pipelines import CallbackStep


def test_parse_otlp_headers() -> None:
    assert parse_otlp_headers("authorization=Bearer x, tenant = news ,broken,=nokey") == {
        "authorization": "Bearer x",
        "tenant": "news",
    }
    assert parse_otlp_headers(None) == {}


def test_disabled_telemetry_installs_nothing() -> None:
    runtime = setup_telemetry(Settings(otel_enabled=False), component="worker")
    assert not runtime.enabled
    assert runtime.component == "worker"


def test_bind_execution_scopes_the_execution_id() -> None:
    assert current_execution_id() == NO_EXECUTION
    with bind_execution("exec-1"):
        assert current_execution_id() == "exec-1"
    assert current_execution_id() == NO_EXECUTION


def test_pipeline_logs_carry_execution_id(caplog: pytest.LogCaptureFixture) -> None:
    install_record_factory()
    engine = PipelineEngine(
        [CallbackStep(callback="noop")],
        settings=Settings(),
        callbacks={"noop": lambda context: None},
    )

    with caplog.at_level(logging.INFO, logger="rawwire.pipeline.engine"):
        result = asyncio.run(engine.trigger())

    finished = [record for record in caplog.records if record.getMessage().startswith("pipeline finished")]
    assert finished
    assert finished[0].execution_id == result.execution_id
