"""Tests for EngineConfig."""
from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from incident_sentinel import EngineConfig, SecurityEngine
from incident_sentinel.core.errors import MalformedSeverityTable
from incident_sentinel.core.interfaces import RecordingEnforcer
from incident_sentinel.core.types import CountermeasureKind, Severity


class TestDefaults:
    def test_default_response_table(self) -> None:
        table = EngineConfig().response_table
        assert table[Severity.LOW] == [CountermeasureKind.LOG]
        assert table[Severity.CRITICAL] == [
            CountermeasureKind.BLOCK,
            CountermeasureKind.ALERT,
            CountermeasureKind.DEPLOY_HONEYPOT,
        ]

    def test_default_limits(self) -> None:
        cfg = EngineConfig()
        assert cfg.context_length_limits["username"] == 50
        assert cfg.per_source_request_limit == 60
        assert cfg.enforcement_max_retries == 1

    def test_defaults_are_not_shared(self) -> None:
        assert EngineConfig().whitelist is not EngineConfig().whitelist


class TestValidation:
    def test_frozen(self) -> None:
        cfg = EngineConfig()
        with pytest.raises(ValidationError):
            cfg.tick_seconds = 1.0  # type: ignore[misc]

    def test_unknown_field_rejected(self) -> None:
        with pytest.raises(ValidationError):
            EngineConfig(tick_secs=1.0)  # type: ignore[call-arg]

    def test_out_of_range(self) -> None:
        with pytest.raises(ValidationError):
            EngineConfig(baseline_smoothing_alpha=0.0)

    def test_retries_capped_at_one(self) -> None:
        with pytest.raises(ValidationError):
            EngineConfig(enforcement_max_retries=3)

    def test_unknown_countermeasure_kind(self) -> None:
        with pytest.raises(ValidationError):
            EngineConfig(response_table={"low": ["launch_missiles"]})

    def test_incomplete_table_fails_engine_construction(self) -> None:
        cfg = EngineConfig(response_table={"low": ["log"], "medium": ["throttle"]})
        with pytest.raises(MalformedSeverityTable) as exc_info:
            SecurityEngine(cfg, RecordingEnforcer())
        assert exc_info.value.code == "SE-401"


class TestFromFile:
    def test_load_json(self, tmp_path) -> None:
        path = tmp_path / "sentinel.json"
        path.write_text(json.dumps({
            "tick_seconds": 1.5,
            "whitelist": ["union station"],
            "response_table": {
                "low": ["log"],
                "medium": ["throttle"],
                "high": ["block"],
                "critical": ["block", "alert"],
            },
        }))
        cfg = EngineConfig.from_file(path)
        assert cfg.tick_seconds == 1.5
        assert cfg.whitelist == ["union station"]
        assert cfg.response_table[Severity.HIGH] == [CountermeasureKind.BLOCK]

    def test_invalid_json(self, tmp_path) -> None:
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        with pytest.raises(ValidationError):
            EngineConfig.from_file(path)
