"""
config.py: runtime configuration for the presence engine.

Pydantic models for every tunable parameter; loaded from YAML
(see configs/dev.yaml). Thresholds are validated for the normalized
0..1 volume domain.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator

from services.presence.core.volume_gate import check_threshold

log = logging.getLogger("presence.config")


class ThresholdConfig(BaseModel):
    listening: float = Field(default=0.01, description="Mic volume above which the user counts as speaking")
    talking: float = Field(default=0.05, description="Model output volume above which the agent counts as talking")

    @field_validator("listening", "talking")
    @classmethod
    def _in_volume_domain(cls, v: float) -> float:
        return check_threshold(v)


class CooldownConfig(BaseModel):
    talking_ms: int = Field(default=2000, ge=0, description="Agent-talking hold time after the last loud sample")


class CaptureConfig(BaseModel):
    sample_rate_hz: int = Field(default=16000, gt=0)
    block_ms: int = Field(default=40, gt=0, le=1000, description="Capture block length (ms)")
    volume_window_ms: int = Field(default=100, gt=0, le=2000, description="RMS window for volume samples (ms)")
    device: Optional[Union[int, str]] = Field(default=None, description="Input device name or index")


class RecognitionConfig(BaseModel):
    language: str = Field(default="en-US", description="Fixed recognition language")
    model: str = Field(default="tiny.en", description="faster-whisper model name or path")
    device: str = Field(default="cpu")
    compute_type: str = Field(default="int8")
    window_ms: int = Field(default=3000, gt=0)
    tail_ms: int = Field(default=2000, gt=0)
    stride_ms: int = Field(default=400, gt=0, description="Interim result cadence (ms of voiced audio)")
    endpoint_ms: int = Field(default=800, gt=0, description="Silence that closes an utterance (ms)")
    idle_timeout_s: Optional[float] = Field(default=8.0, gt=0, description="Stream ends after this long without audio")
    restart_on_end: bool = Field(default=True, description="Reopen recognition when it ends while connected")


class PolicyConfig(BaseModel):
    reconnect_after_edit: bool = Field(
        default=False, description="Reconnect when an edit context that forced a disconnect closes")


class PresenceConfig(BaseModel):
    """Complete runtime configuration."""
    thresholds: ThresholdConfig = Field(default_factory=ThresholdConfig)
    cooldown: CooldownConfig = Field(default_factory=CooldownConfig)
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    recognition: RecognitionConfig = Field(default_factory=RecognitionConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "PresenceConfig":
        """Load from a YAML file. Returns defaults if the file doesn't exist."""
        p = Path(path)
        if not p.exists():
            log.info("event=config_load_defaults path=%s", p)
            return cls()
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        config = cls.model_validate(data)
        log.info("event=config_loaded path=%s", p)
        return config

    def merge_patch(self, patch: dict) -> "PresenceConfig":
        """Return a new config with `patch` merged over `self`.

        Nested partial updates only touch the given keys, e.g.
            {"thresholds": {"talking": 0.1}}
        """
        base = self.model_dump()
        _deep_merge(base, patch)
        return PresenceConfig.model_validate(base)


def _deep_merge(base: dict, patch: dict) -> None:
    for key, value in patch.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
