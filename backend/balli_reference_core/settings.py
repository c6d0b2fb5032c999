from __future__ import annotations

import os
from dataclasses import dataclass


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


@dataclass(frozen=True)
class StateSettings:
    decay_per_turn: float = 0.1
    salience_floor: float = 0.3
    max_entities: int = 10
    max_measurements: int = 10
    max_lists: int = 5
    max_recommendations: int = 5
    max_procedures: int = 3
    max_examples: int = 5
    extraction_timeout_seconds: float = 20.0
    extraction_temperature: float = 0.1
    extraction_max_tokens: int = 1500

    @classmethod
    def from_env(cls) -> "StateSettings":
        defaults = cls()
        return cls(
            decay_per_turn=min(1.0, max(0.0, _env_float("BALLI_SALIENCE_DECAY_PER_TURN", defaults.decay_per_turn))),
            salience_floor=min(1.0, max(0.0, _env_float("BALLI_SALIENCE_FLOOR", defaults.salience_floor))),
            max_entities=_env_int("BALLI_MAX_ENTITIES", defaults.max_entities),
            max_measurements=_env_int("BALLI_MAX_MEASUREMENTS", defaults.max_measurements),
            extraction_timeout_seconds=_env_float(
                "BALLI_EXTRACTION_TIMEOUT_SECONDS", defaults.extraction_timeout_seconds
            ),
        )


DEFAULT_SETTINGS = StateSettings()
