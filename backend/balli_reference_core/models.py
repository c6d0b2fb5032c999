from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


LAYER_ENTITIES = "entities"
LAYER_DISCOURSE = "discourse"
LAYER_AI_OUTPUTS = "ai_outputs"
LAYER_PROCEDURAL = "procedural"
LAYER_COMMITMENTS = "commitments"

STATE_LAYERS = {LAYER_ENTITIES, LAYER_DISCOURSE, LAYER_AI_OUTPUTS, LAYER_PROCEDURAL, LAYER_COMMITMENTS}


class ReferenceType(str, Enum):
    ELLIPSIS = "ellipsis"
    DEFINITE = "definite"
    COMPARATIVE = "comparative"
    TEMPORAL = "temporal"
    DISCOURSE_MARKER = "discourse_marker"
    AI_OUTPUT = "ai_output"
    EVALUATION = "evaluation"
    CAUSALITY = "causality"
    MODAL = "modal"
    PROCESS = "process"
    MEMORY_RECALL = "memory_recall"
    NONE = "none"


@dataclass(frozen=True)
class DetectedReference:
    type: ReferenceType
    pattern: str
    requires_layers: frozenset[str] = field(default_factory=frozenset)
    confidence: float = 1.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "pattern": self.pattern,
            "requires_layers": sorted(self.requires_layers),
            "confidence": self.confidence,
        }


NO_REFERENCE = DetectedReference(type=ReferenceType.NONE, pattern="", requires_layers=frozenset(), confidence=1.0)


@dataclass(frozen=True)
class ResolvedReference:
    original_pattern: str
    resolved_to: str
    context_guidance: str
    source_layer: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "original_pattern": self.original_pattern,
            "resolved_to": self.resolved_to,
            "context_guidance": self.context_guidance,
            "source_layer": self.source_layer,
        }
