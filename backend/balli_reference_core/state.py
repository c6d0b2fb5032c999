"""Conversation state snapshot and the merge rules that keep it bounded.

A ``ConversationState`` is created once per session and replaced wholesale by
the extractor after every turn. Entity collections are relevance ranked by a
linearly decaying salience score; measurements and assistant outputs are kept
as short most-recent-N logs.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from balli_memory.time_utils import to_iso, utc_now

from .settings import DEFAULT_SETTINGS, StateSettings


SALIENCE_CATEGORIES = ("medications", "foods", "symptoms", "exercises", "medical_terms")
ENTITY_CATEGORIES = ("medications", "foods", "measurements", "symptoms", "exercises", "medical_terms")

_CATEGORY_LABELS = {
    "medications": "medication",
    "foods": "food",
    "symptoms": "symptom",
    "exercises": "exercise",
    "medical_terms": "medical_term",
}


@dataclass
class EntityMention:
    name: str
    mentioned_turn: int
    mentioned_by: str = "assistant"
    salience: float = 1.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "mentioned_turn": self.mentioned_turn,
            "mentioned_by": self.mentioned_by,
            "salience": self.salience,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "EntityMention":
        return cls(
            name=str(payload.get("name") or ""),
            mentioned_turn=int(payload.get("mentioned_turn") or 0),
            mentioned_by=str(payload.get("mentioned_by") or "assistant"),
            salience=float(payload.get("salience", 1.0)),
        )


@dataclass(frozen=True)
class RawMention:
    name: str
    salience: float = 1.0
    by: str = "assistant"


@dataclass
class Measurement:
    type: str
    value: float
    unit: str
    timestamp: str
    turn: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "value": self.value,
            "unit": self.unit,
            "timestamp": self.timestamp,
            "turn": self.turn,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Measurement":
        return cls(
            type=str(payload.get("type") or ""),
            value=payload.get("value", 0),
            unit=str(payload.get("unit") or ""),
            timestamp=str(payload.get("timestamp") or ""),
            turn=int(payload.get("turn") or 0),
        )


@dataclass
class EntityCollections:
    medications: list[EntityMention] = field(default_factory=list)
    foods: list[EntityMention] = field(default_factory=list)
    measurements: list[Measurement] = field(default_factory=list)
    symptoms: list[EntityMention] = field(default_factory=list)
    exercises: list[EntityMention] = field(default_factory=list)
    medical_terms: list[EntityMention] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {category: [item.to_dict() for item in getattr(self, category)] for category in ENTITY_CATEGORIES}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "EntityCollections":
        payload = payload or {}
        collections = cls(measurements=[Measurement.from_dict(item) for item in payload.get("measurements") or []])
        for category in SALIENCE_CATEGORIES:
            setattr(collections, category, [EntityMention.from_dict(item) for item in payload.get(category) or []])
        return collections


@dataclass
class LastQuestion:
    type: str
    subject: str
    verb: str
    turn: int
    full_question: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "subject": self.subject,
            "verb": self.verb,
            "turn": self.turn,
            "full_question": self.full_question,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "LastQuestion | None":
        if not payload:
            return None
        return cls(
            type=str(payload.get("type") or ""),
            subject=str(payload.get("subject") or ""),
            verb=str(payload.get("verb") or ""),
            turn=int(payload.get("turn") or 0),
            full_question=str(payload.get("full_question") or ""),
        )


@dataclass
class LastStatement:
    claim: str
    by: str
    turn: int

    def to_dict(self) -> dict[str, Any]:
        return {"claim": self.claim, "by": self.by, "turn": self.turn}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "LastStatement | None":
        if not payload:
            return None
        return cls(
            claim=str(payload.get("claim") or ""),
            by=str(payload.get("by") or "assistant"),
            turn=int(payload.get("turn") or 0),
        )


@dataclass
class DiscourseState:
    current_topic: str | None = None
    previous_topic: str | None = None
    last_question: LastQuestion | None = None
    last_statement: LastStatement | None = None
    open_questions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_topic": self.current_topic,
            "previous_topic": self.previous_topic,
            "last_question": self.last_question.to_dict() if self.last_question else None,
            "last_statement": self.last_statement.to_dict() if self.last_statement else None,
            "open_questions": list(self.open_questions),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "DiscourseState":
        payload = payload or {}
        return cls(
            current_topic=payload.get("current_topic"),
            previous_topic=payload.get("previous_topic"),
            last_question=LastQuestion.from_dict(payload.get("last_question")),
            last_statement=LastStatement.from_dict(payload.get("last_statement")),
            open_questions=[str(item) for item in payload.get("open_questions") or []],
        )


@dataclass
class PresentedList:
    items: list[str]
    context: str
    turn: int

    def to_dict(self) -> dict[str, Any]:
        return {"items": list(self.items), "context": self.context, "turn": self.turn}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PresentedList":
        return cls(
            items=[str(item) for item in payload.get("items") or []],
            context=str(payload.get("context") or ""),
            turn=int(payload.get("turn") or 0),
        )


@dataclass
class Recommendation:
    what: str
    reason: str
    turn: int

    def to_dict(self) -> dict[str, Any]:
        return {"what": self.what, "reason": self.reason, "turn": self.turn}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Recommendation":
        return cls(
            what=str(payload.get("what") or ""),
            reason=str(payload.get("reason") or ""),
            turn=int(payload.get("turn") or 0),
        )


@dataclass
class AIOutputs:
    lists_presented: list[PresentedList] = field(default_factory=list)
    recommendations: list[Recommendation] = field(default_factory=list)
    procedures_explained: list[dict[str, Any]] = field(default_factory=list)
    examples: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "lists_presented": [item.to_dict() for item in self.lists_presented],
            "recommendations": [item.to_dict() for item in self.recommendations],
            "procedures_explained": copy.deepcopy(self.procedures_explained),
            "examples": copy.deepcopy(self.examples),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "AIOutputs":
        payload = payload or {}
        return cls(
            lists_presented=[PresentedList.from_dict(item) for item in payload.get("lists_presented") or []],
            recommendations=[Recommendation.from_dict(item) for item in payload.get("recommendations") or []],
            procedures_explained=[dict(item) for item in payload.get("procedures_explained") or []],
            examples=[dict(item) for item in payload.get("examples") or []],
        )


@dataclass
class ConversationState:
    entities: EntityCollections = field(default_factory=EntityCollections)
    discourse: DiscourseState = field(default_factory=DiscourseState)
    ai_outputs: AIOutputs = field(default_factory=AIOutputs)
    procedural: dict[str, Any] = field(default_factory=dict)
    commitments: dict[str, Any] = field(default_factory=dict)
    turn_count: int = 0
    last_updated: str = ""
    user_id: str = "unknown"
    message_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "entities": self.entities.to_dict(),
            "discourse": self.discourse.to_dict(),
            "ai_outputs": self.ai_outputs.to_dict(),
            "procedural": copy.deepcopy(self.procedural),
            "commitments": copy.deepcopy(self.commitments),
            "turn_count": self.turn_count,
            "last_updated": self.last_updated,
            "user_id": self.user_id,
            "message_count": self.message_count,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "ConversationState":
        payload = payload or {}
        return cls(
            entities=EntityCollections.from_dict(payload.get("entities")),
            discourse=DiscourseState.from_dict(payload.get("discourse")),
            ai_outputs=AIOutputs.from_dict(payload.get("ai_outputs")),
            procedural=dict(payload.get("procedural") or {}),
            commitments=dict(payload.get("commitments") or {}),
            turn_count=int(payload.get("turn_count") or 0),
            last_updated=str(payload.get("last_updated") or ""),
            user_id=str(payload.get("user_id") or "unknown"),
            message_count=int(payload.get("message_count") or 0),
        )


@dataclass(frozen=True)
class SalientEntity:
    name: str
    salience: float
    type: str
    turn_delta: int


def initialize_conversation_state(user_id: str) -> ConversationState:
    return ConversationState(user_id=user_id, last_updated=to_iso(utc_now()))


def decay_salience(
    salience: float,
    mentioned_turn: int,
    current_turn: int,
    settings: StateSettings = DEFAULT_SETTINGS,
) -> float:
    # Linear decay by turn distance, floored; a score already under the floor is never raised.
    distance = max(0, current_turn - mentioned_turn)
    decayed = salience * (1.0 - distance * settings.decay_per_turn)
    floor = min(salience, settings.salience_floor)
    return max(floor, min(salience, decayed))


def _coerce_mention(mention: RawMention | Mapping[str, Any], default_by: str) -> RawMention | None:
    if isinstance(mention, RawMention):
        return mention if mention.name.strip() else None
    name = str(mention.get("name") or "").strip()
    if not name:
        return None
    raw_salience = mention.get("salience")
    try:
        salience = 1.0 if raw_salience is None or raw_salience == "" else float(raw_salience)
    except (TypeError, ValueError):
        salience = 1.0
    return RawMention(
        name=name,
        salience=min(1.0, max(0.0, salience)),
        by=str(mention.get("by") or default_by),
    )


def merge_entity_mentions(
    existing: Iterable[EntityMention],
    new_mentions: Iterable[RawMention | Mapping[str, Any]],
    current_turn: int,
    settings: StateSettings = DEFAULT_SETTINGS,
    *,
    default_by: str = "assistant",
) -> list[EntityMention]:
    merged: dict[str, EntityMention] = {}
    for entity in existing:
        merged[entity.name.lower()] = EntityMention(
            name=entity.name,
            mentioned_turn=entity.mentioned_turn,
            mentioned_by=entity.mentioned_by,
            salience=decay_salience(entity.salience, entity.mentioned_turn, current_turn, settings),
        )

    for raw in new_mentions:
        mention = _coerce_mention(raw, default_by)
        if mention is None:
            continue
        merged[mention.name.lower()] = EntityMention(
            name=mention.name,
            mentioned_turn=current_turn,
            mentioned_by=mention.by,
            salience=mention.salience,
        )

    ranked = sorted(merged.values(), key=lambda entity: entity.salience, reverse=True)
    return ranked[: settings.max_entities]


def merge_measurements(
    existing: Iterable[Measurement],
    new_measurements: Iterable[Mapping[str, Any]],
    current_turn: int,
    settings: StateSettings = DEFAULT_SETTINGS,
    *,
    timestamp: str | None = None,
) -> list[Measurement]:
    observed_at = timestamp or to_iso(utc_now())
    combined = list(existing)
    for raw in new_measurements:
        combined.append(
            Measurement(
                type=str(raw.get("type") or ""),
                value=raw.get("value", 0),
                unit=str(raw.get("unit") or ""),
                timestamp=observed_at,
                turn=current_turn,
            )
        )
    return combined[-settings.max_measurements :]


def append_bounded(existing: list[Any], new_items: Iterable[Any], limit: int) -> list[Any]:
    combined = [*existing, *new_items]
    if limit <= 0:
        return []
    return combined[-limit:]


def get_most_salient_entity(state: ConversationState) -> SalientEntity | None:
    pooled: list[tuple[EntityMention, str]] = []
    for category in SALIENCE_CATEGORIES:
        pooled.extend((entity, _CATEGORY_LABELS[category]) for entity in getattr(state.entities, category))
    if not pooled:
        return None
    entity, label = max(pooled, key=lambda item: item[0].salience)
    return SalientEntity(
        name=entity.name,
        salience=entity.salience,
        type=label,
        turn_delta=max(0, state.turn_count - entity.mentioned_turn),
    )


def latest_measurement(state: ConversationState) -> Measurement | None:
    return state.entities.measurements[-1] if state.entities.measurements else None
