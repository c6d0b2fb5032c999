"""Incremental conversation-state extraction.

Only messages past ``previous_state.message_count`` are sent to the generator.
Any generator error, timeout or unusable response falls back to a regex pass
over the same new messages, so a turn never fails on extraction.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Mapping

from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator, model_validator

from balli_llm import GenerationConfig, ProviderUnavailableError, extract_json_object, generate_text
from balli_memory.time_utils import to_iso, utc_now

from .settings import StateSettings
from .state import (
    AIOutputs,
    ConversationState,
    DiscourseState,
    EntityCollections,
    LastQuestion,
    LastStatement,
    PresentedList,
    RawMention,
    Recommendation,
    append_bounded,
    initialize_conversation_state,
    merge_entity_mentions,
    merge_measurements,
)

logger = logging.getLogger(__name__)

Generator = Callable[[str, GenerationConfig], Awaitable[str]]

STATE_EXTRACTION_PROMPT = """You are a conversation state analyzer for a Turkish diabetes health assistant.

Extract structured state from this exchange. Be PRECISE and MEDICAL-CONTEXT-AWARE.

OUTPUT ONLY VALID JSON matching this exact structure:
{
  "entities": {
    "medications": [{"name": "Novorapid", "salience": 1.0}],
    "foods": [{"name": "karbonhidrat", "salience": 0.9}],
    "measurements": [{"type": "kan şekeri", "value": 180, "unit": "mg/dL"}],
    "symptoms": [{"name": "titreme", "salience": 0.8}],
    "exercises": [],
    "medical_terms": []
  },
  "discourse": {
    "current_topic": "insülin dozajı",
    "last_question": {"type": "how_much", "subject": "insülin dozu", "verb": "vurmalı"},
    "last_statement": {"claim": "40 gram karbonhidrat dengeli", "by": "assistant"}
  },
  "ai_outputs": {
    "lists_presented": [{"items": ["yürüyüş", "yüzme"], "context": "egzersiz seçenekleri"}],
    "recommendations": [{"what": "50 gram karbonhidrat", "reason": "daha aktifsen"}],
    "procedures_explained": [],
    "examples": []
  }
}

CRITICAL RULES:
1. Extract ONLY what's explicitly mentioned
2. Medical terms in Turkish or English (preserve language)
3. Salience 1.0 = most recent mention, decay for older
4. Empty arrays for missing data
5. NO explanations, ONLY JSON"""


class InvalidMessageHistoryError(ValueError):
    pass


class ConversationMessage(BaseModel):
    role: str
    content: str
    turn_number: int = Field(ge=0, validation_alias=AliasChoices("turn_number", "turnNumber"))


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _aliased(name: str, **kwargs: Any) -> Any:
    return Field(validation_alias=AliasChoices(name, _camel(name)), **kwargs)


class ExtractedMention(BaseModel):
    name: str
    salience: float = 1.0
    by: str | None = None

    @field_validator("salience", mode="before")
    @classmethod
    def _clamp_salience(cls, value: Any) -> float:
        if value is None or value == "":
            return 1.0
        return min(1.0, max(0.0, float(value)))


class ExtractedMeasurement(BaseModel):
    type: str
    value: float
    unit: str | None = None


class ExtractedEntities(BaseModel):
    medications: list[ExtractedMention] = Field(default_factory=list)
    foods: list[ExtractedMention] = Field(default_factory=list)
    measurements: list[ExtractedMeasurement] = Field(default_factory=list)
    symptoms: list[ExtractedMention] = Field(default_factory=list)
    exercises: list[ExtractedMention] = Field(default_factory=list)
    medical_terms: list[ExtractedMention] = _aliased("medical_terms", default_factory=list)


class ExtractedQuestion(BaseModel):
    type: str | None = None
    subject: str | None = None
    verb: str | None = None


class ExtractedStatement(BaseModel):
    claim: str
    by: str | None = None


class ExtractedDiscourse(BaseModel):
    current_topic: str | None = _aliased("current_topic", default=None)
    last_question: ExtractedQuestion | None = _aliased("last_question", default=None)
    last_statement: ExtractedStatement | None = _aliased("last_statement", default=None)


class ExtractedList(BaseModel):
    items: list[str] = Field(default_factory=list)
    context: str | None = None


class ExtractedRecommendation(BaseModel):
    what: str
    reason: str | None = None


class ExtractedAIOutputs(BaseModel):
    lists_presented: list[ExtractedList] = _aliased("lists_presented", default_factory=list)
    recommendations: list[ExtractedRecommendation] = Field(default_factory=list)
    procedures_explained: list[dict[str, Any]] = _aliased("procedures_explained", default_factory=list)
    examples: list[dict[str, Any]] = Field(default_factory=list)


class ExtractionPayload(BaseModel):
    entities: ExtractedEntities = Field(default_factory=ExtractedEntities)
    discourse: ExtractedDiscourse = Field(default_factory=ExtractedDiscourse)
    ai_outputs: ExtractedAIOutputs = _aliased("ai_outputs", default_factory=ExtractedAIOutputs)

    @model_validator(mode="before")
    @classmethod
    def _require_known_section(cls, data: Any) -> Any:
        if isinstance(data, dict) and not {"entities", "discourse", "ai_outputs", "aiOutputs"} & set(data):
            raise ValueError("extraction response has none of the expected sections")
        return data


@dataclass(frozen=True)
class ParsedExtraction:
    payload: ExtractionPayload


@dataclass(frozen=True)
class ExtractionParseFailure:
    reason: str


ParseOutcome = ParsedExtraction | ExtractionParseFailure


@dataclass
class ExtractionResult:
    state: ConversationState
    extraction_time: int
    success: bool
    used_fallback: bool

    def as_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.to_dict(),
            "extraction_time": self.extraction_time,
            "success": self.success,
            "used_fallback": self.used_fallback,
        }


def validate_message_history(message_history: Iterable[Mapping[str, Any] | ConversationMessage]) -> list[ConversationMessage]:
    validated: list[ConversationMessage] = []
    for index, message in enumerate(message_history):
        if isinstance(message, ConversationMessage):
            validated.append(message)
            continue
        try:
            validated.append(ConversationMessage.model_validate(message))
        except ValidationError as exc:
            raise InvalidMessageHistoryError(f"Message {index} is malformed: {exc.errors()[0]['msg']}") from exc
    return validated


def parse_extraction_response(raw_text: str) -> ParseOutcome:
    data = extract_json_object(raw_text)
    if data is None:
        return ExtractionParseFailure("no JSON object in response")
    try:
        return ParsedExtraction(ExtractionPayload.model_validate(data))
    except ValidationError as exc:
        return ExtractionParseFailure(f"schema mismatch: {exc.error_count()} error(s)")


def build_extraction_prompt(previous_state: ConversationState | None, new_messages: list[ConversationMessage]) -> str:
    new_messages_text = "\n".join(
        f"[{message.role}, turn {message.turn_number}]: {message.content}" for message in new_messages
    )
    previous = json.dumps(previous_state.to_dict(), ensure_ascii=False, indent=2) if previous_state else "null"
    return (
        f"{STATE_EXTRACTION_PROMPT}\n\n"
        f"PREVIOUS STATE (for continuity):\n{previous}\n\n"
        f"NEW MESSAGES TO PROCESS:\n{new_messages_text}\n\n"
        "Extract updated state as JSON (merge with previous state):"
    )


def _mentions(items: list[ExtractedMention]) -> list[RawMention]:
    return [RawMention(name=item.name, salience=item.salience, by=item.by or "assistant") for item in items]


def apply_extraction(
    base_state: ConversationState,
    payload: ExtractionPayload,
    *,
    turn: int,
    message_count: int,
    settings: StateSettings,
) -> ConversationState:
    entities = payload.entities
    discourse = payload.discourse
    outputs = payload.ai_outputs
    previous = base_state.discourse

    merged_entities = EntityCollections(
        medications=merge_entity_mentions(base_state.entities.medications, _mentions(entities.medications), turn, settings),
        foods=merge_entity_mentions(base_state.entities.foods, _mentions(entities.foods), turn, settings),
        measurements=merge_measurements(
            base_state.entities.measurements,
            [item.model_dump() for item in entities.measurements],
            turn,
            settings,
        ),
        symptoms=merge_entity_mentions(base_state.entities.symptoms, _mentions(entities.symptoms), turn, settings),
        exercises=merge_entity_mentions(base_state.entities.exercises, _mentions(entities.exercises), turn, settings),
        medical_terms=merge_entity_mentions(
            base_state.entities.medical_terms, _mentions(entities.medical_terms), turn, settings
        ),
    )

    last_question = copy.deepcopy(previous.last_question)
    if discourse.last_question is not None:
        last_question = LastQuestion(
            type=discourse.last_question.type or "",
            subject=discourse.last_question.subject or "",
            verb=discourse.last_question.verb or "",
            turn=turn,
        )
    last_statement = copy.deepcopy(previous.last_statement)
    if discourse.last_statement is not None:
        last_statement = LastStatement(
            claim=discourse.last_statement.claim,
            by=discourse.last_statement.by or "assistant",
            turn=turn,
        )

    merged_outputs = AIOutputs(
        lists_presented=append_bounded(
            copy.deepcopy(base_state.ai_outputs.lists_presented),
            [
                PresentedList(items=list(item.items), context=item.context or "", turn=turn)
                for item in outputs.lists_presented
            ],
            settings.max_lists,
        ),
        recommendations=append_bounded(
            copy.deepcopy(base_state.ai_outputs.recommendations),
            [Recommendation(what=item.what, reason=item.reason or "", turn=turn) for item in outputs.recommendations],
            settings.max_recommendations,
        ),
        procedures_explained=append_bounded(
            copy.deepcopy(base_state.ai_outputs.procedures_explained),
            [{**item, "turn": turn} for item in outputs.procedures_explained],
            settings.max_procedures,
        ),
        examples=append_bounded(
            copy.deepcopy(base_state.ai_outputs.examples),
            [{**item, "turn": turn} for item in outputs.examples],
            settings.max_examples,
        ),
    )

    return ConversationState(
        entities=merged_entities,
        discourse=DiscourseState(
            current_topic=discourse.current_topic or previous.current_topic,
            # One-step shift register: the old current topic always moves down.
            previous_topic=previous.current_topic,
            last_question=last_question,
            last_statement=last_statement,
            open_questions=list(previous.open_questions),
        ),
        ai_outputs=merged_outputs,
        procedural=copy.deepcopy(base_state.procedural),
        commitments=copy.deepcopy(base_state.commitments),
        turn_count=turn,
        last_updated=to_iso(utc_now()),
        user_id=base_state.user_id,
        message_count=message_count,
    )


_MEDICATION_PATTERNS = [
    re.compile(r"\b(novorapid|lantus|humalog|apidra|tresiba|levemir|toujeo|fiasp)\b", re.IGNORECASE),
    re.compile(r"\b(metformin|glukofaj|januvia|jardiance|forxiga|galvus)\b", re.IGNORECASE),
    re.compile(r"\b(ozempic|trulicity|victoza|gliklazid|diamicron|amaryl)\b", re.IGNORECASE),
]

_FOOD_PATTERNS = [
    re.compile(r"\b(karbonhidrat|protein|yağ|lif)\b", re.IGNORECASE),
    re.compile(r"\b(pilav|ekmek|makarna|patates|meyve|sebze)\b", re.IGNORECASE),
    re.compile(r"\b(badem\s+unu|pirinç|buğday|yulaf)\b", re.IGNORECASE),
]

_GLUCOSE_RE = re.compile(
    r"(?:\b(?:kan\s+şekeri(?:m)?|şeker(?:im)?|glukoz|glucose)\D{0,15}?(\d{2,3})\b)"
    r"|(?:\b(\d{2,3})\s*mg\s*/\s*dl\b)",
    re.IGNORECASE,
)
_A1C_RE = re.compile(r"(?:\bHb)?A1C\s*[:=]?\s*(\d+(?:[.,]\d+)?)", re.IGNORECASE)

GLUCOSE_RANGE = (40, 600)


def _pattern_mentions(text: str, patterns: list[re.Pattern[str]]) -> list[RawMention]:
    mentions: list[RawMention] = []
    for pattern in patterns:
        for match in pattern.finditer(text):
            mentions.append(RawMention(name=match.group(0), salience=1.0, by="user"))
    return mentions


def extract_medications(text: str) -> list[RawMention]:
    return _pattern_mentions(text, _MEDICATION_PATTERNS)


def extract_foods(text: str) -> list[RawMention]:
    return _pattern_mentions(text, _FOOD_PATTERNS)


def extract_measurements(text: str) -> list[dict[str, Any]]:
    measurements: list[dict[str, Any]] = []
    low, high = GLUCOSE_RANGE
    for match in _GLUCOSE_RE.finditer(text):
        value = int(match.group(1) or match.group(2))
        if low <= value <= high:
            measurements.append({"type": "kan şekeri", "value": value, "unit": "mg/dL"})
    for match in _A1C_RE.finditer(text):
        measurements.append({"type": "A1C", "value": float(match.group(1).replace(",", ".")), "unit": "%"})
    return measurements


def fallback_extraction(
    messages: list[ConversationMessage],
    previous_state: ConversationState | None,
    *,
    settings: StateSettings,
    started_at: float,
    user_id: str = "unknown",
) -> ExtractionResult:
    base_state = previous_state or initialize_conversation_state(user_id)
    new_messages = messages[base_state.message_count :]
    text = " ".join(message.content for message in new_messages)
    latest_turn = max(base_state.turn_count, new_messages[-1].turn_number if new_messages else 0)

    state = ConversationState(
        entities=EntityCollections(
            medications=merge_entity_mentions(
                base_state.entities.medications, extract_medications(text), latest_turn, settings
            ),
            foods=merge_entity_mentions(base_state.entities.foods, extract_foods(text), latest_turn, settings),
            measurements=merge_measurements(
                base_state.entities.measurements, extract_measurements(text), latest_turn, settings
            ),
            symptoms=copy.deepcopy(base_state.entities.symptoms),
            exercises=copy.deepcopy(base_state.entities.exercises),
            medical_terms=copy.deepcopy(base_state.entities.medical_terms),
        ),
        discourse=copy.deepcopy(base_state.discourse),
        ai_outputs=copy.deepcopy(base_state.ai_outputs),
        procedural=copy.deepcopy(base_state.procedural),
        commitments=copy.deepcopy(base_state.commitments),
        turn_count=latest_turn,
        last_updated=to_iso(utc_now()),
        user_id=base_state.user_id,
        message_count=len(messages),
    )
    return ExtractionResult(
        state=state,
        extraction_time=_elapsed_ms(started_at),
        success=True,
        used_fallback=True,
    )


def _elapsed_ms(started_at: float) -> int:
    return max(0, int((time.perf_counter() - started_at) * 1000))


def _extraction_config(settings: StateSettings) -> GenerationConfig:
    return GenerationConfig(
        temperature=settings.extraction_temperature,
        max_output_tokens=settings.extraction_max_tokens,
        timeout_seconds=settings.extraction_timeout_seconds,
        model=(os.getenv("BALLI_EXTRACTION_MODEL") or "").strip() or None,
    )


async def extract_conversation_state(
    message_history: Iterable[Mapping[str, Any] | ConversationMessage],
    previous_state: ConversationState | None,
    *,
    generate: Generator | None = None,
    settings: StateSettings | None = None,
    user_id: str = "unknown",
) -> ExtractionResult:
    started_at = time.perf_counter()
    settings = settings or StateSettings.from_env()
    messages = validate_message_history(message_history)

    previous_count = previous_state.message_count if previous_state else 0
    new_messages = messages[previous_count:]
    if not new_messages:
        logger.debug("No new messages - returning cached state")
        return ExtractionResult(
            state=previous_state or initialize_conversation_state(user_id),
            extraction_time=0,
            success=True,
            used_fallback=False,
        )

    logger.info(
        "Processing %s new messages (total: %s, previous: %s)",
        len(new_messages),
        len(messages),
        previous_count,
    )
    generate = generate or generate_text
    prompt = build_extraction_prompt(previous_state, new_messages)
    try:
        raw_text = await asyncio.wait_for(
            generate(prompt, _extraction_config(settings)),
            timeout=settings.extraction_timeout_seconds,
        )
    except ProviderUnavailableError:
        logger.info("No generation provider configured, using fallback extraction")
        return fallback_extraction(messages, previous_state, settings=settings, started_at=started_at, user_id=user_id)
    except asyncio.TimeoutError:
        logger.warning("State extraction timed out after %ss, using fallback", settings.extraction_timeout_seconds)
        return fallback_extraction(messages, previous_state, settings=settings, started_at=started_at, user_id=user_id)
    except Exception as exc:
        logger.warning("State extraction call failed, using fallback: %s", exc)
        return fallback_extraction(messages, previous_state, settings=settings, started_at=started_at, user_id=user_id)

    outcome = parse_extraction_response(raw_text)
    if isinstance(outcome, ExtractionParseFailure):
        logger.warning("State extraction parse failed (%s), using fallback", outcome.reason)
        return fallback_extraction(messages, previous_state, settings=settings, started_at=started_at, user_id=user_id)

    base_state = previous_state or initialize_conversation_state(user_id)
    turn = max(base_state.turn_count, new_messages[-1].turn_number)
    state = apply_extraction(
        base_state,
        outcome.payload,
        turn=turn,
        message_count=len(messages),
        settings=settings,
    )
    return ExtractionResult(
        state=state,
        extraction_time=_elapsed_ms(started_at),
        success=True,
        used_fallback=False,
    )
