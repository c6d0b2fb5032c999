from __future__ import annotations

import re
from typing import Callable

from .detector import normalize_message
from .models import (
    LAYER_AI_OUTPUTS,
    LAYER_COMMITMENTS,
    LAYER_DISCOURSE,
    LAYER_ENTITIES,
    DetectedReference,
    ReferenceType,
    ResolvedReference,
)
from .state import ConversationState, EntityMention, Measurement, get_most_salient_entity, latest_measurement


Resolver = Callable[[str, DetectedReference, ConversationState], ResolvedReference]

GUIDANCE_HEADER = "REFERENCE RESOLUTION GUIDANCE:"
GUIDANCE_FOOTER = "Use this guidance to correctly interpret the user's message."

_PREFIX_PARTICLE_RE = re.compile(r"^(ya|peki)(\s+|\s*\??$)")
_QUESTION_WORD_RE = re.compile(r"^(neden|niye|nasıl|ne\s+zaman|nerede)\s*\??$")
_MODAL_ONLY_RE = re.compile(
    r"((yapmalı|etmeli|vurmalı|yemeli)\s+m[ıiuü]y[ıi]m|gerekli\s+mi|zorunda\s+m[ıi]y[ıi]m)"
)

_PLURAL_POSSESSIVE = {"bunların", "onların"}
_SINGULAR_POSSESSIVE = {"onun", "bunun", "şunun"}
_ACCUSATIVE = {"onu", "bunu", "şunu"}
_DEMONSTRATIVE_RE = re.compile(r"\b(bu|şu|o)\s+(\w+)")

_QUANTITY_RE = re.compile(r"\bdaha\s+(fazla|az|çok)\b")
_DIFFERENCE_RE = re.compile(r"\bfark")

_BEFORE_RE = re.compile(r"\b(daha\s+önce|önceki|geçen|önce)\b")
_STILL_RE = re.compile(r"\b(hala|hâlâ)\b")

_ORDINALS = [
    (re.compile(r"\b(ilk|ilki|birinci|first)\b"), 0, "first"),
    (re.compile(r"\b(ikinci|ikincisi|second)\b"), 1, "second"),
    (re.compile(r"\b(üçüncü|üçüncüsü|third)\b"), 2, "third"),
    (re.compile(r"\b(son|sonuncusu|sonuncu|last)\b"), -1, "last"),
]
_RECOMMENDED_RE = re.compile(r"\b(önerdiğin|söylediğin|dediğin|verdiğin)\b")

_EVALUATIVE_RE = re.compile(r"\b(iyi|kötü|zararlı|faydalı|etkili|güvenli|uygun|doğru|normal)\b")
_MODAL_VERB_RE = re.compile(r"\b(gerekli|şart|zorunda|lazım|olur|yapabilir|izin)\b")

_MEMORY_MARKER_RE = re.compile(r"hatırlıyor\s+musun|hatırla|geçen\s+konuştuğumuz|hani", re.IGNORECASE)
_LEADING_DISCOURSE_RE = re.compile(r"^(peki|tamam|anladım|ama)\b[\s,]*", re.IGNORECASE)


def _format_measurement(measurement: Measurement) -> str:
    value = measurement.value
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return f"{value} {measurement.unit}".strip()


def _fragment(message: str) -> str:
    return message.strip().rstrip("?").strip()


def resolve_ellipsis(message: str, ref: DetectedReference, state: ConversationState) -> ResolvedReference:
    last_question = state.discourse.last_question
    if last_question is None:
        return ResolvedReference(
            original_pattern=ref.pattern,
            resolved_to=message,
            context_guidance=(
                f'User\'s message "{message}" is elliptical but no previous question context is available. '
                "Treat it as a standalone question."
            ),
            source_layer=LAYER_DISCOURSE,
        )

    text = normalize_message(message)
    fragment = _fragment(message)
    subject = last_question.subject
    verb = last_question.verb

    if _PREFIX_PARTICLE_RE.match(text):
        full_form = f"{fragment} {subject} {verb}?"
        guidance = (
            f'User asks "{message}" which is elliptical for "{full_form}" '
            f"(continuing the previous question about {subject})."
        )
    elif _QUESTION_WORD_RE.match(text):
        full_form = f"{fragment} {subject} {verb}?"
        guidance = f'User asks "{message}" which means "{full_form}" (asking about the previous topic: {subject}).'
    elif _MODAL_ONLY_RE.search(text):
        full_form = f"{subject} {fragment}?"
        guidance = f'User asks "{message}" which means "{full_form}" (the action is about {subject}).'
    else:
        full_form = f"{subject} {fragment}?"
        guidance = f'User asks "{message}" about the previous subject; elliptical question restored to: "{full_form}".'

    return ResolvedReference(
        original_pattern=ref.pattern,
        resolved_to=" ".join(full_form.split()),
        context_guidance=guidance,
        source_layer=LAYER_DISCOURSE,
    )


def resolve_definite_reference(message: str, ref: DetectedReference, state: ConversationState) -> ResolvedReference:
    most_salient = get_most_salient_entity(state)
    if most_salient is None:
        return ResolvedReference(
            original_pattern=ref.pattern,
            resolved_to="unknown",
            context_guidance=(
                f'User uses pronoun "{ref.pattern}" but there is no clear antecedent in the conversation. '
                "May need clarification."
            ),
            source_layer=LAYER_ENTITIES,
        )

    pronoun = ref.pattern.split()[0] if ref.pattern else ""
    name = most_salient.name
    if pronoun in _PLURAL_POSSESSIVE:
        guidance = (
            f'User says "{pronoun}" (of these) which refers to "{name}" '
            f"mentioned {most_salient.turn_delta} turns ago."
        )
    elif pronoun in _SINGULAR_POSSESSIVE:
        guidance = (
            f'User says "{pronoun}" (its/that one\'s) which refers to "{name}" '
            f"mentioned {most_salient.turn_delta} turns ago."
        )
    elif pronoun in _ACCUSATIVE:
        guidance = f'User says "{pronoun}" (it/this) which refers to "{name}".'
    else:
        demonstrative = _DEMONSTRATIVE_RE.search(ref.pattern) or _DEMONSTRATIVE_RE.search(normalize_message(message))
        if demonstrative:
            guidance = (
                f'User says "{demonstrative.group(0)}" which likely refers to the '
                f'{demonstrative.group(2)} related to "{name}".'
            )
        else:
            guidance = f'User\'s reference "{ref.pattern}" most likely points to "{name}".'

    return ResolvedReference(
        original_pattern=ref.pattern,
        resolved_to=name,
        context_guidance=guidance,
        source_layer=LAYER_ENTITIES,
    )


def _unclear_comparison(ref: DetectedReference) -> ResolvedReference:
    return ResolvedReference(
        original_pattern=ref.pattern,
        resolved_to="comparison needed",
        context_guidance="User is making a comparison but the comparison base is unclear.",
        source_layer=LAYER_ENTITIES,
    )


def resolve_comparative(message: str, ref: DetectedReference, state: ConversationState) -> ResolvedReference:
    text = normalize_message(message)

    if _QUANTITY_RE.search(text):
        measurement = latest_measurement(state)
        if measurement is not None:
            base = _format_measurement(measurement)
            return ResolvedReference(
                original_pattern=ref.pattern,
                resolved_to=base,
                context_guidance=(
                    f'User asks about "more/less" which compares to the previous {measurement.type} value of {base}.'
                ),
                source_layer=LAYER_ENTITIES,
            )
        most_salient = get_most_salient_entity(state)
        if most_salient is not None:
            return ResolvedReference(
                original_pattern=ref.pattern,
                resolved_to=most_salient.name,
                context_guidance=f'User asks about "more/less" referring to {most_salient.name}.',
                source_layer=LAYER_ENTITIES,
            )
        return _unclear_comparison(ref)

    if _DIFFERENCE_RE.search(text):
        candidates: list[EntityMention] = [
            entity
            for entity in [*state.entities.medications, *state.entities.foods]
            if entity.salience > 0.5
        ]
        candidates.sort(key=lambda entity: entity.salience, reverse=True)
        if len(candidates) >= 2:
            first, second = candidates[0], candidates[1]
            return ResolvedReference(
                original_pattern=ref.pattern,
                resolved_to=f"{first.name} vs {second.name}",
                context_guidance=f'User asks about the difference between "{first.name}" and "{second.name}".',
                source_layer=LAYER_ENTITIES,
            )

    return _unclear_comparison(ref)


def resolve_temporal(message: str, ref: DetectedReference, state: ConversationState) -> ResolvedReference:
    text = normalize_message(message)

    if _BEFORE_RE.search(text):
        statement = state.discourse.last_statement
        if statement is not None:
            return ResolvedReference(
                original_pattern=ref.pattern,
                resolved_to=statement.claim,
                context_guidance=(
                    f'User refers to "before/earlier" - they mean: "{statement.claim}" '
                    f"(said by {statement.by} at turn {statement.turn})."
                ),
                source_layer=LAYER_DISCOURSE,
            )

    if _STILL_RE.search(text):
        measurement = latest_measurement(state)
        if measurement is not None:
            value = _format_measurement(measurement)
            return ResolvedReference(
                original_pattern=ref.pattern,
                resolved_to=value,
                context_guidance=f'User asks if "still" - referring to the previous {measurement.type} of {value}.',
                source_layer=LAYER_ENTITIES,
            )

    return ResolvedReference(
        original_pattern=ref.pattern,
        resolved_to="temporal reference",
        context_guidance="User makes a temporal reference but the previous context is unclear.",
        source_layer=LAYER_DISCOURSE,
    )


def resolve_ai_output(message: str, ref: DetectedReference, state: ConversationState) -> ResolvedReference:
    text = normalize_message(message)
    lists = state.ai_outputs.lists_presented
    last_list = lists[-1] if lists else None

    if last_list is not None and last_list.items:
        for pattern, index, label in _ORDINALS:
            if not pattern.search(text):
                continue
            if index >= len(last_list.items):
                break
            item = last_list.items[index]
            context = f" from the list of {last_list.context}" if last_list.context else " from my list"
            return ResolvedReference(
                original_pattern=ref.pattern,
                resolved_to=item,
                context_guidance=f'User refers to the "{label} option/item" which is "{item}"{context} I provided.',
                source_layer=LAYER_AI_OUTPUTS,
            )

    if _RECOMMENDED_RE.search(text) and state.ai_outputs.recommendations:
        recommendation = state.ai_outputs.recommendations[-1]
        reason = f" (reason: {recommendation.reason})" if recommendation.reason else ""
        return ResolvedReference(
            original_pattern=ref.pattern,
            resolved_to=recommendation.what,
            context_guidance=f'User refers to "what you recommended/said" which is: "{recommendation.what}"{reason}.',
            source_layer=LAYER_AI_OUTPUTS,
        )

    return ResolvedReference(
        original_pattern=ref.pattern,
        resolved_to="AI output reference",
        context_guidance="User references something the assistant said but the specific content cannot be found.",
        source_layer=LAYER_AI_OUTPUTS,
    )


def resolve_causality(message: str, ref: DetectedReference, state: ConversationState) -> ResolvedReference:
    statement = state.discourse.last_statement
    if statement is None:
        return ResolvedReference(
            original_pattern=ref.pattern,
            resolved_to="unknown",
            context_guidance='User asks "why" but there is no previous statement to explain.',
            source_layer=LAYER_DISCOURSE,
        )
    return ResolvedReference(
        original_pattern=ref.pattern,
        resolved_to=statement.claim,
        context_guidance=f'User asks "why/because" about: "{statement.claim}" - explain the reasoning for this.',
        source_layer=LAYER_DISCOURSE,
    )


def resolve_evaluation(message: str, ref: DetectedReference, state: ConversationState) -> ResolvedReference:
    most_salient = get_most_salient_entity(state)
    if most_salient is None:
        return ResolvedReference(
            original_pattern=ref.pattern,
            resolved_to="unknown",
            context_guidance="User asks if something is good/bad/safe but the subject is unclear.",
            source_layer=LAYER_ENTITIES,
        )
    adjective = _EVALUATIVE_RE.search(normalize_message(message))
    criterion = adjective.group(0) if adjective else "quality"
    return ResolvedReference(
        original_pattern=ref.pattern,
        resolved_to=most_salient.name,
        context_guidance=(
            f'User asks if "{most_salient.name}" is {criterion}. '
            f"Evaluate {most_salient.name} based on this criterion."
        ),
        source_layer=LAYER_ENTITIES,
    )


def resolve_modal(message: str, ref: DetectedReference, state: ConversationState) -> ResolvedReference:
    last_question = state.discourse.last_question
    if last_question is None or not last_question.subject:
        return ResolvedReference(
            original_pattern=ref.pattern,
            resolved_to="action unclear",
            context_guidance="User asks about necessity/permission but the action is unclear.",
            source_layer=LAYER_DISCOURSE,
        )
    modal = _MODAL_VERB_RE.search(normalize_message(message))
    modal_word = modal.group(0) if modal else "necessary"
    return ResolvedReference(
        original_pattern=ref.pattern,
        resolved_to=last_question.subject,
        context_guidance=f'User asks if it is "{modal_word}" (necessary/allowed) regarding: {last_question.subject}.',
        source_layer=LAYER_DISCOURSE,
    )


def resolve_memory_recall(message: str, ref: DetectedReference, state: ConversationState) -> ResolvedReference:
    search_term = _MEMORY_MARKER_RE.sub(" ", message)
    search_term = _LEADING_DISCOURSE_RE.sub("", search_term.strip())
    search_term = " ".join(search_term.split()).strip(" ?,.")
    if not search_term:
        guidance = (
            "User explicitly asks if I remember something without naming it. "
            "Search the recent conversation history for the most likely topic."
        )
    else:
        guidance = (
            f'User explicitly asks if I remember: "{search_term}". '
            "Search conversation history for this topic and confirm/recall the information."
        )
    return ResolvedReference(
        original_pattern=ref.pattern,
        resolved_to=search_term,
        context_guidance=guidance,
        source_layer=LAYER_COMMITMENTS,
    )


# Every ReferenceType has an entry; None marks categories that carry no antecedent to resolve.
RESOLVERS: dict[ReferenceType, Resolver | None] = {
    ReferenceType.ELLIPSIS: resolve_ellipsis,
    ReferenceType.DEFINITE: resolve_definite_reference,
    ReferenceType.COMPARATIVE: resolve_comparative,
    ReferenceType.TEMPORAL: resolve_temporal,
    ReferenceType.DISCOURSE_MARKER: None,
    ReferenceType.AI_OUTPUT: resolve_ai_output,
    ReferenceType.EVALUATION: resolve_evaluation,
    ReferenceType.CAUSALITY: resolve_causality,
    ReferenceType.MODAL: resolve_modal,
    ReferenceType.PROCESS: None,
    ReferenceType.MEMORY_RECALL: resolve_memory_recall,
    ReferenceType.NONE: None,
}


def resolve_references(
    message: str,
    references: list[DetectedReference],
    state: ConversationState,
) -> list[ResolvedReference]:
    resolved: list[ResolvedReference] = []
    for ref in references:
        handler = RESOLVERS[ref.type]
        if handler is None:
            continue
        resolved.append(handler(message, ref, state))
    return resolved


def build_context_guidance(resolved: list[ResolvedReference]) -> str:
    lines = [item.context_guidance for item in resolved if item.context_guidance]
    if not lines:
        return ""
    body = "\n".join(lines)
    return f"\n{GUIDANCE_HEADER}\n{body}\n\n{GUIDANCE_FOOTER}\n"
