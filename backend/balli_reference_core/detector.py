"""Pattern battery that flags back-references in a single user utterance.

The token sets are Turkish; categories are independent, so one message can
carry several detections. Order of the battery is the tie-break order used by
``get_primary_reference``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable

from .models import (
    LAYER_AI_OUTPUTS,
    LAYER_COMMITMENTS,
    LAYER_DISCOURSE,
    LAYER_ENTITIES,
    LAYER_PROCEDURAL,
    NO_REFERENCE,
    DetectedReference,
    ReferenceType,
)


_ELLIPSIS_PATTERNS = [
    re.compile(r"^(ya|peki|nasıl|neden|niye|ne\s+zaman|nerede)\s*\??$"),
    re.compile(r"^(ya|peki)\s+\w+(\s+\w+)?\s*\??$"),
    re.compile(r"^(ne\s+kadar|kaç\s+(tane|birim|gram)|yeterli\s+mi|iyi\s+mi|olur\s+mu)\s*\??$"),
    re.compile(r"^(yapmalı\s+mıyım|gerekli\s+mi|zorunda\s+mıyım)\s*\??$"),
]

_POSSESSIVE_RE = re.compile(r"\b(bunların|onların|onun|bunun|şunun|onu|bunu|şunu)\b")
_DEMONSTRATIVE_RE = re.compile(r"\b(bu|şu|o)\s+(?!zaman\b|kadar\b|yüzden\b)\w+")
_ORDINAL_RE = re.compile(r"\b(ilki|ikincisi|üçüncüsü|sonuncusu|ilk\s+\w+|ikinci\s+\w+|birinci\s+\w+)")

_COMPARATIVE_PATTERNS = [
    re.compile(r"\bdaha\s+(fazla|az|çok|iyi|kötü)\b"),
    re.compile(r"\b(farkı|fark|benzeri|alternatif)\b"),
    re.compile(r"\b(başka|diğer|geri\s+kalan)\b"),
]

_TEMPORAL_PATTERNS = [
    re.compile(r"\b(daha\s+önce|geçen|önceki|önce)\b"),
    re.compile(r"\b(daha\s+sonra|sonraki|sonra)\b"),
    re.compile(r"\b(hala|hâlâ)\b"),
    re.compile(r"\b(yine|tekrar)\b"),
]

_DISCOURSE_PATTERNS = [
    re.compile(r"^(peki|tamam|anladım|ama)\b"),
    re.compile(r"\b(katılıyorum|aynen|doğru|öyle)\b"),
    re.compile(r"\b(öyle\s+değil|hayır|yanlış|aksine)\b"),
]

_AI_OUTPUT_PATTERNS = [
    re.compile(r"\b(söylediğin|dediğin|anlattığın|verdiğin|önerdiğin)\b"),
    re.compile(r"\b(ilk\s+seçenek|ikinci\s+yöntem|örnek)\b"),
    _ORDINAL_RE,
]

_EVALUATION_PATTERNS = [
    re.compile(r"\b(iyi|kötü|zararlı|faydalı|etkili|güvenli)\s+mi\b"),
    re.compile(r"\b(uygun|doğru|normal)\s+m[uıiü]\b"),
]

_CAUSALITY_PATTERNS = [
    re.compile(r"^(neden|niye|ne\s+için)\s*\??$"),
    re.compile(r"\b(sebebi|nedeni|yüzünden)\b"),
]

_MODAL_PATTERNS = [
    re.compile(r"\b(gerekli|şart|zorunda|lazım)\s+m[ıiuü]"),
    re.compile(r"\b(olur\s+mu|yapabilir\s+miyim|izin\s+var\s+mı)\b"),
]

_PROCESS_PATTERNS = [
    re.compile(r"^nasıl\s*\??$"),
    re.compile(r"\b(adım|adımlar|ilk\s+olarak|önce|sonra)\b"),
]

_MEMORY_PATTERNS = [
    re.compile(r"\b(hatırlıyor\s+musun|hatırla|geçen\s+konuştuğumuz|hani)\b"),
]


def normalize_message(message: str) -> str:
    # Turkish dotted/dotless capitals do not round-trip through str.lower().
    text = (message or "").replace("İ", "i").replace("I", "ı")
    return " ".join(text.lower().split())


def _first_match(patterns: Iterable[re.Pattern[str]], text: str) -> str | None:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            return match.group(0)
    return None


@dataclass(frozen=True)
class _Category:
    type: ReferenceType
    patterns: tuple[re.Pattern[str], ...]
    requires_layers: frozenset[str]
    confidence: float


_BATTERY = (
    _Category(
        ReferenceType.COMPARATIVE,
        tuple(_COMPARATIVE_PATTERNS),
        frozenset({LAYER_ENTITIES, LAYER_DISCOURSE}),
        0.8,
    ),
    _Category(
        ReferenceType.TEMPORAL,
        tuple(_TEMPORAL_PATTERNS),
        frozenset({LAYER_DISCOURSE, LAYER_ENTITIES}),
        0.85,
    ),
    _Category(
        ReferenceType.DISCOURSE_MARKER,
        tuple(_DISCOURSE_PATTERNS),
        frozenset({LAYER_DISCOURSE}),
        0.75,
    ),
    _Category(
        ReferenceType.AI_OUTPUT,
        tuple(_AI_OUTPUT_PATTERNS),
        frozenset({LAYER_AI_OUTPUTS, LAYER_DISCOURSE}),
        0.9,
    ),
    _Category(
        ReferenceType.EVALUATION,
        tuple(_EVALUATION_PATTERNS),
        frozenset({LAYER_DISCOURSE, LAYER_ENTITIES}),
        0.85,
    ),
    _Category(
        ReferenceType.CAUSALITY,
        tuple(_CAUSALITY_PATTERNS),
        frozenset({LAYER_DISCOURSE}),
        0.9,
    ),
    _Category(
        ReferenceType.MODAL,
        tuple(_MODAL_PATTERNS),
        frozenset({LAYER_DISCOURSE, LAYER_ENTITIES}),
        0.8,
    ),
    _Category(
        ReferenceType.PROCESS,
        tuple(_PROCESS_PATTERNS),
        frozenset({LAYER_PROCEDURAL, LAYER_DISCOURSE}),
        0.85,
    ),
    _Category(
        ReferenceType.MEMORY_RECALL,
        tuple(_MEMORY_PATTERNS),
        frozenset({LAYER_COMMITMENTS, LAYER_ENTITIES, LAYER_AI_OUTPUTS}),
        0.95,
    ),
)


def _detect_ellipsis(text: str, original: str) -> DetectedReference | None:
    if _first_match(_ELLIPSIS_PATTERNS, text) is None:
        return None
    return DetectedReference(
        type=ReferenceType.ELLIPSIS,
        pattern=original.strip(),
        requires_layers=frozenset({LAYER_DISCOURSE}),
        confidence=0.9,
    )


def _detect_definite(text: str) -> DetectedReference | None:
    possessive = _POSSESSIVE_RE.search(text)
    if possessive:
        return DetectedReference(
            type=ReferenceType.DEFINITE,
            pattern=possessive.group(0),
            requires_layers=frozenset({LAYER_ENTITIES, LAYER_DISCOURSE}),
            confidence=0.85,
        )
    demonstrative = _DEMONSTRATIVE_RE.search(text)
    if demonstrative:
        return DetectedReference(
            type=ReferenceType.DEFINITE,
            pattern=demonstrative.group(0),
            requires_layers=frozenset({LAYER_ENTITIES, LAYER_DISCOURSE}),
            confidence=0.7,
        )
    return None


def detect_references(message: str) -> list[DetectedReference]:
    text = normalize_message(message)
    detected: list[DetectedReference] = []

    if text:
        for found in (_detect_ellipsis(text, message or ""), _detect_definite(text)):
            if found is not None:
                detected.append(found)

        for category in _BATTERY:
            matched = _first_match(category.patterns, text)
            if matched is None:
                continue
            detected.append(
                DetectedReference(
                    type=category.type,
                    pattern=matched,
                    requires_layers=category.requires_layers,
                    confidence=category.confidence,
                )
            )

    if not detected:
        detected.append(NO_REFERENCE)
    return detected


def get_primary_reference(references: list[DetectedReference]) -> DetectedReference:
    """Highest-confidence detection; equal scores keep detection order."""
    if not references:
        return NO_REFERENCE
    return max(references, key=lambda ref: ref.confidence)


def get_required_layers(references: Iterable[DetectedReference]) -> set[str]:
    layers: set[str] = set()
    for ref in references:
        layers.update(ref.requires_layers)
    return layers
