from __future__ import annotations

from balli_reference_core import (
    NO_REFERENCE,
    RESOLVERS,
    ReferenceType,
    build_context_guidance,
    detect_references,
    initialize_conversation_state,
    resolve_references,
)
from balli_reference_core.models import DetectedReference, ResolvedReference
from balli_reference_core.resolver import GUIDANCE_FOOTER, GUIDANCE_HEADER
from balli_reference_core.state import (
    EntityMention,
    LastQuestion,
    LastStatement,
    Measurement,
    PresentedList,
    Recommendation,
)


def _state(**discourse):
    state = initialize_conversation_state("user-a")
    state.turn_count = 4
    for key, value in discourse.items():
        setattr(state.discourse, key, value)
    return state


def _resolve_one(message: str, state, ref_type: ReferenceType) -> ResolvedReference:
    references = [ref for ref in detect_references(message) if ref.type is ref_type]
    assert references, f"{ref_type.value} not detected in {message!r}"
    resolved = resolve_references(message, references, state)
    assert len(resolved) == 1
    return resolved[0]


def test_every_reference_type_has_a_dispatch_entry():
    assert set(RESOLVERS) == set(ReferenceType)
    assert RESOLVERS[ReferenceType.NONE] is None


def test_none_only_detection_resolves_to_nothing():
    assert resolve_references("merhaba", [NO_REFERENCE], _state()) == []


def test_unhandled_categories_are_skipped_silently():
    references = detect_references("Tamam, anladım")
    assert [ref.type for ref in references] == [ReferenceType.DISCOURSE_MARKER]
    assert resolve_references("Tamam, anladım", references, _state()) == []


def test_ellipsis_splices_fragment_with_previous_question():
    state = _state(last_question=LastQuestion(type="what", subject="kahvaltı", verb="ne yemeli", turn=3))
    resolved = _resolve_one("ya akşam?", state, ReferenceType.ELLIPSIS)
    assert resolved.resolved_to == "ya akşam kahvaltı ne yemeli?"
    assert "akşam" in resolved.resolved_to
    assert "kahvaltı" in resolved.context_guidance
    assert resolved.source_layer == "discourse"


def test_ellipsis_bare_particle_keeps_previous_verb():
    state = _state(last_question=LastQuestion(type="what", subject="kahvaltı", verb="ne yemeli", turn=3))
    assert _resolve_one("peki?", state, ReferenceType.ELLIPSIS).resolved_to == "peki kahvaltı ne yemeli?"
    assert _resolve_one("ya?", state, ReferenceType.ELLIPSIS).resolved_to == "ya kahvaltı ne yemeli?"
    assert _resolve_one("Ya", state, ReferenceType.ELLIPSIS).resolved_to == "Ya kahvaltı ne yemeli?"


def test_ellipsis_modal_only_puts_subject_first():
    state = _state(last_question=LastQuestion(type="how_much", subject="insülin dozu", verb="vurmalı", turn=2))
    resolved = _resolve_one("yapmalı mıyım?", state, ReferenceType.ELLIPSIS)
    assert resolved.resolved_to == "insülin dozu yapmalı mıyım?"


def test_ellipsis_without_previous_question_is_standalone():
    resolved = _resolve_one("peki?", _state(), ReferenceType.ELLIPSIS)
    assert resolved.resolved_to == "peki?"
    assert "standalone" in resolved.context_guidance


def test_definite_reference_without_entities_asks_for_clarification():
    resolved = _resolve_one("Bunu yiyebilir miyim?", _state(), ReferenceType.DEFINITE)
    assert resolved.resolved_to == "unknown"
    assert "no clear antecedent" in resolved.context_guidance
    assert "clarification" in resolved.context_guidance


def test_definite_reference_uses_pooled_most_salient_entity():
    state = _state()
    state.entities.medications = [EntityMention(name="Lantus", mentioned_turn=1, salience=0.6)]
    state.entities.foods = [EntityMention(name="pilav", mentioned_turn=3, salience=0.9)]
    state.entities.symptoms = [EntityMention(name="titreme", mentioned_turn=2, salience=0.7)]

    resolved = _resolve_one("Onun kalorisi ne kadar?", state, ReferenceType.DEFINITE)
    assert resolved.resolved_to == "pilav"
    assert '"onun"' in resolved.context_guidance
    assert "1 turns ago" in resolved.context_guidance


def test_comparative_quantity_prefers_latest_measurement():
    state = _state()
    state.entities.foods = [EntityMention(name="ekmek", mentioned_turn=3, salience=1.0)]
    state.entities.measurements = [
        Measurement(type="kan şekeri", value=140, unit="mg/dL", timestamp="", turn=2),
        Measurement(type="kan şekeri", value=180, unit="mg/dL", timestamp="", turn=3),
    ]
    resolved = _resolve_one("Daha fazla olur mu?", state, ReferenceType.COMPARATIVE)
    assert resolved.resolved_to == "180 mg/dL"

    state.entities.measurements = []
    resolved = _resolve_one("Daha fazla olur mu?", state, ReferenceType.COMPARATIVE)
    assert resolved.resolved_to == "ekmek"


def test_whole_float_measurements_print_like_integers():
    state = _state()
    state.entities.measurements = [Measurement(type="kan şekeri", value=180.0, unit="mg/dL", timestamp="", turn=3)]
    assert _resolve_one("Daha fazla olur mu?", state, ReferenceType.COMPARATIVE).resolved_to == "180 mg/dL"
    still = _resolve_one("Hala yüksek mi?", state, ReferenceType.TEMPORAL)
    assert still.resolved_to == "180 mg/dL"
    assert "180.0" not in still.context_guidance

    state.entities.measurements = [Measurement(type="A1C", value=6.8, unit="%", timestamp="", turn=3)]
    assert _resolve_one("Hala yüksek mi?", state, ReferenceType.TEMPORAL).resolved_to == "6.8 %"


def test_comparative_difference_needs_two_salient_entities():
    state = _state()
    state.entities.medications = [
        EntityMention(name="Novorapid", mentioned_turn=3, salience=0.95),
        EntityMention(name="Lantus", mentioned_turn=2, salience=0.4),
    ]
    state.entities.foods = [EntityMention(name="yulaf", mentioned_turn=3, salience=0.8)]

    resolved = _resolve_one("Aralarındaki fark ne?", state, ReferenceType.COMPARATIVE)
    assert resolved.resolved_to == "Novorapid vs yulaf"

    state.entities.foods = []
    resolved = _resolve_one("Aralarındaki fark ne?", state, ReferenceType.COMPARATIVE)
    assert resolved.resolved_to == "comparison needed"
    assert "unclear" in resolved.context_guidance


def test_temporal_before_and_still():
    state = _state(last_statement=LastStatement(claim="40 gram karbonhidrat dengeli", by="assistant", turn=3))
    state.entities.measurements = [Measurement(type="kan şekeri", value=210, unit="mg/dL", timestamp="", turn=3)]

    before = _resolve_one("Daha önce ne demiştin?", state, ReferenceType.TEMPORAL)
    assert before.resolved_to == "40 gram karbonhidrat dengeli"
    assert before.source_layer == "discourse"

    still = _resolve_one("Hala yüksek mi?", state, ReferenceType.TEMPORAL)
    assert still.resolved_to == "210 mg/dL"
    assert still.source_layer == "entities"

    again = _resolve_one("Yine aynısı oldu", state, ReferenceType.TEMPORAL)
    assert again.resolved_to == "temporal reference"


def test_ai_output_ordinals_index_the_latest_list():
    state = _state()
    state.ai_outputs.lists_presented = [
        PresentedList(items=["eski"], context="eski liste", turn=1),
        PresentedList(items=["yürüyüş", "yüzme", "bisiklet"], context="egzersiz seçenekleri", turn=3),
    ]
    assert _resolve_one("İkincisi nasıl?", state, ReferenceType.AI_OUTPUT).resolved_to == "yüzme"
    assert _resolve_one("Sonuncusu zor mu?", state, ReferenceType.AI_OUTPUT).resolved_to == "bisiklet"


def test_ai_output_recommendation_and_missing_content():
    state = _state()
    state.ai_outputs.recommendations = [
        Recommendation(what="30 dakika yürüyüş", reason="yemek sonrası", turn=2),
        Recommendation(what="50 gram karbonhidrat", reason="daha aktifsen", turn=3),
    ]
    resolved = _resolve_one("Önerdiğin şeyi bugün denedim", state, ReferenceType.AI_OUTPUT)
    assert resolved.resolved_to == "50 gram karbonhidrat"
    assert "daha aktifsen" in resolved.context_guidance

    empty = _resolve_one("Önerdiğin şeyi bugün denedim", _state(), ReferenceType.AI_OUTPUT)
    assert empty.resolved_to == "AI output reference"


def test_causality_evaluation_modal_and_memory():
    state = _state(
        last_statement=LastStatement(claim="Lantus gece vurulmalı", by="assistant", turn=3),
        last_question=LastQuestion(type="when", subject="Lantus", verb="vurmalı", turn=3),
    )
    state.entities.medications = [EntityMention(name="Lantus", mentioned_turn=3, salience=1.0)]

    assert _resolve_one("Bunun sebebi ne?", state, ReferenceType.CAUSALITY).resolved_to == "Lantus gece vurulmalı"

    evaluation = _resolve_one("Güvenli mi?", state, ReferenceType.EVALUATION)
    assert evaluation.resolved_to == "Lantus"
    assert "is güvenli" in evaluation.context_guidance

    modal = _resolve_one("Her gün şart mı?", state, ReferenceType.MODAL)
    assert modal.resolved_to == "Lantus"
    assert '"şart"' in modal.context_guidance

    memory = _resolve_one("Peki hatırlıyor musun badem unu tarifi?", state, ReferenceType.MEMORY_RECALL)
    assert memory.resolved_to == "badem unu tarifi"
    assert memory.source_layer == "commitments"


def test_modal_without_question_subject_is_unclear():
    resolved = _resolve_one("Doktora gitmem gerekli mi?", _state(), ReferenceType.MODAL)
    assert resolved.resolved_to == "action unclear"


def test_context_guidance_block_layout():
    assert build_context_guidance([]) == ""
    assert build_context_guidance([ResolvedReference("x", "y", "", "discourse")]) == ""

    block = build_context_guidance(
        [
            ResolvedReference("a", "b", "first line", "discourse"),
            ResolvedReference("c", "d", "", "entities"),
            ResolvedReference("e", "f", "second line", "entities"),
        ]
    )
    assert block == f"\n{GUIDANCE_HEADER}\nfirst line\nsecond line\n\n{GUIDANCE_FOOTER}\n"


def test_resolution_is_dispatched_per_detection():
    state = _state(last_statement=LastStatement(claim="yürüyüş şekeri düşürür", by="assistant", turn=3))
    references = [
        DetectedReference(type=ReferenceType.CAUSALITY, pattern="neden", requires_layers=frozenset(), confidence=0.9),
        DetectedReference(type=ReferenceType.PROCESS, pattern="nasıl", requires_layers=frozenset(), confidence=0.85),
    ]
    resolved = resolve_references("neden?", references, state)
    assert [item.original_pattern for item in resolved] == ["neden"]
