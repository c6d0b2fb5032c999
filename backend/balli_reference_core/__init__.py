from .detector import detect_references, get_primary_reference, get_required_layers, normalize_message
from .extractor import (
    ConversationMessage,
    ExtractionParseFailure,
    ExtractionResult,
    InvalidMessageHistoryError,
    ParsedExtraction,
    extract_conversation_state,
    fallback_extraction,
    parse_extraction_response,
)
from .models import NO_REFERENCE, DetectedReference, ReferenceType, ResolvedReference
from .resolver import RESOLVERS, build_context_guidance, resolve_references
from .settings import DEFAULT_SETTINGS, StateSettings
from .state import (
    ConversationState,
    SalientEntity,
    decay_salience,
    get_most_salient_entity,
    initialize_conversation_state,
    merge_entity_mentions,
)

__all__ = [
    "ConversationMessage",
    "ConversationState",
    "DEFAULT_SETTINGS",
    "DetectedReference",
    "ExtractionParseFailure",
    "ExtractionResult",
    "InvalidMessageHistoryError",
    "NO_REFERENCE",
    "ParsedExtraction",
    "RESOLVERS",
    "ReferenceType",
    "ResolvedReference",
    "SalientEntity",
    "StateSettings",
    "build_context_guidance",
    "decay_salience",
    "detect_references",
    "extract_conversation_state",
    "fallback_extraction",
    "get_most_salient_entity",
    "get_primary_reference",
    "get_required_layers",
    "initialize_conversation_state",
    "merge_entity_mentions",
    "normalize_message",
    "parse_extraction_response",
    "resolve_references",
]
