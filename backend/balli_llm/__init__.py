from .parsing import extract_json_object
from .providers import (
    GenerationConfig,
    ProviderError,
    ProviderUnavailableError,
    chat_provider_candidates,
    generate_text,
    llm_chat_reply,
)

__all__ = [
    "GenerationConfig",
    "ProviderError",
    "ProviderUnavailableError",
    "chat_provider_candidates",
    "extract_json_object",
    "generate_text",
    "llm_chat_reply",
]
