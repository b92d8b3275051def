"""Provider adapters: request building and response-line parsing per backend family."""

from chat_relay.llm.adapters.base import BaseAdapter, ProviderAdapter
from chat_relay.llm.adapters.local import LocalOpenAIAdapter
from chat_relay.llm.adapters.ollama import OllamaAdapter
from chat_relay.llm.adapters.openai_compat import (
    GenericAdapter,
    extract_content,
    value_at_path,
)

__all__ = [
    "BaseAdapter",
    "GenericAdapter",
    "LocalOpenAIAdapter",
    "OllamaAdapter",
    "ProviderAdapter",
    "extract_content",
    "value_at_path",
]
