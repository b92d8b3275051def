"""chat-relay: streaming chat client for many LLM backends."""

from chat_relay.broker import RequestBroker
from chat_relay.config import ModelConfig, ModelProvider, RelayConfig, load_config
from chat_relay.types import ChatMessage, ClassifiedError

__version__ = "0.1.0"

__all__ = [
    "ChatMessage",
    "ClassifiedError",
    "ModelConfig",
    "ModelProvider",
    "RelayConfig",
    "RequestBroker",
    "load_config",
]
