from .base import (
    BackendClient,
    BackendConfig,
    BackendVariant,
    ConnectionCheck,
    GenerateResult,
    ProcessOptions,
    ProcessResult,
)
from .openai_compatible import CLIENT_CLASSES, ChatGPTClient, GeminiClient, OpenAICompatibleClient, SoraClient

__all__ = [
    "BackendClient",
    "BackendConfig",
    "BackendVariant",
    "CLIENT_CLASSES",
    "ChatGPTClient",
    "ConnectionCheck",
    "GeminiClient",
    "GenerateResult",
    "OpenAICompatibleClient",
    "ProcessOptions",
    "ProcessResult",
    "SoraClient",
]
