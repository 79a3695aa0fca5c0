from .errors import LLMErrorKind, LLMServiceError, classify_llm_error, log_llm_error
from .openai_client import ChatCompletionClient, OpenAIClient

__all__ = [
    "ChatCompletionClient",
    "LLMErrorKind",
    "LLMServiceError",
    "OpenAIClient",
    "classify_llm_error",
    "log_llm_error",
]
