"""
LLM Package

Provides the model capability the analysis pipeline depends on and the
retry policy wrapped around every model call:
  - ChatModel           protocol: name, max_input_tokens, stream(messages, cancel)
  - LangChainChatModel  adapter over any LangChain BaseChatModel
  - with_retry          bounded retry with exponential back-off

Public API::

    from docdigest.llm import build_default_model, build_messages, with_retry

    model = build_default_model()
    text = await with_retry(lambda: collect(model.stream(build_messages(prompt))))
"""

from docdigest.llm.gateway import ChatModel, LangChainChatModel, build_default_model, build_messages
from docdigest.llm.retry import should_retry_model_error, should_retry_network_error, with_retry

__all__ = [
    "ChatModel",
    "LangChainChatModel",
    "build_default_model",
    "build_messages",
    "should_retry_model_error",
    "should_retry_network_error",
    "with_retry",
]
