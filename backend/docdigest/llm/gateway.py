"""
LLM Gateway — the model capability the pipeline talks to

The processor never imports a provider SDK. It depends on the ``ChatModel``
protocol:

  ┌──────────────────────────────────────────────────────┐
  │  ChatModel                                           │
  │    .name               display / log name            │
  │    .max_input_tokens   advertised ceiling (or None)  │
  │    .stream(messages, cancel) -> AsyncIterator[str]   │
  └──────────────────────────────────────────────────────┘

``LangChainChatModel`` adapts any LangChain ``BaseChatModel`` to it:

  - streams ``astream()`` deltas as plain strings
  - polls the cancellation event between fragments
  - maps provider exceptions onto the pipeline taxonomy:
        RateLimitError / APITimeoutError / 5xx  → TransientModelError
        content filter / policy violation        → ContentPolicyRejection
        anything else                            → re-raised unchanged

Usage::

    model = build_default_model()            # ChatOpenAI from settings
    async for fragment in model.stream(build_messages(prompt), cancel):
        ...
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Protocol, runtime_checkable

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from docdigest.core.config import Settings, settings as default_settings
from docdigest.core.errors import CancellationError, ContentPolicyRejection, TransientModelError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Provider exception classification
# ---------------------------------------------------------------------------

_RETRYABLE_EXCEPTION_TYPES = (
    # openai
    "RateLimitError",
    "ServiceUnavailableError",
    "APITimeoutError",
    "APIConnectionError",
    "InternalServerError",
    # httpx / generic
    "ConnectTimeout",
    "ReadTimeout",
    "RemoteProtocolError",
)

_CONTENT_POLICY_HINTS = ("content_filter", "content filter", "content policy", "content management policy")


def _is_retryable(exc: Exception) -> bool:
    """True if the exception class name suggests a transient provider error."""
    name = type(exc).__name__
    return any(name.endswith(r) for r in _RETRYABLE_EXCEPTION_TYPES)


def _is_content_policy(exc: Exception) -> bool:
    message = str(exc).lower()
    return any(h in message for h in _CONTENT_POLICY_HINTS)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

@runtime_checkable
class ChatModel(Protocol):
    """Capability object the processor invokes; see module docstring."""

    name:             str
    max_input_tokens: int | None

    def stream(
        self,
        messages: list[BaseMessage],
        cancel:   asyncio.Event | None = None,
    ) -> AsyncIterator[str]: ...


def build_messages(prompt: str, system_prompt: str | None = None) -> list[BaseMessage]:
    """Build the role-tagged message list for a single-prompt request."""
    messages: list[BaseMessage] = []
    if system_prompt:
        messages.append(SystemMessage(content=system_prompt))
    messages.append(HumanMessage(content=prompt))
    return messages


# ---------------------------------------------------------------------------
# LangChain adapter
# ---------------------------------------------------------------------------

class LangChainChatModel:
    """
    ``ChatModel`` backed by a LangChain chat model.

    Safe for concurrent use: every ``stream()`` call opens its own provider
    stream.
    """

    def __init__(
        self,
        llm:              BaseChatModel,
        max_input_tokens: int | None = None,
        name:             str | None = None,
    ) -> None:
        self._llm             = llm
        self.max_input_tokens = max_input_tokens
        self.name             = name or getattr(llm, "model_name", None) or type(llm).__name__

    async def stream(
        self,
        messages: list[BaseMessage],
        cancel:   asyncio.Event | None = None,
    ) -> AsyncIterator[str]:
        try:
            async for chunk in self._llm.astream(messages):
                if cancel is not None and cancel.is_set():
                    raise CancellationError()
                content = chunk.content
                if isinstance(content, str):
                    if content:
                        yield content
                else:
                    # multi-part content blocks: keep the text parts only
                    for part in content:
                        text = part.get("text", "") if isinstance(part, dict) else str(part)
                        if text:
                            yield text
        except CancellationError:
            raise
        except Exception as exc:
            if _is_content_policy(exc):
                logger.warning("LangChainChatModel | model=%s content policy rejection: %s", self.name, exc)
                raise ContentPolicyRejection(
                    f"AI model ({self.name}) rejected the content: {exc}",
                ) from exc
            if _is_retryable(exc):
                logger.warning("LangChainChatModel | model=%s transient error %s: %s", self.name, type(exc).__name__, exc)
                raise TransientModelError(f"{type(exc).__name__}: {exc}") from exc
            raise


def build_default_model(settings: Settings | None = None) -> LangChainChatModel:
    """ChatOpenAI wrapped as a ``ChatModel`` using the configured credentials."""
    from langchain_openai import ChatOpenAI

    cfg = settings or default_settings
    llm = ChatOpenAI(
        model=cfg.llm_model,
        temperature=cfg.llm_temperature,
        api_key=cfg.openai_api_key or None,
        streaming=True,
    )
    return LangChainChatModel(llm, max_input_tokens=cfg.llm_max_input_tokens, name=cfg.llm_model)
