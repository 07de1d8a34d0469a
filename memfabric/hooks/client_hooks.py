"""
Chat Client Hooks

Wraps an async chat client's completion method so that:
1. Relevant memories are retrieved for the last user message and injected
   into the request BEFORE the model sees it
2. The user message and the model's reply are written back to memory in
   the background AFTER the call returns

Supported entry points (async clients):
- ChatProvider.OPENAI:    client.chat.completions.create (AsyncOpenAI and compatibles)
- ChatProvider.ANTHROPIC: client.messages.create (AsyncAnthropic)
- ChatProvider.GOOGLE:    client.aio.models.generate_content (google-genai)

The provider is always named explicitly; clients are never sniffed.

Usage:
    client = AsyncOpenAI()
    register(client, fabric, ChatProvider.OPENAI)
    await client.chat.completions.create(model="gpt-4o-mini", messages=[...])
"""

import functools
import inspect
import logging
from enum import Enum
from typing import Any, Optional, Union

from memfabric.backend.modules.memory.errors import ConfigurationError, describe
from memfabric.backend.modules.memory.memory_types import Attribution

logger = logging.getLogger(__name__)

OPENAI_CONTEXT_PREFIX = "Use the following memory context to answer the user if relevant:"
MEMORY_CONTEXT_HEADER = "[Memory Context]:"

# Google queries are cut to this many characters before retrieval
GOOGLE_QUERY_LIMIT = 500


class ChatProvider(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from either a dict or an SDK response object."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _text_of(content: Any) -> str:
    """Plain text of a message content (string or list of text blocks)."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = [_get(block, "text") for block in content if _get(block, "type", "text") == "text"]
        return "\n".join(t for t in texts if isinstance(t, str))
    return ""


async def _call(original, *args, **kwargs):
    result = original(*args, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result


def _save_exchange(fabric, user_text: str, reply_text: str, attribution: Optional[Attribution]):
    """Queue both sides of the exchange; never raise into the caller's chat."""
    try:
        if user_text:
            fabric.queue_memory(user_text, "user", attribution)
        if reply_text:
            fabric.queue_memory(reply_text, "assistant", attribution)
    except Exception as e:
        logger.warning(f"Could not queue exchange for memory: {describe(e)}")


# ---------------------------------------------------------------------------
# OpenAI: chat.completions.create(messages=[...])
# ---------------------------------------------------------------------------

def _patch_openai(client, fabric, attribution: Optional[Attribution]):
    completions = client.chat.completions
    original = completions.create

    @functools.wraps(original)
    async def create(*args, **kwargs):
        messages = list(kwargs.get("messages") or [])
        last_user = next((m for m in reversed(messages) if _get(m, "role") == "user"), None)
        user_text = _text_of(_get(last_user, "content")) if last_user is not None else ""

        if user_text:
            context = await fabric.retrieve_context(user_text, attribution)
            if context:
                messages.insert(0, {"role": "system", "content": f"{OPENAI_CONTEXT_PREFIX}\n{context}"})
                kwargs["messages"] = messages

        response = await _call(original, *args, **kwargs)

        if user_text:
            choices = _get(response, "choices") or []
            reply = _get(_get(choices[0], "message"), "content") if choices else None
            _save_exchange(fabric, user_text, reply or "", attribution)
        return response

    completions.create = create


# ---------------------------------------------------------------------------
# Anthropic: messages.create(system=..., messages=[...])
# ---------------------------------------------------------------------------

def _patch_anthropic(client, fabric, attribution: Optional[Attribution]):
    messages_api = client.messages
    original = messages_api.create

    @functools.wraps(original)
    async def create(*args, **kwargs):
        messages = kwargs.get("messages") or []
        last = messages[-1] if messages else None
        user_text = ""
        if last is not None and _get(last, "role") == "user":
            user_text = _text_of(_get(last, "content"))

        if user_text:
            context = await fabric.retrieve_context(user_text, attribution)
            if context:
                memory_block = f"{MEMORY_CONTEXT_HEADER}\n{context}"
                system = kwargs.get("system")
                if not system:
                    kwargs["system"] = memory_block
                elif isinstance(system, str):
                    kwargs["system"] = f"{system}\n\n{memory_block}"
                elif isinstance(system, list):
                    kwargs["system"] = [*system, {"type": "text", "text": memory_block}]

        response = await _call(original, *args, **kwargs)

        if user_text:
            reply = ""
            for block in _get(response, "content") or []:
                if _get(block, "type") == "text" and _get(block, "text"):
                    reply = _get(block, "text")
                    break
            _save_exchange(fabric, user_text, reply, attribution)
        return response

    messages_api.create = create


# ---------------------------------------------------------------------------
# Google: aio.models.generate_content(model=..., contents=..., config=...)
# ---------------------------------------------------------------------------

def _last_google_text(contents: Any) -> str:
    if isinstance(contents, str):
        return contents
    if isinstance(contents, list) and contents:
        last = contents[-1]
        if isinstance(last, str):
            return last
        parts = _get(last, "parts") or []
        if parts:
            text = _get(parts[0], "text")
            if isinstance(text, str):
                return text
    return ""


def _inject_google_instruction(config: Any, memory_block: str) -> Any:
    if config is None:
        return {"system_instruction": memory_block}

    existing = _get(config, "system_instruction")
    if not existing:
        combined = memory_block
    elif isinstance(existing, str):
        combined = f"{existing}\n\n{memory_block}"
    else:
        parts = list(_get(existing, "parts") or [])
        parts.append({"text": f"\n\n{memory_block}"})
        combined = {"parts": parts}

    if isinstance(config, dict):
        return {**config, "system_instruction": combined}
    setattr(config, "system_instruction", combined)
    return config


def _google_reply_text(response: Any) -> str:
    try:
        text = _get(response, "text")
        if callable(text):
            text = text()
        if isinstance(text, str) and text:
            return text
        candidates = _get(response, "candidates") or []
        if candidates:
            parts = _get(_get(candidates[0], "content"), "parts") or []
            if parts and isinstance(_get(parts[0], "text"), str):
                return _get(parts[0], "text")
    except Exception as e:
        logger.warning(f"Failed to extract text from Google response for memory: {describe(e)}")
    return ""


def _patch_google(client, fabric, attribution: Optional[Attribution]):
    aio = getattr(client, "aio", None)
    models = aio.models if aio is not None else client.models
    original = models.generate_content

    @functools.wraps(original)
    async def generate_content(*args, **kwargs):
        user_text = _last_google_text(kwargs.get("contents"))

        if user_text:
            context = await fabric.retrieve_context(user_text[:GOOGLE_QUERY_LIMIT], attribution)
            if context:
                kwargs["config"] = _inject_google_instruction(
                    kwargs.get("config"), f"{MEMORY_CONTEXT_HEADER}\n{context}"
                )

        response = await _call(original, *args, **kwargs)

        if user_text and response is not None:
            _save_exchange(fabric, user_text, _google_reply_text(response), attribution)
        return response

    models.generate_content = generate_content


_PATCHERS = {
    ChatProvider.OPENAI: _patch_openai,
    ChatProvider.ANTHROPIC: _patch_anthropic,
    ChatProvider.GOOGLE: _patch_google,
}


def register(
    client: Any,
    fabric,
    provider: Union[ChatProvider, str],
    attribution: Optional[Attribution] = None
):
    """
    Attach the fabric to a chat client.

    Args:
        client: Async SDK client instance
        fabric: MemoryFabric (or anything with retrieve_context/queue_memory)
        provider: Which SDK the client belongs to
        attribution: Fixed scope for this client (fabric default if None)

    Returns:
        The same client, patched in place
    """
    try:
        provider = ChatProvider(str(getattr(provider, "value", provider)).lower())
    except ValueError:
        allowed = ", ".join(p.value for p in ChatProvider)
        raise ConfigurationError(f"Provider '{provider}' not supported. Expected one of: {allowed}")

    _PATCHERS[provider](client, fabric, attribution)
    logger.info(f"Registered memory hooks on {provider.value} client")
    return client
