from __future__ import annotations

import asyncio
from dataclasses import dataclass
import os
import time
from typing import Any, Awaitable, Mapping

from langchain_openai import ChatOpenAI
from langchain_core.messages import HumanMessage, SystemMessage
from loguru import logger

from story_memory.config.schema import AppConfigRoot
from story_memory.domain.hashing import sha256_text
from story_memory.errors import GenerationCancelled, GenerationFailure
from story_memory.llm.collaborator import GenerationRequest
from story_memory.llm.prompts import PROMPT_VERSIONS, render_prompts


@dataclass(frozen=True)
class ResolvedChatRuntime:
    endpoint_name: str
    provider_name: str
    model: str
    temperature: float
    timeout_s: int
    retries: int
    max_tokens: int | None
    base_url: str | None
    api_key_env: str | None
    api_key: str | None


def _extract_json_error_location(exc: Exception) -> str | None:
    lineno = getattr(exc, "lineno", None)
    colno = getattr(exc, "colno", None)
    pos = getattr(exc, "pos", None)

    parts: list[str] = []
    if isinstance(lineno, int):
        parts.append(f"line={lineno}")
    if isinstance(colno, int):
        parts.append(f"column={colno}")
    if isinstance(pos, int):
        parts.append(f"pos={pos}")

    if not parts:
        return None
    return ", ".join(parts)


def _format_payload_for_log(payload: str, max_chars: int) -> str:
    if max_chars <= 0 or len(payload) <= max_chars:
        return payload

    head = max_chars // 2
    tail = max_chars - head
    omitted = max(0, len(payload) - max_chars)
    if head <= 0 or tail <= 0:
        return payload[:max_chars]

    return f"{payload[:head]}\n...[truncated {omitted} chars]...\n{payload[-tail:]}"


def log_json_parse_failure(
    config: AppConfigRoot,
    *,
    source: str,
    raw_text: str,
    exc: Exception,
    context: Mapping[str, Any] | None = None,
) -> None:
    log = logger.bind(**dict(context or {}))
    location = _extract_json_error_location(exc)

    log.warning(
        "JSON parse failed source={} error_type={} error={} location={} raw_len={} raw_hash={}",
        source,
        type(exc).__name__,
        exc,
        location or "-",
        len(raw_text),
        sha256_text(raw_text)[:12],
    )

    if config.observability.log_json_error_payload:
        payload_to_log = _format_payload_for_log(raw_text, int(config.observability.json_error_payload_max_chars))
        log.warning("JSON parse raw_response={}", payload_to_log)


def resolve_chat_runtime(config: AppConfigRoot) -> ResolvedChatRuntime:
    endpoint_name, endpoint, provider = config.llm.resolve_chat_route()
    api_key = None
    if provider.api_key_env:
        api_key = os.getenv(provider.api_key_env)
        if not api_key:
            raise ValueError(f"Missing required API key env for memory route: {provider.api_key_env}")

    return ResolvedChatRuntime(
        endpoint_name=endpoint_name,
        provider_name=endpoint.provider,
        model=endpoint.model,
        temperature=endpoint.temperature,
        timeout_s=endpoint.timeout_s,
        retries=endpoint.retries,
        max_tokens=endpoint.max_tokens,
        base_url=provider.base_url,
        api_key_env=provider.api_key_env,
        api_key=api_key,
    )


def _build_chat_model(runtime: ResolvedChatRuntime) -> ChatOpenAI:
    kwargs: dict[str, Any] = {
        "model": runtime.model,
        "temperature": runtime.temperature,
        "timeout": runtime.timeout_s,
        # Retries happen in ChatGenerationClient so the attempt count stays predictable.
        "max_retries": 0,
    }

    if runtime.max_tokens:
        kwargs["max_tokens"] = runtime.max_tokens
    if runtime.base_url:
        kwargs["base_url"] = runtime.base_url
    if runtime.api_key:
        kwargs["api_key"] = runtime.api_key

    return ChatOpenAI(**kwargs)


class ChatGenerationClient:
    """Generation collaborator backed by an OpenAI-compatible chat model."""

    def __init__(self, config: AppConfigRoot):
        self.config = config
        self.runtime = resolve_chat_runtime(config)
        self.model = _build_chat_model(self.runtime)
        self.model_identifier = f"{self.runtime.provider_name}/{self.runtime.endpoint_name}/{self.runtime.model}"

    def _build_log_context(
        self,
        request: GenerationRequest,
        *,
        attempt: int | None = None,
        attempts_total: int | None = None,
    ) -> dict[str, Any]:
        merged: dict[str, Any] = {
            "provider": self.runtime.provider_name,
            "endpoint": self.runtime.endpoint_name,
            "model": self.runtime.model,
            "action": request.action,
            "prompt_version": PROMPT_VERSIONS.get(request.action, "-"),
        }
        for key, ctx_key in (("chapter_id", "chapterId"), ("chapter_number", "chapterNumber"), ("character_id", "characterId")):
            value = request.context.get(ctx_key)
            if value is not None:
                merged[key] = value
        if attempt is not None and attempts_total is not None:
            merged["attempt"] = f"{attempt}/{attempts_total}"
        return merged

    async def _await_or_abort(self, call: Awaitable[Any], abort: asyncio.Event | None) -> Any:
        if abort is None:
            return await call

        call_task = asyncio.ensure_future(call)
        abort_task = asyncio.ensure_future(abort.wait())
        try:
            await asyncio.wait({call_task, abort_task}, return_when=asyncio.FIRST_COMPLETED)
            finished = call_task.done()
        finally:
            abort_task.cancel()
            if not call_task.done():
                call_task.cancel()

        if not finished:
            raise GenerationCancelled("Generation aborted by caller")
        return call_task.result()

    async def generate(self, request: GenerationRequest, *, abort: asyncio.Event | None = None) -> str | None:
        system_prompt, user_prompt = render_prompts(request.target, request.action, request.context)
        messages = [SystemMessage(system_prompt), HumanMessage(user_prompt)]
        attempts = max(1, self.runtime.retries + 1)
        last_exc: Exception | None = None

        for attempt in range(attempts):
            if abort is not None and abort.is_set():
                raise GenerationCancelled("Generation aborted by caller")

            attempt_started = time.perf_counter()
            log = logger.bind(**self._build_log_context(request, attempt=attempt + 1, attempts_total=attempts))
            try:
                response = await self._await_or_abort(self.model.ainvoke(messages), abort)
            except GenerationCancelled:
                log.info("LLM call aborted")
                raise
            except Exception as exc:  # noqa: BLE001
                last_exc = exc
                elapsed_ms = int((time.perf_counter() - attempt_started) * 1000)
                if self.config.observability.log_retry_attempts:
                    log.warning(
                        "LLM call failed elapsed_ms={} error_type={} error={}",
                        elapsed_ms,
                        type(exc).__name__,
                        exc,
                    )
                if attempt == attempts - 1:
                    log.exception("LLM call failed on final attempt")
                else:
                    await asyncio.sleep(min(0.5 * (2**attempt), 4.0))
                continue

            text = str(response.content).strip()
            log.debug(
                "LLM call finished elapsed_ms={} response_len={}",
                int((time.perf_counter() - attempt_started) * 1000),
                len(text),
            )
            return text or None

        raise GenerationFailure(f"LLM call failed after {attempts} attempt(s)") from last_exc
