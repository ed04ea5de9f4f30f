from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx

from .errors import EngineError, EngineUnavailable, GenerationCancelled

logger = logging.getLogger(__name__)

TokenCallback = Callable[[str, bool], None]

_CONTROL_TOKEN_RE = re.compile(r"<\|(?:assistant|user|system|end)\|>", re.IGNORECASE)
_PARTIAL_CONTROL_RE = re.compile(r"<(?:\|[A-Za-z]*\|?)?\Z")
_ROLE_LABELS = {"user": "User", "assistant": "Assistant"}


@dataclass(frozen=True)
class GenerationParams:
    temperature: float = 0.4
    top_p: float = 0.9
    top_k: int = 40
    repeat_penalty: float = 1.15
    max_tokens: int = 500
    stop: tuple[str, ...] = ("\n\nUser:", "\n\nHuman:", "User:", "Human:")


@dataclass(frozen=True)
class Completion:
    text: str
    token_count: int
    latency_ms: int
    model: str


def strip_control_tokens(text: str) -> str:
    return _CONTROL_TOKEN_RE.sub("", text or "").strip()


def _split_partial_control(text: str) -> tuple[str, str]:
    """Split off a trailing fragment that may be the start of a control token."""
    match = _PARTIAL_CONTROL_RE.search(text)
    if match is None:
        return text, ""
    return text[: match.start()], text[match.start() :]


def format_prompt(context: list[dict[str, str]], system_prompt: str = "") -> str:
    prompt = f"{system_prompt}\n\n" if system_prompt else ""
    for turn in context:
        label = _ROLE_LABELS.get(str(turn.get("role") or "").lower())
        if not label:
            continue
        prompt += f"{label}: {turn.get('content') or ''}\n\n"
    return prompt + "Assistant: "


def _engine_error_message(response: httpx.Response) -> str:
    message = response.text.strip()
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            msg = err.get("message")
            if isinstance(msg, str) and msg.strip():
                return msg.strip()
        msg = payload.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg.strip()
    return message or f"HTTP {response.status_code}"


def _parse_stream_line(line: str) -> dict[str, Any] | None:
    if not line.startswith("data: "):
        return None
    raw = line[6:].strip()
    if not raw or raw == "[DONE]":
        return None
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        logger.debug("skipping unparseable stream chunk line=%r", line[:200])
        return None
    return payload if isinstance(payload, dict) else None


async def _read_next(lines: AsyncIterator[str]) -> str | None:
    try:
        return await lines.__anext__()
    except StopAsyncIteration:
        return None


async def _next_line_or_cancel(lines: AsyncIterator[str], cancel: asyncio.Event) -> str | None:
    if cancel.is_set():
        raise GenerationCancelled()
    next_line = asyncio.ensure_future(_read_next(lines))
    cancelled = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({next_line, cancelled}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (next_line, cancelled):
            if not task.done():
                task.cancel()
        await asyncio.gather(next_line, cancelled, return_exceptions=True)
    if cancel.is_set():
        raise GenerationCancelled()
    return next_line.result()


class InferenceClient:
    """Client for a llama.cpp-style ``/completion`` endpoint.

    Both operations render the context window into one prompt, pass the
    configured stop sequences, and strip residual role-delimiter tokens from
    the output. Connection failures raise ``EngineUnavailable`` and are
    retried with backoff; malformed or empty output raises ``EngineError``
    and is never retried.
    """

    def __init__(
        self,
        *,
        base_url: str,
        system_prompt: str = "",
        model_name: str = "llama-3-8b-instruct",
        timeout_seconds: float = 300.0,
        params: GenerationParams | None = None,
        retry_attempts: int = 3,
        retry_delay_seconds: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.system_prompt = system_prompt
        self.model_name = model_name
        self.timeout_seconds = timeout_seconds
        self.params = params or GenerationParams()
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay_seconds = max(0.0, retry_delay_seconds)
        self._transport = transport

    def _client(self, timeout_seconds: float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_seconds or self.timeout_seconds, connect=8.0),
            transport=self._transport,
        )

    def _request_body(self, context: list[dict[str, str]], params: GenerationParams, *, stream: bool) -> dict[str, Any]:
        return {
            "prompt": format_prompt(context, self.system_prompt),
            "temperature": params.temperature,
            "top_p": params.top_p,
            "top_k": params.top_k,
            "repeat_penalty": params.repeat_penalty,
            "n_predict": params.max_tokens,
            "stop": list(params.stop),
            "stream": stream,
        }

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        detail = _engine_error_message(response)
        if response.status_code == 503:
            raise EngineUnavailable(f"Inference engine is unavailable: {detail}")
        raise EngineError(f"Inference engine request failed: {detail}")

    async def _with_retry(
        self,
        operation: Callable[[], Awaitable[Completion]],
        *,
        can_retry: Callable[[], bool] = lambda: True,
    ) -> Completion:
        attempt = 0
        while True:
            try:
                return await operation()
            except EngineUnavailable as exc:
                attempt += 1
                if attempt >= self.retry_attempts or not can_retry():
                    raise
                delay = self.retry_delay_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "inference engine unavailable, retrying attempt=%s delay=%.2fs error=%s",
                    attempt,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)

    async def complete(self, context: list[dict[str, str]], params: GenerationParams | None = None) -> Completion:
        return await self._with_retry(lambda: self._complete_once(context, params or self.params))

    async def _complete_once(self, context: list[dict[str, str]], params: GenerationParams) -> Completion:
        payload = self._request_body(context, params, stream=False)
        logger.info("generating response message_count=%s prompt_length=%s", len(context), len(payload["prompt"]))
        started = time.monotonic()
        try:
            async with self._client() as client:
                response = await client.post("/completion", json=payload)
        except httpx.TimeoutException as exc:
            raise EngineUnavailable("Inference engine timed out.") from exc
        except httpx.TransportError as exc:
            raise EngineUnavailable("Cannot connect to inference engine. Make sure it is running.") from exc

        self._raise_for_status(response)
        try:
            body = response.json()
        except ValueError as exc:
            raise EngineError("Inference engine returned invalid JSON.") from exc
        content = body.get("content") if isinstance(body, dict) else None
        text = strip_control_tokens(content) if isinstance(content, str) else ""
        if not text:
            raise EngineError("Invalid response from inference engine.")

        latency_ms = int((time.monotonic() - started) * 1000)
        tokens = body.get("tokens_predicted")
        token_count = int(tokens) if isinstance(tokens, (int, float)) else 0
        logger.info(
            "response generated duration_ms=%s response_length=%s tokens=%s",
            latency_ms,
            len(text),
            token_count,
        )
        return Completion(text=text, token_count=token_count, latency_ms=latency_ms, model=self.model_name)

    async def complete_streaming(
        self,
        context: list[dict[str, str]],
        on_token: TokenCallback,
        cancel: asyncio.Event,
        params: GenerationParams | None = None,
    ) -> Completion:
        relayed = False

        def relay(fragment: str, is_final: bool) -> None:
            nonlocal relayed
            relayed = True
            on_token(fragment, is_final)

        return await self._with_retry(
            lambda: self._stream_once(context, params or self.params, relay, cancel),
            can_retry=lambda: not relayed and not cancel.is_set(),
        )

    async def _stream_once(
        self,
        context: list[dict[str, str]],
        params: GenerationParams,
        on_token: TokenCallback,
        cancel: asyncio.Event,
    ) -> Completion:
        if cancel.is_set():
            raise GenerationCancelled()
        payload = self._request_body(context, params, stream=True)
        logger.info(
            "generating streaming response message_count=%s prompt_length=%s",
            len(context),
            len(payload["prompt"]),
        )
        started = time.monotonic()
        pieces: list[str] = []
        held = ""
        try:
            async with self._client() as client:
                async with client.stream("POST", "/completion", json=payload) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        self._raise_for_status(response)
                    lines = response.aiter_lines()
                    while True:
                        line = await _next_line_or_cancel(lines, cancel)
                        if line is None:
                            break
                        data = _parse_stream_line(line)
                        if data is None:
                            continue
                        is_final = bool(data.get("stop"))
                        fragment = data.get("content")
                        if isinstance(fragment, str) and fragment:
                            pieces.append(fragment)
                            visible, held = _split_partial_control(_CONTROL_TOKEN_RE.sub("", held + fragment))
                            if is_final:
                                visible, held = visible + held, ""
                            if cancel.is_set():
                                raise GenerationCancelled()
                            if visible:
                                on_token(visible, is_final)
                        if is_final:
                            break
                    if held and not cancel.is_set():
                        on_token(held, True)
        except httpx.TimeoutException as exc:
            raise EngineUnavailable("Inference engine timed out.") from exc
        except httpx.TransportError as exc:
            raise EngineUnavailable("Cannot connect to inference engine. Make sure it is running.") from exc

        text = strip_control_tokens("".join(pieces))
        if not text:
            raise EngineError("Empty response from streaming.")
        latency_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "streaming response completed duration_ms=%s response_length=%s tokens=%s",
            latency_ms,
            len(text),
            len(pieces),
        )
        return Completion(text=text, token_count=len(pieces), latency_ms=latency_ms, model=self.model_name)

    async def health_check(self) -> bool:
        try:
            async with self._client(timeout_seconds=5.0) as client:
                response = await client.get("/health")
        except httpx.HTTPError:
            return False
        return response.status_code == 200
