"""Model gateway: one call signature over OpenAI, Google and OpenRouter chat models.

``ModelGateway.call`` never raises for provider or response failures. It retries
transient errors with linear backoff and degrades to an error-sentinel
:class:`~sr_screening.core.schemas.ReviewerResult`. Only configuration errors
(missing credentials, unknown provider, 401/403) propagate.

Model identifiers are ``"<provider>:<model>"``, e.g. ``"openai:gpt-4o"`` or
``"openrouter:anthropic/claude-3.5-sonnet"``.
"""

from __future__ import annotations

import asyncio
import json
import re
import typing as t

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_google_genai.chat_models import ChatGoogleGenerativeAI
from langchain_openai.chat_models import ChatOpenAI
from loguru import logger
from pydantic import ValidationError

from sr_screening.app.agents.screening_agents import SCREENING_SYSTEM_PROMPT
from sr_screening.app.config import Settings, get_settings
from sr_screening.core.schemas import (
    ParsedScreeningResponse,
    ResponseParseError,
    ReviewerResult,
    ScreeningResponse,
    utc_now,
)
from sr_screening.core.types import ModelProvider, ScreeningStrategyType

if t.TYPE_CHECKING:
    from langchain_core.language_models.chat_models import BaseChatModel
    from langchain_core.messages import BaseMessage
    from pydantic import SecretStr


class GatewayError(Exception):
    """Base exception for model gateway failures."""


class ProviderConfigurationError(GatewayError):
    """Provider cannot be used: missing credentials, unknown provider, auth rejected.

    Never retried.
    """


# --- Identifiers ---


def parse_model_identifier(model_identifier: str) -> tuple[ModelProvider, str]:
    """Split ``provider:model``.

    Raises:
        ProviderConfigurationError: Malformed identifier or unknown provider.
    """
    provider, sep, model = model_identifier.partition(":")
    if not sep or not model:
        msg = f"Model identifier must be '<provider>:<model>', got {model_identifier!r}"
        raise ProviderConfigurationError(msg)
    try:
        return ModelProvider(provider.strip().lower()), model.strip()
    except ValueError as exc:
        msg = f"Unknown model provider {provider!r} in {model_identifier!r}"
        raise ProviderConfigurationError(msg) from exc


def reviewer_label(model_identifier: str) -> str:
    """Human readable reviewer label, e.g. ``OpenAI gpt-4o``."""
    try:
        provider, model = parse_model_identifier(model_identifier)
    except ProviderConfigurationError:
        return model_identifier or "Unknown model"
    return f"{provider.display_name} {model}"


# --- Chat models ---


class ChatModelFactory:
    """Builds and caches LangChain chat models per model identifier."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self._models: dict[str, BaseChatModel] = {}

    def api_key(self, provider: ModelProvider) -> SecretStr | None:
        key = {
            ModelProvider.OPENAI: self.settings.OPENAI_API_KEY,
            ModelProvider.GOOGLE: self.settings.GOOGLE_API_KEY,
            ModelProvider.OPENROUTER: self.settings.OPENROUTER_API_KEY,
        }[provider]
        if key is None or not key.get_secret_value():
            return None
        return key

    def is_configured(self, model_identifier: str) -> bool:
        try:
            provider, _ = parse_model_identifier(model_identifier)
        except ProviderConfigurationError:
            return False
        return self.api_key(provider) is not None

    def create(self, model_identifier: str) -> BaseChatModel:
        """Get the chat model for an identifier.

        Raises:
            ProviderConfigurationError: Unknown provider or missing API key.
        """
        if model_identifier in self._models:
            return self._models[model_identifier]
        provider, model = parse_model_identifier(model_identifier)
        api_key = self.api_key(provider)
        if api_key is None:
            msg = f"{provider.display_name} API key not configured for {model_identifier!r}"
            raise ProviderConfigurationError(msg)

        s = self.settings
        chat_model: BaseChatModel
        match provider:
            case ModelProvider.OPENAI:
                chat_model = ChatOpenAI(
                    model=model,
                    temperature=s.model_temperature,
                    max_tokens=s.max_output_tokens,  # pyright: ignore [reportCallIssue]
                    timeout=s.request_timeout,
                    max_retries=0,  # retried by the gateway
                    api_key=api_key,
                )
            case ModelProvider.OPENROUTER:
                chat_model = ChatOpenAI(
                    model=model,
                    temperature=s.model_temperature,
                    max_tokens=s.max_output_tokens,  # pyright: ignore [reportCallIssue]
                    timeout=s.request_timeout,
                    max_retries=0,
                    api_key=api_key,
                    base_url=str(s.OPENROUTER_BASE_URL),
                )
            case ModelProvider.GOOGLE:
                chat_model = ChatGoogleGenerativeAI(
                    model=model,
                    temperature=s.model_temperature,
                    max_output_tokens=s.max_output_tokens,
                    timeout=s.request_timeout,
                    max_retries=0,
                    google_api_key=api_key,
                )
        self._models[model_identifier] = chat_model
        logger.debug(f"Created chat model for {model_identifier}")
        return chat_model


# --- Response parsing ---

_FENCED_BLOCK_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def strip_markdown_fences(text: str) -> str:
    """Content of the first fenced code block, or the stripped text if unfenced."""
    match = _FENCED_BLOCK_RE.search(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def extract_json_object(text: str) -> str | None:
    """First balanced ``{...}`` object in ``text``, ignoring braces inside strings."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start : i + 1]
        start = text.find("{", start + 1)
    return None


def parse_screening_response(text: str) -> ParsedScreeningResponse:
    """Parse raw model output into a validated response or an explicit error.

    Strips markdown fences, parses JSON, falls back to the first balanced JSON
    object in the text, then validates against :class:`ScreeningResponse`.
    """
    candidate = strip_markdown_fences(text)
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError:
        extracted = extract_json_object(text)
        if extracted is None:
            return ResponseParseError(message="No JSON object in response", raw_text=text)
        try:
            data = json.loads(extracted)
        except json.JSONDecodeError as exc:
            return ResponseParseError(message=f"Invalid JSON: {exc}", raw_text=text)

    if not isinstance(data, dict):
        return ResponseParseError(
            message=f"Expected a JSON object, got {type(data).__name__}", raw_text=text
        )
    try:
        return ScreeningResponse.model_validate(data)
    except ValidationError as exc:
        return ResponseParseError(
            message=f"Response does not match schema: {exc.error_count()} errors: "
            f"{exc.errors(include_url=False)!r}",
            raw_text=text,
        )


def message_text(message: BaseMessage) -> str:
    content = message.content
    if isinstance(content, str):
        return content
    parts: list[str] = []
    for part in content:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(str(part.get("text", "")))
    return "".join(parts)


# --- Errors ---


def extract_status_code(exc: BaseException) -> int | None:
    """HTTP status of a provider exception, if it carries one.

    OpenAI SDK errors expose ``status_code``, google-api-core errors ``code``,
    httpx errors ``response.status_code``.
    """
    for attr in ("status_code", "code", "http_status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


def is_retryable_status(status: int | None) -> bool:
    """No status (timeouts, connection errors), 429 and 5xx are transient."""
    return status is None or status == 429 or status >= 500


# --- Gateway ---


class ModelGateway:
    """Calls a model by identifier and returns a :class:`ReviewerResult`.

    Examples:
        >>> gateway = ModelGateway()
        >>> result = await gateway.call(prompt, "openai:gpt-4o")
        >>> result.is_valid
        ... True
    """

    def __init__(
        self,
        settings: Settings | None = None,
        factory: ChatModelFactory | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.factory = factory or ChatModelFactory(self.settings)

    def is_configured(self, model_identifier: str) -> bool:
        return self.factory.is_configured(model_identifier)

    async def _backoff(self, attempt: int) -> None:
        await asyncio.sleep(attempt * self.settings.retry_base_delay)

    async def call(
        self,
        prompt: str,
        model_identifier: str,
        *,
        strategy: ScreeningStrategyType = ScreeningStrategyType.CONSERVATIVE,
    ) -> ReviewerResult:
        """Screen one prompt with one model.

        Args:
            prompt: Rendered screening prompt.
            model_identifier: ``provider:model``.
            strategy: Reviewer stance the result is recorded under.

        Returns:
            The parsed reviewer result, or an error sentinel after retries are
            exhausted, a 400 response, or a 429 with fail-fast enabled.

        Raises:
            ProviderConfigurationError: Missing credentials, unknown provider,
                or 401/403 from the provider.
        """
        label = reviewer_label(model_identifier)
        log = logger.bind(model_identifier=model_identifier, strategy=strategy.value)
        chat_model = self.factory.create(model_identifier)
        messages = [SystemMessage(SCREENING_SYSTEM_PROMPT), HumanMessage(prompt)]
        start_time = utc_now()
        max_retries = self.settings.max_retries
        last_error = "no attempt made"
        rate_limited = False

        def sentinel() -> ReviewerResult:
            return ReviewerResult.error_sentinel(
                reviewer=label,
                strategy=strategy,
                message=last_error,
                model_identifier=model_identifier,
                rate_limited=rate_limited,
                start_time=start_time,
            )

        for attempt in range(1, max_retries + 1):
            try:
                response = await chat_model.ainvoke(messages)
            except Exception as exc:  # noqa: BLE001
                status = extract_status_code(exc)
                last_error = f"{type(exc).__name__}: {exc}"
                if status in (401, 403):
                    msg = f"{label} rejected credentials ({status}): {exc}"
                    log.error(msg)
                    raise ProviderConfigurationError(msg) from exc
                rate_limited = status == 429
                log.warning(
                    f"{label} call failed (attempt {attempt}/{max_retries}, status {status}): {last_error}"
                )
                if not is_retryable_status(status):
                    log.error(f"{label} returned non-retryable status {status}")
                    return sentinel()
                if rate_limited and self.settings.fail_fast_on_rate_limit:
                    log.warning(f"{label} rate limited, not retrying")
                    return sentinel()
            else:
                parsed = parse_screening_response(message_text(response))
                if isinstance(parsed, ScreeningResponse):
                    log.debug(
                        f"{label} returned {parsed.recommendation} ({parsed.confidence:.2f})"
                    )
                    return ReviewerResult.from_response(
                        parsed,
                        reviewer=label,
                        strategy=strategy,
                        model_identifier=model_identifier,
                        start_time=start_time,
                    )
                last_error = f"Unparseable response: {parsed.message}"
                rate_limited = False
                log.warning(
                    f"{label} response could not be parsed (attempt {attempt}/{max_retries}): {parsed.message}"
                )
            if attempt < max_retries:
                await self._backoff(attempt)

        log.error(f"{label} failed after {max_retries} attempts: {last_error}")
        return sentinel()
