"""Remote model invocation for bank reconciliation."""
from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from functools import lru_cache
from typing import Any

import openai
from openai import OpenAI

from .models import ReconciliationRequest

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"
DEFAULT_MODEL = "gemini-2.0-flash"
DEFAULT_TIMEOUT = 90.0

TIMEOUT_MESSAGE = (
    "La API del modelo tardó más tiempo del esperado. Por favor intenta nuevamente. "
    "Este error no está relacionado con el tamaño de tus archivos."
)

_TRUTHY = {"1", "true", "yes", "on"}


class RemoteError(RuntimeError):
    """Raised when the model endpoint answers with an error."""

    def __init__(self, status: int | None, message: str) -> None:
        self.status = status
        self.message = message
        label = f"HTTP {status}" if status is not None else "sin respuesta"
        super().__init__(f"Error en la API del modelo ({label}): {message}")


class RemoteTimeoutError(TimeoutError):
    """Raised when the model does not answer before the configured timeout."""

    def __init__(self, message: str = TIMEOUT_MESSAGE) -> None:
        super().__init__(message)


@dataclass(frozen=True)
class LLMConfig:
    """Runtime configuration for the model integration."""

    model: str
    base_url: str
    api_key: str | None
    timeout: float
    json_mode: bool

    @classmethod
    def from_env(cls) -> "LLMConfig":
        model = os.getenv("CENYCA_LLM_MODEL", DEFAULT_MODEL)
        base_url = os.getenv("CENYCA_LLM_BASE_URL", DEFAULT_BASE_URL)
        api_key = os.getenv("CENYCA_LLM_API_KEY") or os.getenv("GEMINI_API_KEY")
        timeout = float(os.getenv("CENYCA_LLM_TIMEOUT", str(DEFAULT_TIMEOUT)))
        json_mode = os.getenv("CENYCA_LLM_JSON_MODE", "1").strip().lower() in _TRUTHY
        return cls(
            model=model,
            base_url=base_url,
            api_key=api_key,
            timeout=timeout,
            json_mode=json_mode,
        )


def _load_openai_client(config: LLMConfig) -> OpenAI | None:
    if not config.api_key:
        return None
    return OpenAI(
        api_key=config.api_key,
        base_url=config.base_url,
        timeout=config.timeout,
        max_retries=0,
    )


def _vendor_message(exc: openai.APIStatusError) -> str:
    body = exc.body
    if isinstance(body, list) and body:
        body = body[0]
    if isinstance(body, dict):
        error = body.get("error", body)
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return exc.message or "Error desconocido"


class ReconciliationModel:
    """Sends one reconciliation request to an OpenAI-compatible endpoint."""

    def __init__(self, config: LLMConfig, client: Any | None) -> None:
        self._config = config
        self._client = client

    @classmethod
    def from_env(cls) -> "ReconciliationModel":
        config = LLMConfig.from_env()
        client = _TEST_CLIENT if _TEST_CLIENT is not None else _load_openai_client(config)
        return cls(config=config, client=client)

    @property
    def available(self) -> bool:
        return self._client is not None

    @property
    def config(self) -> LLMConfig:
        return self._config

    def invoke(self, request: ReconciliationRequest) -> str:
        """Return the raw text the model produced for ``request``.

        The call is made exactly once; timeouts and error statuses are
        raised as :class:`RemoteTimeoutError` and :class:`RemoteError`.
        """

        if self._client is None:
            raise RemoteError(None, "API key no configurada")

        kwargs: dict[str, Any] = {
            "model": self._config.model,
            "messages": request.as_messages(),
            "temperature": request.temperature,
            "max_tokens": request.max_output_tokens,
            "timeout": self._config.timeout,
        }
        if self._config.json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        LOGGER.info(
            "Sending reconciliation request to %s (%d + %d characters of CSV)",
            self._config.model,
            len(request.primary_csv),
            len(request.counterparty_csv),
        )
        try:
            response = self._client.chat.completions.create(**kwargs)
        except openai.APITimeoutError as exc:
            LOGGER.warning("Model request timed out after %.0fs", self._config.timeout)
            raise RemoteTimeoutError() from exc
        except openai.APIStatusError as exc:
            LOGGER.error("Model endpoint returned HTTP %s", exc.status_code)
            raise RemoteError(exc.status_code, _vendor_message(exc)) from exc
        except openai.APIConnectionError as exc:
            LOGGER.error("Could not reach the model endpoint: %s", exc)
            raise RemoteError(None, str(exc)) from exc
        except openai.APIError as exc:
            LOGGER.error("Model request failed: %s", exc)
            raise RemoteError(None, str(exc)) from exc

        text = _extract_text(response)
        if not text:
            raise RemoteError(None, "Respuesta vacía o incompleta del modelo")
        LOGGER.debug("Model reply received (%d characters)", len(text))
        return text


def _extract_text(response: Any) -> str | None:
    """Pull the generated text out of a chat completion or responses object."""

    outputs = getattr(response, "choices", None) or getattr(response, "output", None)
    if not outputs:
        return getattr(response, "output_text", None)

    block = outputs[0]
    message = getattr(block, "message", None)
    if message is not None:
        content = getattr(message, "content", None)
    else:
        content = getattr(block, "content", None)

    if isinstance(content, list):
        parts = []
        for item in content:
            text = item.get("text") if isinstance(item, dict) else getattr(item, "text", None)
            if text:
                parts.append(text)
        return "".join(parts) or None
    return content or None


_TEST_CLIENT: Any | None = None


def set_client_for_testing(client: Any | None) -> None:
    """Route every model call through ``client``; ``None`` restores the SDK."""

    global _TEST_CLIENT
    _TEST_CLIENT = client
    _service.cache_clear()


@lru_cache(maxsize=1)
def _service() -> ReconciliationModel:
    return ReconciliationModel.from_env()


def default_model() -> ReconciliationModel:
    return _service()
