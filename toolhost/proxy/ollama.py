"""Async chat-completion client for Ollama using the official Python SDK."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Protocol

import httpx
import ollama

from .config import Config, get_config
from .errors import ToolhostError

logger = logging.getLogger("toolhost.ollama")

_THINK_RE = re.compile(r"<think>.*?</think>", re.DOTALL | re.IGNORECASE)

_TRANSIENT_MARKERS = (
    "connection reset", "connection refused", "eof", "broken pipe",
    "timeout", "timed out", "network", "connection error",
)


class ChatCompleter(Protocol):
    """Anything that turns a transcript into the model's reply text."""

    async def complete(self, messages: list[dict[str, Any]]) -> str:
        ...


class OllamaClient:
    """Wrapper around the official ollama.AsyncClient."""

    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        config: Config | None = None,
    ) -> None:
        self.cfg = config or get_config()
        host = (base_url or self.cfg.ollama_url).rstrip("/")
        self.host = host
        self.model = model or self.cfg.ollama_model

        logger.info(f"Initializing Ollama SDK client for host: {host}, model: {self.model}, timeout: {self.cfg.ollama_timeout}s")
        self._client = ollama.AsyncClient(host=host, timeout=self.cfg.ollama_timeout)

    async def close(self) -> None:
        """Close client and unload model."""
        await self.unload_model()

    async def unload_model(self) -> None:
        """Unload model from memory by setting keep_alive to 0."""
        try:
            logger.info(f"Unloading model {self.model}...")
            await self._client.generate(model=self.model, prompt="", keep_alive=0)
            logger.info("Model unloaded successfully.")
        except (ollama.ResponseError, ConnectionError, OSError) as e:
            logger.error(f"Failed to unload model: {e}")

    async def health_check(self) -> bool:
        """Check if Ollama is reachable."""
        try:
            await self._client.list()
            return True
        except (ollama.ResponseError, ConnectionError, OSError):
            return False
        except Exception as e:
            logger.debug(f"Ollama health check failed: {e}")
            return False

    async def complete(self, messages: list[dict[str, Any]], max_retries: int = 2) -> str:
        """Non-streaming chat completion; returns the reply text only.

        Retries transient connection errors. ``ResponseError`` from the
        server propagates unchanged.
        """
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
            "stream": False,
            "keep_alive": self.cfg.ollama_keep_alive,
            "options": {
                "num_ctx": self.cfg.ollama_num_ctx,
                "temperature": self.cfg.ollama_temperature,
                "num_predict": self.cfg.ollama_num_predict,
            },
        }

        last_err: Exception | None = None
        for attempt in range(max_retries + 1):
            try:
                response = await self._client.chat(**kwargs)
                return _strip_thinking(_message_content(response))

            except ollama.ResponseError as e:
                err_str = str(e.error)
                if "invalid character '<'" in err_str or "failed to parse JSON" in err_str:
                    raise ollama.ResponseError(
                        "Ollama returned an HTML error page instead of JSON. "
                        "This usually means Ollama crashed or ran out of memory. "
                        "Try restarting Ollama or reduce `ollama_num_ctx` in config.",
                        status_code=e.status_code,
                    ) from e
                logger.error(f"Ollama ResponseError (attempt {attempt + 1}): {e.error}")
                raise

            except (httpx.TransportError, ConnectionError, OSError, asyncio.TimeoutError) as e:
                last_err = e
                if attempt < max_retries and _is_transient(e):
                    wait = 1.5 * (attempt + 1)
                    logger.warning(
                        f"Transient Ollama error (attempt {attempt + 1}/{max_retries + 1}), "
                        f"retrying in {wait:.1f}s: {e}"
                    )
                    await asyncio.sleep(wait)
                    continue
                raise

        raise RuntimeError(f"Ollama connection failed after {max_retries + 1} attempts: {last_err}")


def _is_transient(err: Exception) -> bool:
    if isinstance(err, (httpx.TransportError, ConnectionError, asyncio.TimeoutError)):
        return True
    err_str = str(err).lower()
    return any(k in err_str for k in _TRANSIENT_MARKERS)


def _message_content(response: Any) -> str:
    message = getattr(response, "message", None)
    if message is None and isinstance(response, dict):
        message = response.get("message")
    if message is None:
        return ""
    content = getattr(message, "content", None)
    if content is None and isinstance(message, dict):
        content = message.get("content")
    return content or ""


def _strip_thinking(text: str) -> str:
    return _THINK_RE.sub("", text).strip()


def describe_error(err: BaseException, model: str | None = None) -> str:
    """Human-readable message, with a fix hint, for a failed invocation."""
    if isinstance(err, ToolhostError):
        return str(err)
    err_str = str(err)
    err_lower = err_str.lower()
    model = model or get_config().ollama_model
    if "invalid character '<'" in err_str or "failed to parse JSON" in err_str or "HTML error page" in err_str:
        return "Ollama returned an HTML error page, the server crashed or ran out of VRAM.\nFix: restart Ollama or reduce `ollama_num_ctx` in config."
    if "connection refused" in err_lower:
        return "Cannot connect to Ollama (connection refused).\nFix: start Ollama with `ollama serve`."
    if "model not found" in err_lower or ("not found" in err_lower and "pull" in err_lower):
        return f"Model not found: {model}\nFix: run `ollama pull {model}`."
    if "context length" in err_lower or "out of memory" in err_lower:
        return "Model ran out of context or memory.\nFix: lower `ollama_num_ctx` in config (e.g. 32768)."
    if isinstance(err, (asyncio.TimeoutError, httpx.TimeoutException)) or "timed out" in err_lower:
        return "Ollama request timed out.\nFix: increase `ollama_timeout` in config or use a faster model."
    if isinstance(err, (ollama.ResponseError, httpx.TransportError, ConnectionError)):
        return f"Model connection error: {err_str}"
    return err_str or type(err).__name__
