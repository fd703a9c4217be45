"""Contract around the text-generation provider.

Two operations are offered, a supportive reply to a study log and tag
extraction. Every provider failure is translated into one of four
:class:`AIGatewayError` subclasses so callers never see SDK exceptions.
"""

from __future__ import annotations

import json
import re
from typing import List, Optional, Protocol

import openai
from openai import OpenAI

from commonroom.config import Settings
from commonroom.logging import get_logger

logger = get_logger(__name__)

LANGUAGES = ("English", "Japanese")
DEFAULT_LANGUAGE = "English"


class AIGatewayError(Exception):
    """Base class for provider failures; ``kind`` is a stable log label."""

    kind = "gateway_error"


class GatewayUnavailable(AIGatewayError):
    kind = "gateway_unavailable"


class RateLimited(AIGatewayError):
    kind = "rate_limited"


class Unauthorized(AIGatewayError):
    kind = "unauthorized"


class GatewayError(AIGatewayError):
    kind = "gateway_error"


class ChatBackend(Protocol):
    """Single chat-completion call returning the assistant text."""

    def complete(
        self, messages: List[dict], *, max_tokens: int, temperature: float
    ) -> str: ...


class OpenAIChatBackend:
    """Chat backend on the ``openai`` SDK, mapping SDK errors to gateway errors."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self.model = model
        self.client = OpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)

    def complete(
        self, messages: List[dict], *, max_tokens: int, temperature: float
    ) -> str:
        try:
            completion = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except openai.RateLimitError as exc:
            raise RateLimited(str(exc)) from exc
        except (openai.AuthenticationError, openai.PermissionDeniedError) as exc:
            raise Unauthorized(str(exc)) from exc
        except (openai.APITimeoutError, openai.APIConnectionError) as exc:
            raise GatewayError(f"provider unreachable: {exc}") from exc
        except openai.APIError as exc:
            raise GatewayError(str(exc)) from exc
        choices = getattr(completion, "choices", None) or []
        first_choice = next(iter(choices), None)
        if not first_choice:
            raise GatewayError("completion returned no choices")
        return first_choice.message.content or ""


def reply_messages(content: str, target_language: str) -> List[dict]:
    # Learners of English write in Japanese and are answered in Japanese.
    if target_language == "English":
        system = "あなたは親しみやすい学習サポートAIです。簡潔に返信してください。"
        user = (
            "以下の日本語学習ログに温かい励ましと簡単なアドバイスをください：\n"
            f'"{content}"\n\n簡潔に日本語で返信してください。'
        )
    else:
        system = "You are a friendly learning support AI. Please respond briefly."
        user = (
            "Please provide warm encouragement and simple advice for this Japanese learning log:\n"
            f'"{content}"\n\nPlease respond briefly in English.'
        )
    return [{"role": "system", "content": system}, {"role": "user", "content": user}]


def tag_messages(content: str) -> List[dict]:
    return [
        {"role": "system", "content": "学習タグを抽出するAIです。簡潔に返してください。"},
        {
            "role": "user",
            "content": (
                f'学習ログから3個のタグを抽出してください：\n"{content}"\n\n'
                'JSON形式で返してください: {"tags": ["タグ1", "タグ2", "タグ3"]}'
            ),
        },
    ]


_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


def parse_tags(raw: str, max_tags: int) -> List[str]:
    """Pull the ``tags`` list out of a model reply.

    Raises :class:`GatewayError` when no usable JSON object is present.
    """
    match = _JSON_OBJECT.search(raw or "")
    if not match:
        raise GatewayError("tag reply contained no JSON object")
    try:
        data = json.loads(match.group(0))
    except ValueError as exc:
        raise GatewayError("tag reply was not valid JSON") from exc
    tags = data.get("tags") if isinstance(data, dict) else None
    if not isinstance(tags, list):
        raise GatewayError("tag reply had no tags list")
    cleaned: List[str] = []
    for tag in tags:
        if not isinstance(tag, (str, int, float)):
            continue
        text = str(tag).strip().lstrip("#").strip()
        if text and text not in cleaned:
            cleaned.append(text)
    return cleaned[:max_tags]


class AIGateway:
    def __init__(
        self,
        backend: Optional[ChatBackend],
        *,
        reply_max_tokens: int = 200,
        tag_max_tokens: int = 100,
        max_tags: int = 5,
    ) -> None:
        self.backend = backend
        self.reply_max_tokens = reply_max_tokens
        self.tag_max_tokens = tag_max_tokens
        self.max_tags = max_tags

    @classmethod
    def from_settings(cls, settings: Settings) -> "AIGateway":
        backend: Optional[ChatBackend] = None
        if settings.openai_api_key:
            backend = OpenAIChatBackend(
                settings.openai_api_key,
                model=settings.ai_model,
                base_url=settings.openai_base_url,
                timeout=settings.ai_request_timeout_seconds,
            )
        else:
            logger.info("ai_gateway_disabled", reason="no api key configured")
        return cls(
            backend,
            reply_max_tokens=settings.ai_reply_max_tokens,
            tag_max_tokens=settings.ai_tag_max_tokens,
            max_tags=settings.ai_max_tags,
        )

    @property
    def available(self) -> bool:
        return self.backend is not None

    def _complete(self, messages: List[dict], *, max_tokens: int, temperature: float) -> str:
        if self.backend is None:
            raise GatewayUnavailable("AI provider is not configured")
        try:
            return self.backend.complete(
                messages, max_tokens=max_tokens, temperature=temperature
            )
        except AIGatewayError:
            raise
        except Exception as exc:
            raise GatewayError(f"{type(exc).__name__}: {exc}") from exc

    def generate_supportive_reply(self, content: str, target_language: str) -> str:
        text = self._complete(
            reply_messages(content, target_language),
            max_tokens=self.reply_max_tokens,
            temperature=0.7,
        ).strip()
        if not text:
            raise GatewayError("empty reply")
        return text

    def extract_tags(self, content: str) -> List[str]:
        raw = self._complete(
            tag_messages(content), max_tokens=self.tag_max_tokens, temperature=0.3
        )
        return parse_tags(raw, self.max_tags)
