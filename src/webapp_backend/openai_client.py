# file: src/webapp_backend/openai_client.py
import json
import logging
import os
import re
import time
from typing import Any, Dict, List, Literal, Optional

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, Field
from pydantic import ValidationError as SchemaValidationError

from .errors import MalformedAssessmentError, RateLimitedError, UpstreamUnavailableError
from .rate_limits import RateLimitConfig, RequestGate, ai_rate_limits

logger = logging.getLogger(__name__)

RAW_LOG_MAX_LEN = 4000
POST_TEXT_MAX_LEN = 200

SYSTEM_PROMPT = (
    "You are a Telegram Channel Auditor AI. Analyze the given channel data "
    "and return ONLY valid JSON without any additional text or formatting."
)


# ==========
# ДИНАМИЧЕСКИЙ конфиг (env читается во время вызова)
# ==========

def _env(name: str, default: str | None = None) -> str:
    v = os.getenv(name)
    if v is None:
        return default or ""
    return str(v)

def _get_ai_service() -> str:
    return (_env("AI_SERVICE", "deepseek").strip().lower() or "deepseek")

def _get_api_key() -> str:
    return _env("DEEPSEEK_API_KEY", "").strip()

def _get_model() -> str:
    return _env("DEEPSEEK_MODEL", "deepseek-chat").strip() or "deepseek-chat"

def _get_base_url() -> str:
    return (_env("DEEPSEEK_BASE_URL", "https://api.deepseek.com") or "https://api.deepseek.com").rstrip("/")

def _get_timeout() -> float:
    try:
        return float(_env("DEEPSEEK_TIMEOUT_SECONDS", "60"))
    except ValueError:
        return 60.0


# ==========
# Схема ответа модели
# ==========

Rating = Literal["Legit", "Doubtful", "Scam Risk"]


class _Section(BaseModel):
    # лишние поля модели не ломают разбор, обязательные - ломают
    model_config = {"extra": "allow", "populate_by_name": True}


class ProfileCheck(_Section):
    bio_consistency: Optional[str] = Field(default=None, alias="bioConsistency")
    external_links: Optional[str] = Field(default=None, alias="externalLinks")
    owner_contact: Optional[str] = Field(default=None, alias="ownerContact")
    score: float


class ContentCheck(_Section):
    relevance: Optional[str] = None
    activity_level: Optional[str] = Field(default=None, alias="activityLevel")
    engagement_metrics: Dict[str, Any] = Field(default_factory=dict, alias="engagementMetrics")
    scam_indicators: List[str] = Field(default_factory=list, alias="scamIndicators")
    score: float


class CrossCheck(_Section):
    official_references: Optional[str] = Field(default=None, alias="officialReferences")
    inconsistencies: List[Any] = Field(default_factory=list)
    score: float


class Verdict(_Section):
    trust_score: float = Field(alias="trustScore")
    rating: Rating
    explanation: str = ""


class ChannelAssessment(_Section):
    profile_check: ProfileCheck = Field(alias="profileCheck")
    content_check: ContentCheck = Field(alias="contentCheck")
    cross_check: CrossCheck = Field(alias="crossCheck")
    verdict: Verdict


# ==========
# Prompt
# ==========

def _to_int(v: Any) -> int:
    try:
        return int(float(v))
    except (TypeError, ValueError):
        return 0


def _media_url(msg: Dict[str, Any], kind: str) -> bool:
    media = msg.get(kind)
    if isinstance(media, dict):
        return bool(media.get("url"))
    return False


def build_analysis_prompt(channel_info: Dict[str, Any], messages: List[Dict[str, Any]]) -> str:
    subscribers = _to_int(channel_info.get("subscribers"))
    avg_views = round(sum(_to_int(m.get("views")) for m in messages) / len(messages)) if messages else 0
    engagement = f"{(avg_views / subscribers) * 100:.2f}%" if subscribers > 0 else "0.00%"

    posts = []
    for i, msg in enumerate(messages):
        text = str(msg.get("text") or "")[:POST_TEXT_MAX_LEN]
        posts.append(
            f"\nPost {i + 1}:\n"
            f"- Date: {msg.get('date')}\n"
            f"- Views: {msg.get('views')}\n"
            f"- Text: {text}...\n"
            f"- Has Video: {str(_media_url(msg, 'video')).lower()}\n"
            f"- Has Photo: {str(_media_url(msg, 'photo')).lower()}\n"
        )

    template = {
        "profileCheck": {
            "bioConsistency": "clear/vague/misleading",
            "externalLinks": "official/suspicious/none",
            "ownerContact": "present/absent",
            "score": 0,
        },
        "contentCheck": {
            "relevance": "crypto-related/general/spammy",
            "activityLevel": "active/inactive",
            "engagementMetrics": {
                "subscriberCount": subscribers,
                "avgViewsPerPost": avg_views,
                "engagementRatio": engagement,
                "avgCommentsPerPost": 0,
                "avgReactionsPerPost": 0,
            },
            "scamIndicators": [],
            "score": 0,
        },
        "crossCheck": {
            "officialReferences": "yes/no",
            "inconsistencies": [],
            "score": 0,
        },
        "verdict": {
            "trustScore": 0,
            "rating": "Legit/Doubtful/Scam Risk",
            "explanation": "Brief explanation",
        },
    }

    return (
        "Analyze this Telegram channel:\n\n"
        "CHANNEL INFO:\n"
        f"- Name: {channel_info.get('title')}\n"
        f"- Description: {channel_info.get('description')}\n"
        f"- Subscribers: {channel_info.get('subscribers')}\n"
        f"- Verified: {channel_info.get('verified')}\n"
        f"- Type: {channel_info.get('chat_type')}\n\n"
        f"RECENT MESSAGES ({len(messages)} posts):\n"
        + "".join(posts)
        + "\nMETRICS:\n"
        f"- Average views per post: {avg_views}\n"
        f"- Engagement ratio: {engagement}\n\n"
        "Return analysis in this EXACT JSON format:\n"
        + json.dumps(template, indent=2, ensure_ascii=False)
    )


# ==========
# Разбор ответа
# ==========

def _extract_message_content(resp: Any) -> str:
    choices = getattr(resp, "choices", None)
    if not choices:
        logger.error("No choices in assessment response")
        return ""
    message = getattr(choices[0], "message", None)
    content = getattr(message, "content", None)

    if isinstance(content, list):
        parts: List[str] = []
        for part in content:
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
            elif isinstance(part, str):
                parts.append(part)
        return "\n".join(parts)

    if isinstance(content, str):
        return content

    return str(content or "")


def clean_json_response(text: str) -> str:
    """Снимаем ```json-обёртку и режем до самых внешних {...}."""
    cleaned = re.sub(r"```json\n?", "", text or "")
    cleaned = re.sub(r"```\n?", "", cleaned).strip()

    first = cleaned.find("{")
    last = cleaned.rfind("}")
    if first != -1 and last > first:
        cleaned = cleaned[first : last + 1]
    return cleaned


def parse_assessment(text: str) -> Dict[str, Any]:
    cleaned = clean_json_response(text)
    if not cleaned:
        raise MalformedAssessmentError("Empty assessment response")

    try:
        parsed = json.loads(cleaned)
    except ValueError as e:
        logger.error("Assessment is not valid JSON (first %d chars): %s", RAW_LOG_MAX_LEN, text[:RAW_LOG_MAX_LEN])
        raise MalformedAssessmentError(f"Assessment response is not valid JSON: {e}") from e

    if not isinstance(parsed, dict):
        raise MalformedAssessmentError("Assessment response is not a JSON object")

    try:
        ChannelAssessment.model_validate(parsed)
    except SchemaValidationError as e:
        raise MalformedAssessmentError(
            f"Assessment response does not match the expected schema ({e.error_count()} errors)"
        ) from e

    # в базу уходит ровно то, что вернула модель
    return parsed


# ==========
# Assessor
# ==========

class ChannelAssessor:
    def __init__(
        self,
        api_key: str,
        *,
        service: str = "deepseek",
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
        config: Optional[RateLimitConfig] = None,
        gate: Optional[RequestGate] = None,
    ) -> None:
        cfg = config or ai_rate_limits()
        self.service = service
        self.model = model or _get_model()
        self._gate = gate or RequestGate(cfg.min_request_interval)

        if client is None and api_key:
            client = AsyncOpenAI(
                api_key=api_key,
                base_url=base_url or _get_base_url(),
                timeout=_get_timeout(),
                max_retries=cfg.max_retries,
            )
        self._client = client

    @classmethod
    def from_env(cls) -> "ChannelAssessor":
        return cls(_get_api_key(), service=_get_ai_service())

    def is_configured(self) -> bool:
        return self._client is not None

    async def assess(self, channel_info: Dict[str, Any], messages: List[Dict[str, Any]]) -> Dict[str, Any]:
        if self._client is None:
            raise UpstreamUnavailableError(
                "DeepSeek API key is not configured. Please set DEEPSEEK_API_KEY environment variable."
            )
        if self.service != "deepseek":
            raise UpstreamUnavailableError(f"Unsupported AI service: {self.service}")

        prompt = build_analysis_prompt(channel_info, messages)

        await self._gate.wait()
        started = time.monotonic()
        try:
            resp = await self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=0.3,
                max_tokens=2000,
            )
        except openai.RateLimitError as e:
            logger.error("Assessment call rate limited (%.2fs): %s", time.monotonic() - started, e)
            raise RateLimitedError("Assessment service rate limit reached") from e
        except openai.APIError as e:
            logger.error("Assessment call failed (%.2fs): %s", time.monotonic() - started, e)
            raise UpstreamUnavailableError(f"Assessment service error: {e}") from e

        logger.info("Assessment chat.completions call OK (%.2fs)", time.monotonic() - started)

        content = _extract_message_content(resp).strip()
        logger.debug("Assessment raw content (first %d chars): %s", RAW_LOG_MAX_LEN, content[:RAW_LOG_MAX_LEN])
        return parse_assessment(content)
