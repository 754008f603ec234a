"""Business plan and grant proposal generation over the Groq chat API.

Each content type maps to the feature that gates it; the route checks the
entitlement before calling generate().
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional
import logging

import groq

from planpilot.core.errors import ProviderError, RateLimitError, ServiceUnavailableError, ValidationError
from planpilot.models.plan import FeatureId


logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 3500
MAX_TOKENS_CEILING = 8000
DEFAULT_TEMPERATURE = 0.7


class ContentType(str, Enum):
    BUSINESS_PLAN = "business_plan"
    GRANT_PROPOSAL = "grant_proposal"
    GENERAL = "general"


CONTENT_FEATURES = {
    ContentType.BUSINESS_PLAN: FeatureId.BUSINESS_PLAN_GENERATION,
    ContentType.GRANT_PROPOSAL: FeatureId.GRANT_PROPOSAL_CREATION,
    ContentType.GENERAL: FeatureId.DOCUMENT_CREATION,
}

SYSTEM_PROMPTS = {
    ContentType.GENERAL: (
        "You are an expert business consultant and writer. Generate professional, "
        "detailed, and actionable business content."
    ),
    ContentType.BUSINESS_PLAN: (
        "You are an expert business consultant specializing in business plan creation. "
        "Generate comprehensive, professional business plans with detailed market analysis, "
        "financial projections, and strategic recommendations. Structure your response with "
        "clear headings and actionable insights."
    ),
    ContentType.GRANT_PROPOSAL: (
        "You are an expert grant writer with extensive experience in securing funding. "
        "Create compelling, data-driven grant proposals that demonstrate clear impact, "
        "organizational capacity, and project viability. Focus on persuasive language and "
        "specific outcomes."
    ),
}


@dataclass(frozen=True)
class GenerationResult:
    content: str
    model: str
    usage: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"content": self.content, "model": self.model, "usage": dict(self.usage)}


def feature_for(content_type) -> FeatureId:
    return CONTENT_FEATURES[ContentType(content_type)]


class GenerationService:
    def __init__(self, api_key: Optional[str], model: str, client: Optional[Any] = None):
        self.api_key = api_key
        self.model = model
        self._client = client

    @classmethod
    def from_settings(cls, settings_obj, client: Optional[Any] = None) -> "GenerationService":
        return cls(settings_obj.GROQ_API_KEY, settings_obj.GROQ_MODEL, client=client)

    @property
    def configured(self) -> bool:
        return self._client is not None or bool(self.api_key)

    def _get_client(self):
        if self._client is None:
            if not self.api_key:
                raise ServiceUnavailableError("AI service not configured")
            self._client = groq.Groq(api_key=self.api_key)
        return self._client

    def generate(
        self,
        prompt: str,
        content_type=ContentType.GENERAL,
        *,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = DEFAULT_TEMPERATURE,
        user_id: Optional[str] = None,
    ) -> GenerationResult:
        if not prompt or not prompt.strip():
            raise ValidationError("Prompt is required")
        if not 1 <= max_tokens <= MAX_TOKENS_CEILING:
            raise ValidationError(f"max_tokens must be between 1 and {MAX_TOKENS_CEILING}")
        if not 0 <= temperature <= 2:
            raise ValidationError("temperature must be between 0 and 2")

        try:
            kind = ContentType(content_type)
        except ValueError:
            raise ValidationError(f"Unknown content type: {content_type!r}")
        client = self._get_client()
        logger.info(
            "[generate] request",
            extra={"user_id": user_id, "content_type": kind.value, "model": self.model, "prompt_chars": len(prompt)},
        )

        try:
            response = client.chat.completions.create(
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPTS[kind]},
                    {"role": "user", "content": prompt},
                ],
                model=self.model,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except groq.RateLimitError:
            logger.warning("[generate] provider rate limited", extra={"user_id": user_id})
            raise RateLimitError("AI provider rate limit exceeded. Please wait a moment and try again.", retry_after_s=60)
        except groq.AuthenticationError:
            logger.error("[generate] provider authentication failed")
            raise ProviderError("AI service authentication failed")
        except groq.APIError as e:
            logger.error("[generate] provider error", extra={"user_id": user_id, "error_message": str(e)})
            raise ServiceUnavailableError("AI service temporarily unavailable")

        choices = getattr(response, "choices", None) or []
        content = choices[0].message.content if choices else None
        if not content:
            raise ProviderError("No content generated")

        usage = getattr(response, "usage", None)
        result = GenerationResult(
            content=content,
            model=getattr(response, "model", None) or self.model,
            usage={
                "prompt_tokens": getattr(usage, "prompt_tokens", 0) or 0,
                "completion_tokens": getattr(usage, "completion_tokens", 0) or 0,
                "total_tokens": getattr(usage, "total_tokens", 0) or 0,
            },
        )
        logger.info(
            "[generate] completed",
            extra={"user_id": user_id, "content_type": kind.value, "total_tokens": result.usage["total_tokens"]},
        )
        return result
