"""
AI safety insight for a token: a 0-100 score plus a short explanation.

A heuristic score is computed from liquidity, volume, FDV and activity. It is
fed to the model as context and is also the final answer when no model can
be reached. generate() never raises.
"""
import json
import logging
import math
import re
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from openai import AsyncOpenAI
from pydantic import BaseModel, Field, ValidationError

from .config import config as app_config
from .models import ProviderPreference, SafetyResult, TokenInfo, TokenMetrics

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 50
HEURISTIC_ONLY_EXPLANATION = (
    "⚠️ AI providers unavailable. Showing heuristic-only safety score "
    "based on liquidity, 24h volume, and FDV."
)

PROMPT_TEMPLATE = """You are an analyst. Explain the safety of a crypto token for a retail user in 3–5 sentences.
Be neutral and specific. Avoid hype. Use the metrics to justify the safety score.

Context:
- Token: {name} ({symbol}) on {chain}
- Price: {price_usd}
- Liquidity: {liquidity_usd}
- 24h Volume: {volume_24h}
- FDV: {fdv}
- 24h Txns: buys={buys_24h}, sells={sells_24h}
- Heuristic Safety Score (0–100): {heuristic_score}

Return ONLY valid JSON with exactly these keys:
{{
  "score": <number 0-100>,
  "explanation": <string 3-5 sentences>
}}"""


class SafetyShape(BaseModel):
    score: float = Field(ge=0, le=100)
    explanation: str = Field(min_length=10)


def heuristic_score(metrics: TokenMetrics) -> int:
    """Rule-of-thumb score from liquidity, volume, liquidity/FDV ratio and trade count."""
    liquidity = metrics.liquidity_usd or 0
    volume = metrics.volume_24h or 0
    score = 50

    if liquidity > 100_000:
        score += 15
    elif liquidity < 10_000:
        score -= 15

    if volume > 1_000_000:
        score += 15
    elif volume < 25_000:
        score -= 10

    if metrics.fdv and liquidity > 0:
        ratio = liquidity / metrics.fdv
        if ratio > 0.01:
            score += 10
        elif ratio < 0.001:
            score -= 10

    if (metrics.buys_24h or 0) + (metrics.sells_24h or 0) < 100:
        score -= 5

    return max(0, min(100, round(score)))


def _clamp_score(value: Any) -> Optional[int]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return max(0, min(100, round(number)))


def coerce_safety_output(raw: Any) -> Tuple[int, str]:
    """
    Turn raw model output into (score, explanation).

    Valid output passes through. Known malformed shapes are repaired, e.g. a
    score of "78%" becomes 78. Anything unrecoverable falls back to a neutral
    score of 50 and "No explanation.".
    """
    if isinstance(raw, dict):
        try:
            shape = SafetyShape.model_validate(raw)
            return round(shape.score), shape.explanation
        except ValidationError:
            pass
    else:
        raw = {}

    score = raw.get("score")
    if isinstance(score, str):
        score = score.replace("%", "").strip()
    coerced = _clamp_score(score)

    explanation = raw.get("explanation")
    if not isinstance(explanation, str) or not explanation.strip():
        explanation = "No explanation."

    return (NEUTRAL_SCORE if coerced is None else coerced), explanation


def parse_model_json(text: str) -> Any:
    """Parse JSON from model output, tolerating ```json fences and surrounding prose."""
    cleaned = (text or "").strip()
    fenced = re.search(r"```(?:json)?\s*(.*?)```", cleaned, re.DOTALL)
    if fenced:
        cleaned = fenced.group(1).strip()
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start != -1 and end > start:
            return json.loads(cleaned[start:end + 1])
        raise


def _display(value: Any) -> Any:
    return "N/A" if value is None else value


class SafetyInsightGenerator:
    def __init__(
        self,
        openai_client: Optional[AsyncOpenAI] = None,
        gemini_client: Optional[AsyncOpenAI] = None,
        openai_model: Optional[str] = None,
        gemini_model: Optional[str] = None,
    ):
        self.openai_client = openai_client
        self.gemini_client = gemini_client
        self.openai_model = openai_model or app_config.OPENAI_MODEL
        self.gemini_model = gemini_model or app_config.GEMINI_MODEL

    @classmethod
    def from_config(cls) -> "SafetyInsightGenerator":
        """Build clients for whichever providers have API keys configured."""
        openai_client = None
        gemini_client = None
        if app_config.OPENAI_API_KEY:
            openai_client = AsyncOpenAI(api_key=app_config.OPENAI_API_KEY)
        if app_config.GEMINI_API_KEY:
            # Gemini through its OpenAI-compatible endpoint
            gemini_client = AsyncOpenAI(
                api_key=app_config.GEMINI_API_KEY,
                base_url=app_config.GEMINI_BASE_URL,
            )
        return cls(openai_client=openai_client, gemini_client=gemini_client)

    def build_prompt(self, token: TokenInfo, metrics: TokenMetrics, heuristic: int) -> str:
        return PROMPT_TEMPLATE.format(
            name=token.name,
            symbol=token.symbol,
            chain=token.chain,
            price_usd=_display(metrics.price_usd),
            liquidity_usd=_display(metrics.liquidity_usd),
            volume_24h=_display(metrics.volume_24h),
            fdv=_display(metrics.fdv),
            buys_24h=_display(metrics.buys_24h),
            sells_24h=_display(metrics.sells_24h),
            heuristic_score=heuristic,
        )

    async def _ask(self, client: Optional[AsyncOpenAI], model: str, provider: str, prompt: str) -> SafetyResult:
        if client is None:
            raise RuntimeError(f"{provider} is not configured")
        response = await client.chat.completions.create(
            model=model,
            messages=[{"role": "user", "content": prompt}],
            temperature=0.5,
        )
        text = response.choices[0].message.content or ""
        score, explanation = coerce_safety_output(parse_model_json(text))
        return SafetyResult(score=score, explanation=explanation, provider=provider)

    async def generate(
        self,
        token: TokenInfo,
        metrics: TokenMetrics,
        provider: ProviderPreference = "auto",
    ) -> SafetyResult:
        """
        Score a token's safety.

        Args:
            token: Name, symbol and chain of the token
            metrics: Market metrics from the top DEX pair
            provider: "openai", "gemini", or "auto" (OpenAI first, Gemini on any failure)

        Returns:
            SafetyResult from the model, or the heuristic-only result with provider "mock"
        """
        heuristic = heuristic_score(metrics)
        prompt = self.build_prompt(token, metrics, heuristic)

        attempts: Dict[str, Callable[[], Awaitable[SafetyResult]]] = {
            "openai": lambda: self._ask(self.openai_client, self.openai_model, "openai", prompt),
            "gemini": lambda: self._ask(self.gemini_client, self.gemini_model, "gemini", prompt),
        }
        order = [provider] if provider in attempts else ["openai", "gemini"]

        for name in order:
            try:
                return await attempts[name]()
            except Exception as e:
                logger.warning(f"{name} safety insight failed: {e}")

        logger.error(f"AI pipeline failed for {token.symbol}; using heuristic score {heuristic}")
        return SafetyResult(score=heuristic, explanation=HEURISTIC_ONLY_EXPLANATION, provider="mock")
