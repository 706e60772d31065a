"""
Data models for market snapshots, DEX pairs, resolution results and safety reports.
"""
from datetime import datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# MARKET DATA (CoinGecko)
# =============================================================================

class MarketSnapshot(BaseModel):
    id: str
    symbol: str
    name: str
    price: float = 0.0
    market_cap: float = 0.0
    volume_24h: float = 0.0
    liquidity_score: Optional[float] = None


# =============================================================================
# DEX DATA (DexScreener)
# =============================================================================

class _DexModel(BaseModel):
    """DexScreener speaks camelCase; accept both the wire names and ours."""
    model_config = ConfigDict(populate_by_name=True)


class PairToken(_DexModel):
    address: Optional[str] = None
    name: Optional[str] = None
    symbol: Optional[str] = None


class PairLiquidity(_DexModel):
    usd: Optional[float] = None


class PairVolume(_DexModel):
    h24: Optional[float] = None


class TxnCounts(_DexModel):
    buys: int = 0
    sells: int = 0


class PairTxns(_DexModel):
    m5: Optional[TxnCounts] = None
    h24: Optional[TxnCounts] = None


class TradingPair(_DexModel):
    chain_id: Optional[str] = Field(default=None, alias="chainId")
    dex_id: Optional[str] = Field(default=None, alias="dexId")
    pair_address: Optional[str] = Field(default=None, alias="pairAddress")
    base_token: PairToken = Field(default_factory=PairToken, alias="baseToken")
    quote_token: PairToken = Field(default_factory=PairToken, alias="quoteToken")
    url: Optional[str] = None
    price_usd: Optional[float] = Field(default=None, alias="priceUsd")
    fdv: Optional[float] = None
    liquidity: Optional[PairLiquidity] = None
    volume: Optional[PairVolume] = None
    txns: Optional[PairTxns] = None

    @property
    def liquidity_usd(self) -> float:
        return (self.liquidity.usd if self.liquidity else None) or 0.0

    @property
    def volume_h24(self) -> float:
        return (self.volume.h24 if self.volume else None) or 0.0

    @property
    def txns_h24(self) -> Optional[TxnCounts]:
        return self.txns.h24 if self.txns else None


# =============================================================================
# RESOLUTION
# =============================================================================

class ResolveSource(str, Enum):
    DIRECT = "direct"
    DEX_PAIR = "dex-pair"
    PAIR_DETAIL = "pair-detail"
    AGGREGATOR_SEARCH = "aggregator-search"
    STATIC_MAPPING = "static-mapping"


class ResolveResult(BaseModel):
    address: str
    source: ResolveSource
    note: Optional[str] = None


# =============================================================================
# SAFETY INSIGHT
# =============================================================================

ProviderPreference = Literal["auto", "openai", "gemini"]


class TokenInfo(BaseModel):
    name: str
    symbol: str
    chain: str


class TokenMetrics(BaseModel):
    price_usd: Optional[float] = None
    liquidity_usd: Optional[float] = None
    volume_24h: Optional[float] = None
    fdv: Optional[float] = None
    buys_24h: Optional[int] = None
    sells_24h: Optional[int] = None


class SafetyResult(BaseModel):
    score: int = Field(ge=0, le=100)
    explanation: str
    provider: Literal["openai", "gemini", "mock"]


class TokenReport(BaseModel):
    token: TokenInfo
    metrics: TokenMetrics
    ai: SafetyResult
    pair_url: Optional[str] = None


# =============================================================================
# CHAT SETTINGS
# =============================================================================

ALLOWED_CHAINS = (
    "ethereum",
    "bsc",
    "polygon",
    "solana",
    "base",
    "arbitrum",
    "optimism",
    "fantom",
)
ALLOWED_PROVIDERS = ("auto", "openai", "gemini")


class ChatSettings(BaseModel):
    default_chain: Optional[str] = None
    provider: ProviderPreference = "auto"


# =============================================================================
# QUERY LOG
# =============================================================================

QUERY_TYPES = ("price", "analyze", "freeform", "error", "start", "help", "settings", "provider")


def query_log_document(
    chat_id: int,
    query_type: str,
    input_text: str,
    outcome: Optional[str] = None,
    latency_ms: Optional[int] = None,
    provider: Optional[str] = None,
    cache_key: Optional[str] = None,
) -> dict:
    """Create an append-only query log document."""
    return {
        "chat_id": chat_id,
        "type": query_type,
        "input": (input_text or "")[:2000],
        "outcome": outcome or "ok",
        "latency_ms": latency_ms,
        "provider": provider,
        "cache_key": cache_key,
        "created_at": datetime.utcnow(),
    }


def price_cache_document(key: str, payload: dict, ttl_at: datetime) -> dict:
    """Create the $set body for a durable price cache upsert."""
    return {
        "key": key,
        "payload": payload,
        "ttl_at": ttl_at,
        "updated_at": datetime.utcnow(),
    }
