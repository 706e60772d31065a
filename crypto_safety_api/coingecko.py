"""
Market data client for resolving token symbols to prices and market metrics from CoinGecko.

Lookups go through the in-process cache, then the durable MongoDB cache, then
the live API. Live results are written through to both caches.
"""
import logging
from typing import List, Optional

from pydantic import ValidationError

from .cache import TTLCache, shared_cache
from .config import config as app_config
from .database import DatabaseService
from .errors import NotFound
from .http_client import fetch_json, with_single_retry
from .models import MarketSnapshot

logger = logging.getLogger(__name__)

MEMORY_TTL_SECONDS = 45
DB_TTL_SECONDS = 45
MAX_MARKET_CANDIDATES = 5
MISSING_RANK = 1e9


def cache_key_for_symbol(symbol: str) -> str:
    return f"cg:symbol:{symbol.strip().lower()}"


def rank_of(coin: dict) -> float:
    """Smallest market cap rank is the most prominent; missing ranks sort last."""
    rank = coin.get("market_cap_rank") if coin else None
    return MISSING_RANK if rank is None else rank


def pick_best_by_market_cap(coins: List[dict]) -> Optional[dict]:
    ranked = sorted((c for c in coins if c), key=rank_of)
    return ranked[0] if ranked else None


class MarketDataClient:
    def __init__(
        self,
        db: Optional[DatabaseService] = None,
        cache: Optional[TTLCache] = None,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
    ):
        self.db = db
        self.cache = cache if cache is not None else shared_cache
        self.base_url = (base_url or app_config.COINGECKO_API_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else app_config.COINGECKO_API_KEY

    def _headers(self) -> dict:
        return {"x-cg-demo-api-key": self.api_key} if self.api_key else {}

    async def _get(self, path: str, params: Optional[dict] = None):
        return await fetch_json(f"{self.base_url}{path}", params=params, headers=self._headers())

    # =========================================================================
    # RAW ENDPOINTS
    # =========================================================================

    async def search_coins(self, query: str) -> List[dict]:
        """Text search; returns candidate coins with optional market_cap_rank."""
        data = await self._get("/search", params={"query": query})
        return (data or {}).get("coins") or []

    async def get_markets(self, coin_ids: List[str]) -> List[dict]:
        """Price, market cap and volume for a batch of coin ids."""
        data = await self._get(
            "/coins/markets",
            params={
                "vs_currency": "usd",
                "ids": ",".join(coin_ids),
                "price_change_percentage": "24h",
            },
        )
        return data or []

    async def get_coin(self, coin_id: str) -> dict:
        """Full coin profile, including liquidity_score and the platforms address map."""
        return await self._get(f"/coins/{coin_id}") or {}

    # =========================================================================
    # SYMBOL RESOLUTION
    # =========================================================================

    async def resolve_symbol(self, symbol: str) -> MarketSnapshot:
        """
        Resolve a ticker symbol to a market snapshot.

        Args:
            symbol: Ticker symbol, any case, optional surrounding whitespace

        Returns:
            MarketSnapshot for the most prominent coin with that symbol

        Raises:
            NotFound: no coin matches the symbol upstream
            UpstreamError: upstream failed (transient failures are retried once)
        """
        sym = symbol.strip().lower()
        key = cache_key_for_symbol(sym)

        # 1) Memory cache
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"Memory cache hit for {key}")
            return cached

        # 2) Durable cache
        durable = await self._read_durable(key)
        if durable is not None:
            self.cache.set(key, durable, MEMORY_TTL_SECONDS)
            return durable

        # 3) Live fetch, one retry on 429/5xx
        snapshot = await with_single_retry(
            lambda: self._fetch_live(sym),
            label=f"CoinGecko lookup for {sym.upper()}",
        )

        # 4) Write-through
        await self._write_durable(key, snapshot)
        self.cache.set(key, snapshot, MEMORY_TTL_SECONDS)
        return snapshot

    async def _read_durable(self, key: str) -> Optional[MarketSnapshot]:
        if self.db is None:
            return None
        try:
            payload = await self.db.get_cached_price(key)
        except Exception as e:
            logger.warning(f"Durable cache read failed for {key}: {e}")
            return None
        if not payload:
            return None
        try:
            return MarketSnapshot.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Discarding malformed cached payload for {key}: {e}")
            return None

    async def _write_durable(self, key: str, snapshot: MarketSnapshot) -> None:
        if self.db is None:
            return
        try:
            await self.db.upsert_cached_price(key, snapshot.model_dump(), DB_TTL_SECONDS)
        except Exception as e:
            logger.warning(f"Durable cache write failed for {key}: {e}")

    async def _fetch_live(self, sym: str) -> MarketSnapshot:
        # 1) /search -> candidate ids, exact symbol matches preferred
        coins = await self.search_coins(sym)
        exact = [c for c in coins if (c.get("symbol") or "").lower() == sym]
        candidates = exact or coins
        if not candidates:
            raise NotFound(f"Symbol ${sym.upper()} not found on CoinGecko")

        # 2) markets for the top few, best by market cap rank
        top_ids = [c["id"] for c in candidates[:MAX_MARKET_CANDIDATES] if c.get("id")]
        markets = await self.get_markets(top_ids) if top_ids else []
        best = pick_best_by_market_cap(markets)
        if not best:
            raise NotFound(f"No market data for ${sym.upper()}")

        # 3) full coin for liquidity score and fallbacks
        full = await self.get_coin(best["id"])
        market_data = full.get("market_data") or {}

        def fallback(field: str, market_field: str) -> float:
            value = best.get(field)
            if value is None:
                value = (market_data.get(market_field) or {}).get("usd")
            return float(value or 0)

        snapshot = MarketSnapshot(
            id=best["id"],
            symbol=str(best.get("symbol") or "").upper(),
            name=best.get("name") or full.get("name") or sym.upper(),
            price=fallback("current_price", "current_price"),
            market_cap=fallback("market_cap", "market_cap"),
            volume_24h=fallback("total_volume", "total_volume"),
            liquidity_score=full.get("liquidity_score"),
        )
        logger.info(f"Resolved ${sym.upper()} to {snapshot.id} (${snapshot.price})")
        return snapshot
