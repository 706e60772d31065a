"""
DEX data client for trading pairs from DexScreener.

All three lookups are cached in-process only.
"""
import logging
from typing import Iterable, List, Optional

from pydantic import ValidationError

from .cache import TTLCache, shared_cache
from .config import config as app_config
from .errors import NotFound
from .http_client import fetch_json, with_single_retry
from .models import TradingPair

logger = logging.getLogger(__name__)

SEARCH_TTL_SECONDS = 60
PAIR_TTL_SECONDS = 60
CONTRACT_TTL_SECONDS = 45


def parse_pairs(raw_pairs: Optional[Iterable[dict]]) -> List[TradingPair]:
    """Parse DexScreener pair records, skipping any that don't fit the model."""
    pairs = []
    for raw in raw_pairs or []:
        if not raw:
            continue
        try:
            pairs.append(TradingPair.model_validate(raw))
        except ValidationError as e:
            logger.warning(f"Skipping malformed pair {raw.get('pairAddress', '?')}: {e}")
    return pairs


def rank_by_liquidity_and_volume(pairs: List[TradingPair]) -> List[TradingPair]:
    """Descending liquidity in USD, ties broken by descending 24h volume."""
    return sorted(pairs, key=lambda p: (p.liquidity_usd, p.volume_h24), reverse=True)


def rank_by_liquidity(pairs: List[TradingPair]) -> List[TradingPair]:
    return sorted(pairs, key=lambda p: p.liquidity_usd, reverse=True)


class DexScreenerClient:
    def __init__(self, cache: Optional[TTLCache] = None, base_url: Optional[str] = None):
        self.cache = cache if cache is not None else shared_cache
        self.base_url = (base_url or app_config.DEXSCREENER_API_URL).rstrip("/")

    async def _get_pairs(self, path: str, params: Optional[dict] = None) -> List[TradingPair]:
        url = f"{self.base_url}{path}"
        data = await with_single_retry(
            lambda: fetch_json(url, params=params),
            label=f"DexScreener {path}",
        )
        return parse_pairs((data or {}).get("pairs"))

    async def search_pairs(self, query: str, limit: int = 5) -> List[TradingPair]:
        """
        Free-text pair search.

        Returns:
            Up to `limit` pairs, most liquid first (24h volume breaks ties)
        """
        key = f"dex:search:{query.lower()}:{limit}"

        async def _fetch():
            pairs = await self._get_pairs("/latest/dex/search", params={"q": query})
            return rank_by_liquidity_and_volume(pairs)[:limit]

        return await self.cache.get_or_set(key, _fetch, SEARCH_TTL_SECONDS)

    async def get_pair_detail(self, chain_id: str, pair_address: str) -> Optional[TradingPair]:
        """Single pair by chain and pair address, or None if DexScreener has no record."""
        key = f"dex:pair:{chain_id}:{pair_address}"

        async def _fetch():
            pairs = await self._get_pairs(f"/latest/dex/pairs/{chain_id}/{pair_address}")
            return pairs[0] if pairs else None

        return await self.cache.get_or_set(key, _fetch, PAIR_TTL_SECONDS)

    async def get_pairs_by_contract(self, address: str) -> List[TradingPair]:
        """
        All pairs trading a token contract, most liquid first.

        Raises:
            NotFound: the address is valid but DexScreener lists no pairs for it
            UpstreamError: network or HTTP failure
        """
        key = f"dex:contract:{address.lower()}"

        async def _fetch():
            pairs = await self._get_pairs(f"/latest/dex/tokens/{address}")
            if not pairs:
                raise NotFound("No pairs found for that contract on DexScreener")
            return rank_by_liquidity(pairs)

        return await self.cache.get_or_set(key, _fetch, CONTRACT_TTL_SECONDS)
