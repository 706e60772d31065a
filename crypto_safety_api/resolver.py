"""
Resolve a free-text query (symbol, name or address) to a single EVM contract address.

Stages, each tried only when the previous one produced nothing:
1. the query already is an address
2. DexScreener search, preferring pairs quoted in a stable/major asset, then liquidity
3. DexScreener pair detail for results that only expose a pair address
4. CoinGecko search, scanning the top coin's platform addresses
5. a static table mapping native coins to their wrapped ERC-20 on Ethereum
"""
import logging
from typing import Dict, Iterable, Optional, Tuple

from .coingecko import MarketDataClient, rank_of
from .dexscreener import DexScreenerClient
from .errors import CryptoSafetyError
from .models import ResolveResult, ResolveSource, TradingPair
from .parse import is_evm_address

logger = logging.getLogger(__name__)

SEARCH_LIMIT = 8

RECOGNIZED_QUOTES = {"USDC", "USDT", "WETH", "WBNB", "BUSD", "WBTC"}

# CoinGecko platform ids, primary chain first
PLATFORM_PRIORITY: Tuple[str, ...] = (
    "ethereum",
    "binance-smart-chain",
    "polygon-pos",
    "arbitrum-one",
    "avalanche",
    "base",
    "optimistic-ethereum",
    "fantom",
)

WETH_ADDRESS = "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"
WBTC_ADDRESS = "0x2260FAC5E5542a773Aa44fBCfeDf7C193bc2C599"

NATIVE_COIN_MAP: Dict[str, Dict[str, str]] = {
    "eth": {"address": WETH_ADDRESS, "note": "Mapped to WETH (Ethereum)"},
    "btc": {"address": WBTC_ADDRESS, "note": "Mapped to WBTC (Ethereum)"},
}


def has_recognized_quote(pair: TradingPair) -> bool:
    return (pair.quote_token.symbol or "").upper() in RECOGNIZED_QUOTES


def pick_best_pair(pairs: Iterable[TradingPair]) -> Optional[TradingPair]:
    """Best pair with a valid base address: recognized quote first, then liquidity."""
    usable = [p for p in pairs if is_evm_address(p.base_token.address)]
    if not usable:
        return None
    usable.sort(key=lambda p: (1 if has_recognized_quote(p) else 0, p.liquidity_usd), reverse=True)
    return usable[0]


class ContractResolver:
    def __init__(
        self,
        dex: DexScreenerClient,
        market: MarketDataClient,
        native_map: Optional[Dict[str, Dict[str, str]]] = None,
    ):
        self.dex = dex
        self.market = market
        self.native_map = NATIVE_COIN_MAP if native_map is None else native_map

    async def resolve(self, query: str) -> Optional[ResolveResult]:
        """
        Resolve a query to a contract address.

        Returns:
            ResolveResult naming the stage that produced the address, or None
        """
        q = (query or "").strip().lower()
        if not q:
            return None

        # 1) Already an address: authoritative, no network
        if is_evm_address(q):
            return ResolveResult(address=q, source=ResolveSource.DIRECT)

        # 2) DEX search
        try:
            pairs = await self.dex.search_pairs(q, SEARCH_LIMIT)
        except CryptoSafetyError as e:
            logger.warning(f"DEX search failed for '{q}': {e}")
            pairs = []

        best = pick_best_pair(pairs)
        if best:
            return ResolveResult(address=best.base_token.address, source=ResolveSource.DEX_PAIR)

        # 3) Pair detail for results that only carry a pair address
        result = await self._resolve_from_pair_details(pairs)
        if result:
            return result

        # 4) CoinGecko platforms
        result = await self._resolve_from_aggregator(q)
        if result:
            return result

        # 5) Native coin -> wrapped ERC-20
        mapped = self.native_map.get(q)
        if mapped:
            return ResolveResult(
                address=mapped["address"],
                source=ResolveSource.STATIC_MAPPING,
                note=mapped.get("note"),
            )

        logger.info(f"Could not resolve a contract for '{q}'")
        return None

    async def _resolve_from_pair_details(self, pairs: Iterable[TradingPair]) -> Optional[ResolveResult]:
        for pair in pairs:
            if not (pair.chain_id and pair.pair_address):
                continue
            try:
                detail = await self.dex.get_pair_detail(pair.chain_id, pair.pair_address)
            except Exception as e:
                logger.debug(f"Pair detail failed for {pair.chain_id}/{pair.pair_address}: {e}")
                continue
            address = detail.base_token.address if detail else None
            if is_evm_address(address):
                return ResolveResult(address=address, source=ResolveSource.PAIR_DETAIL)
        return None

    async def _resolve_from_aggregator(self, q: str) -> Optional[ResolveResult]:
        try:
            coins = await self.market.search_coins(q)
            if not coins:
                return None
            top = sorted(coins, key=rank_of)[0]
            full = await self.market.get_coin(top["id"])
            platforms = full.get("platforms") or {}
            for platform in PLATFORM_PRIORITY:
                address = platforms.get(platform)
                if is_evm_address(address):
                    return ResolveResult(address=address, source=ResolveSource.AGGREGATOR_SEARCH)
        except Exception as e:
            logger.warning(f"CoinGecko platform lookup failed for '{q}': {e}")
        return None
