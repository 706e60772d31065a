"""
Token analysis shared by the Telegram bot and the HTTP API.
"""
import logging
from typing import Optional

from .coingecko import MarketDataClient
from .database import DatabaseService
from .dexscreener import DexScreenerClient
from .errors import InvalidInput, NotFound
from .models import (
    MarketSnapshot,
    ProviderPreference,
    ResolveResult,
    TokenInfo,
    TokenMetrics,
    TokenReport,
    TradingPair,
)
from .parse import is_evm_address, is_symbol
from .resolver import NATIVE_COIN_MAP, ContractResolver
from .safety import SafetyInsightGenerator

logger = logging.getLogger(__name__)


def _to_float(value) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def token_from_pair(pair: TradingPair) -> TokenInfo:
    return TokenInfo(
        name=pair.base_token.name or "Unknown",
        symbol=pair.base_token.symbol or "???",
        chain=(pair.chain_id or "").upper(),
    )


def metrics_from_pair(pair: TradingPair) -> TokenMetrics:
    txns = pair.txns_h24
    return TokenMetrics(
        price_usd=_to_float(pair.price_usd),
        liquidity_usd=pair.liquidity.usd if pair.liquidity else None,
        volume_24h=pair.volume.h24 if pair.volume else None,
        fdv=pair.fdv,
        buys_24h=txns.buys if txns else None,
        sells_24h=txns.sells if txns else None,
    )


def pair_url(pair: TradingPair) -> str:
    return pair.url or f"https://dexscreener.com/{(pair.chain_id or '').lower()}/{pair.pair_address or ''}"


class TokenAnalyzer:
    def __init__(
        self,
        market: MarketDataClient,
        dex: DexScreenerClient,
        resolver: ContractResolver,
        insights: SafetyInsightGenerator,
    ):
        self.market = market
        self.dex = dex
        self.resolver = resolver
        self.insights = insights

    @classmethod
    def from_config(cls, db: Optional[DatabaseService] = None) -> "TokenAnalyzer":
        market = MarketDataClient(db=db)
        dex = DexScreenerClient()
        return cls(
            market=market,
            dex=dex,
            resolver=ContractResolver(dex=dex, market=market),
            insights=SafetyInsightGenerator.from_config(),
        )

    async def price(self, symbol: str) -> MarketSnapshot:
        if not symbol or not symbol.strip():
            raise InvalidInput("Symbol is required")
        if not is_symbol(symbol):
            raise InvalidInput("Invalid symbol (expected 2-15 letters or digits).")
        return await self.market.resolve_symbol(symbol)

    async def resolve(self, query: str) -> Optional[ResolveResult]:
        return await self.resolver.resolve(query)

    async def analyze_contract(self, address: str, provider: ProviderPreference = "auto") -> TokenReport:
        """
        Metrics from the most liquid DEX pair for a contract, plus an AI safety insight.

        Raises:
            InvalidInput: address is not 0x + 40 hex digits
            NotFound: DexScreener lists no pairs for the contract
            UpstreamError: DexScreener failed
        """
        if not is_evm_address(address):
            raise InvalidInput("Invalid contract address (expected 0x…40 hex).")

        pairs = await self.dex.get_pairs_by_contract(address)
        top = pairs[0]

        token = token_from_pair(top)
        metrics = metrics_from_pair(top)
        ai = await self.insights.generate(token, metrics, provider=provider)

        return TokenReport(token=token, metrics=metrics, ai=ai, pair_url=pair_url(top))

    async def analyze_pair(
        self,
        chain_id: str,
        pair_address: str,
        provider: ProviderPreference = "auto",
    ) -> TokenReport:
        """
        Analyze the base token of a DEX pair.

        Pairs on non-EVM chains have no contract to analyze; native BTC/ETH fall
        back to their wrapped Ethereum tokens.

        Raises:
            NotFound: pair unknown, or its base token has no EVM contract
        """
        detail = await self.dex.get_pair_detail(chain_id, pair_address)
        if detail is None:
            raise NotFound(f"Pair {chain_id}/{pair_address} not found on DexScreener")

        address = detail.base_token.address
        if is_evm_address(address):
            return await self.analyze_contract(address, provider)

        mapped = NATIVE_COIN_MAP.get((detail.base_token.symbol or "").lower())
        if mapped:
            logger.info(f"Non-EVM {detail.base_token.symbol} on {chain_id}, analyzing {mapped['address']}")
            return await self.analyze_contract(mapped["address"], provider)

        raise NotFound(f"{chain_id.upper()} token has no EVM contract. EVM analysis is supported for now.")
