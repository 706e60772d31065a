"""
Pytest fixtures and configuration for tests.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from crypto_safety_api.cache import TTLCache


# =============================================================================
# CLOCK
# =============================================================================

class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fresh_cache():
    """Isolated in-process cache so tests never share the module singleton."""
    return TTLCache(45)


# =============================================================================
# MOCK DATA
# =============================================================================

PEPE_ADDRESS = "0x6982508145454Ce325dDbE47a25d4ec3d2311933"
USDC_ADDRESS = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"


@pytest.fixture
def sample_coingecko_search():
    """CoinGecko /search response with an exact symbol match and fuzzy matches."""
    return {
        "coins": [
            {"id": "pepe", "symbol": "PEPE", "name": "Pepe", "market_cap_rank": 30},
            {"id": "pepe-2-0", "symbol": "PEPE2.0", "name": "Pepe 2.0", "market_cap_rank": 900},
            {"id": "pepecoin", "symbol": "PEPECOIN", "name": "PepeCoin", "market_cap_rank": None},
        ]
    }


@pytest.fixture
def sample_coingecko_markets():
    """CoinGecko /coins/markets response."""
    return [
        {
            "id": "pepe",
            "symbol": "pepe",
            "name": "Pepe",
            "current_price": 0.0000123,
            "market_cap": 5_200_000_000,
            "total_volume": 800_000_000,
            "market_cap_rank": 30,
        }
    ]


@pytest.fixture
def sample_coingecko_coin():
    """CoinGecko /coins/{id} response."""
    return {
        "id": "pepe",
        "name": "Pepe",
        "liquidity_score": 61.5,
        "platforms": {"ethereum": PEPE_ADDRESS},
        "market_data": {
            "current_price": {"usd": 0.0000123},
            "market_cap": {"usd": 5_200_000_000},
            "total_volume": {"usd": 800_000_000},
        },
    }


@pytest.fixture
def make_pair():
    """Build a DexScreener pair record."""
    def _make(
        base_address=PEPE_ADDRESS,
        base_symbol="PEPE",
        quote_symbol="WETH",
        liquidity=100_000.0,
        volume=50_000.0,
        chain_id="ethereum",
        pair_address="0xA43fe16908251ee70EF74718545e4FE6C5cCEc9f",
        fdv=5_000_000.0,
        buys=300,
        sells=250,
    ):
        return {
            "chainId": chain_id,
            "dexId": "uniswap",
            "url": f"https://dexscreener.com/{chain_id}/{pair_address}",
            "pairAddress": pair_address,
            "baseToken": {"address": base_address, "name": base_symbol.title(), "symbol": base_symbol},
            "quoteToken": {"address": USDC_ADDRESS, "name": quote_symbol, "symbol": quote_symbol},
            "priceUsd": "0.0000123",
            "txns": {"h24": {"buys": buys, "sells": sells}},
            "volume": {"h24": volume},
            "liquidity": {"usd": liquidity},
            "fdv": fdv,
        }
    return _make


# =============================================================================
# DATABASE MOCKS
# =============================================================================

@pytest.fixture
def mock_collection():
    """Create a mock MongoDB collection."""
    def _create_collection():
        collection = AsyncMock()
        collection.find_one = AsyncMock(return_value=None)
        collection.insert_one = AsyncMock()
        collection.update_one = AsyncMock()
        collection.delete_many = AsyncMock(return_value=MagicMock(deleted_count=0))
        collection.find = MagicMock()
        collection.find.return_value.sort.return_value.limit.return_value.to_list = AsyncMock(return_value=[])
        collection.create_index = AsyncMock()
        return collection
    return _create_collection


@pytest.fixture
def mock_db_service(mock_collection):
    """Create a DatabaseService backed by mock collections."""
    from crypto_safety_api.database import DatabaseService

    with patch.object(DatabaseService, '__init__', lambda self, *args, **kwargs: None):
        service = DatabaseService.__new__(DatabaseService)
        # Give each collection its own mock
        service.price_cache = mock_collection()
        service.query_logs = mock_collection()
        service.chat_settings = mock_collection()
        service.client = MagicMock()
        service.db = MagicMock()
        return service
