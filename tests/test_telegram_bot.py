"""
Tests for Telegram message and button handling.

TelegramClient is patched out; events are MagicMocks with async reply/respond/answer.
"""
import pytest
from unittest.mock import patch, AsyncMock, MagicMock

from crypto_safety_api.callback_store import CallbackStore
from crypto_safety_api.dexscreener import parse_pairs
from crypto_safety_api.errors import InvalidInput, NotFound, UpstreamError
from crypto_safety_api.models import (
    MarketSnapshot,
    ResolveResult,
    ResolveSource,
    SafetyResult,
    TokenInfo,
    TokenMetrics,
    TokenReport,
)
from crypto_safety_api.rate_limiter import Admission, REASON_EXHAUSTED, REASON_SLOW_DOWN
from crypto_safety_api.settings_store import SettingsStore
from crypto_safety_api.telegram_bot import TelegramBot, fmt_usd, user_error

ADDRESS = "0x6982508145454Ce325dDbE47a25d4ec3d2311933"
CHAT_ID = 555


def make_event(text=None, data=None):
    event = MagicMock()
    event.chat_id = CHAT_ID
    event.message.message = text
    event.data = data
    event.reply = AsyncMock()
    event.respond = AsyncMock()
    event.answer = AsyncMock()
    return event


def sample_report():
    return TokenReport(
        token=TokenInfo(name="Pepe", symbol="PEPE", chain="ETHEREUM"),
        metrics=TokenMetrics(price_usd=0.0000123, liquidity_usd=900_000.0),
        ai=SafetyResult(score=74, explanation="Deep liquidity.", provider="openai"),
        pair_url="https://dexscreener.com/ethereum/0xpair",
    )


def button_data(call):
    """All callback payloads from the buttons= kwarg of a respond/reply call."""
    rows = call.kwargs.get("buttons") or []
    return [button.data.decode() for row in rows for button in row if hasattr(button, "data")]


@pytest.fixture
def analyzer():
    analyzer = MagicMock()
    analyzer.price = AsyncMock(return_value=MarketSnapshot(
        id="bitcoin", symbol="BTC", name="Bitcoin", price=65000.0, market_cap=1.2e12, volume_24h=3.1e10,
    ))
    analyzer.resolve = AsyncMock(return_value=None)
    analyzer.analyze_contract = AsyncMock(return_value=sample_report())
    analyzer.analyze_pair = AsyncMock(return_value=sample_report())
    analyzer.dex.search_pairs = AsyncMock(return_value=[])
    return analyzer


@pytest.fixture
def db():
    db = MagicMock()
    db.log_query = AsyncMock()
    db.get_recent_logs = AsyncMock(return_value=[])
    return db


@pytest.fixture
def governor():
    governor = MagicMock()
    governor.admit.return_value = Admission(allowed=True)
    return governor


@pytest.fixture
def bot(analyzer, db, governor):
    with patch('crypto_safety_api.telegram_bot.TelegramClient'):
        return TelegramBot(analyzer, db, SettingsStore(), governor=governor, callbacks=CallbackStore())


class TestFormatting:

    def test_fmt_usd(self):
        assert fmt_usd(65000) == "$65,000"
        assert fmt_usd(1.5) == "$1.5"
        assert fmt_usd(0.0000123) == "$0.0000123"
        assert fmt_usd(None) == "N/A"

    def test_user_error(self):
        assert user_error(NotFound("x")) == "I couldn't find that token."
        assert "busy" in user_error(UpstreamError("x", status_code=429))
        assert user_error(UpstreamError("x", status_code=500), "fallback") == "fallback"
        assert user_error(InvalidInput("Invalid symbol (expected 2-15 letters or digits).")).startswith("Invalid symbol")


class TestAdmission:

    @pytest.mark.asyncio
    async def test_slow_down(self, bot, analyzer, governor):
        governor.admit.return_value = Admission(allowed=False, reason=REASON_SLOW_DOWN)
        event = make_event("/price btc")

        await bot._handle_message(event)

        event.respond.assert_awaited_once_with("⏱ Please slow down a bit…")
        analyzer.price.assert_not_called()

    @pytest.mark.asyncio
    async def test_exhausted(self, bot, governor):
        governor.admit.return_value = Admission(allowed=False, reason=REASON_EXHAUSTED, retry_after=4)
        event = make_event("btc")

        await bot._handle_message(event)

        event.respond.assert_awaited_once_with("⏳ Too many requests. Try again in ~4s.")

    @pytest.mark.asyncio
    async def test_callbacks_also_governed(self, bot, analyzer, governor):
        governor.admit.return_value = Admission(allowed=False, reason=REASON_SLOW_DOWN)
        event = make_event(data=f"ANALYZE_ADDR:{ADDRESS}".encode())

        await bot._handle_callback(event)

        analyzer.analyze_contract.assert_not_called()
        governor.admit.assert_called_once_with(CHAT_ID)


class TestCommands:

    @pytest.mark.asyncio
    async def test_start(self, bot, db):
        event = make_event("/start")

        await bot._handle_message(event)

        assert "Welcome" in event.reply.call_args.args[0]
        assert db.log_query.call_args.args[:2] == (CHAT_ID, "start")

    @pytest.mark.asyncio
    async def test_price_with_analyze_button(self, bot, analyzer, db):
        analyzer.resolve.return_value = ResolveResult(
            address="0x2260FAC5E5542a773Aa44fBCfeDf7C193bc2C599",
            source=ResolveSource.STATIC_MAPPING,
            note="Mapped to WBTC (Ethereum)",
        )
        event = make_event("/price btc")

        await bot._handle_message(event)

        analyzer.price.assert_awaited_once_with("btc")
        assert "Bitcoin" in event.reply.call_args.args[0]
        assert "$65,000" in event.reply.call_args.args[0]
        assert "Mapped to WBTC" in event.respond.call_args.args[0]
        assert button_data(event.respond.call_args) == [
            "ANALYZE_ADDR:0x2260FAC5E5542a773Aa44fBCfeDf7C193bc2C599"
        ]
        assert db.log_query.call_args.args[1] == "price"

    @pytest.mark.asyncio
    async def test_price_card_survives_resolve_failure(self, bot, analyzer, db):
        analyzer.resolve.side_effect = UpstreamError("dex down", status_code=503)
        event = make_event("/price btc")

        await bot._handle_message(event)

        event.reply.assert_awaited_once()
        assert "Bitcoin" in event.reply.call_args.args[0]
        assert "Failed to fetch price" not in event.reply.call_args.args[0]
        event.respond.assert_not_called()
        assert db.log_query.call_args.args[1] == "price"

    @pytest.mark.asyncio
    async def test_price_not_found(self, bot, analyzer, db):
        analyzer.price.side_effect = NotFound("Symbol $ZZZ not found on CoinGecko")
        event = make_event("/price zzz")

        await bot._handle_message(event)

        assert "couldn't find" in event.reply.call_args.args[0]
        assert db.log_query.call_args.args[1] == "error"

    @pytest.mark.asyncio
    async def test_price_usage(self, bot, analyzer):
        event = make_event("/price")

        await bot._handle_message(event)

        assert "Usage" in event.reply.call_args.args[0]
        analyzer.price.assert_not_called()

    @pytest.mark.asyncio
    async def test_analyze_rejects_bad_address(self, bot, analyzer):
        event = make_event("/analyze 0x1234")

        await bot._handle_message(event)

        analyzer.analyze_contract.assert_not_called()
        assert "contract address" in event.reply.call_args.args[0]

    @pytest.mark.asyncio
    async def test_analyze_uses_chat_provider(self, bot, analyzer, db):
        await bot.settings.update(CHAT_ID, provider="gemini")
        event = make_event(f"/analyze {ADDRESS}")

        await bot._handle_message(event)

        analyzer.analyze_contract.assert_awaited_once_with(ADDRESS, "gemini")
        text = event.respond.call_args.args[0]
        assert "Safety Score</b>: 74%" in text
        assert db.log_query.call_args.kwargs["provider"] == "openai"

    @pytest.mark.asyncio
    async def test_setchain_and_settings(self, bot):
        await bot._handle_message(make_event("/setchain BSC"))
        event = make_event("/settings")

        await bot._handle_message(event)

        assert "Default chain: bsc" in event.reply.call_args.args[0]

    @pytest.mark.asyncio
    async def test_setchain_rejects_unknown_chain(self, bot):
        event = make_event("/setchain dogechain")

        await bot._handle_message(event)

        assert "Usage" in event.reply.call_args.args[0]
        assert (await bot.settings.get(CHAT_ID)).default_chain is None

    @pytest.mark.asyncio
    async def test_logs(self, bot, db):
        db.get_recent_logs.return_value = [
            {"type": "price", "outcome": "ok", "latency_ms": 120, "input": "btc"},
        ]
        event = make_event("/logs")

        await bot._handle_message(event)

        db.get_recent_logs.assert_awaited_once_with(CHAT_ID, limit=5)
        assert "price [ok] 120ms" in event.reply.call_args.args[0]


class TestFreeText:

    @pytest.mark.asyncio
    async def test_address_is_analyzed(self, bot, analyzer):
        await bot._handle_message(make_event(ADDRESS))

        analyzer.analyze_contract.assert_awaited_once_with(ADDRESS, "auto")

    @pytest.mark.asyncio
    async def test_symbol_gets_price_and_candidates(self, bot, analyzer, make_pair):
        analyzer.dex.search_pairs.return_value = parse_pairs([
            make_pair(base_address=ADDRESS, chain_id="ethereum"),
            make_pair(
                base_address="EKpQGSJtjMFqKZ9KQanSqYXRcF8fBopzLHYxdM65zcjm",
                chain_id="solana",
                pair_address="8sLbNZoA1cfnvMJLPfp98ZLAnFSYCFApfJKMbiXNLwxj",
            ),
        ])
        await bot.settings.update(CHAT_ID, default_chain="solana")
        event = make_event("what's the price of $PEPE?")

        await bot._handle_message(event)

        analyzer.price.assert_awaited_once_with("PEPE")
        analyzer.dex.search_pairs.assert_awaited_once_with("PEPE", 5)
        data = button_data(event.respond.call_args)
        # Preferred chain first; non-EVM pair goes through the callback store
        assert data[0].startswith("CB:")
        assert data[1] == f"ANALYZE_ADDR:{ADDRESS}"
        stored = bot.callbacks.take(data[0][3:])
        assert stored == {
            "kind": "PAIR",
            "chain_id": "solana",
            "pair_address": "8sLbNZoA1cfnvMJLPfp98ZLAnFSYCFApfJKMbiXNLwxj",
        }

    @pytest.mark.asyncio
    async def test_gibberish_gets_help(self, bot, analyzer):
        event = make_event("?")

        await bot._handle_message(event)

        analyzer.price.assert_not_called()
        assert "I can handle" in event.reply.call_args.args[0]


class TestCallbacks:

    @pytest.mark.asyncio
    async def test_analyze_addr(self, bot, analyzer):
        event = make_event(data=f"ANALYZE_ADDR:{ADDRESS}".encode())

        await bot._handle_callback(event)

        analyzer.analyze_contract.assert_awaited_once_with(ADDRESS, "auto")
        assert f"ANALYZE_ADDR:{ADDRESS}" in button_data(event.respond.call_args)

    @pytest.mark.asyncio
    async def test_analyze_pair(self, bot, analyzer):
        event = make_event(data=b"ANALYZE_PAIR:bsc:0xpairaddr")

        await bot._handle_callback(event)

        analyzer.analyze_pair.assert_awaited_once_with("bsc", "0xpairaddr", "auto")

    @pytest.mark.asyncio
    async def test_stored_payload_used_once(self, bot, analyzer):
        payload_id = bot.callbacks.put({"kind": "PAIR", "chain_id": "solana", "pair_address": "abc"})

        await bot._handle_callback(make_event(data=f"CB:{payload_id}".encode()))
        second = make_event(data=f"CB:{payload_id}".encode())
        await bot._handle_callback(second)

        analyzer.analyze_pair.assert_awaited_once_with("solana", "abc", "auto")
        second.answer.assert_awaited_once_with("Expired. Please search again.", alert=True)

    @pytest.mark.asyncio
    async def test_pair_not_analyzable(self, bot, analyzer, db):
        analyzer.analyze_pair.side_effect = NotFound("SOLANA token has no EVM contract.")
        event = make_event(data=b"ANALYZE_PAIR:solana:abc")

        await bot._handle_callback(event)

        assert "no EVM contract" in event.respond.call_args.args[0]
        assert db.log_query.call_args.args[1] == "error"

    @pytest.mark.asyncio
    async def test_price_query(self, bot, analyzer):
        event = make_event(data=b"PRICE_Q:ETH")

        await bot._handle_callback(event)

        analyzer.price.assert_awaited_once_with("ETH")

    @pytest.mark.asyncio
    async def test_unknown_data_acknowledged(self, bot, analyzer):
        event = make_event(data=b"SOMETHING_ELSE")

        await bot._handle_callback(event)

        event.answer.assert_awaited_once_with()
        analyzer.analyze_contract.assert_not_called()
