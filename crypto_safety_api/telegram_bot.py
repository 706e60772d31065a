"""
Telegram bot for the crypto safety checker.
Every inbound message or button press passes the per-chat rate governor first.
"""
import html
import logging
import re
import time
from typing import Optional

from telethon import TelegramClient, events, Button
from telethon.sessions import StringSession

from .analysis import TokenAnalyzer
from .callback_store import CallbackStore, callback_store
from .config import config as app_config
from .database import DatabaseService
from .errors import CryptoSafetyError, InvalidInput, NotFound, UpstreamError
from .models import ALLOWED_CHAINS, ALLOWED_PROVIDERS, MarketSnapshot, TokenReport
from .parse import extract_symbolish, is_evm_address
from .rate_limiter import REASON_EXHAUSTED, RateGovernor, rate_governor
from .settings_store import SettingsStore

logger = logging.getLogger(__name__)

CANDIDATE_LIMIT = 5

ANALYZE_ADDR_RE = re.compile(r"^ANALYZE_ADDR:(0x[a-fA-F0-9]{40})$")
ANALYZE_PAIR_RE = re.compile(r"^ANALYZE_PAIR:([^:]+):([^:]+)$")
CALLBACK_ID_RE = re.compile(r"^CB:([A-Za-z0-9_-]{6,32})$")
PRICE_Q_RE = re.compile(r"^PRICE_Q:([A-Za-z0-9]{2,12})$")

WELCOME_TEXT = (
    "👋 Welcome to <b>Crypto Safety Bot</b>!\n\n"
    "💰 /price &lt;SYMBOL&gt; - token price (e.g. /price BTC)\n"
    "🔍 /analyze &lt;ADDRESS&gt; - AI safety check of a token contract\n"
    "🛠 /settings - view your settings\n"
    "🌐 /setchain &lt;CHAIN&gt; - set your preferred chain\n"
    "🤖 /provider &lt;auto|openai|gemini&gt; - choose the AI provider\n"
    "📜 /logs - your recent queries\n\n"
    "💬 Or just type a token <b>symbol</b>, <b>name</b> or <b>contract address</b>."
)

HELP_TEXT = (
    "🛠 <b>What I can do</b>\n\n"
    "• Paste a <b>contract address</b> and I analyze it and give a safety score.\n"
    "• Type a <b>symbol or name</b> (e.g. $PEPE or pepe) and I show the price with an Analyze button.\n"
    "• Ask in English: \"What's the price of $TOKEN?\"\n\n"
    "<b>Commands</b>\n"
    "/price &lt;SYMBOL&gt;, /analyze &lt;ADDRESS&gt;, /settings, /setchain &lt;CHAIN&gt;, "
    "/provider &lt;auto|openai|gemini&gt;, /logs"
)


def fmt_usd(value: Optional[float]) -> str:
    """Dollar amount with more decimals for small prices; N/A when missing."""
    if value is None:
        return "N/A"
    magnitude = abs(value)
    digits = 4 if magnitude >= 1 else 6 if magnitude >= 0.01 else 8
    text = f"{value:,.{digits}f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return f"${text}"


def user_error(error: Exception, fallback: str = "Something went wrong.") -> str:
    """Map an exception to a short message that is safe to show a user."""
    if isinstance(error, NotFound):
        return "I couldn't find that token."
    if isinstance(error, InvalidInput):
        return str(error)
    if isinstance(error, UpstreamError) and error.status_code == 429:
        return "The data provider is busy right now. Try again in a moment."
    return fallback


def format_price(info: MarketSnapshot) -> str:
    liquidity = "N/A" if info.liquidity_score is None else info.liquidity_score
    return (
        f"💰 <b>{html.escape(info.name)}</b> (${html.escape(info.symbol)})\n"
        f"<b>Price</b>: {fmt_usd(info.price)}\n"
        f"<b>Market Cap</b>: {fmt_usd(info.market_cap)}\n"
        f"<b>Volume 24h</b>: {fmt_usd(info.volume_24h)}\n"
        f"<b>Liquidity Score</b>: {liquidity}"
    )


def format_report(report: TokenReport) -> str:
    token, metrics, ai = report.token, report.metrics, report.ai
    return (
        f"📊 Token: <b>{html.escape(token.name)}</b> ({html.escape(token.symbol)})\n"
        f"Chain: {html.escape(token.chain)}\n"
        f"Price: {fmt_usd(metrics.price_usd)}\n"
        f"Liquidity: {fmt_usd(metrics.liquidity_usd)}\n"
        f"Volume 24h: {fmt_usd(metrics.volume_24h)}\n"
        f"FDV: {fmt_usd(metrics.fdv)}\n\n"
        f"🧠 <b>AI Insight</b> (via {html.escape(ai.provider)})\n"
        f"{html.escape(ai.explanation)}\n\n"
        f"🛡 <b>Safety Score</b>: {ai.score}%"
    )


class TelegramBot:
    def __init__(
        self,
        analyzer: TokenAnalyzer,
        db_service: DatabaseService,
        settings: SettingsStore,
        governor: Optional[RateGovernor] = None,
        callbacks: Optional[CallbackStore] = None,
    ):
        self.analyzer = analyzer
        self.db = db_service
        self.settings = settings
        self.governor = governor if governor is not None else rate_governor
        self.callbacks = callbacks if callbacks is not None else callback_store
        # In-memory session, nothing written to disk
        self.client = TelegramClient(
            StringSession(),
            app_config.TELEGRAM_API_ID,
            app_config.TELEGRAM_API_HASH
        )
        self.bot_username: Optional[str] = None

        # Register handlers
        self._register_handlers()

    def _register_handlers(self):
        """Register message and button handlers."""

        @self.client.on(events.NewMessage(incoming=True))
        async def handle_message(event):
            await self._handle_message(event)

        @self.client.on(events.CallbackQuery())
        async def handle_callback(event):
            await self._handle_callback(event)

    # =========================================================================
    # ADMISSION
    # =========================================================================

    async def _admit(self, event) -> bool:
        """Run the rate governor; tell the user when they are throttled."""
        admission = self.governor.admit(event.chat_id)
        if admission.allowed:
            return True
        if admission.reason == REASON_EXHAUSTED:
            await event.respond(f"⏳ Too many requests. Try again in ~{admission.retry_after}s.")
        else:
            await event.respond("⏱ Please slow down a bit…")
        return False

    # =========================================================================
    # MESSAGES
    # =========================================================================

    async def _handle_message(self, event):
        """Process incoming messages."""
        chat_id = event.chat_id
        message_text = (event.message.message or "").strip()
        if not message_text:
            return
        logger.info(f"Received message from {chat_id}: {message_text[:50]}...")

        if not await self._admit(event):
            return

        if message_text.startswith('/'):
            await self._handle_command(event, chat_id, message_text)
        else:
            await self._handle_text(event, chat_id, message_text)

    async def _handle_command(self, event, chat_id: int, message_text: str):
        """Handle slash commands."""
        parts = message_text.split(maxsplit=1)
        command = parts[0].lower().split('@')[0]  # Handle /cmd@botname
        args = parts[1].strip() if len(parts) > 1 else ""

        if command == '/start':
            await event.reply(WELCOME_TEXT, parse_mode='html')
            await self.db.log_query(chat_id, "start", "/start")
        elif command == '/help':
            await event.reply(HELP_TEXT, parse_mode='html')
            await self.db.log_query(chat_id, "help", "/help")
        elif command == '/price':
            await self._handle_price_command(event, chat_id, args)
        elif command == '/analyze':
            await self._handle_analyze_command(event, chat_id, args)
        elif command == '/settings':
            await self._handle_settings(event, chat_id)
        elif command == '/setchain':
            await self._handle_setchain(event, chat_id, args)
        elif command == '/provider':
            await self._handle_provider(event, chat_id, args)
        elif command == '/logs':
            await self._handle_logs(event, chat_id)
        else:
            await self._handle_text(event, chat_id, message_text.lstrip('/'))

    async def _handle_price_command(self, event, chat_id: int, args: str):
        if not args:
            await event.reply("Usage: /price <SYMBOL>  e.g. /price btc")
            return
        started = time.monotonic()
        try:
            await self._reply_price(event, args)
            await self.db.log_query(chat_id, "price", args, latency_ms=_elapsed_ms(started))
        except CryptoSafetyError as e:
            logger.warning(f"Price lookup failed for {args}: {e}")
            await event.reply(f"⚠️ {user_error(e, 'Failed to fetch price')}")
            await self.db.log_query(chat_id, "error", args, outcome=str(e), latency_ms=_elapsed_ms(started))

    async def _handle_analyze_command(self, event, chat_id: int, args: str):
        address = "".join(args.split())
        if not address:
            await event.reply("Usage: /analyze 0x<contractAddress>")
            return
        if not is_evm_address(address):
            await event.reply("That doesn't look like a contract address (0x…40 hex).")
            return
        await self._run_analysis(event, chat_id, address, "analyze")

    async def _handle_settings(self, event, chat_id: int):
        current = await self.settings.get(chat_id)
        await event.reply(
            "⚙️ Settings\n"
            f"• Default chain: {current.default_chain or 'auto'}\n"
            f"• AI provider: {current.provider}\n\n"
            "Change:\n"
            f" /setchain <{'|'.join(ALLOWED_CHAINS)}>\n"
            f" /provider <{'|'.join(ALLOWED_PROVIDERS)}>"
        )
        await self.db.log_query(chat_id, "settings", "/settings")

    async def _handle_setchain(self, event, chat_id: int, args: str):
        chain = args.split()[0].lower() if args else ""
        if chain not in ALLOWED_CHAINS:
            await event.reply(f"Usage: /setchain <{'|'.join(ALLOWED_CHAINS)}>")
            return
        await self.settings.update(chat_id, default_chain=chain)
        await event.reply(f"✅ Default chain set to <b>{chain}</b>", parse_mode='html')
        await self.db.log_query(chat_id, "settings", f"/setchain {chain}")

    async def _handle_provider(self, event, chat_id: int, args: str):
        provider = args.split()[0].lower() if args else ""
        if provider not in ALLOWED_PROVIDERS:
            await event.reply(f"Usage: /provider <{'|'.join(ALLOWED_PROVIDERS)}>")
            return
        await self.settings.update(chat_id, provider=provider)
        await event.reply(f"✅ AI provider set to <b>{provider}</b>", parse_mode='html')
        await self.db.log_query(chat_id, "provider", f"/provider {provider}")

    async def _handle_logs(self, event, chat_id: int):
        try:
            rows = await self.db.get_recent_logs(chat_id, limit=5)
        except Exception as e:
            logger.error(f"Error reading logs for {chat_id}: {e}")
            rows = []
        lines = [
            f"{row.get('type')} [{row.get('outcome')}] {row.get('latency_ms') or '-'}ms\n{(row.get('input') or '')[:30]}"
            for row in rows
        ]
        await event.reply("\n\n".join(lines) or "No logs yet")

    async def _handle_text(self, event, chat_id: int, text: str):
        """Free-form input: an address is analyzed, a symbol gets a price and candidates."""
        if is_evm_address(text):
            await self._run_analysis(event, chat_id, text, "freeform")
            return

        symbol = extract_symbolish(text)
        if not symbol:
            await event.reply(
                "🤔 I can handle:\n• 0x… (contract)\n• token symbol/name (ex: $PEPE, BTC, pepe)\n• \"price of $TOKEN\""
            )
            return

        started = time.monotonic()
        try:
            async with self.client.action(chat_id, 'typing'):
                await self._reply_price(event, symbol)
                await self._reply_candidates(event, chat_id, symbol)
            await self.db.log_query(chat_id, "freeform", text, latency_ms=_elapsed_ms(started))
        except CryptoSafetyError as e:
            logger.warning(f"Free-form lookup failed for {symbol}: {e}")
            await event.reply(f"⚠️ {user_error(e, 'Failed to fetch price or pairs')}")
            await self.db.log_query(chat_id, "error", text, outcome=str(e), latency_ms=_elapsed_ms(started))

    async def _reply_price(self, event, symbol: str):
        """Send the price card, then offer one-tap analysis if a contract resolves."""
        info = await self.analyzer.price(symbol)
        await event.reply(format_price(info), parse_mode='html')

        try:
            resolved = await self.analyzer.resolve(info.symbol)
        except Exception as e:
            logger.warning(f"Auto-resolve failed for {info.symbol}: {e}")
            return
        if resolved:
            text = f"Analyze {html.escape(info.symbol)} on-chain?"
            if resolved.note:
                text += f"\nℹ️ {html.escape(resolved.note)}"
            await event.respond(
                text,
                parse_mode='html',
                buttons=[[Button.inline("🔍 Analyze", data=f"ANALYZE_ADDR:{resolved.address}".encode())]],
            )

    async def _reply_candidates(self, event, chat_id: int, symbol: str):
        """Offer DEX pairs to analyze, the user's preferred chain first."""
        pairs = await self.analyzer.dex.search_pairs(symbol, CANDIDATE_LIMIT)
        actionable = [p for p in pairs if is_evm_address(p.base_token.address) or (p.chain_id and p.pair_address)]
        if not actionable:
            return

        preferred = (await self.settings.get(chat_id)).default_chain
        if preferred:
            actionable.sort(key=lambda p: (p.chain_id or "").lower() == preferred, reverse=True)

        rows = []
        for pair in actionable:
            label = (
                f"{pair.base_token.symbol or pair.base_token.name or 'Token'} · "
                f"{(pair.chain_id or '').upper()} · Liq {fmt_usd(pair.liquidity.usd if pair.liquidity else None)}"
            )
            if is_evm_address(pair.base_token.address):
                data = f"ANALYZE_ADDR:{pair.base_token.address}"
            else:
                # Non-EVM pair addresses can overflow the 64-byte callback limit
                payload_id = self.callbacks.put(
                    {"kind": "PAIR", "chain_id": pair.chain_id, "pair_address": pair.pair_address}
                )
                data = f"CB:{payload_id}"
            rows.append([Button.inline(label, data=data.encode())])

        await event.respond("Choose a token to analyze on-chain:", buttons=rows)

    # =========================================================================
    # ANALYSIS
    # =========================================================================

    async def _run_analysis(self, event, chat_id: int, address: str, query_type: str):
        started = time.monotonic()
        try:
            async with self.client.action(chat_id, 'typing'):
                provider = (await self.settings.get(chat_id)).provider
                report = await self.analyzer.analyze_contract(address, provider)
            await self._send_report(event, address, report)
            await self.db.log_query(
                chat_id, query_type, address, latency_ms=_elapsed_ms(started), provider=report.ai.provider
            )
        except CryptoSafetyError as e:
            logger.warning(f"Analysis failed for {address}: {e}")
            await event.respond(f"⚠️ {user_error(e, 'Failed to analyze contract')}")
            await self.db.log_query(chat_id, "error", address, outcome=str(e), latency_ms=_elapsed_ms(started))

    async def _run_pair_analysis(self, event, chat_id: int, chain_id: str, pair_address: str):
        started = time.monotonic()
        label = f"{chain_id}:{pair_address}"
        try:
            provider = (await self.settings.get(chat_id)).provider
            report = await self.analyzer.analyze_pair(chain_id, pair_address, provider)
            await self._send_report(event, None, report)
            await self.db.log_query(
                chat_id, "analyze", label, latency_ms=_elapsed_ms(started), provider=report.ai.provider
            )
        except NotFound as e:
            await event.respond(f"⚠️ {e}")
            await self.db.log_query(chat_id, "error", label, outcome=str(e), latency_ms=_elapsed_ms(started))
        except CryptoSafetyError as e:
            logger.warning(f"Pair analysis failed for {label}: {e}")
            await event.respond(f"⚠️ {user_error(e, 'Failed to analyze this pair')}")
            await self.db.log_query(chat_id, "error", label, outcome=str(e), latency_ms=_elapsed_ms(started))

    async def _send_report(self, event, address: Optional[str], report: TokenReport):
        buttons = []
        if address:
            buttons.append(Button.inline("🔄 Refresh", data=f"ANALYZE_ADDR:{address}".encode()))
        if report.pair_url:
            buttons.append(Button.url("🧭 DexScreener", report.pair_url))
        await event.respond(format_report(report), parse_mode='html', buttons=[buttons] if buttons else None)

    # =========================================================================
    # BUTTONS
    # =========================================================================

    async def _handle_callback(self, event):
        """Handle inline button presses."""
        chat_id = event.chat_id
        data = event.data.decode(errors="ignore") if event.data else ""

        if not await self._admit(event):
            await event.answer()
            return

        match = ANALYZE_ADDR_RE.match(data)
        if match:
            await event.answer("Analyzing…")
            await self._run_analysis(event, chat_id, match.group(1), "analyze")
            return

        match = ANALYZE_PAIR_RE.match(data)
        if match:
            await event.answer("Resolving pair…")
            await self._run_pair_analysis(event, chat_id, match.group(1), match.group(2))
            return

        match = CALLBACK_ID_RE.match(data)
        if match:
            payload = self.callbacks.take(match.group(1))
            if not payload:
                await event.answer("Expired. Please search again.", alert=True)
                return
            await event.answer()
            if payload.get("kind") == "PAIR":
                await self._run_pair_analysis(event, chat_id, payload["chain_id"], payload["pair_address"])
            return

        match = PRICE_Q_RE.match(data)
        if match:
            await event.answer()
            symbol = match.group(1)
            started = time.monotonic()
            try:
                await self._reply_price(event, symbol)
                await self.db.log_query(chat_id, "price", symbol, latency_ms=_elapsed_ms(started))
            except CryptoSafetyError as e:
                await event.respond(f"⚠️ {user_error(e, 'Failed to fetch price')}")
                await self.db.log_query(chat_id, "error", symbol, outcome=str(e), latency_ms=_elapsed_ms(started))
            return

        logger.warning(f"Unknown callback data from {chat_id}: {data[:64]}")
        await event.answer()

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self):
        """Start the Telegram bot."""
        await self.client.start(bot_token=app_config.TELEGRAM_BOT_TOKEN)

        me = await self.client.get_me()
        self.bot_username = me.username
        logger.info(f"Telegram bot started as @{self.bot_username}")

        # Keep running
        await self.client.run_until_disconnected()

    async def stop(self):
        """Stop the Telegram bot."""
        await self.client.disconnect()
        logger.info("Telegram bot stopped")


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
