import asyncio
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from .analysis import TokenAnalyzer
from .config import config as app_config
from .database import DatabaseService
from .errors import InvalidInput, NotFound, UpstreamError
from .parse import is_evm_address
from .settings_store import SettingsStore
from .telegram_bot import TelegramBot

# Initialize logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# HTTP requests are not tied to a chat
HTTP_CHAT_ID = 0

# Initialize services
db_service = DatabaseService(app_config.MONGO_URL, app_config.MONGO_DB)
analyzer = TokenAnalyzer.from_config(db_service)
settings_store = SettingsStore(db_service)

# Initialize Telegram bot (will be started in lifespan)
telegram_bot: TelegramBot = None


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    global telegram_bot

    # Startup
    logger.info("Starting up...")

    try:
        await db_service.setup_indexes()
    except Exception as e:
        logger.error(f"Could not set up database indexes: {e}")

    if app_config.TELEGRAM_BOT_TOKEN:
        telegram_bot = TelegramBot(analyzer, db_service, settings_store)
        asyncio.create_task(telegram_bot.start())
        logger.info("Telegram bot started")
    else:
        logger.warning("TELEGRAM_BOT_TOKEN not set; running HTTP API only")

    yield

    # Shutdown
    logger.info("Shutting down...")
    if telegram_bot:
        await telegram_bot.stop()


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


@app.get("/token/{address}")
async def token_report(address: str):
    """Top DexScreener pair metrics plus AI safety insight for a contract."""
    started = time.monotonic()

    if not is_evm_address(address):
        raise HTTPException(status_code=400, detail="Invalid contract address (expected 0x…40 hex).")

    try:
        report = await analyzer.analyze_contract(address)
    except NotFound as e:
        await db_service.log_query(HTTP_CHAT_ID, "error", address, outcome=str(e), latency_ms=_elapsed_ms(started))
        raise HTTPException(status_code=404, detail="Token not found on DexScreener")
    except UpstreamError as e:
        logger.error(f"Token endpoint failed for {address}: {e}", exc_info=True)
        await db_service.log_query(HTTP_CHAT_ID, "error", address, outcome=str(e), latency_ms=_elapsed_ms(started))
        raise HTTPException(status_code=502, detail="Market data provider unavailable")

    await db_service.log_query(
        HTTP_CHAT_ID,
        "analyze",
        address,
        latency_ms=_elapsed_ms(started),
        provider=report.ai.provider,
    )
    return report.model_dump()


@app.get("/price/{symbol}")
async def price(symbol: str):
    """Price, market cap and 24h volume for a ticker symbol."""
    started = time.monotonic()
    try:
        info = await analyzer.price(symbol)
    except InvalidInput as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotFound as e:
        await db_service.log_query(HTTP_CHAT_ID, "error", symbol, outcome=str(e), latency_ms=_elapsed_ms(started))
        raise HTTPException(status_code=404, detail=str(e))
    except UpstreamError as e:
        logger.error(f"Price endpoint failed for {symbol}: {e}", exc_info=True)
        await db_service.log_query(HTTP_CHAT_ID, "error", symbol, outcome=str(e), latency_ms=_elapsed_ms(started))
        raise HTTPException(status_code=502, detail="Market data provider unavailable")

    await db_service.log_query(HTTP_CHAT_ID, "price", symbol, latency_ms=_elapsed_ms(started))
    return {
        "symbol": info.symbol,
        "name": info.name,
        "price": info.price,
        "market_cap": info.market_cap,
        "volume_24h": info.volume_24h,
        "liquidity_score": info.liquidity_score,
    }


@app.get("/resolve")
async def resolve(q: str = Query(..., min_length=1)):
    """Best-guess contract address for a symbol, name or address."""
    result = await analyzer.resolve(q)
    if result is None:
        raise HTTPException(status_code=404, detail="Could not resolve a contract for that query")
    return result.model_dump(mode="json")


logger.info("Routes registered:")
for route in app.routes:
    route_info = f"  - path={getattr(route, 'path', '?')}, type={type(route).__name__}"
    if hasattr(route, 'methods'):
        route_info += f", methods={route.methods}"
    logger.info(route_info)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
