"""
Per-chat preferences (default chain, AI provider).

Reads are served from memory after the first load; writes go to MongoDB when a
database is available. Persistence failures are logged and the in-memory value
still applies for this process.
"""
import logging
from typing import Dict, Optional

from .database import DatabaseService
from .errors import InvalidInput
from .models import ALLOWED_CHAINS, ALLOWED_PROVIDERS, ChatSettings

logger = logging.getLogger(__name__)


class SettingsStore:
    def __init__(self, db: Optional[DatabaseService] = None):
        self.db = db
        self._settings: Dict[int, ChatSettings] = {}

    async def get(self, chat_id: int) -> ChatSettings:
        if chat_id in self._settings:
            return self._settings[chat_id]

        settings = ChatSettings()
        if self.db is not None:
            try:
                stored = await self.db.get_chat_settings(chat_id)
                if stored:
                    settings = ChatSettings(
                        default_chain=stored.get("default_chain"),
                        provider=stored.get("provider") or "auto",
                    )
            except Exception as e:
                logger.error(f"Error loading settings for chat {chat_id}: {e}")

        self._settings[chat_id] = settings
        return settings

    async def update(self, chat_id: int, **patch) -> ChatSettings:
        """
        Merge a partial update into a chat's settings.

        Raises:
            InvalidInput: unknown chain or provider
        """
        chain = patch.get("default_chain")
        if chain is not None and chain not in ALLOWED_CHAINS:
            raise InvalidInput(f"Unsupported chain: {chain}")
        provider = patch.get("provider")
        if provider is not None and provider not in ALLOWED_PROVIDERS:
            raise InvalidInput(f"Unsupported provider: {provider}")

        current = await self.get(chat_id)
        updated = current.model_copy(update={k: v for k, v in patch.items() if v is not None})
        self._settings[chat_id] = updated

        if self.db is not None:
            try:
                await self.db.save_chat_settings(chat_id, updated.model_dump())
            except Exception as e:
                logger.error(f"Error saving settings for chat {chat_id}: {e}")

        return updated
