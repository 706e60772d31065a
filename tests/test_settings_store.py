"""
Tests for per-chat settings.
"""
import pytest
from unittest.mock import AsyncMock

from crypto_safety_api.errors import InvalidInput
from crypto_safety_api.settings_store import SettingsStore


class TestSettingsStore:

    @pytest.mark.asyncio
    async def test_defaults_without_database(self):
        settings = await SettingsStore().get(1)

        assert settings.default_chain is None
        assert settings.provider == "auto"

    @pytest.mark.asyncio
    async def test_update_merges(self):
        store = SettingsStore()

        await store.update(1, default_chain="bsc")
        updated = await store.update(1, provider="gemini")

        assert updated.default_chain == "bsc"
        assert updated.provider == "gemini"
        assert (await store.get(1)) == updated

    @pytest.mark.asyncio
    async def test_invalid_values_rejected(self):
        store = SettingsStore()

        with pytest.raises(InvalidInput):
            await store.update(1, default_chain="dogechain")
        with pytest.raises(InvalidInput):
            await store.update(1, provider="claude")

    @pytest.mark.asyncio
    async def test_loaded_from_database_once(self, mock_db_service):
        mock_db_service.chat_settings.find_one = AsyncMock(
            return_value={"chat_id": 7, "default_chain": "solana", "provider": "openai"}
        )
        store = SettingsStore(mock_db_service)

        first = await store.get(7)
        await store.get(7)

        assert first.default_chain == "solana"
        assert first.provider == "openai"
        mock_db_service.chat_settings.find_one.assert_awaited_once_with({"chat_id": 7})

    @pytest.mark.asyncio
    async def test_update_persisted(self, mock_db_service):
        store = SettingsStore(mock_db_service)

        await store.update(7, default_chain="base")

        call = mock_db_service.chat_settings.update_one.call_args
        assert call.args[0] == {"chat_id": 7}
        assert call.args[1]["$set"]["default_chain"] == "base"
        assert call.args[1]["$set"]["provider"] == "auto"
        assert call.kwargs["upsert"] is True

    @pytest.mark.asyncio
    async def test_database_failure_keeps_memory_value(self, mock_db_service):
        mock_db_service.chat_settings.find_one = AsyncMock(side_effect=RuntimeError("mongo down"))
        mock_db_service.chat_settings.update_one = AsyncMock(side_effect=RuntimeError("mongo down"))
        store = SettingsStore(mock_db_service)

        updated = await store.update(7, provider="openai")

        assert updated.provider == "openai"
        assert (await store.get(7)).provider == "openai"
