"""
Fixtures shared by the RSS Pusher test modules.
"""

from collections.abc import AsyncGenerator
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from rss_pusher.config import AppConfig, TelegramConfig
from rss_pusher.filters import Message
from rss_pusher.storage import Storage, Subscription


FIXTURES_DIR = Path(__file__).parent / "fixtures"


@pytest.fixture
def fixtures_dir() -> Path:
    """Directory holding the sample feeds and config."""
    return FIXTURES_DIR


@pytest.fixture
def sample_rss_content(fixtures_dir: Path) -> str:
    """Three-item RSS 2.0 document, one item undated."""
    return (fixtures_dir / "sample_rss.xml").read_text(encoding="utf-8")


@pytest.fixture
def sample_atom_content(fixtures_dir: Path) -> str:
    """Atom document whose entry only has an updated time."""
    return (fixtures_dir / "sample_atom.xml").read_text(encoding="utf-8")


@pytest.fixture
def sample_config_path(fixtures_dir: Path) -> Path:
    """Config file using in-memory storage."""
    return fixtures_dir / "sample_config.yaml"


@pytest.fixture
def sample_message() -> Message:
    """
    Create a sample message for testing.

    Returns
    -------
    Message
        A dated message with an HTML description.
    """
    return Message(
        title="AI breakthrough",
        description='<p>New <b>model</b></p><img src="https://example.com/ai.png">',
        link="https://example.com/ai",
        published=datetime(2024, 1, 2, 10, 0, tzinfo=timezone.utc),
    )


@pytest.fixture
def item_subscription() -> Subscription:
    """Create an item-mode subscription with two users."""
    return Subscription(
        id=1,
        url="https://example.com/feed.xml",
        name="Tech",
        users=[1, 2],
        channel=False,
    )


@pytest.fixture
def channel_subscription() -> Subscription:
    """Create a channel-mode subscription."""
    return Subscription(
        id=2,
        url="https://example.com/channel.xml",
        name="Announcements",
        users=[1],
        channel=True,
    )


@pytest.fixture
def minimal_telegram_config() -> TelegramConfig:
    """Telegram settings with only a token."""
    return TelegramConfig(bot_token="1234567890:ABCdefGHIjklMNOpqrsTUVwxyz")


@pytest.fixture
def minimal_config_dict() -> dict[str, Any]:
    """
    Raw settings mapping as read from YAML.
    """
    return {
        "telegram": {
            "bot_token": "1234567890:ABCdefGHIjklMNOpqrsTUVwxyz",
        },
    }


@pytest.fixture
def minimal_app_config(minimal_telegram_config: TelegramConfig) -> AppConfig:
    """App settings with defaults everywhere but the token."""
    return AppConfig(telegram=minimal_telegram_config)


@pytest_asyncio.fixture
async def in_memory_storage() -> AsyncGenerator[Storage, None]:
    """
    Storage on a private in-memory database.

    Yields
    ------
    Storage
        Initialized storage, closed after the test.
    """
    storage = Storage(":memory:")
    await storage.initialize()
    yield storage
    await storage.close()


@pytest.fixture
def mock_transport() -> MagicMock:
    """
    Create a mock messaging transport.

    Returns
    -------
    MagicMock
        A transport whose sends succeed.
    """
    transport = MagicMock()
    transport.send_text = AsyncMock(return_value=True)
    transport.send_photo = AsyncMock(return_value=True)
    transport.test_connection = AsyncMock(return_value=True)
    transport.close = AsyncMock()
    return transport


@pytest.fixture
def mock_telegram_bot() -> MagicMock:
    """
    Stand-in for telegram.Bot.

    Returns
    -------
    MagicMock
        Bot whose API calls succeed.
    """
    bot = MagicMock()
    bot.send_message = AsyncMock()
    bot.send_photo = AsyncMock()
    bot.edit_message_text = AsyncMock()
    bot.get_me = AsyncMock(return_value=MagicMock(username="test_bot"))
    bot.shutdown = AsyncMock()
    return bot
