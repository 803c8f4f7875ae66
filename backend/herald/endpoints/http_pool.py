"""
Shared HTTP client pools.

Endpoints never build their own sessions; they ask the pool for the
session of their service category. Each category has its own timeouts
and connection limits:

    cloud    - large vendor APIs (Discord, Telegram, Pushover)
    webhook  - user-hosted HTTP targets, short timeouts
    default  - everything else
"""
import asyncio
from enum import Enum
from typing import Dict, Optional
import aiohttp
from loguru import logger
from herald.config import HTTPConfig, HTTPPoolConfig


class ServiceCategory(str, Enum):
    DEFAULT = "default"
    CLOUD = "cloud"
    WEBHOOK = "webhook"


class HTTPClientPool:
    """
    Lazily created aiohttp sessions, one per service category.

    Sessions are safe for concurrent use by many deliveries.
    """

    def __init__(self, config: Optional[HTTPConfig] = None):
        self.config = config or HTTPConfig()
        self._sessions: Dict[ServiceCategory, aiohttp.ClientSession] = {}
        self._lock = asyncio.Lock()

    def category_config(self, category: ServiceCategory) -> HTTPPoolConfig:
        return getattr(self.config, ServiceCategory(category).value)

    def timeout_for(self, category: ServiceCategory) -> float:
        """Total request timeout configured for a category."""
        return self.category_config(category).timeout

    async def session(self, category: ServiceCategory = ServiceCategory.DEFAULT) -> aiohttp.ClientSession:
        """Get or create the session for a category."""
        category = ServiceCategory(category)
        session = self._sessions.get(category)
        if session is not None and not session.closed:
            return session

        async with self._lock:
            # Double-check after acquiring the lock
            session = self._sessions.get(category)
            if session is not None and not session.closed:
                return session

            cfg = self.category_config(category)
            connector = aiohttp.TCPConnector(
                limit=cfg.max_connections,
                limit_per_host=cfg.max_connections_per_host,
                keepalive_timeout=cfg.keepalive_timeout,
            )
            session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=cfg.timeout, connect=cfg.connect_timeout),
            )
            self._sessions[category] = session
            logger.debug(f"Created HTTP pool '{category.value}' (timeout={cfg.timeout}s, limit={cfg.max_connections})")
            return session

    @property
    def active_sessions(self) -> int:
        return sum(1 for s in self._sessions.values() if not s.closed)

    async def close(self):
        """Close all HTTP sessions."""
        for category, session in list(self._sessions.items()):
            if not session.closed:
                await session.close()
                logger.debug(f"Closed HTTP pool '{category.value}'")
        self._sessions.clear()
