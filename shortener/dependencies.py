"""Shared resources and per-request context for FastAPI dependency injection.

``ServiceManager`` owns everything that outlives a request: the Redis
client, the repositories and the click dispatcher's worker task. It is
initialized in the application lifespan and cleaned up on shutdown, which
is where queued click events get drained.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

from fastapi import Depends, Request

from shortener.analytics import ClickDispatcher
from shortener.cache import RedisURLCache, close_redis, create_redis
from shortener.config import Settings, get_settings
from shortener.database import async_session
from shortener.repositories import SQLAlchemyAnalyticsRepository, SQLAlchemyURLRepository
from shortener.schemas import ClickContext
from shortener.url_service import URLShorteningService

__all__ = [
    "ServiceManager",
    "RequestContext",
    "get_service_manager",
    "get_request_context",
    "get_url_service",
    "resolve_client_ip",
]


# ============================================================================
# SINGLETON SERVICE MANAGER
# ============================================================================


class ServiceManager:
    """Singleton service manager for shared resources.

    This class manages shared resources that don't need to be created per request,
    significantly reducing per-request overhead and improving performance.
    """

    _instance: Optional["ServiceManager"] = None
    _initialized: bool = False

    def __new__(cls) -> "ServiceManager":
        """Implement singleton pattern."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    async def initialize(self) -> None:
        """Initialize shared resources once at startup."""
        if not self._initialized:
            self.settings = get_settings()
            self.logger = self._setup_logger(self.settings)
            self.redis_client = create_redis(self.settings.REDIS_URL)
            self.url_cache = RedisURLCache(
                self.redis_client,
                ttl_seconds=self.settings.CACHE_TTL_SECONDS,
                key_prefix=self.settings.CACHE_KEY_PREFIX,
            )
            self.url_repository = SQLAlchemyURLRepository(async_session)
            self.analytics_repository = SQLAlchemyAnalyticsRepository(async_session)
            self.dispatcher = ClickDispatcher(
                self.url_repository,
                self.analytics_repository,
                logger=self.logger,
                max_queue_size=self.settings.ANALYTICS_QUEUE_SIZE,
                drain_timeout=self.settings.ANALYTICS_DRAIN_TIMEOUT_SECONDS,
            )
            self.dispatcher.start()
            self._initialized = True

    def _setup_logger(self, settings: Settings) -> logging.Logger:
        """Setup logger once."""
        logger = logging.getLogger("urlshortener")
        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            handler.setFormatter(formatter)
            logger.addHandler(handler)
            logger.setLevel(settings.LOG_LEVEL.upper())
        return logger

    async def cleanup(self) -> None:
        """Drain pending click events, then release shared resources."""
        if not self._initialized:
            return
        await self.dispatcher.stop()
        await close_redis(self.redis_client)
        self._initialized = False


# Global singleton instance
_service_manager = ServiceManager()


# ============================================================================
# LIGHTWEIGHT REQUEST CONTEXT
# ============================================================================


def resolve_client_ip(request: Request) -> Optional[str]:
    """Client address: first X-Forwarded-For hop, then X-Real-IP, then the peer."""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    return request.client.host if request.client else None


@dataclass
class RequestContext:
    """Per-request tracking data plus access to shared resources.

    Attributes:
        service_manager: Singleton service manager with shared resources
        request_id: Unique identifier for this request
        user_agent: Client user agent string
        client_ip: Client IP address
        referer: Referer header, if any
        start_time: Request start timestamp
        tags: Request tags for categorization
    """

    service_manager: ServiceManager
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    user_agent: Optional[str] = None
    client_ip: Optional[str] = None
    referer: Optional[str] = None
    start_time: float = field(default_factory=lambda: time.time())
    tags: list[str] = field(default_factory=list)

    @property
    def settings(self) -> Settings:
        return self.service_manager.settings

    @property
    def logger(self) -> logging.LoggerAdapter:
        """Get shared logger with request context."""
        return logging.LoggerAdapter(
            self.service_manager.logger,
            {
                "request_id": self.request_id,
                "client_ip": self.client_ip,
                "user_agent": self.user_agent,
                "tags": ",".join(self.tags),
            },
        )

    def click_context(self) -> ClickContext:
        return ClickContext(
            ip_address=self.client_ip,
            user_agent=self.user_agent,
            referer=self.referer,
        )

    def add_tag(self, tag: str) -> None:
        """Add a tag to the request context."""
        if tag not in self.tags:
            self.tags.append(tag)

    def get_duration(self) -> float:
        """Get request duration in milliseconds."""
        return (time.time() - self.start_time) * 1000


# ============================================================================
# DEPENDENCY FUNCTIONS
# ============================================================================


async def get_service_manager() -> ServiceManager:
    if not _service_manager._initialized:
        await _service_manager.initialize()
    return _service_manager


async def get_request_context(
    request: Request,
    manager: ServiceManager = Depends(get_service_manager),
) -> RequestContext:
    return RequestContext(
        service_manager=manager,
        request_id=request.headers.get("x-request-id") or str(uuid.uuid4()),
        user_agent=request.headers.get("user-agent"),
        client_ip=resolve_client_ip(request),
        referer=request.headers.get("referer"),
    )


def get_url_service(ctx: RequestContext = Depends(get_request_context)) -> URLShorteningService:
    """Create the URL service bound to this request's logger."""
    return URLShorteningService.from_context(ctx)
