# core/redis_client.py
"""
Redis client factory with connection pooling and error handling.

This module provides a singleton Redis client for:
1. Queue item documents and status indexes
2. Runtime configuration hash
3. JTI (JWT Token ID) replay protection cache

Connection is lazy: the pool is created on first use, not at import time,
so tests can substitute a fake client through the service container.
"""

from typing import Optional

import redis
from redis.connection import ConnectionPool

from storyflow.core.config import settings
from storyflow.core.logger import logger


class RedisClient:
    """
    Singleton Redis client with connection pooling.

    Thread-safe connection pool that handles:
    - Automatic reconnection on failure
    - TLS/SSL for managed Redis encryption
    - Connection timeout configuration
    - Health checking
    """

    _instance: Optional['RedisClient'] = None
    _pool: Optional[ConnectionPool] = None
    _client: Optional[redis.Redis] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def _initialize_pool(self):
        try:
            logger.info(
                "Initializing Redis connection pool",
                extra={
                    "host": settings.REDIS_HOST,
                    "port": settings.REDIS_PORT,
                    "ssl": settings.REDIS_SSL,
                    "max_connections": settings.REDIS_MAX_CONNECTIONS
                }
            )

            pool_kwargs = {
                "host": settings.REDIS_HOST,
                "port": settings.REDIS_PORT,
                "db": settings.REDIS_DB,
                "decode_responses": True,
                "socket_timeout": settings.REDIS_SOCKET_TIMEOUT,
                "socket_connect_timeout": settings.REDIS_SOCKET_CONNECT_TIMEOUT,
                "max_connections": settings.REDIS_MAX_CONNECTIONS,
                "retry_on_timeout": True,
                "health_check_interval": 30
            }

            if settings.REDIS_SSL:
                pool_kwargs["connection_class"] = redis.SSLConnection
                pool_kwargs["ssl_cert_reqs"] = None

            if settings.REDIS_PASSWORD:
                pool_kwargs["password"] = settings.REDIS_PASSWORD

            self._pool = ConnectionPool(**pool_kwargs)
            self._client = redis.Redis(connection_pool=self._pool)

            self._client.ping()
            logger.info("Redis connection pool initialized successfully")

        except redis.ConnectionError as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise

    def get_client(self) -> redis.Redis:
        """
        Get Redis client instance.

        Raises:
            redis.ConnectionError: If connection to Redis fails
        """
        if self._client is None:
            self._initialize_pool()

        return self._client

    def close(self):
        """
        Close connection pool (called on application shutdown).
        """
        if self._pool:
            self._pool.disconnect()
            logger.info("Redis connection pool closed")


redis_client_instance = RedisClient()


def get_redis() -> redis.Redis:
    """Connected Redis client from the shared pool."""
    return redis_client_instance.get_client()


def redis_health_check(client: redis.Redis) -> bool:
    """
    Check Redis health for /health endpoint.

    Returns:
        bool: True if Redis answers PING
    """
    try:
        return bool(client.ping())
    except redis.RedisError as e:
        logger.error(f"Redis health check failed: {e}")
        return False
