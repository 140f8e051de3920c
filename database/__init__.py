"""Database module for managing connections to PostgreSQL/CockroachDB.

This module handles:
- Database connection pool initialization
- Schema management
- Connection lifecycle
"""

import logging
import ssl
from typing import Optional, Dict, Any
import backoff
import asyncpg
from urllib.parse import urlparse, parse_qs, urlunparse

from .exceptions import DatabaseError, DatabaseSchemaError
from .lib.schema_manager import SchemaManager
from .lib.ids import parse_uuid

logger = logging.getLogger(__name__)

_pool: Optional[asyncpg.Pool] = None
_schema_manager: Optional[SchemaManager] = None

RETRYABLE_CONNECT_ERRORS = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.CannotConnectNowError
)

def _get_ssl_context() -> ssl.SSLContext:
    """Create SSL context for hosted database connections."""
    ssl_context = ssl.create_default_context()
    ssl_context.verify_mode = ssl.CERT_REQUIRED
    ssl_context.check_hostname = True
    return ssl_context

def _get_connection_kwargs(db_url: str) -> Dict[str, Any]:
    """Get connection kwargs from database URL.

    Args:
        db_url: Database connection URL

    Returns:
        Dict of connection parameters
    """
    parsed = urlparse(db_url)
    params = parse_qs(parsed.query)

    sslmode = params.get('sslmode', ['require'])[0]
    kwargs = {
        'ssl': False if sslmode == 'disable' else _get_ssl_context(),
        'server_settings': {
            'statement_timeout': '300000',  # 5 minutes
        }
    }

    # Add any additional params from URL
    for key, values in params.items():
        if key not in ('sslmode', 'ssl'):  # Skip SSL params as we handle those above
            kwargs[key] = values[0]

    return kwargs

def _strip_query(db_url: str) -> str:
    """Drop query parameters, they are passed as connection kwargs instead."""
    return urlunparse(urlparse(db_url)._replace(query=''))

@backoff.on_exception(
    backoff.expo,
    RETRYABLE_CONNECT_ERRORS,
    max_tries=5
)
async def create_database_if_not_exists(db_url: str, maintenance_db: str = 'defaultdb') -> None:
    """Create the database if it doesn't exist.

    Args:
        db_url: Database connection URL
        maintenance_db: Database to connect to while creating the target

    Raises:
        Exception: If database creation fails after retries
    """
    conn_kwargs = _get_connection_kwargs(db_url)
    try:
        conn = await asyncpg.connect(_strip_query(db_url), **conn_kwargs)
        await conn.close()
        return
    except asyncpg.exceptions.InvalidCatalogNameError:
        pass

    parsed = urlparse(db_url)
    db_name = parsed.path.strip('/')
    base_url = urlunparse(parsed._replace(path=f'/{maintenance_db}', query=''))
    logger.info(f"Connecting to {maintenance_db} to create {db_name}")

    conn = await asyncpg.connect(base_url, **conn_kwargs)
    try:
        await conn.execute(f'CREATE DATABASE "{db_name}"')
        logger.info(f"Created database {db_name}")
    except asyncpg.exceptions.DuplicateDatabaseError:
        logger.debug(f"Database {db_name} already exists")
    finally:
        await conn.close()

@backoff.on_exception(
    backoff.expo,
    RETRYABLE_CONNECT_ERRORS,
    max_tries=5
)
async def init_db(db_url: Optional[str] = None, force_recreate: bool = False) -> None:
    """Initialize the database connection pool and schema.

    Args:
        db_url: Optional database URL. If not provided, will use settings.
        force_recreate: If True, drop and recreate all tables

    Raises:
        ValueError: If database URL is not provided
        Exception: If initialization fails after retries
    """
    global _pool, _schema_manager

    if _pool is not None and not force_recreate:
        return

    try:
        # Import here to avoid circular imports
        from config import settings_conf

        # Use provided URL or get from settings
        url = db_url or settings_conf.get('db_url')
        if not url:
            raise ValueError("Database URL not provided")

        await create_database_if_not_exists(url)

        conn_kwargs = _get_connection_kwargs(url)

        _pool = await asyncpg.create_pool(
            _strip_query(url),
            min_size=2,          # Minimum idle connections
            max_size=20,         # Maximum connections
            max_queries=10000,   # Reset connection after this many queries
            max_inactive_connection_lifetime=300.0,  # 5 minutes
            command_timeout=60.0,  # 1 minute command timeout
            **conn_kwargs
        )

        _schema_manager = SchemaManager(_pool)

        if force_recreate:
            logger.info("Force recreate requested. Dropping schema...")
            async with _pool.acquire() as conn:
                await conn.execute('DROP TABLE IF EXISTS schema_version')

        await _schema_manager.initialize()

    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        if _pool is not None:
            await _pool.close()
            _pool = None
        raise

async def get_pool() -> asyncpg.Pool:
    """Get the database connection pool.

    Returns:
        The connection pool

    Raises:
        RuntimeError: If pool hasn't been initialized
    """
    if not _pool:
        await init_db()
    if not _pool:
        raise RuntimeError("Failed to initialize database pool")
    return _pool

async def close() -> None:
    """Close the database connection pool."""
    global _pool, _schema_manager

    if _pool:
        await _pool.close()
        _pool = None
        _schema_manager = None

# Export public interface
__all__ = ['init_db', 'get_pool', 'close', 'parse_uuid', 'DatabaseError', 'DatabaseSchemaError']
