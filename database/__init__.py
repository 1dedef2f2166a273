"""Database module for managing the storage backend.

This module handles:
- Backend selection from the configured ``db_url`` (``memory://`` or ``postgresql://``)
- PostgreSQL connection pool initialization and schema management
- Store lifecycle
"""

import logging
import ssl
from typing import Optional, Dict, Any
from urllib.parse import urlparse, parse_qs

import asyncpg
import backoff

from .exceptions import DatabaseError, DatabaseSchemaError, DuplicateKeyError
from .lib.schema_manager import SchemaManager
from .locks import KeyedLock
from .memory import MemoryStore
from .postgres import PostgresStore, init_connection
from .store import Store

logger = logging.getLogger(__name__)

_store: Optional[Store] = None

MEMORY_SCHEMES = ('memory',)
POSTGRES_SCHEMES = ('postgres', 'postgresql', 'cockroachdb')

def _get_ssl_context() -> ssl.SSLContext:
    """Create SSL context for hosted PostgreSQL connections."""
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
    params = parse_qs(urlparse(db_url).query)
    sslmode = params.get('sslmode', ['prefer'])[0]

    kwargs: Dict[str, Any] = {
        'server_settings': {
            'statement_timeout': '60000',  # 1 minute
        }
    }
    if sslmode in ('require', 'verify-ca', 'verify-full'):
        kwargs['ssl'] = _get_ssl_context()
    elif sslmode == 'disable':
        kwargs['ssl'] = False

    return kwargs

def _dsn(db_url: str) -> str:
    """asyncpg only understands the postgres schemes."""
    parsed = urlparse(db_url)
    if parsed.scheme == 'cockroachdb':
        parsed = parsed._replace(scheme='postgresql')
    return parsed.geturl()

@backoff.on_exception(
    backoff.expo,
    (asyncpg.exceptions.PostgresConnectionError, asyncpg.exceptions.CannotConnectNowError, OSError),
    max_tries=5
)
async def create_database_if_not_exists(db_url: str) -> None:
    """Create the database if it doesn't exist.

    Args:
        db_url: Database connection URL
    """
    parsed = urlparse(db_url)
    db_name = parsed.path.strip('/') or 'postgres'
    if db_name == 'postgres':
        return

    base_url = parsed._replace(path='/postgres').geturl()
    logger.info(f"Connecting to postgres to create {db_name} if needed")

    conn = await asyncpg.connect(base_url, **_get_connection_kwargs(base_url))
    try:
        exists = await conn.fetchval(
            'SELECT EXISTS(SELECT 1 FROM pg_database WHERE datname = $1)',
            db_name
        )
        if not exists:
            await conn.execute(f'CREATE DATABASE "{db_name}"')
            logger.info(f"Created database {db_name}")
    finally:
        await conn.close()

@backoff.on_exception(
    backoff.expo,
    (asyncpg.exceptions.PostgresConnectionError, asyncpg.exceptions.CannotConnectNowError, OSError),
    max_tries=5
)
async def _create_pool(db_url: str) -> asyncpg.Pool:
    return await asyncpg.create_pool(
        db_url,
        min_size=2,
        max_size=20,
        max_queries=10000,
        max_inactive_connection_lifetime=300.0,
        command_timeout=60.0,
        init=init_connection,
        **_get_connection_kwargs(db_url)
    )

async def init_db(db_url: Optional[str] = None, force_recreate: bool = False) -> Store:
    """Initialize the storage backend.

    Args:
        db_url: Optional storage URL. If not provided, will use settings.
        force_recreate: If True, drop and recreate all tables (PostgreSQL only)

    Returns:
        The initialized store

    Raises:
        ValueError: If the URL is missing or uses an unknown scheme
        DatabaseError: If initialization fails after retries
    """
    global _store

    # Import here to avoid circular imports
    from config import settings_conf

    url = db_url or settings_conf.get('db_url')
    if not url:
        raise ValueError("Database URL not provided")

    scheme = urlparse(url).scheme
    if scheme in MEMORY_SCHEMES:
        store: Store = MemoryStore()
    elif scheme in POSTGRES_SCHEMES:
        url = _dsn(url)
        try:
            await create_database_if_not_exists(url)
            pool = await _create_pool(url)
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"Database initialization failed: {e}")
            raise DatabaseError(f"Could not connect to database: {e}")

        await SchemaManager(pool).initialize(force_recreate=force_recreate)
        store = PostgresStore(pool)
    else:
        raise ValueError(f"Unsupported database URL scheme: {scheme}")

    await store.initialize()
    if _store is not None and _store is not store:
        await _store.close()
    _store = store
    logger.info(f"Storage initialized ({type(store).__name__})")
    return store

async def get_store() -> Store:
    """Get the storage backend, initializing it from settings on first use.

    Raises:
        RuntimeError: If the store could not be initialized
    """
    if not _store:
        await init_db()
    if not _store:
        raise RuntimeError("Failed to initialize storage")
    return _store

async def close() -> None:
    """Close the storage backend."""
    global _store

    if _store:
        await _store.close()
        _store = None

# Export public interface
__all__ = [
    'init_db',
    'get_store',
    'close',
    'Store',
    'MemoryStore',
    'PostgresStore',
    'KeyedLock',
    'DatabaseError',
    'DatabaseSchemaError',
    'DuplicateKeyError'
]
