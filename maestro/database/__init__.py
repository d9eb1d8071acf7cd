"""
Database package
"""
from .async_connection import (
    async_engine,
    AsyncSessionLocal,
    create_session_factory,
    get_async_database_url,
    get_async_db_context,
    make_db_context,
    init_async_db,
    close_async_db,
)

__all__ = [
    "async_engine", "AsyncSessionLocal", "create_session_factory", "get_async_database_url",
    "get_async_db_context", "make_db_context", "init_async_db", "close_async_db",
]
