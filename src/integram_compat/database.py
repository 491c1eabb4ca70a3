import logging
import threading
from typing import Optional
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from integram_compat.settings import settings
from integram_compat.store import Store

logger = logging.getLogger(__name__)

_database_options = {
    "pool_pre_ping": True,
    "pool_size": settings.POOL_SIZE,
    "max_overflow": 5,
    "pool_timeout": 30,
    "pool_recycle": 300
}

_store: Optional[Store] = None
_lock = threading.Lock()

def create_store_engine(url: str) -> Engine:

    if url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True, connect_args={"check_same_thread": False})

    return create_engine(url, **_database_options)

def init_store(url: Optional[str] = None) -> Store:
    global _store

    if _store is None:
        with _lock:
            if _store is None:
                _store = Store(create_store_engine(url or settings.DATABASE_URL))
                logger.info("Row store connection pool created")

    return _store

def get_store() -> Store:
    return init_store()
