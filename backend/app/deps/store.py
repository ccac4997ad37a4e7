from functools import lru_cache

from ..core.config import get_settings
from ..db import database
from ..realtime.change_feed import ChangeFeed, feed
from ..store.row_store import SqlRowStore


def get_feed() -> ChangeFeed:
    return feed


@lru_cache()
def _default_store() -> SqlRowStore:
    return SqlRowStore(database.SessionLocal, feed, timeout=get_settings().STORE_TIMEOUT_SECONDS)


def get_store() -> SqlRowStore:
    return _default_store()
