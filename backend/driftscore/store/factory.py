"""
DriftScore - Store Factory
DRIFTSCORE_STORE_BACKEND=memory → single-process MemoryStore (default, tests)
DRIFTSCORE_STORE_BACKEND=sql    → SQLStore on DRIFTSCORE_DATABASE_URL
"""

import importlib
import logging
from typing import Optional

from driftscore.config import Settings, get_settings
from driftscore.store.base import FindingStore

logger = logging.getLogger(__name__)

STORE_REGISTRY = {
    "memory": "driftscore.store.memory.MemoryStore",
    "sql": "driftscore.store.sql.SQLStore",
}


def _import_class(dotted_path: str):
    module_path, class_name = dotted_path.rsplit(".", 1)
    module = importlib.import_module(module_path)
    return getattr(module, class_name)


def create_store(settings: Optional[Settings] = None, create_tables: bool = True) -> FindingStore:
    """Factory: returns the configured store backend."""
    settings = settings or get_settings()
    name = settings.store_backend
    cls = _import_class(STORE_REGISTRY[name])

    if name == "sql":
        from driftscore.db.session import create_db_engine, init_db

        engine = create_db_engine(settings.database_url)
        if create_tables:
            init_db(engine)
        store = cls(engine)
        logger.info(f"Store backend loaded: sql ({engine.dialect.name})")
        return store

    logger.info(f"Store backend loaded: {name}")
    return cls()
