"""Collection index lifecycle: ensure / recreate / create."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from memory.vector_store import SearchEngine

log = logging.getLogger(__name__)


class IndexLifecycleManager:
    """Keeps a collection's index present, in whichever form the active engine uses.

    The native engine owns a real FT index; the fallback engine owns a
    presence-marker key. ``select_engine`` resolves capability (probing once)
    and returns the engine to use.
    """

    def __init__(self, select_engine: Callable[[], "SearchEngine"]):
        self._select_engine = select_engine

    def ensure_exists(self, vector_size: int, allow_recreation: bool = False) -> bool:
        """Create the index if missing; drop and recreate it when allowed.

        Returns True when an index was created by this call.
        """
        engine = self._select_engine()
        if engine.index_exists():
            if not allow_recreation:
                log.debug("Index %s already exists (%s); leaving it untouched", engine.keys.index_name, engine.name)
                return False
            log.info("Recreating index %s (%s)", engine.keys.index_name, engine.name)
            engine.drop_index()
        self.create(vector_size, engine)
        return True

    def create(self, vector_size: int, engine: "SearchEngine | None" = None) -> None:
        engine = engine or self._select_engine()
        engine.create_index(vector_size)
        log.info(
            "Created index %s (%s, dim=%d, prefix=%s)",
            engine.keys.index_name, engine.name, vector_size, engine.keys.key_prefix,
        )
