"""
Store Registry

Maps namespace -> ``WorkOrderStore``. Owned by the composition root (see
``fieldops.main``); tests build their own. Concurrent first access to a
namespace yields one store and therefore one migration attempt.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from fieldops.services.work_order_store import WorkOrderStore

logger = logging.getLogger(__name__)

StoreFactory = Callable[[str], WorkOrderStore]


class StoreRegistry:
    def __init__(self, factory: StoreFactory):
        self._factory = factory
        self._stores: Dict[str, WorkOrderStore] = {}
        self._lock = asyncio.Lock()

    async def get(self, namespace: str) -> WorkOrderStore:
        """Return the namespace's store, creating it (and starting its migration) once."""
        store = self._stores.get(namespace)
        if store is not None:
            return store

        async with self._lock:
            store = self._stores.get(namespace)
            if store is None:
                store = self._factory(namespace)
                store.start_migration()
                self._stores[namespace] = store
                logger.debug(f"Opened work order store for {namespace}")
        return store

    def evict(self, namespace: str) -> Optional[WorkOrderStore]:
        """Forget a namespace (e.g. after it was destroyed)."""
        return self._stores.pop(namespace, None)

    def clear(self) -> None:
        self._stores.clear()

    @property
    def namespaces(self) -> List[str]:
        return list(self._stores)

    def __contains__(self, namespace: str) -> bool:
        return namespace in self._stores

    def __len__(self) -> int:
        return len(self._stores)
