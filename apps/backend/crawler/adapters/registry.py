"""
Registry mapping source names to adapters.
"""
import logging
from typing import Dict, List, Optional

from .base import SourceAdapter

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """Name -> adapter map consulted at enqueue and dispatch time"""

    def __init__(self):
        self._adapters: Dict[str, SourceAdapter] = {}

    def register(self, adapter: SourceAdapter):
        """Register an adapter"""
        if adapter.name in self._adapters:
            logger.warning(f"[registry] Adapter {adapter.name} already registered, replacing")
        self._adapters[adapter.name] = adapter
        logger.info(f"[registry] Registered adapter: {adapter.name}")

    def unregister(self, name: str) -> bool:
        removed = self._adapters.pop(name, None)
        if removed is not None:
            logger.info(f"[registry] Unregistered adapter: {name}")
        return removed is not None

    def get(self, name: str) -> Optional[SourceAdapter]:
        """Get adapter by source name"""
        return self._adapters.get(name)

    def names(self) -> List[str]:
        return sorted(self._adapters)

    def __contains__(self, name: str) -> bool:
        return name in self._adapters

    def __len__(self):
        return len(self._adapters)
