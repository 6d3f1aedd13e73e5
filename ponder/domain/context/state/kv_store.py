from typing import Dict, List, Optional, Protocol
import asyncio


class KeyValueStore(Protocol):
    """Durable string store used for session persistence"""

    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str) -> None:
        ...

    async def remove(self, key: str) -> bool:
        ...

    async def keys(self, prefix: str = "") -> List[str]:
        ...


class InMemoryKeyValueStore:
    """Process-local store; contents survive only as long as the instance"""

    def __init__(self):
        self.data: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[str]:
        """Get a value"""

        async with self._lock:
            return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        """Overwrite a value"""

        async with self._lock:
            self.data[key] = value

    async def remove(self, key: str) -> bool:
        """Delete a key"""

        async with self._lock:
            return self.data.pop(key, None) is not None

    async def keys(self, prefix: str = "") -> List[str]:
        """Keys starting with prefix"""

        async with self._lock:
            return [key for key in self.data if key.startswith(prefix)]
