from typing import List, Optional
from pathlib import Path
import asyncio
import os
import urllib.parse


class FileKeyValueStore:
    """One file per key under a directory; survives process restarts"""

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _path(self, key: str) -> Path:
        return self.directory / (urllib.parse.quote(key, safe="") + ".json")

    async def get(self, key: str) -> Optional[str]:
        """Read a value"""

        async with self._lock:
            return await asyncio.to_thread(self._read, self._path(key))

    async def set(self, key: str, value: str) -> None:
        """Atomically replace a value"""

        async with self._lock:
            await asyncio.to_thread(self._write, self._path(key), value)

    async def remove(self, key: str) -> bool:
        """Delete a key"""

        async with self._lock:
            path = self._path(key)
            if not path.exists():
                return False
            await asyncio.to_thread(path.unlink)
            return True

    async def keys(self, prefix: str = "") -> List[str]:
        """Keys starting with prefix"""

        async with self._lock:
            names = [urllib.parse.unquote(p.stem) for p in self.directory.glob("*.json")]
        return sorted(name for name in names if name.startswith(prefix))

    @staticmethod
    def _read(path: Path) -> Optional[str]:
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    @staticmethod
    def _write(path: Path, value: str) -> None:
        tmp = path.with_suffix(".tmp")
        tmp.write_text(value, encoding="utf-8")
        os.replace(tmp, path)
