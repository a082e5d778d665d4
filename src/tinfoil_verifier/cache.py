"""
Caches for VCEK leaf certificates, keyed by (product, chip id, reported TCB).
"""

import logging
import os
import tempfile
from typing import Dict, NamedTuple, Optional, Protocol

import platformdirs

logger = logging.getLogger(__name__)


class CacheKey(NamedTuple):
    product: str
    chip_id_hex: str
    tcb_hex: str

    @classmethod
    def for_report(cls, product: str, chip_id: bytes, reported_tcb: int) -> "CacheKey":
        return cls(product, chip_id.hex(), f"{reported_tcb:016x}")

    @property
    def filename(self) -> str:
        """Deterministic filename for this key."""
        return f"VCEK_{self.product}_{self.chip_id_hex}_{self.tcb_hex}.der"


class CertificateCache(Protocol):
    def get(self, key: CacheKey) -> Optional[bytes]:
        ...

    def set(self, key: CacheKey, data: bytes) -> None:
        ...

    def evict(self, key: CacheKey) -> None:
        ...


class MemoryCertificateCache:
    """In-process cache; its lifetime is that of the owning verifier."""

    def __init__(self):
        self._entries: Dict[CacheKey, bytes] = {}

    def get(self, key: CacheKey) -> Optional[bytes]:
        return self._entries.get(key)

    def set(self, key: CacheKey, data: bytes) -> None:
        self._entries[key] = bytes(data)

    def evict(self, key: CacheKey) -> None:
        self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries


class DiskCertificateCache:
    """
    Stores DER certificates under the user cache directory.

    Write failures are logged and ignored: a missing entry only costs
    another fetch.
    """

    def __init__(self, directory: Optional[str] = None):
        self.directory = directory or platformdirs.user_cache_dir("tinfoil", "tinfoil")

    def _path(self, key: CacheKey) -> str:
        return os.path.join(self.directory, key.filename)

    def get(self, key: CacheKey) -> Optional[bytes]:
        path = self._path(key)
        if not os.path.isfile(path):
            return None
        try:
            with open(path, "rb") as fh:
                return fh.read()
        except OSError as e:
            logger.warning("Could not read cached certificate %s: %s", path, e)
            return None

    def set(self, key: CacheKey, data: bytes) -> None:
        path = self._path(key)
        try:
            os.makedirs(self.directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.replace(tmp_path, path)
        except OSError as e:
            logger.warning("Could not write certificate cache entry %s: %s", path, e)

    def evict(self, key: CacheKey) -> None:
        try:
            os.remove(self._path(key))
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not evict certificate cache entry %s: %s", key.filename, e)
