"""
Disk-backed JSON documents: key frequency caches and lookup table registries.

Every cache document is addressed by name inside one cache directory. Callers
load, mutate and save explicitly; nothing here is shared module state.
"""
import asyncio
import copy
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from solders.pubkey import Pubkey

from .constants import DEVNET, MAINNET

logger = logging.getLogger(__name__)

KeyLike = Union[str, Pubkey]


def network_from_rpc_url(rpc_url: str) -> str:
    """Return 'devnet' for devnet RPC URLs and 'mainnet' otherwise."""
    return DEVNET if DEVNET in rpc_url.lower() else MAINNET


def jupiter_keys_cache_name(network: str, mint1: KeyLike, mint2: KeyLike) -> str:
    return f"{network}-jupKeyCache-{mint1}-{mint2}.json"


def example_flash_loan_cache_name(network: str, mint: KeyLike) -> str:
    return f"{network}-exampleFLMCache-{mint}.json"


def lookup_table_registry_name(network: str) -> str:
    return f"{network}-lookupTables.json"


def extracted_keys_cache_name(registry_name: str) -> str:
    """'devnet-lookupTables.json' -> 'devnet-lookupTables-keys.json'"""
    stem = registry_name.split(".")[0] if "." in registry_name else registry_name
    return f"{stem}-keys.json"


@dataclass
class KeyFrequencyCache:
    """
    Account keys observed across sampled routes, with reference counts.

    Keys are base58 strings kept in insertion order. Counts only grow and
    keys are never removed. The lookup table address is assigned once.
    """
    keys: Dict[str, int] = field(default_factory=dict)
    lookup_table_address: Optional[str] = None

    def record(self, keys: Iterable[KeyLike]) -> List[str]:
        """
        Count one observation for each key.

        Args:
            keys: Keys referenced by an instruction sequence (duplicates count twice)

        Returns:
            Keys that were not in the cache before this call, in first-seen order
        """
        new_keys = []
        for key in keys:
            key_str = str(key)
            if key_str in self.keys:
                self.keys[key_str] += 1
            else:
                self.keys[key_str] = 1
                new_keys.append(key_str)
        return new_keys

    def diff_against_table(self, table_keys: Iterable[KeyLike]) -> List[str]:
        """Cached keys missing from table_keys, in cache insertion order."""
        present: Set[str] = {str(k) for k in table_keys}
        return [key for key in self.keys if key not in present]

    def set_lookup_table(self, address: KeyLike) -> None:
        address_str = str(address)
        if self.lookup_table_address is not None and self.lookup_table_address != address_str:
            raise ValueError(
                f"Cache already bound to lookup table {self.lookup_table_address}, "
                f"refusing to replace it with {address_str}"
            )
        self.lookup_table_address = address_str

    def __len__(self) -> int:
        return len(self.keys)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.lookup_table_address:
            data["addressLookupTable"] = self.lookup_table_address
        data["keys"] = dict(self.keys)
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "KeyFrequencyCache":
        data = data or {}
        raw_keys = data.get("keys") or {}
        return cls(
            keys={str(k): int(v) for k, v in raw_keys.items()},
            lookup_table_address=data.get("addressLookupTable") or None
        )


class DiskCacheStore:
    """Named JSON documents stored in a single directory."""

    def __init__(self, cache_dir: Union[str, Path]):
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self._locks: Dict[str, asyncio.Lock] = {}

    def path_for(self, name: str) -> Path:
        if os.sep in name or (os.altsep and os.altsep in name):
            raise ValueError(f"Cache name must not contain a path separator: {name}")
        return self.cache_dir / name

    def lock(self, name: str) -> asyncio.Lock:
        """Per-document lock serializing in-process writers."""
        if name not in self._locks:
            self._locks[name] = asyncio.Lock()
        return self._locks[name]

    def load(self, name: str, default: Any) -> Any:
        """
        Load a document.

        Returns a deep copy of default when the document does not exist yet.

        Raises:
            ValueError: If the document exists but is not valid JSON
        """
        path = self.path_for(name)
        if not path.exists():
            return copy.deepcopy(default)
        try:
            with open(path, 'r') as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            logger.error(f"Cache document {path} is corrupt: {e}")
            raise ValueError(f"Cannot parse cache document {name}: {e}") from e

    def save(self, name: str, value: Any) -> None:
        """Write a document atomically (temp file + rename)."""
        path = self.path_for(name)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        with open(tmp_path, 'w') as f:
            json.dump(value, f, indent=2)
        os.replace(tmp_path, path)
        logger.debug(f"Saved cache document {path}")

    def load_key_cache(self, name: str) -> KeyFrequencyCache:
        return KeyFrequencyCache.from_dict(self.load(name, {"keys": {}}))

    def save_key_cache(self, name: str, cache: KeyFrequencyCache) -> None:
        self.save(name, cache.to_dict())

    def load_table_registry(self, name: str) -> List[str]:
        return [str(a) for a in self.load(name, [])]

    def register_lookup_table(self, name: str, address: KeyLike) -> bool:
        """
        Append a table address to a registry document.

        Returns:
            True if the address was added, False if it was already tracked
        """
        registry = self.load_table_registry(name)
        address_str = str(address)
        if address_str in registry:
            return False
        registry.append(address_str)
        self.save(name, registry)
        return True

    def unregister_lookup_tables(self, name: str, addresses: Iterable[KeyLike]) -> List[str]:
        """Remove addresses from a registry document and return what remains."""
        removed = {str(a) for a in addresses}
        remaining = [a for a in self.load_table_registry(name) if a not in removed]
        self.save(name, remaining)
        return remaining
