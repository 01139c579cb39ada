"""
convictionmarket/metadata.py

Optional off-ledger metadata: human-readable names and descriptions keyed
by the same derived addresses as the ledger entities.

Nothing here is needed for correctness. A failed write is logged and
ignored; the ledger operation it describes has already happened.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

logger = logging.getLogger("convictionmarket.metadata")


@dataclass
class EntityMetadata:
    """Display fields for one ledger entity."""
    address: str
    kind: str
    name: str = ""
    description: str = ""
    market: Optional[str] = None
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "kind": self.kind,
            "name": self.name,
            "description": self.description,
            "market": self.market,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EntityMetadata":
        return cls(
            address=data["address"],
            kind=data.get("kind", "unknown"),
            name=data.get("name", ""),
            description=data.get("description", ""),
            market=data.get("market"),
            updated_at=data.get("updated_at", 0.0),
        )


class MetadataStore:
    """
    Address-keyed metadata kept in memory and, if a path is given, in a
    JSON file.

    Usage:
        store = MetadataStore("~/.convictionmarket/metadata.json")
        store.put(market_address, "market", name="Q3 roadmap")
        store.get(market_address).name
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path).expanduser() if path else None
        self._entries: Dict[str, EntityMetadata] = {}
        self._load()

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
            for address, entry in data.items():
                self._entries[address] = EntityMetadata.from_dict(entry)
            logger.debug(f"Loaded {len(self._entries)} metadata entries")
        except (OSError, ValueError, KeyError) as e:
            logger.warning(f"Failed to load metadata from {self.path}: {e}")

    def _save(self) -> bool:
        if self.path is None:
            return True
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w") as f:
                json.dump(
                    {k: v.to_dict() for k, v in self._entries.items()}, f, indent=2
                )
            return True
        except (OSError, TypeError) as e:
            logger.warning(f"Failed to save metadata to {self.path}: {e}")
            return False

    def put(
        self,
        address: bytes,
        kind: str,
        name: str = "",
        description: str = "",
        market: Optional[bytes] = None,
    ) -> bool:
        """
        Store display fields for an entity.

        Returns:
            False if the entry could not be persisted (it is still kept
            in memory)
        """
        key = address.hex()
        self._entries[key] = EntityMetadata(
            address=key,
            kind=kind,
            name=name,
            description=description,
            market=market.hex() if market else None,
        )
        return self._save()

    def get(self, address: bytes) -> Optional[EntityMetadata]:
        return self._entries.get(address.hex())

    def for_market(self, market: bytes) -> List[EntityMetadata]:
        """Metadata of the entities (options) attached to a market."""
        key = market.hex()
        return [e for e in self._entries.values() if e.market == key]
