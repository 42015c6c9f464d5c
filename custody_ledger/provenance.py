# -*- coding: utf-8 -*-
"""
Custody Ledger Provenance Tracker

SHA-256 chain-hashed audit trail of every ledger mutation (chain creation,
event append, split, merge, transformation). Each entry links to the hash
of the one before it, so editing or dropping any entry breaks
verification of everything after it.

Example:
    >>> from custody_ledger.provenance import ProvenanceTracker
    >>> tracker = ProvenanceTracker()
    >>> data_hash = tracker.hash_payload({"chain_id": "CHAIN-001", "qty": "1000"})
    >>> entry = tracker.record("chain", "c-1", "chain.create", data_hash)
    >>> assert tracker.verify_chain()
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProvenanceEntry(BaseModel):
    """A single entry in the provenance chain."""

    model_config = ConfigDict(extra="forbid")

    entry_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique provenance entry ID",
    )
    entity_type: str = Field(
        ..., description="Type of entity (chain, event)",
    )
    entity_id: str = Field(
        ..., description="ID of the entity this entry refers to",
    )
    action: str = Field(
        ..., description="Mutation performed (chain.create, event.append, ...)",
    )
    data_hash: str = Field(
        ..., description="SHA-256 hash of the entity data at this point",
    )
    previous_hash: str = Field(
        ..., description="Chain hash of the previous entry",
    )
    timestamp: datetime = Field(
        default_factory=_utcnow,
        description="When this entry was recorded",
    )
    user_id: str = Field(
        default="system", description="User who performed the mutation",
    )
    chain_hash: str = Field(
        default="", description="Combined chain hash for this entry",
    )
    metadata: Dict[str, Any] = Field(
        default_factory=dict,
        description="Additional metadata for this entry",
    )


class ProvenanceTracker:
    """Append-only, tamper-evident log of ledger mutations.

    Attributes:
        _entries: Ordered list of provenance entries.
        _last_chain_hash: Most recent chain hash for linking.
        _entity_index: Index mapping entity_id to entry indices.
    """

    _GENESIS_HASH = hashlib.sha256(b"custody-ledger-genesis").hexdigest()

    def __init__(self) -> None:
        self._entries: List[ProvenanceEntry] = []
        self._last_chain_hash: str = self._GENESIS_HASH
        self._entity_index: Dict[str, List[int]] = {}
        self._lock = threading.Lock()
        logger.info("ProvenanceTracker initialized")

    def record(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        data_hash: str,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ProvenanceEntry:
        """Append a provenance entry and link it into the chain.

        Args:
            entity_type: Type of entity (chain, event).
            entity_id: ID of the entity.
            action: Mutation performed.
            data_hash: SHA-256 hash of the entity data.
            user_id: User who performed the mutation.
            metadata: Optional additional metadata.

        Returns:
            The recorded ProvenanceEntry.
        """
        with self._lock:
            entry = ProvenanceEntry(
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                data_hash=data_hash,
                previous_hash=self._last_chain_hash,
                user_id=user_id or "system",
                metadata=metadata or {},
            )
            entry.chain_hash = self._link(entry.previous_hash, entry)

            self._entity_index.setdefault(entity_id, []).append(
                len(self._entries),
            )
            self._entries.append(entry)
            self._last_chain_hash = entry.chain_hash

        logger.debug(
            "Recorded provenance: %s %s %s -> %s",
            entity_type, action, entity_id, entry.entry_id,
        )
        return entry

    def get_chain(self, entity_id: str) -> List[ProvenanceEntry]:
        """Return the provenance entries of one entity, oldest first."""
        indices = self._entity_index.get(entity_id, [])
        return [self._entries[i] for i in indices]

    def verify_chain(self, entity_id: Optional[str] = None) -> bool:
        """Verify the integrity of the provenance chain.

        With an entity_id only that entity's entries are checked against
        their recorded previous hash; otherwise the whole chain is
        replayed from genesis.

        Returns:
            True if intact, False if tampered.
        """
        if entity_id is None:
            current = self._GENESIS_HASH
            for entry in list(self._entries):
                if entry.previous_hash != current:
                    logger.warning(
                        "Provenance link broken at entry %s", entry.entry_id,
                    )
                    return False
                if entry.chain_hash != self._link(current, entry):
                    logger.warning(
                        "Provenance hash mismatch at entry %s", entry.entry_id,
                    )
                    return False
                current = entry.chain_hash
            return True

        for entry in self.get_chain(entity_id):
            if entry.chain_hash != self._link(entry.previous_hash, entry):
                logger.warning(
                    "Provenance verification failed for entity %s at entry %s",
                    entity_id, entry.entry_id,
                )
                return False
        return True

    def get_all_entries(self, limit: int = 100) -> List[ProvenanceEntry]:
        """Return provenance entries, newest first."""
        return list(reversed(self._entries))[:limit]

    def export_json(self) -> str:
        """Export all provenance records as a JSON string."""
        records = [entry.model_dump(mode="json") for entry in self._entries]
        return json.dumps(records, indent=2, default=str)

    @property
    def entry_count(self) -> int:
        return len(self._entries)

    @property
    def last_chain_hash(self) -> str:
        return self._last_chain_hash

    # ------------------------------------------------------------------
    # Hashing
    # ------------------------------------------------------------------

    @classmethod
    def _link(cls, previous_hash: str, entry: ProvenanceEntry) -> str:
        entry_hash = cls.hash_payload({
            "entity_type": entry.entity_type,
            "entity_id": entry.entity_id,
            "action": entry.action,
            "data_hash": entry.data_hash,
            "previous_hash": previous_hash,
            "timestamp": entry.timestamp.isoformat(),
            "user_id": entry.user_id,
        })
        combined = f"{previous_hash}:{entry_hash}"
        return hashlib.sha256(combined.encode()).hexdigest()

    @staticmethod
    def hash_payload(data: Any) -> str:
        """Compute a deterministic SHA-256 hash of JSON-serialisable data.

        Decimals, datetimes and enums are serialised via ``str``.
        """
        serialized = json.dumps(data, sort_keys=True, default=str)
        return hashlib.sha256(serialized.encode()).hexdigest()


__all__ = [
    "ProvenanceEntry",
    "ProvenanceTracker",
]
