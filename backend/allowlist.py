# allowlist.py
"""Allow-list of pubkeys that redeemed a code.

The private relay reads this file: {"pubkeys": [{"pubkey", "addedAt", "reason"}]}.
"""
from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import List

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from codes import Clock, utcnow, write_json_atomic
from errors import LedgerCorrupt


class AllowListEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    identity: str = Field(alias="pubkey")
    added_at: datetime = Field(alias="addedAt")
    reason: str = ""


class AllowListDocument(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    identities: List[AllowListEntry] = Field(default_factory=list, alias="pubkeys")


class AllowList:
    def __init__(self, path: Path, clock: Clock = utcnow):
        self.path = Path(path)
        self._clock = clock
        self._lock = threading.RLock()

    def _load(self) -> AllowListDocument:
        if not self.path.exists():
            return AllowListDocument()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return AllowListDocument.model_validate(json.load(f))
        except (json.JSONDecodeError, ValidationError) as e:
            raise LedgerCorrupt(f"allow-list file '{self.path}' is invalid: {e}") from e

    def add(self, identity: str, message_id: str) -> bool:
        """Append identity. Returns False (and writes nothing) if it is already present."""
        with self._lock:
            doc = self._load()
            if any(e.identity == identity for e in doc.identities):
                return False
            doc.identities.append(
                AllowListEntry(
                    identity=identity,
                    added_at=self._clock(),
                    reason=f"Redeemed code on event {message_id}",
                )
            )
            write_json_atomic(self.path, doc.model_dump(mode="json", by_alias=True))
            return True

    def contains(self, identity: str) -> bool:
        with self._lock:
            return any(e.identity == identity for e in self._load().identities)

    def entries(self) -> List[AllowListEntry]:
        with self._lock:
            return list(self._load().identities)
