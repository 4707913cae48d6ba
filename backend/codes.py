# codes.py
"""Redeem-code ledger.

The ledger is a single JSON document, loaded fully into memory and rewritten
in full (temp file + rename) on every mutation. Only codes' SHA-256
fingerprints are stored, never the plaintext.

The running daemon is the only writer. All read-modify-write cycles go
through one in-process lock; consume and match happen inside the same
lock region so two deliveries of the same note can never both redeem.
"""
from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from errors import DuplicateCode, LedgerCorrupt
from matcher import CodeMatch, fingerprint, match

PAYMENT_RETRY_DELAY = timedelta(minutes=30)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CodeEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    fingerprint: str
    created_at: datetime = Field(alias="createdAt")
    used: bool = False
    used_by: Optional[str] = Field(default=None, alias="usedBy")
    used_at: Optional[datetime] = Field(default=None, alias="usedAt")
    used_on_message: Optional[str] = Field(default=None, alias="usedOnMessage")
    payment_failed: bool = Field(default=False, alias="paymentFailed")
    retry_at: Optional[datetime] = Field(default=None, alias="retryAt")

    @field_validator("created_at", "used_at", "retry_at")
    @classmethod
    def _as_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        # Hand-edited files may carry naive timestamps; they are read as UTC.
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def status(self) -> str:
        if not self.used:
            return "AVAILABLE"
        return "USED"


class CodesDocument(BaseModel):
    codes: List[CodeEntry] = Field(default_factory=list)


@dataclass(frozen=True)
class RetryItem:
    index: int
    message_id: str


@dataclass(frozen=True)
class LedgerStats:
    total: int
    used: int
    available: int
    pending_retry: int


def _entry_problem(c: CodeEntry) -> Optional[str]:
    if c.payment_failed and not c.used:
        return "paymentFailed set on an unused code"
    if not c.used and (c.used_by or c.used_at or c.used_on_message):
        return "unused code carries usage fields"
    return None


def write_json_atomic(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
        f.write("\n")
    tmp.replace(path)


class Ledger:
    def __init__(self, path: Path, clock: Clock = utcnow):
        self.path = Path(path)
        self._clock = clock
        self._lock = threading.RLock()
        self._codes: List[CodeEntry] = []
        self.reload()

    # ---------------------------
    # Persistence
    # ---------------------------
    def reload(self) -> None:
        with self._lock:
            self._codes = self._load()

    def _load(self) -> List[CodeEntry]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            doc = CodesDocument.model_validate(raw)
        except (json.JSONDecodeError, ValidationError) as e:
            raise LedgerCorrupt(f"codes file '{self.path}' is not a valid ledger: {e}") from e

        seen = set()
        for i, c in enumerate(doc.codes):
            if c.fingerprint in seen:
                raise LedgerCorrupt(f"codes file '{self.path}' has duplicate fingerprint {c.fingerprint[:16]}...")
            seen.add(c.fingerprint)
            problem = _entry_problem(c)
            if problem:
                raise LedgerCorrupt(f"codes file '{self.path}' entry #{i} ({c.fingerprint[:16]}...): {problem}")
        return doc.codes

    def _save(self, codes: List[CodeEntry]) -> None:
        doc = CodesDocument(codes=codes)
        write_json_atomic(self.path, doc.model_dump(mode="json", by_alias=True))

    def _commit(self, codes: List[CodeEntry]) -> None:
        """Write `codes` to disk, then adopt them. Memory is untouched if the write fails."""
        self._save(codes)
        self._codes = codes

    def _replace(self, index: int, **changes) -> CodeEntry:
        entry = self._codes[index].model_copy(update=changes)
        codes = list(self._codes)
        codes[index] = entry
        self._commit(codes)
        return entry

    # ---------------------------
    # Operator side
    # ---------------------------
    def add(self, plaintext: str) -> str:
        """Store the fingerprint of a new code. Raises DuplicateCode if already present."""
        if not (plaintext or "").strip():
            raise ValueError("code must not be empty")
        fp = fingerprint(plaintext)
        with self._lock:
            if any(c.fingerprint == fp for c in self._codes):
                raise DuplicateCode("Code already exists (duplicate fingerprint)")
            self._commit(self._codes + [CodeEntry(fingerprint=fp, created_at=self._clock())])
        return fp

    def add_batch(self, lines: Iterable[str]) -> Tuple[int, int, List[Tuple[str, str]]]:
        """Add one code per line. Returns (added, total, [(line, reason), ...] for skipped lines)."""
        added = 0
        total = 0
        skipped: List[Tuple[str, str]] = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            total += 1
            try:
                self.add(line)
                added += 1
            except (DuplicateCode, ValueError) as e:
                skipped.append((line, str(e)))
        return added, total, skipped

    # ---------------------------
    # Redemption
    # ---------------------------
    def _unused_index(self) -> Dict[str, int]:
        return {c.fingerprint: i for i, c in enumerate(self._codes) if not c.used}

    def find_unused_match(self, text: str) -> Optional[CodeMatch]:
        with self._lock:
            return match(text, self._unused_index())

    def consume(self, index: int, identity: str, message_id: str) -> None:
        with self._lock:
            entry = self._codes[index]
            if entry.used:
                raise ValueError(f"code {entry.fingerprint[:16]}... already used")
            self._replace(
                index,
                used=True,
                used_by=identity,
                used_at=self._clock(),
                used_on_message=message_id,
            )

    def redeem(self, text: str, identity: str, message_id: str) -> Optional[CodeMatch]:
        """Match and consume in one step. Returns the consumed match, or None."""
        with self._lock:
            m = self.find_unused_match(text)
            if m is None:
                return None
            self.consume(m.index, identity, message_id)
            return m

    def mark_payment_failed(self, index: int) -> datetime:
        with self._lock:
            entry = self._codes[index]
            if not entry.used:
                raise ValueError(f"code {entry.fingerprint[:16]}... is not used; nothing to retry")
            retry_at = self._clock() + PAYMENT_RETRY_DELAY
            self._replace(index, payment_failed=True, retry_at=retry_at)
            return retry_at

    def clear_payment_failed(self, index: int) -> None:
        with self._lock:
            self._replace(index, payment_failed=False, retry_at=None)

    def due_retries(self, now: Optional[datetime] = None) -> List[RetryItem]:
        now = now or self._clock()
        with self._lock:
            return [
                RetryItem(index=i, message_id=c.used_on_message)
                for i, c in enumerate(self._codes)
                if c.payment_failed and c.retry_at is not None and c.retry_at <= now and c.used_on_message
            ]

    # ---------------------------
    # Reporting
    # ---------------------------
    def entries(self) -> List[CodeEntry]:
        with self._lock:
            return [c.model_copy() for c in self._codes]

    def stats(self) -> LedgerStats:
        with self._lock:
            total = len(self._codes)
            used = sum(1 for c in self._codes if c.used)
            pending = sum(1 for c in self._codes if c.payment_failed)
        return LedgerStats(total=total, used=used, available=total - used, pending_retry=pending)

    def __len__(self) -> int:
        return len(self._codes)
