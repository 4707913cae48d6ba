# status_api.py
"""Read-only status endpoints for the operator. Never exposes full fingerprints or keys."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from allowlist import AllowList
from codes import Ledger

FINGERPRINT_PREFIX = 16


# ---------------------------
# API models
# ---------------------------
class HealthOut(BaseModel):
    ok: bool
    server_time: int


class StatsOut(BaseModel):
    total: int
    used: int
    available: int
    pending_retry: int


class CodeOut(BaseModel):
    fingerprint_prefix: str
    status: str
    used_by: Optional[str] = None
    used_at: Optional[datetime] = None
    used_on_message: Optional[str] = None
    payment_retry_pending: bool = False
    retry_at: Optional[datetime] = None


class AllowListEntryOut(BaseModel):
    identity: str
    added_at: datetime
    reason: str


class ConfigOut(BaseModel):
    settings: Dict[str, Any] = Field(default_factory=dict)


def create_app(ledger: Ledger, allowlist: Optional[AllowList] = None,
               public_settings: Optional[Dict[str, Any]] = None) -> FastAPI:
    app = FastAPI(title="nostreward status")

    @app.get("/health", response_model=HealthOut)
    def health():
        return HealthOut(ok=True, server_time=int(datetime.now().timestamp()))

    @app.get("/stats", response_model=StatsOut)
    def stats():
        s = ledger.stats()
        return StatsOut(total=s.total, used=s.used, available=s.available, pending_retry=s.pending_retry)

    @app.get("/codes", response_model=List[CodeOut])
    def codes(limit: int = 100, offset: int = 0):
        if limit < 1:
            limit = 1
        if limit > 500:
            limit = 500
        if offset < 0:
            offset = 0
        out: List[CodeOut] = []
        for c in ledger.entries()[offset:offset + limit]:
            out.append(
                CodeOut(
                    fingerprint_prefix=c.fingerprint[:FINGERPRINT_PREFIX],
                    status=c.status,
                    used_by=c.used_by,
                    used_at=c.used_at,
                    used_on_message=c.used_on_message,
                    payment_retry_pending=c.payment_failed,
                    retry_at=c.retry_at,
                )
            )
        return out

    @app.get("/allowlist", response_model=List[AllowListEntryOut])
    def allowlist_entries():
        if allowlist is None:
            raise HTTPException(status_code=404, detail="allow-list disabled")
        return [AllowListEntryOut(identity=e.identity, added_at=e.added_at, reason=e.reason)
                for e in allowlist.entries()]

    @app.get("/config", response_model=ConfigOut)
    def get_config():
        return ConfigOut(settings=dict(public_settings or {}))

    return app
