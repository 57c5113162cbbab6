#!/usr/bin/env python3
"""
flacmig.ledger

Durable migration progress.

LedgerStore   – JSON document on disk. load() never raises (missing/corrupt →
                fresh empty ledger); save() writes ``<name>.tmp``, fsyncs, then
                os.replace()s it over the ledger so a kill mid-write leaves the
                previous document intact.
AtomicLedger  – wraps a store with separate read and write locks so concurrent
                saves never interleave.
LedgerIndex   – in-memory ``track_key -> LedgerEntry`` map with atomic
                upsert/read; seeded from the loaded ledger and projected back
                into a Ledger before each save, so entries of tracks that were
                not touched (or not even scanned) this run are preserved.

On-disk shape:
{
  "createdAt": "2026-01-01T00:00:00+00:00",
  "updatedAt": "...",
  "entries": [
    {"sourcePath": ..., "targetPath": ..., "status": "Verified",
     "lastError": null, "durationSeconds": 215.3, "sizeBytes": 31457280,
     "estimatedOutputBytes": 8612000, "verifiedAt": "..."}
  ]
}
"""
from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from flacmig.errors import PersistenceFailure
from flacmig.models import Ledger, LedgerEntry, Track, TrackStatus, track_key, utc_now

logger = logging.getLogger(__name__)


# -------------------------------------------------------------------------------------------------
# (de)serialization
# -------------------------------------------------------------------------------------------------

def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


def _parse_ts(value: Any) -> Optional[datetime]:
    if not value:
        return None
    ts = datetime.fromisoformat(str(value))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def entry_to_dict(entry: LedgerEntry) -> Dict[str, Any]:
    return {
        "sourcePath": entry.source_path,
        "targetPath": entry.target_path,
        "status": entry.status.value,
        "lastError": entry.last_error,
        "durationSeconds": entry.duration_seconds,
        "sizeBytes": entry.size_bytes,
        "estimatedOutputBytes": entry.estimated_output_bytes,
        "verifiedAt": _iso(entry.verified_at),
    }


def entry_from_dict(rec: Dict[str, Any]) -> LedgerEntry:
    return LedgerEntry(
        source_path=str(rec["sourcePath"]),
        target_path=str(rec["targetPath"]),
        status=TrackStatus(rec.get("status", TrackStatus.PENDING.value)),
        last_error=rec.get("lastError"),
        duration_seconds=float(rec.get("durationSeconds") or 0.0),
        size_bytes=int(rec.get("sizeBytes") or 0),
        estimated_output_bytes=int(rec.get("estimatedOutputBytes") or 0),
        verified_at=_parse_ts(rec.get("verifiedAt")),
    )


def ledger_to_dict(ledger: Ledger) -> Dict[str, Any]:
    return {
        "createdAt": _iso(ledger.created_at),
        "updatedAt": _iso(ledger.updated_at),
        "entries": [entry_to_dict(e) for e in ledger.entries],
    }


def ledger_from_dict(data: Dict[str, Any]) -> Ledger:
    if not isinstance(data, dict):
        raise ValueError("ledger document must be a JSON object")
    entries: List[LedgerEntry] = []
    for rec in data.get("entries") or []:
        try:
            entries.append(entry_from_dict(rec))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping unreadable ledger entry %r: %s", rec, e)
    return Ledger(
        created_at=_parse_ts(data.get("createdAt")) or utc_now(),
        updated_at=_parse_ts(data.get("updatedAt")) or utc_now(),
        entries=entries,
    )


# -------------------------------------------------------------------------------------------------
# store + guard
# -------------------------------------------------------------------------------------------------

class LedgerStore:
    def __init__(self, path: Path):
        self.path = Path(path)

    @property
    def temp_path(self) -> Path:
        return self.path.parent / f"{self.path.name}.tmp"

    def load(self) -> Ledger:
        if not self.path.exists():
            return Ledger()
        try:
            with self.path.open("r", encoding="utf-8") as f:
                return ledger_from_dict(json.load(f))
        except Exception as e:
            logger.warning("Failed to load ledger %s, starting fresh: %s", self.path, e)
            return Ledger()

    def save(self, ledger: Ledger) -> None:
        ledger.updated_at = utc_now()
        payload = json.dumps(ledger_to_dict(ledger), indent=2, ensure_ascii=False)
        tmp = self.temp_path
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except OSError as e:
            if tmp.exists():
                try:
                    tmp.unlink()
                except OSError:
                    logger.warning("Could not remove temp ledger %s", tmp)
            raise PersistenceFailure(f"Failed to save ledger to {self.path}: {e}") from e
        logger.debug("Ledger saved: %d entries -> %s", len(ledger.entries), self.path)


class AtomicLedger:
    """Serializes access to a LedgerStore (separate read and write sections)."""

    def __init__(self, store: LedgerStore):
        self.store = store
        self._read_lock = threading.Lock()
        self._write_lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self.store.path

    def load(self) -> Ledger:
        with self._read_lock:
            return self.store.load()

    def save(self, ledger: Ledger) -> None:
        with self._write_lock:
            self.store.save(ledger)


# -------------------------------------------------------------------------------------------------
# in-memory index
# -------------------------------------------------------------------------------------------------

class LedgerIndex:
    def __init__(self, ledger: Optional[Ledger] = None):
        self._lock = threading.Lock()
        self._entries: Dict[str, LedgerEntry] = {}
        self.created_at = ledger.created_at if ledger else utc_now()
        if ledger:
            for entry in ledger.entries:
                self._entries[track_key(entry.source_path)] = entry

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, source_path) -> Optional[LedgerEntry]:
        with self._lock:
            return self._entries.get(track_key(source_path))

    def upsert_track(self, track: Track) -> LedgerEntry:
        entry = LedgerEntry.from_track(track)
        with self._lock:
            previous = self._entries.get(track.key)
            if entry.verified_at is None and previous is not None and entry.status == TrackStatus.VERIFIED:
                entry.verified_at = previous.verified_at
            self._entries[track.key] = entry
        return entry

    def upsert_many(self, tracks) -> None:
        for track in tracks:
            self.upsert_track(track)

    def to_ledger(self) -> Ledger:
        with self._lock:
            entries = sorted(self._entries.values(), key=lambda e: e.source_path)
        return Ledger(created_at=self.created_at, entries=list(entries))
