"""Loan store persisted to a JSON file."""
from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import asdict, fields
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

from ..models import HoldOutcome, HoldStatus, LoanRecord, LoanStatus
from .memory import InMemoryLoanStore

logger = logging.getLogger(__name__)

_DECIMAL_FIELDS = ("borrowed_amount", "entry_price", "pre_auth_amount")
_DATETIME_FIELDS = ("created_at", "expires_at")


def record_to_dict(record: LoanRecord) -> dict[str, Any]:
    data = asdict(record)
    for name in _DECIMAL_FIELDS:
        data[name] = str(data[name])
    for name in _DATETIME_FIELDS:
        data[name] = data[name].isoformat()
    data["status"] = record.status.value
    data["hold_status"] = record.hold_status.value
    data["pending_resolution"] = (
        record.pending_resolution.value if record.pending_resolution else None
    )
    data["pending_status"] = record.pending_status.value if record.pending_status else None
    return data


def record_from_dict(data: dict[str, Any]) -> LoanRecord:
    known = {f.name for f in fields(LoanRecord)}
    values = {k: v for k, v in data.items() if k in known}
    for name in _DECIMAL_FIELDS:
        values[name] = Decimal(values[name])
    for name in _DATETIME_FIELDS:
        values[name] = datetime.fromisoformat(values[name])
    values["status"] = LoanStatus(values["status"])
    values["hold_status"] = HoldStatus(values.get("hold_status", HoldStatus.AUTHORIZED.value))
    pending = values.get("pending_resolution")
    values["pending_resolution"] = HoldOutcome(pending) if pending else None
    pending_status = values.get("pending_status")
    values["pending_status"] = LoanStatus(pending_status) if pending_status else None
    return LoanRecord(**values)


class JsonFileLoanStore(InMemoryLoanStore):
    """In-memory store that rewrites a JSON file after every mutation.

    The file is replaced atomically (write to a temp file, then rename).
    """

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self._path = Path(path)
        self._load()

    def _load(self) -> None:
        if not self._path.exists():
            return
        with open(self._path) as f:
            raw = json.load(f)
        for item in raw.get("loans", []):
            record = record_from_dict(item)
            self._records[record.id] = record
            self._by_wallet.setdefault(self._wallet_key(record.wallet_address), []).append(
                record.id
            )
        logger.info("Loaded %d loans from %s", len(self._records), self._path)

    async def _persist(self) -> None:
        # Called under the store lock, so writes land in mutation order.
        payload = {"loans": [record_to_dict(r) for r in self._records.values()]}
        await asyncio.to_thread(self._write, payload)

    def _write(self, payload: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        with open(tmp_path, "w") as f:
            json.dump(payload, f, indent=2)
        os.replace(tmp_path, self._path)
