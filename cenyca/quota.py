"""Monthly usage limit for reconciliation attempts."""
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Protocol

from .models import QuotaState

LOGGER = logging.getLogger(__name__)

MONTHLY_CONCILIATION_LIMIT = 300
DEFAULT_QUOTA_FILE = Path(".cenyca/quota.json")


class QuotaExceeded(RuntimeError):
    """Raised when the monthly reconciliation limit has been used up."""

    def __init__(self, state: QuotaState) -> None:
        self.state = state
        super().__init__(
            f"Se alcanzó el límite mensual de {state.limit} conciliaciones ({state.period})"
        )


class QuotaStoreError(RuntimeError):
    """Raised when the stored usage counters cannot be read."""


class QuotaStore(Protocol):
    def used(self, period: str) -> int: ...

    def reserve(self, period: str, limit: int) -> bool: ...

    def release(self, period: str) -> None: ...


class InMemoryQuotaStore:
    def __init__(self, counts: Dict[str, int] | None = None) -> None:
        self._counts = dict(counts or {})
        self._lock = threading.Lock()

    def used(self, period: str) -> int:
        with self._lock:
            return self._counts.get(period, 0)

    def reserve(self, period: str, limit: int) -> bool:
        with self._lock:
            current = self._counts.get(period, 0)
            if current >= limit:
                return False
            self._counts[period] = current + 1
            return True

    def release(self, period: str) -> None:
        with self._lock:
            self._counts[period] = max(0, self._counts.get(period, 0) - 1)


class JsonQuotaStore:
    """Counters persisted as ``{"YYYY-MM": used}`` in a JSON file.

    Updates are serialised by a lock and written through a temporary file
    that replaces the original, so a crash never leaves a half-written file.
    """

    _locks: Dict[Path, threading.Lock] = {}
    _locks_guard = threading.Lock()

    def __init__(self, path: Path) -> None:
        self.path = path.resolve()
        with self._locks_guard:
            self._lock = self._locks.setdefault(self.path, threading.Lock())

    def _read(self) -> Dict[str, int]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open(encoding="utf-8") as handle:
                data = json.load(handle)
            return {str(key): int(value) for key, value in data.items()}
        except (ValueError, TypeError, AttributeError) as exc:
            raise QuotaStoreError(f"El archivo de cuota {self.path} está dañado: {exc}") from exc

    def _write(self, counts: Dict[str, int]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(counts, handle, indent=2, sort_keys=True)
            os.replace(tmp_name, self.path)
        except BaseException:
            os.unlink(tmp_name)
            raise

    def used(self, period: str) -> int:
        with self._lock:
            return self._read().get(period, 0)

    def reserve(self, period: str, limit: int) -> bool:
        with self._lock:
            counts = self._read()
            current = counts.get(period, 0)
            if current >= limit:
                return False
            counts[period] = current + 1
            self._write(counts)
            return True

    def release(self, period: str) -> None:
        with self._lock:
            counts = self._read()
            counts[period] = max(0, counts.get(period, 0) - 1)
            self._write(counts)


@dataclass(slots=True)
class Reservation:
    period: str
    released: bool = False


class QuotaGate:
    """Reserve-or-reject access to the monthly reconciliation budget."""

    def __init__(
        self,
        store: QuotaStore,
        *,
        limit: int = MONTHLY_CONCILIATION_LIMIT,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._store = store
        self._limit = limit
        self._clock = clock

    @classmethod
    def from_env(cls) -> "QuotaGate":
        path = Path(os.getenv("CENYCA_QUOTA_FILE", str(DEFAULT_QUOTA_FILE)))
        limit = int(os.getenv("CENYCA_MONTHLY_LIMIT", str(MONTHLY_CONCILIATION_LIMIT)))
        return cls(JsonQuotaStore(path), limit=limit)

    def period(self) -> str:
        return self._clock().strftime("%Y-%m")

    def status(self) -> QuotaState:
        period = self.period()
        return QuotaState(period=period, used=self._store.used(period), limit=self._limit)

    def reserve(self) -> Reservation:
        period = self.period()
        if not self._store.reserve(period, self._limit):
            raise QuotaExceeded(self.status())
        LOGGER.info("Reserved reconciliation %d/%d for %s", self._store.used(period), self._limit, period)
        return Reservation(period=period)

    def release(self, reservation: Reservation) -> None:
        if reservation.released:
            return
        self._store.release(reservation.period)
        reservation.released = True
        LOGGER.info("Released reconciliation reservation for %s", reservation.period)
