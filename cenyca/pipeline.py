"""High-level orchestration of one reconciliation attempt."""
from __future__ import annotations

import enum
import logging
import threading
from pathlib import Path
from typing import Optional

from .llm import RemoteError, RemoteTimeoutError, ReconciliationModel, default_model
from .matching import match_tables
from .models import ReconciliationResult, UploadedTable
from .normalization import load_table
from .prompts import build_request
from .quota import QuotaGate
from .report import generate_markdown_summary, write_csv, write_json, write_markdown
from .response import (
    ParseError,
    ShapeError,
    extract_json_object,
    result_from_payload,
    synthesise_fallback,
)

LOGGER = logging.getLogger(__name__)


class SessionBusy(RuntimeError):
    """Raised when a submission arrives while another one is in flight."""


class State(str, enum.Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    QUOTA_CHECK = "quota_check"
    INVOKING = "invoking"
    PARSING = "parsing"
    NORMALIZING = "normalizing"


class ReconciliationSession:
    """Runs reconciliation attempts one at a time.

    File and quota problems are raised to the caller before anything is sent.
    Once the model has been called, every failure is turned into a result in
    which all primary rows are unmatched and ``summary.error`` explains why.
    """

    def __init__(
        self,
        *,
        model: Optional[ReconciliationModel] = None,
        quota: Optional[QuotaGate] = None,
        use_local: bool = False,
    ) -> None:
        self._model = model
        self._quota = quota
        self._use_local = use_local
        self._busy = threading.Lock()
        self.state = State.IDLE
        self.result: Optional[ReconciliationResult] = None

    @property
    def busy(self) -> bool:
        return self._busy.locked()

    def submit(self, primary_path: Path, counterparty_path: Path) -> ReconciliationResult:
        if not self._busy.acquire(blocking=False):
            raise SessionBusy("Ya hay una conciliación en proceso")
        try:
            self.result = None
            self.state = State.VALIDATING
            primary = load_table(primary_path)
            counterparty = load_table(counterparty_path)
            self.result = self._reconcile(primary, counterparty)
            return self.result
        finally:
            self.state = State.IDLE
            self._busy.release()

    def _reconcile(self, primary: UploadedTable, counterparty: UploadedTable) -> ReconciliationResult:
        model = self._model or default_model()
        if self._use_local or not model.available:
            if not self._use_local:
                LOGGER.warning("No model API key configured; using the local matcher.")
            self.state = State.NORMALIZING
            return result_from_payload(match_tables(primary, counterparty), primary, source="local")

        request = build_request(primary, counterparty)
        quota = self._quota or QuotaGate.from_env()

        self.state = State.QUOTA_CHECK
        reservation = quota.reserve()

        self.state = State.INVOKING
        try:
            text = model.invoke(request)
        except (RemoteTimeoutError, RemoteError) as exc:
            quota.release(reservation)
            LOGGER.error("Reconciliation request failed: %s", exc)
            return synthesise_fallback(primary, str(exc))

        self.state = State.PARSING
        try:
            payload = extract_json_object(text)
            self.state = State.NORMALIZING
            result = result_from_payload(payload, primary, source="remote")
        except (ParseError, ShapeError) as exc:
            LOGGER.warning("Generating fallback result for incomplete reply: %s", exc)
            return synthesise_fallback(primary, str(exc))

        LOGGER.info(
            "Reconciled %d movements: %d matched, %d unmatched",
            result.summary.processed,
            result.summary.matched,
            result.summary.unmatched,
        )
        return result


def run_reconciliation(
    *,
    primary_path: Path,
    counterparty_path: Path,
    out_dir: Path,
    use_local: bool = False,
) -> ReconciliationResult:
    session = ReconciliationSession(use_local=use_local)
    result = session.submit(primary_path, counterparty_path)

    out_dir.mkdir(parents=True, exist_ok=True)
    write_csv(out_dir / "conciliacion.csv", result)
    write_json(out_dir / "conciliacion.json", result)
    write_markdown(out_dir / "conciliacion.md", generate_markdown_summary(result))
    return result
