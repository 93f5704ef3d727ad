"""Data models used by the reconciliation workflow."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

MATCHED = "matched"
UNMATCHED = "unmatched"

NOT_AVAILABLE = "No disponible"


@dataclass(slots=True)
class UploadedTable:
    """Rows of one uploaded CSV file, keyed by the header row."""

    name: str
    headers: List[str]
    rows: List[Dict[str, str]]

    def __len__(self) -> int:
        return len(self.rows)


@dataclass(frozen=True)
class ReconciliationRequest:
    system_instruction: str
    primary_csv: str
    counterparty_csv: str
    user_message: str
    temperature: float
    max_output_tokens: int

    def as_messages(self) -> list[dict[str, str]]:
        return [
            {"role": "system", "content": self.system_instruction},
            {
                "role": "user",
                "content": "\n\n".join(
                    [
                        "Archivo Bot_Finanzas.csv:\n\n" + self.primary_csv,
                        "Archivo movimientos_cheque.csv:\n\n" + self.counterparty_csv,
                        self.user_message,
                    ]
                ),
            },
        ]


@dataclass(slots=True)
class ReconciliationRecord:
    name: str
    amount: float
    operation_date: str
    tracking_key: str
    reference_number: str
    folio_number: str
    concept: str
    status: str
    note: str = ""
    phone: Optional[str] = None

    @property
    def is_matched(self) -> bool:
        return self.status == MATCHED

    def as_json(self) -> dict[str, object]:
        return {
            "name": self.name,
            "amount": self.amount,
            "operation_date": self.operation_date,
            "tracking_key": self.tracking_key,
            "reference_number": self.reference_number,
            "folio_number": self.folio_number,
            "concept": self.concept,
            "status": self.status,
            "note": self.note,
            "phone": self.phone,
        }


@dataclass(slots=True)
class ReconciliationSummary:
    processed: int
    matched: int
    unmatched: int
    error: Optional[str] = None

    def as_json(self) -> dict[str, object]:
        return {
            "processed": self.processed,
            "matched": self.matched,
            "unmatched": self.unmatched,
            "error": self.error,
        }


@dataclass(slots=True)
class ReconciliationResult:
    """Outcome of one attempt: every primary row plus the derived counts."""

    records: List[ReconciliationRecord]
    summary: ReconciliationSummary
    source: str = "remote"

    @property
    def matched(self) -> list[ReconciliationRecord]:
        return [record for record in self.records if record.is_matched]

    @property
    def unmatched(self) -> list[ReconciliationRecord]:
        return [record for record in self.records if not record.is_matched]

    def as_json(self) -> dict[str, object]:
        return {
            "source": self.source,
            "summary": self.summary.as_json(),
            "records": [record.as_json() for record in self.records],
        }


@dataclass(frozen=True)
class QuotaState:
    period: str
    used: int
    limit: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    @property
    def limit_reached(self) -> bool:
        return self.used >= self.limit

