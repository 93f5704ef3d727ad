"""Deterministic matching of bot-captured payments against bank credits.

Used when no model endpoint is configured. It follows the same policy the
model is given: an exact tracking key first, then a strong combination of
amount, date and an identifier, then a flexible combination with clues from
the bank description. Each bank credit can back at most one payment.
"""
from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Callable, Dict, List, Optional

from .models import MATCHED, NOT_AVAILABLE, UNMATCHED, UploadedTable
from .normalization import (
    NormalizationError,
    coerce_amount,
    parse_date,
    primary_entry,
    row_value,
)

LOGGER = logging.getLogger(__name__)

AMOUNT_TOLERANCE = 0.005
TRACKING_AMOUNT_TOLERANCE = 1.0
DATE_WINDOW_DAYS = 1
TIME_WINDOW_MINUTES = 15

CREDIT_MARKERS = {"+", "abono", "a", "credito", "crédito", "deposito", "depósito"}

COUNTERPARTY_COLUMNS = {
    "date": ("Fecha", "fecha", "Fecha de operación"),
    "time": ("Hora", "hora"),
    "description": ("Descripcion", "Descripción", "descripcion"),
    "direction": ("Cargo/Abono", "Cargo / Abono", "Tipo"),
    "amount": ("Importe", "importe", "Monto"),
    "reference": ("Referencia", "referencia"),
    "concept": ("Concepto", "concepto"),
    "tracking_key": ("Clave de Rastreo", "Clave de rastreo"),
    "payer": ("Nombre Ordenante", "Ordenante"),
}

_TOKEN = re.compile(r"[a-z0-9]+")


def _fold(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).lower()


def _tokens(text: str, *, min_length: int = 3) -> set[str]:
    return {token for token in _TOKEN.findall(_fold(text)) if len(token) >= min_length}


def _identifier(raw: str) -> str:
    value = raw.strip()
    if not value or value == NOT_AVAILABLE:
        return ""
    return _fold(value).replace(" ", "")


def _safe_date(raw: str) -> Optional[date]:
    if not raw:
        return None
    try:
        return parse_date(raw.split(" ")[0])
    except NormalizationError:
        return None


def _safe_time(raw: str) -> Optional[time]:
    for pattern in ("%H:%M:%S", "%H:%M"):
        try:
            return datetime.strptime(raw.strip(), pattern).time()
        except ValueError:
            continue
    return None


def _bank_value(row: dict[str, str], field: str) -> str:
    for column in COUNTERPARTY_COLUMNS[field]:
        value = row.get(column)
        if value is not None and value.strip():
            return value.strip()
    return ""


@dataclass(slots=True)
class BankCredit:
    index: int
    amount: float
    posted: Optional[date]
    posted_time: Optional[time]
    tracking_key: str
    reference: str
    payer_tokens: set[str]
    text: str


@dataclass(slots=True)
class BotPayment:
    name_tokens: set[str]
    amount: float
    operated: Optional[date]
    operated_time: Optional[time]
    tracking_key: str
    reference: str
    folio: str
    concept_tokens: set[str]

    @classmethod
    def from_row(cls, row: dict[str, str]) -> "BotPayment":
        return cls(
            name_tokens=_tokens(row_value(row, "name")),
            amount=coerce_amount(row_value(row, "amount")),
            operated=_safe_date(row_value(row, "date")),
            operated_time=_safe_time(row_value(row, "time")),
            tracking_key=_identifier(row_value(row, "tracking_key")),
            reference=_identifier(row_value(row, "reference_number")),
            folio=_identifier(row_value(row, "folio_number")),
            concept_tokens=_tokens(row_value(row, "concept"), min_length=4),
        )


def bank_credits(counterparty: UploadedTable) -> list[BankCredit]:
    """Return the rows of the bank statement that are incoming payments."""

    credits: List[BankCredit] = []
    for index, row in enumerate(counterparty.rows):
        amount = coerce_amount(_bank_value(row, "amount"))
        direction = _fold(_bank_value(row, "direction"))
        if direction:
            if direction not in CREDIT_MARKERS:
                continue
        elif amount <= 0:
            continue
        text = " ".join(
            _bank_value(row, field) for field in ("description", "concept", "payer", "reference")
        )
        credits.append(
            BankCredit(
                index=index,
                amount=abs(amount),
                posted=_safe_date(_bank_value(row, "date")),
                posted_time=_safe_time(_bank_value(row, "time")),
                tracking_key=_identifier(_bank_value(row, "tracking_key")),
                reference=_identifier(_bank_value(row, "reference")),
                payer_tokens=_tokens(_bank_value(row, "payer")),
                text=_fold(text).replace(" ", ""),
            )
        )
    LOGGER.info("Found %d credits among %d bank rows", len(credits), len(counterparty))
    return credits


def _date_close(bot: BotPayment, credit: BankCredit) -> bool:
    if bot.operated is None or credit.posted is None:
        return False
    return abs((bot.operated - credit.posted).days) <= DATE_WINDOW_DAYS


def _amount_equal(bot: BotPayment, credit: BankCredit) -> bool:
    return abs(bot.amount - credit.amount) <= AMOUNT_TOLERANCE


def _exact_key(bot: BotPayment, credit: BankCredit) -> bool:
    return (
        bool(bot.tracking_key)
        and bot.tracking_key == credit.tracking_key
        and abs(bot.amount - credit.amount) <= TRACKING_AMOUNT_TOLERANCE
        and _date_close(bot, credit)
    )


def _strong_combination(bot: BotPayment, credit: BankCredit) -> bool:
    if not (_amount_equal(bot, credit) and _date_close(bot, credit)):
        return False
    if bot.reference and bot.reference == credit.reference:
        return True
    if bot.folio and (bot.folio == credit.reference or bot.folio in credit.text):
        return True
    return bool(bot.name_tokens & credit.payer_tokens)


def _flexible_combination(bot: BotPayment, credit: BankCredit) -> bool:
    if not (_amount_equal(bot, credit) and _date_close(bot, credit)):
        return False
    clues = bot.name_tokens | bot.concept_tokens
    return any(clue in credit.text for clue in clues)


TIERS: tuple[tuple[str, Callable[[BotPayment, BankCredit], bool]], ...] = (
    ("clave de rastreo", _exact_key),
    ("combinación fuerte", _strong_combination),
    ("combinación flexible", _flexible_combination),
)


def _closest_in_time(bot: BotPayment, candidates: list[BankCredit]) -> Optional[BankCredit]:
    if bot.operated_time is None:
        return None
    minutes = bot.operated_time.hour * 60 + bot.operated_time.minute
    within = [
        credit
        for credit in candidates
        if credit.posted_time is not None
        and abs(credit.posted_time.hour * 60 + credit.posted_time.minute - minutes)
        <= TIME_WINDOW_MINUTES
    ]
    return within[0] if len(within) == 1 else None


def _match_one(bot: BotPayment, credits: list[BankCredit], consumed: set[int]) -> tuple[str, str]:
    for label, rule in TIERS:
        candidates = [c for c in credits if c.index not in consumed and rule(bot, c)]
        if len(candidates) > 1:
            chosen = _closest_in_time(bot, candidates)
            if chosen is None:
                return (
                    UNMATCHED,
                    f"Ambigüedad: {len(candidates)} movimientos bancarios coinciden por "
                    f"{label}; requiere revisión manual",
                )
            candidates = [chosen]
        if candidates:
            consumed.add(candidates[0].index)
            return MATCHED, ""

    if bot.operated is None:
        return UNMATCHED, "Sin fecha de operación válida para buscar"
    for credit in credits:
        if credit.index in consumed and any(rule(bot, credit) for _, rule in TIERS):
            return (
                UNMATCHED,
                f"Posible duplicado de registro conciliado (movimiento bancario {credit.index + 1})",
            )
    return UNMATCHED, "No se encontró coincidencia por Clave/Referencia/Monto/Fecha"


def match_tables(primary: UploadedTable, counterparty: UploadedTable) -> Dict[str, object]:
    """Reconcile both tables and return a payload shaped like the model's reply."""

    credits = bank_credits(counterparty)
    consumed: set[int] = set()
    detail = []
    for row in primary.rows:
        status, note = _match_one(BotPayment.from_row(row), credits, consumed)
        entry = primary_entry(row)
        entry["Estado"] = "conciliado" if status == MATCHED else "no_conciliado"
        entry["Nota"] = note
        detail.append(entry)

    matched = sum(1 for entry in detail if entry["Estado"] == "conciliado")
    return {
        "resumen": {
            "total_procesados": len(detail),
            "total_conciliados": matched,
            "total_no_conciliados": len(detail) - matched,
        },
        "detalle": detail,
    }
