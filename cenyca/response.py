"""Self-healing interpretation of the model's reconciliation reply.

The model is asked for a single JSON object but routinely wraps it in prose
or code fences, truncates it, or drops fields. Everything in this module is
built so that :func:`reconcile_reply` always returns one record per primary
row, whatever the reply looks like.
"""
from __future__ import annotations

import json
import logging
import math
from typing import Any, Iterable

from .models import (
    MATCHED,
    NOT_AVAILABLE,
    UNMATCHED,
    ReconciliationRecord,
    ReconciliationResult,
    ReconciliationSummary,
    UploadedTable,
)
from .normalization import coerce_amount, primary_entry, row_phone, row_value

LOGGER = logging.getLogger(__name__)

FALLBACK_NOTE = "Error en la conciliación automática"
FALLBACK_ERROR = "No se pudo procesar completamente la conciliación"

AMOUNT_EPSILON = 0.005

SUMMARY_KEYS = ("resumen", "summary")
DETAIL_KEYS = ("detalle", "detail")
COUNT_KEYS = {
    "processed": ("total_procesados", "processed"),
    "matched": ("total_conciliados", "matched"),
    "unmatched": ("total_no_conciliados", "unmatched"),
}

ENTRY_FIELDS = {
    "name": ("Nombre", "nombre", "name"),
    "amount": ("Monto", "monto", "amount"),
    "operation_date": ("Fecha_operacion", "fecha_operacion", "fecha", "operation_date"),
    "tracking_key": ("Clave_Rastreo", "clave_rastreo", "tracking_key"),
    "reference_number": ("Numero_referencia", "numero_referencia", "reference_number"),
    "folio_number": ("Numero_folio", "numero_folio", "folio_number"),
    "concept": ("Concepto", "concepto", "concept"),
    "status": ("Estado", "estado", "status"),
    "note": ("Nota", "nota", "note"),
}

MATCHED_TAGS = {"conciliado", "conciliada", "matched", "reconciled", "si", "sí", "true"}


class ParseError(ValueError):
    """Raised when no JSON object can be recovered from the reply text."""


class ShapeError(ValueError):
    """Raised when the recovered JSON lacks the expected structure."""


def _balanced_span(text: str, start: int) -> str | None:
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def extract_json_object(text: str) -> dict[str, Any]:
    """Return the first balanced ``{...}`` span in ``text`` that decodes to an object.

    Braces inside JSON strings are ignored, so prose around the object, code
    fences and stray braces before it do not confuse the scan.
    """

    first_error: str | None = None
    start = text.find("{")
    while start != -1:
        span = _balanced_span(text, start)
        if span is None:
            first_error = first_error or "Objeto JSON incompleto en la respuesta"
        else:
            try:
                payload = json.loads(span)
            except json.JSONDecodeError as exc:
                first_error = first_error or f"Error analizando JSON extraído del texto: {exc}"
            else:
                if isinstance(payload, dict):
                    return payload
        start = text.find("{", start + 1)

    if first_error is None:
        first_error = "No se encontró estructura JSON en la respuesta: " + text[:200]
    raise ParseError(first_error)


def _first_present(mapping: dict[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        if key in mapping:
            return mapping[key]
    return None


def _count(value: Any, key: str) -> int:
    number = value
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            number = None
    if (
        isinstance(number, bool)
        or not isinstance(number, (int, float))
        or not math.isfinite(number)
        or number != int(number)
    ):
        raise ShapeError(f"El resumen tiene un valor no válido en '{key}': {value!r}")
    return int(number)


def validate_shape(
    payload: dict[str, Any], *, expected_rows: int
) -> tuple[dict[str, int], list[dict[str, Any]]]:
    summary = _first_present(payload, SUMMARY_KEYS)
    if not isinstance(summary, dict):
        raise ShapeError("La respuesta no incluye 'resumen'")

    counts: dict[str, int] = {}
    for name, keys in COUNT_KEYS.items():
        value = _first_present(summary, keys)
        if value is None:
            raise ShapeError(f"El resumen no incluye '{keys[0]}'")
        counts[name] = _count(value, keys[0])

    detail = _first_present(payload, DETAIL_KEYS)
    if not isinstance(detail, list):
        raise ShapeError("La respuesta no incluye la lista 'detalle'")
    if not all(isinstance(entry, dict) for entry in detail):
        raise ShapeError("La lista 'detalle' contiene elementos que no son objetos")
    if len(detail) != expected_rows:
        raise ShapeError(
            f"La lista 'detalle' tiene {len(detail)} movimientos, se esperaban {expected_rows}"
        )
    return counts, detail


def _text(value: Any, default: str) -> str:
    if value is None:
        return default
    text = str(value).strip()
    return text or default


def classify_status(raw: Any) -> str:
    if raw is True:
        return MATCHED
    tag = str(raw or "").strip().lower().replace(" ", "_").replace("-", "_")
    return MATCHED if tag in MATCHED_TAGS else UNMATCHED


def normalise_entry(entry: dict[str, Any]) -> ReconciliationRecord:
    def field(name: str) -> Any:
        return _first_present(entry, ENTRY_FIELDS[name])

    status = classify_status(field("status"))
    note = "" if status == MATCHED else _text(field("note"), NOT_AVAILABLE)
    return ReconciliationRecord(
        name=_text(field("name"), ""),
        amount=coerce_amount(field("amount")),
        operation_date=_text(field("operation_date"), ""),
        tracking_key=_text(field("tracking_key"), NOT_AVAILABLE),
        reference_number=_text(field("reference_number"), NOT_AVAILABLE),
        folio_number=_text(field("folio_number"), NOT_AVAILABLE),
        concept=_text(field("concept"), NOT_AVAILABLE),
        status=status,
        note=note,
    )


def attach_contacts(records: Iterable[ReconciliationRecord], primary: UploadedTable) -> None:
    """Copy the sender's phone onto unmatched records found verbatim in ``primary``.

    The lookup is an exact join on name, amount and date string; a record whose
    echoed name or date differs in any character gets no phone.
    """

    for record in records:
        if record.is_matched:
            continue
        for row in primary.rows:
            if row_value(row, "name") != record.name:
                continue
            if abs(coerce_amount(row_value(row, "amount")) - record.amount) > AMOUNT_EPSILON:
                continue
            if row_value(row, "date") != record.operation_date:
                continue
            phone = row_phone(row)
            if phone:
                record.phone = phone
            break


def summarise(records: list[ReconciliationRecord], error: str | None = None) -> ReconciliationSummary:
    matched = sum(1 for record in records if record.is_matched)
    unmatched = len(records) - matched
    return ReconciliationSummary(
        processed=matched + unmatched, matched=matched, unmatched=unmatched, error=error
    )


def synthesise_fallback(primary: UploadedTable, reason: str | None = None) -> ReconciliationResult:
    records = []
    for row in primary.rows:
        entry = primary_entry(row)
        entry["Estado"] = UNMATCHED
        entry["Nota"] = FALLBACK_NOTE
        records.append(normalise_entry(entry))
    attach_contacts(records, primary)

    error = FALLBACK_ERROR
    if reason:
        error += f". Detalle técnico: {reason}"
    return ReconciliationResult(records=records, summary=summarise(records, error), source="fallback")


def result_from_payload(
    payload: dict[str, Any], primary: UploadedTable, *, source: str
) -> ReconciliationResult:
    reported, detail = validate_shape(payload, expected_rows=len(primary))
    records = [normalise_entry(entry) for entry in detail]
    attach_contacts(records, primary)

    summary = summarise(records)
    recomputed = {
        "processed": summary.processed,
        "matched": summary.matched,
        "unmatched": summary.unmatched,
    }
    if reported != recomputed:
        LOGGER.warning(
            "Reported summary %s disagrees with the detail list; using %s", reported, recomputed
        )
    return ReconciliationResult(records=records, summary=summary, source=source)


def reconcile_reply(text: str, primary: UploadedTable) -> ReconciliationResult:
    try:
        payload = extract_json_object(text)
        return result_from_payload(payload, primary, source="remote")
    except (ParseError, ShapeError) as exc:
        LOGGER.warning("Generating fallback result for incomplete reply: %s", exc)
        return synthesise_fallback(primary, str(exc))
