"""Utilities for validating, reading and normalising uploaded CSV files."""
from __future__ import annotations

import csv
import io
import logging
import math
import re
from datetime import date, datetime
from pathlib import Path

from .models import UploadedTable

LOGGER = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 5 * 1024 * 1024

DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y", "%d.%m.%Y", "%Y/%m/%d")

COUNTRY_CODE = "52"

_AMOUNT_NOISE = re.compile(r"[\s$,]|MXN", re.IGNORECASE)
_NON_DIGITS = re.compile(r"\D")


class FileError(RuntimeError):
    """Raised when an upload is rejected before it is parsed."""


class FormatError(FileError):
    """Raised when an upload cannot be parsed as CSV."""


class NormalizationError(RuntimeError):
    """Raised when a value cannot be normalised."""


def validate_upload(path: Path) -> None:
    if path.suffix.lower() != ".csv":
        raise FileError(f"El archivo debe ser de tipo CSV: {path.name}")
    if not path.exists():
        raise FileNotFoundError(path)
    size = path.stat().st_size
    if size > MAX_UPLOAD_BYTES:
        raise FileError(
            f"El archivo no debe superar los 5MB: {path.name} ({size} bytes)"
        )


def parse_table(text: str, *, name: str) -> UploadedTable:
    """Parse CSV text into an :class:`UploadedTable`.

    The first row provides the headers. Blank lines are skipped, and a row
    with more or fewer cells than the header is reported as a format error
    instead of being padded.
    """

    reader = csv.reader(io.StringIO(text, newline=""), strict=True)
    try:
        headers = next(reader, None)
        if headers is None:
            raise FormatError(f"{name} no contiene encabezados")
        headers = [header.strip() for header in headers]
        rows: list[dict[str, str]] = []
        for cells in reader:
            if not any(cell.strip() for cell in cells):
                continue
            if len(cells) != len(headers):
                raise FormatError(
                    f"Error al parsear CSV {name}: la línea {reader.line_num} tiene "
                    f"{len(cells)} campos, se esperaban {len(headers)}"
                )
            rows.append(dict(zip(headers, cells)))
    except csv.Error as exc:
        raise FormatError(f"Error al parsear CSV {name}: {exc}") from exc

    if not rows:
        raise FormatError(f"{name} no contiene datos o el formato es incorrecto")

    LOGGER.info("Loaded %s with %d rows; columns: %s", name, len(rows), ", ".join(headers))
    return UploadedTable(name=name, headers=headers, rows=rows)


def load_table(path: Path) -> UploadedTable:
    validate_upload(path)
    with path.open(newline="", encoding="utf-8-sig", errors="replace") as handle:
        text = handle.read()
    return parse_table(text, name=path.name)


def serialise_table(table: UploadedTable) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=table.headers, lineterminator="\n")
    writer.writeheader()
    writer.writerows(table.rows)
    return buffer.getvalue()


def parse_date(raw: str) -> date:
    for pattern in DATE_FORMATS:
        try:
            return datetime.strptime(raw.strip(), pattern).date()
        except ValueError:
            continue
    raise NormalizationError(f"Unrecognised date format: {raw}")


def coerce_amount(raw: object) -> float:
    """Return ``raw`` as a float, or ``0.0`` when it is not a number."""

    if isinstance(raw, bool):
        return 0.0
    if isinstance(raw, (int, float)):
        value = float(raw)
    elif isinstance(raw, str):
        try:
            value = float(_AMOUNT_NOISE.sub("", raw))
        except ValueError:
            return 0.0
    else:
        return 0.0
    return value if math.isfinite(value) else 0.0


def extract_phone_digits(raw: str) -> str:
    """Pull the national ten-digit number out of a captured sender token.

    Tokens look like ``5216645487274_2025-02-11T10:00`` or ``+52 1 664 548 7274``;
    everything after the first underscore is message metadata.
    """

    token = raw.split("_", 1)[0]
    digits = _NON_DIGITS.sub("", token)
    if len(digits) > 10:
        digits = digits[-10:]
    return digits


def normalise_phone(digits: str) -> str:
    digits = _NON_DIGITS.sub("", digits)
    if not digits:
        return ""
    if len(digits) == 10 or not digits.startswith(COUNTRY_CODE):
        digits = COUNTRY_CODE + digits
    if digits.startswith(COUNTRY_CODE + "1") and len(digits) > 12:
        digits = COUNTRY_CODE + digits[len(COUNTRY_CODE) + 1 :]
    return digits


PRIMARY_COLUMNS = {
    "name": ("Nombre", "nombre"),
    "amount": ("Monto", "monto"),
    "date": ("Fecha de operación", "Fecha de operacion", "Fecha_operacion"),
    "time": ("Hora de operación", "Hora de operacion"),
    "tracking_key": ("Clave de Rastreo", "Clave de rastreo"),
    "reference_number": ("Número de referencia", "Numero de referencia", "Número de Referencia"),
    "folio_number": ("Número de folio", "Numero de folio", "Número de Folio"),
    "concept": ("Concepto", "concepto"),
}

# Sender tokens are captured under different headers depending on the bot version.
PHONE_COLUMNS = (
    "Teléfono",
    "Telefono",
    "WhatsApp",
    "Número de WhatsApp",
    "Celular",
    "Remitente",
    "ID Mensaje",
)


def row_value(row: dict[str, str], field: str) -> str:
    for column in PRIMARY_COLUMNS[field]:
        value = row.get(column)
        if value is not None and value.strip():
            return value.strip()
    return ""


def row_phone(row: dict[str, str]) -> str:
    for column in PHONE_COLUMNS:
        value = row.get(column)
        if value and value.strip():
            return normalise_phone(extract_phone_digits(value))
    return ""


def primary_entry(row: dict[str, str]) -> dict[str, object]:
    """Render a primary row in the shape of a model detail entry."""

    return {
        "Nombre": row_value(row, "name"),
        "Monto": coerce_amount(row_value(row, "amount")),
        "Fecha_operacion": row_value(row, "date"),
        "Clave_Rastreo": row_value(row, "tracking_key"),
        "Numero_referencia": row_value(row, "reference_number"),
        "Numero_folio": row_value(row, "folio_number"),
        "Concepto": row_value(row, "concept"),
    }
