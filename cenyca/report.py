"""Rendering utilities for machine-readable and human-readable outputs."""
from __future__ import annotations

import csv
import io
import json
from datetime import datetime
from pathlib import Path
from urllib.parse import quote

from .models import NOT_AVAILABLE, ReconciliationRecord, ReconciliationResult

EXPORT_COLUMNS = [
    "Nombre",
    "Monto",
    "Fecha de Operación",
    "Estado",
    "Clave de Rastreo",
    "Número de Referencia",
    "Número de Folio",
    "Concepto",
    "Nota",
    "WhatsApp",
]

MINUTES_SAVED_PER_RECONCILIATION = 75

OUTREACH_TEMPLATE = (
    "Hola {name}, estamos revisando tu pago de ${amount:,.2f} del {date} "
    "(referencia: {reference}) y no logramos identificarlo en nuestro estado de cuenta. "
    "¿Nos podrías compartir tu comprobante? ¡Gracias!"
)


def whatsapp_link(record: ReconciliationRecord) -> str:
    if record.is_matched or not record.phone:
        return ""
    message = OUTREACH_TEMPLATE.format(
        name=record.name or "cliente",
        amount=record.amount,
        date=record.operation_date or "día indicado",
        reference=record.reference_number or NOT_AVAILABLE,
    )
    return f"https://wa.me/{record.phone}?text={quote(message, safe='')}"


def export_row(record: ReconciliationRecord) -> list[str]:
    return [
        record.name,
        f"{record.amount:.2f}",
        record.operation_date,
        "Conciliado" if record.is_matched else "No conciliado",
        record.tracking_key,
        record.reference_number,
        record.folio_number,
        record.concept,
        record.note,
        whatsapp_link(record),
    ]


def render_csv(result: ReconciliationResult) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(EXPORT_COLUMNS)
    for record in result.records:
        writer.writerow(export_row(record))
    return buffer.getvalue()


def write_csv(path: Path, result: ReconciliationResult) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    # BOM so spreadsheet software detects UTF-8 accents in the header.
    with path.open("w", newline="", encoding="utf-8-sig") as handle:
        handle.write(render_csv(result))


def write_json(path: Path, result: ReconciliationResult) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(result.as_json(), handle, indent=2, ensure_ascii=False)


def generate_markdown_summary(result: ReconciliationResult) -> str:
    summary = result.summary

    lines = ["# Conciliación bancaria", ""]
    lines.append(f"Generado: {datetime.now().isoformat(timespec='seconds')}")
    lines.append("")
    lines.append("## Resumen")
    lines.append("")
    lines.append(f"- Movimientos procesados: **{summary.processed}**")
    lines.append(f"- Conciliados: **{summary.matched}**")
    lines.append(f"- No conciliados: **{summary.unmatched}**")
    lines.append(f"- Origen del resultado: {result.source}")
    lines.append(f"- Tiempo ahorrado estimado: {MINUTES_SAVED_PER_RECONCILIATION} minutos")
    lines.append("")

    if summary.error:
        lines.append("> " + summary.error.replace("\n", " "))
        lines.append("")

    unmatched = result.unmatched
    if unmatched:
        lines.append("## Movimientos no conciliados")
        lines.append("")
        lines.append("| Nombre | Monto | Fecha | Referencia | Nota | WhatsApp |")
        lines.append("| --- | --- | --- | --- | --- | --- |")
        for record in unmatched:
            link = whatsapp_link(record)
            lines.append(
                "| {name} | {amount:,.2f} | {date} | {reference} | {note} | {contact} |".format(
                    name=record.name.replace("|", "\\|"),
                    amount=record.amount,
                    date=record.operation_date,
                    reference=record.reference_number.replace("|", "\\|"),
                    note=record.note.replace("|", "\\|"),
                    contact=f"[Enviar mensaje]({link})" if link else "",
                )
            )
        lines.append("")
    else:
        lines.append("Todos los movimientos fueron conciliados.")

    return "\n".join(lines)


def write_markdown(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        handle.write(content)
