import json
import threading
from datetime import datetime
from pathlib import Path

import httpx
import openai
import pytest

from cenyca import cli, llm
from cenyca.models import MATCHED, UNMATCHED
from cenyca.normalization import FileError
from cenyca.pipeline import ReconciliationSession, SessionBusy, State, run_reconciliation
from cenyca.quota import InMemoryQuotaStore, QuotaExceeded, QuotaGate
from cenyca.response import FALLBACK_NOTE

REQUEST = httpx.Request("POST", "https://example.test/chat/completions")

GOOD_REPLY = """Aquí está el resultado de la conciliación:
{
  "resumen": {"total_procesados": 2, "total_conciliados": 1, "total_no_conciliados": 1},
  "detalle": [
    {"Nombre": "Ana López", "Monto": 100.0, "Fecha_operacion": "2025-02-10",
     "Clave_Rastreo": "MBAN01002502100001", "Numero_referencia": "123456",
     "Numero_folio": "F-1", "Concepto": "Colegiatura Ana", "Estado": "conciliado", "Nota": ""},
    {"Nombre": "Luis Pérez", "Monto": 50.5, "Fecha_operacion": "2025-02-11",
     "Clave_Rastreo": "No disponible", "Numero_referencia": "654321",
     "Numero_folio": "No disponible", "Concepto": "Pago febrero", "Estado": "no_conciliado",
     "Nota": "No se encontró coincidencia por Clave/Referencia/Monto/Fecha"}
  ]
}"""


def make_gate(used=0, limit=300):
    store = InMemoryQuotaStore({"2025-02": used})
    return QuotaGate(store, limit=limit, clock=lambda: datetime(2025, 2, 20))


def test_successful_attempt_uses_model_reply(stub_client, bot_file, bank_file):
    stub_client.reply = GOOD_REPLY
    gate = make_gate()
    session = ReconciliationSession(quota=gate)

    result = session.submit(bot_file, bank_file)

    assert result.source == "remote"
    assert [record.status for record in result.records] == [MATCHED, UNMATCHED]
    assert result.unmatched[0].phone == "525512345678"
    assert gate.status().used == 1
    assert session.result is result
    assert session.state is State.IDLE
    assert len(stub_client.calls) == 1


def test_timeout_degrades_to_fallback_and_releases_quota(stub_client, bot_file, bank_file):
    stub_client.error = openai.APITimeoutError(request=REQUEST)
    gate = make_gate(used=10)

    result = ReconciliationSession(quota=gate).submit(bot_file, bank_file)

    assert result.source == "fallback"
    assert len(result.records) == 2
    assert all(record.note == FALLBACK_NOTE for record in result.records)
    assert "no está relacionado con el tamaño de tus archivos" in result.summary.error
    assert gate.status().used == 10


def test_remote_error_degrades_to_fallback(stub_client, bot_file, bank_file):
    stub_client.error = openai.APIStatusError(
        "bad", response=httpx.Response(500, request=REQUEST), body=None
    )

    result = ReconciliationSession(quota=make_gate()).submit(bot_file, bank_file)

    summary = result.summary
    assert (summary.processed, summary.matched, summary.unmatched) == (2, 0, 2)
    assert "HTTP 500" in result.summary.error


def test_unexpected_sdk_error_releases_quota(stub_client, bot_file, bank_file):
    stub_client.error = openai.APIResponseValidationError(
        response=httpx.Response(200, request=REQUEST), body=None
    )
    gate = make_gate(used=3)

    result = ReconciliationSession(quota=gate).submit(bot_file, bank_file)

    assert result.source == "fallback"
    assert gate.status().used == 3

def test_garbage_reply_still_covers_every_row(stub_client, bot_file, bank_file):
    stub_client.reply = "Lo siento, hubo un problema."
    gate = make_gate()

    result = ReconciliationSession(quota=gate).submit(bot_file, bank_file)

    assert [record.status for record in result.records] == [UNMATCHED, UNMATCHED]
    assert gate.status().used == 1


def test_file_errors_block_before_quota_and_network(stub_client, tmp_path, bank_file):
    bad = tmp_path / "Bot_Finanzas.txt"
    bad.write_text("Nombre,Monto\nAna,100\n")
    gate = make_gate()
    session = ReconciliationSession(quota=gate)

    with pytest.raises(FileError):
        session.submit(bad, bank_file)

    assert stub_client.calls == []
    assert gate.status().used == 0
    assert session.result is None
    assert session.state is State.IDLE


def test_quota_exhaustion_blocks_before_network(stub_client, bot_file, bank_file):
    gate = make_gate(used=300)

    with pytest.raises(QuotaExceeded):
        ReconciliationSession(quota=gate).submit(bot_file, bank_file)

    assert stub_client.calls == []


def test_new_attempt_clears_previous_result(stub_client, bot_file, bank_file, tmp_path):
    stub_client.reply = GOOD_REPLY
    session = ReconciliationSession(quota=make_gate())
    session.submit(bot_file, bank_file)

    with pytest.raises(FileError):
        session.submit(tmp_path / "otro.xlsx", bank_file)
    assert session.result is None


def test_concurrent_submission_is_refused(stub_client, bot_file, bank_file):
    entered = threading.Event()
    release = threading.Event()
    session = ReconciliationSession(quota=make_gate())

    def slow_create(**kwargs):
        entered.set()
        release.wait(5)
        raise openai.APITimeoutError(request=REQUEST)

    stub_client.create = slow_create
    worker = threading.Thread(target=session.submit, args=(bot_file, bank_file))
    worker.start()
    try:
        assert entered.wait(5)
        assert session.busy
        assert session.state is State.INVOKING
        with pytest.raises(SessionBusy):
            session.submit(bot_file, bank_file)
    finally:
        release.set()
        worker.join(5)
    assert not session.busy


def test_local_matcher_is_used_without_api_key(monkeypatch, bot_file, bank_file):
    monkeypatch.delenv("CENYCA_LLM_API_KEY", raising=False)
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    llm.set_client_for_testing(None)
    gate = make_gate()

    result = ReconciliationSession(quota=gate).submit(bot_file, bank_file)

    assert result.source == "local"
    assert [(r.name, r.status) for r in result.records] == [
        ("Ana López", MATCHED),
        ("Luis Pérez", UNMATCHED),
    ]
    assert result.unmatched[0].phone == "525512345678"
    assert gate.status().used == 0


def test_run_reconciliation_writes_artefacts(stub_client, bot_file, bank_file, tmp_path: Path):
    stub_client.reply = GOOD_REPLY
    out_dir = tmp_path / "out"

    result = run_reconciliation(primary_path=bot_file, counterparty_path=bank_file, out_dir=out_dir)

    csv_lines = (out_dir / "conciliacion.csv").read_text(encoding="utf-8-sig").splitlines()
    assert len(csv_lines) == 3
    payload = json.loads((out_dir / "conciliacion.json").read_text(encoding="utf-8"))
    assert payload["summary"] == {"processed": 2, "matched": 1, "unmatched": 1, "error": None}
    assert "Luis Pérez" in (out_dir / "conciliacion.md").read_text(encoding="utf-8")
    assert result.summary.processed == 2


def test_cli_run_local(bot_file, bank_file, tmp_path: Path, capsys):
    exit_code = cli.main(
        [
            "run",
            "--primary-file",
            str(bot_file),
            "--counterparty-file",
            str(bank_file),
            "--out-dir",
            str(tmp_path / "cli"),
            "--local",
        ]
    )

    assert exit_code == 0
    assert "Conciliados: 1" in capsys.readouterr().out
    assert (tmp_path / "cli" / "conciliacion.csv").exists()


def test_cli_reports_file_errors(tmp_path: Path, bank_file, capsys):
    exit_code = cli.main(
        ["run", "--primary-file", str(tmp_path / "x.txt"), "--counterparty-file", str(bank_file)]
    )

    assert exit_code == 2
    assert "CSV" in capsys.readouterr().err


def test_cli_quota_status(capsys):
    assert cli.main(["quota"]) == 0
    assert "0/300" in capsys.readouterr().out


def test_cli_reports_damaged_quota_file(stub_client, bot_file, bank_file, tmp_path: Path, monkeypatch, capsys):
    quota_file = tmp_path / "danado.json"
    quota_file.write_text("{", encoding="utf-8")
    monkeypatch.setenv("CENYCA_QUOTA_FILE", str(quota_file))

    exit_code = cli.main(
        ["run", "--primary-file", str(bot_file), "--counterparty-file", str(bank_file),
         "--out-dir", str(tmp_path / "cli")]
    )

    assert exit_code == 2
    assert "danado.json" in capsys.readouterr().err
    assert stub_client.calls == []
