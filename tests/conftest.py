import sys
from pathlib import Path
from types import SimpleNamespace

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from cenyca import llm

BOT_CSV = (
    "Nombre,Monto,Fecha de operación,Hora de operación,Clave de Rastreo,"
    "Número de referencia,Número de folio,Concepto,Teléfono\n"
    "Ana López,100.00,2025-02-10,10:15,MBAN01002502100001,123456,F-1,Colegiatura Ana,"
    "5216645487274_2025-02-10T10:16\n"
    "Luis Pérez,50.50,2025-02-11,12:00,No disponible,654321,,Pago febrero,"
    "5215512345678_2025-02-11T12:01\n"
)

BANK_CSV = (
    "Fecha,Hora,Descripcion,Cargo/Abono,Importe,Referencia,Concepto,Clave de Rastreo,Nombre Ordenante\n"
    "10/02/2025,10:14,SPEI RECIBIDO,+,100.00,123456,Colegiatura,MBAN01002502100001,ANA LOPEZ GARCIA\n"
    "11/02/2025,09:00,PAGO TARJETA,-,50.50,999,Tarjeta,,\n"
)


class StubClient:
    """Stands in for the OpenAI SDK client; replies with ``reply`` or raises ``error``."""

    def __init__(self) -> None:
        self.reply = ""
        self.error: Exception | None = None
        self.calls: list[dict] = []
        self.chat = SimpleNamespace(completions=self)

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.reply)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


@pytest.fixture(autouse=True)
def stub_client(monkeypatch, tmp_path):
    """Keep tests offline and away from the real quota file."""

    monkeypatch.setenv("CENYCA_QUOTA_FILE", str(tmp_path / "quota.json"))
    stub = StubClient()
    llm.set_client_for_testing(stub)
    yield stub
    llm.set_client_for_testing(None)


@pytest.fixture
def bot_file(tmp_path: Path) -> Path:
    path = tmp_path / "Bot_Finanzas.csv"
    path.write_text(BOT_CSV, encoding="utf-8")
    return path


@pytest.fixture
def bank_file(tmp_path: Path) -> Path:
    path = tmp_path / "movimientos_cheque.csv"
    path.write_text(BANK_CSV, encoding="utf-8")
    return path
