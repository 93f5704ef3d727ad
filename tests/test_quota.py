import json
from datetime import datetime
from pathlib import Path

import pytest

from cenyca.quota import (
    MONTHLY_CONCILIATION_LIMIT,
    InMemoryQuotaStore,
    JsonQuotaStore,
    QuotaExceeded,
    QuotaGate,
    QuotaStoreError,
)


def fixed_clock(year=2025, month=2):
    return lambda: datetime(year, month, 15, 12, 0)


def test_reserve_counts_against_current_month():
    gate = QuotaGate(InMemoryQuotaStore(), limit=2, clock=fixed_clock())

    gate.reserve()
    state = gate.status()

    assert state.period == "2025-02"
    assert state.used == 1
    assert state.remaining == 1
    assert not state.limit_reached


def test_reserve_rejects_once_limit_is_reached():
    gate = QuotaGate(InMemoryQuotaStore({"2025-02": 2}), limit=2, clock=fixed_clock())

    with pytest.raises(QuotaExceeded) as excinfo:
        gate.reserve()

    assert excinfo.value.state.limit_reached
    assert excinfo.value.state.remaining == 0
    assert gate.status().used == 2


def test_release_returns_reservation_once():
    gate = QuotaGate(InMemoryQuotaStore(), limit=5, clock=fixed_clock())

    reservation = gate.reserve()
    gate.release(reservation)
    gate.release(reservation)

    assert gate.status().used == 0


def test_new_month_starts_from_zero():
    store = InMemoryQuotaStore({"2025-01": MONTHLY_CONCILIATION_LIMIT})
    gate = QuotaGate(store, clock=fixed_clock(2025, 2))

    assert gate.status().used == 0
    assert gate.status().limit == MONTHLY_CONCILIATION_LIMIT


def test_json_store_persists_between_instances(tmp_path: Path):
    path = tmp_path / "state" / "quota.json"
    QuotaGate(JsonQuotaStore(path), clock=fixed_clock()).reserve()
    QuotaGate(JsonQuotaStore(path), clock=fixed_clock()).reserve()

    assert json.loads(path.read_text()) == {"2025-02": 2}
    assert QuotaGate(JsonQuotaStore(path), clock=fixed_clock()).status().used == 2


def test_from_env_reads_path_and_limit(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("CENYCA_QUOTA_FILE", str(tmp_path / "q.json"))
    monkeypatch.setenv("CENYCA_MONTHLY_LIMIT", "1")

    gate = QuotaGate.from_env()
    gate.reserve()
    with pytest.raises(QuotaExceeded):
        gate.reserve()


@pytest.mark.parametrize("content", ["{not json", "[1, 2]", '{"2025-02": "muchas"}'])
def test_damaged_quota_file_is_reported_with_its_path(tmp_path: Path, content):
    path = tmp_path / "quota.json"
    path.write_text(content, encoding="utf-8")
    gate = QuotaGate(JsonQuotaStore(path), clock=fixed_clock())

    with pytest.raises(QuotaStoreError, match="quota.json"):
        gate.reserve()
    assert path.read_text(encoding="utf-8") == content
