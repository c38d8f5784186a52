from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from domain.errors import StageWriteError
from infrastructure.filesystem.storage import StagingStore, subject_slug


def test_subject_slug():
    assert subject_slug("Re: Factura #123 (marzo)") == "Re_Factura_123_marzo"
    assert subject_slug("   ") == ""
    assert len(subject_slug("x" * 200)) == 50


def test_unit_name_and_id_roundtrip(make_record):
    rec = make_record(message_id="AAMk_a/b+c==", subject="Hola mundo")

    name = StagingStore.unit_name(rec)

    assert name.startswith("2024-03-01_12-00-00_Hola_mundo_")
    assert name.endswith(".json")
    assert "/" not in name
    assert StagingStore.id_from_name(name) == "AAMk_a/b+c=="


def test_put_and_load(tmp_path, make_record):
    store = StagingStore(tmp_path / "staging")
    rec = make_record(subject="Presupuesto", body="Adjunto el presupuesto")

    path = store.put(rec, downloaded_at=datetime(2024, 3, 2, tzinfo=timezone.utc))

    assert store.exists(path)
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["downloadedAt"] == "2024-03-02T00:00:00Z"
    assert data["subject"] == "Presupuesto"
    loaded = store.load(path)
    assert loaded.id == rec.id
    assert loaded.body.content == "Adjunto el presupuesto"
    assert loaded.received_at == rec.received_at


def test_no_temp_files_left_behind(tmp_path, make_record):
    store = StagingStore(tmp_path)
    store.put(make_record())
    assert [p.name.startswith(".") for p in tmp_path.iterdir()] == [False]


def test_put_replaces_previous_unit_of_same_id(tmp_path, make_record):
    store = StagingStore(tmp_path)
    store.put(make_record(subject="Borrador"))
    store.put(make_record(subject="Definitivo"))

    units = store.list_units()
    assert len(units) == 1
    assert store.load(units[0]).subject == "Definitivo"


def test_list_units_in_chronological_order(tmp_path, make_record):
    store = StagingStore(tmp_path)
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    for i in (3, 1, 2):
        store.put(make_record(message_id=f"m{i}", received_at=base + timedelta(days=i)))
    (tmp_path / "notas.txt").write_text("ignorar")
    (tmp_path / ".tmp-abc.json").write_text("{}")

    assert [store.id_from_name(p.name) for p in store.list_units()] == ["m1", "m2", "m3"]
    assert store.staged_ids() == {"m1", "m2", "m3"}


def test_list_units_of_missing_dir(tmp_path):
    assert StagingStore(tmp_path / "no-existe").list_units() == []


def test_load_rejects_non_object(tmp_path):
    p = tmp_path / "x.json"
    p.write_text("[1, 2]")
    with pytest.raises(ValueError):
        StagingStore(tmp_path).load(p)


def test_write_failure_is_stage_write_error(tmp_path, make_record):
    blocker = tmp_path / "fichero"
    blocker.write_text("no soy un directorio")
    with pytest.raises(StageWriteError):
        StagingStore(blocker / "sub").put(make_record())


def test_cleanup(tmp_path, make_record):
    store = StagingStore(tmp_path / "staging")
    store.put(make_record())
    store.cleanup()
    assert not (tmp_path / "staging").exists()
    store.cleanup()


def test_directory_is_listed_once_per_store(tmp_path, make_record):
    class CountingStore(StagingStore):
        listings = 0

        def list_units(self):
            self.listings += 1
            return super().list_units()

    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    store = CountingStore(tmp_path)
    for i in range(20):
        store.put(make_record(message_id=f"m{i}", received_at=base + timedelta(hours=i)))
    store.put(make_record(message_id="m3", subject="Corregido", received_at=base + timedelta(hours=3)))

    assert store.listings == 1
    assert len(StagingStore(tmp_path).list_units()) == 20
    assert "m3" in store.staged_ids()


def test_replacement_found_by_a_fresh_store(tmp_path, make_record):
    StagingStore(tmp_path).put(make_record(subject="Zeta"))
    StagingStore(tmp_path).put(make_record(subject="Alfa"))

    units = StagingStore(tmp_path).list_units()
    assert [StagingStore(tmp_path).load(p).subject for p in units] == ["Alfa"]
