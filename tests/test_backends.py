import json
import threading
import pytest
from pathlib import Path
from connvault.lib.backends import (
    open_backend, SQLiteBackend, RecordFileBackend, StoredProfile, StorageError, InvalidRecord
)

KINDS = ['sqlite', 'records']


@pytest.fixture(params=KINDS)
def backend(request, tmp_path: Path):
    b = open_backend(request.param, tmp_path / 'store' / f'profiles.{request.param}')
    b.initialize()
    yield b
    b.close()


def put(b, *records):
    b.begin(write=True)
    for r in records:
        b.upsert(r)
    b.commit()


def read(b):
    b.begin()
    try:
        return b.read_all()
    finally:
        b.commit()


def test_open_backend_types(tmp_path: Path):
    with open_backend('sqlite', tmp_path / 'a.db') as b:
        assert isinstance(b, SQLiteBackend)
    with open_backend('records', tmp_path / 'a.json') as b:
        assert isinstance(b, RecordFileBackend)
    with pytest.raises(StorageError):
        open_backend('redis', tmp_path / 'x')


def test_initialize_is_idempotent(backend):
    put(backend, StoredProfile('a', 'A', 'aa'))
    backend.initialize()
    backend.initialize()
    assert [r.id for r in read(backend)] == ['a']


def test_upsert_overwrites_by_id(backend):
    put(backend, StoredProfile('p1', 'One', '00'))
    put(backend, StoredProfile('p1', 'Uno', '11'))
    assert read(backend) == [StoredProfile('p1', 'Uno', '11')]


def test_read_all_orders_by_name_then_id(backend):
    put(backend, StoredProfile('3', 'beta', 'x'), StoredProfile('2', 'alpha', 'x'), StoredProfile('1', 'beta', 'x'))
    assert [r.id for r in read(backend)] == ['2', '1', '3']


def test_delete_missing_is_noop(backend):
    put(backend, StoredProfile('a', 'A', 'aa'))
    backend.begin(write=True)
    backend.delete('does-not-exist')
    backend.commit()
    assert len(read(backend)) == 1


def test_rollback_discards_changes(backend):
    put(backend, StoredProfile('a', 'A', 'aa'))
    backend.begin(write=True)
    backend.upsert(StoredProfile('b', 'B', 'bb'))
    backend.delete('a')
    backend.rollback()
    assert [r.id for r in read(backend)] == ['a']


def test_operations_require_transaction(backend):
    with pytest.raises(StorageError):
        backend.read_all()
    with pytest.raises(StorageError):
        backend.upsert(StoredProfile('a', 'A', 'aa'))
    with pytest.raises(StorageError):
        backend.commit()


def test_read_transaction_rejects_writes(backend):
    backend.begin()
    with pytest.raises(StorageError):
        backend.upsert(StoredProfile('a', 'A', 'aa'))
    backend.rollback()
    assert read(backend) == []


def test_data_survives_reopen(tmp_path: Path):
    for kind in KINDS:
        path = tmp_path / f'p.{kind}'
        with open_backend(kind, path) as b:
            b.initialize()
            put(b, StoredProfile('a', 'A', 'aa'))
        with open_backend(kind, path) as b:
            b.initialize()
            assert read(b) == [StoredProfile('a', 'A', 'aa')]


def test_transactions_are_serialised(backend):
    backend.begin(write=True)
    backend.upsert(StoredProfile('a', 'A', 'aa'))
    seen = []

    def reader():
        seen.append(len(read(backend)))

    t = threading.Thread(target=reader)
    t.start()
    t.join(timeout=0.2)
    assert seen == []
    backend.commit()
    t.join(timeout=5)
    assert seen == [1]


def test_record_file_commit_replaces_document(tmp_path: Path):
    path = tmp_path / 'profiles.json'
    b = open_backend('records', path)
    b.initialize()
    before = path.read_text()
    b.begin(write=True)
    b.upsert(StoredProfile('a', 'A', 'aa'))
    assert path.read_text() == before
    b.commit()
    doc = json.loads(path.read_text())
    assert doc['format'] == 'connvault-records' and doc['version'] == 1
    assert doc['profiles']['a'] == {'id': 'a', 'name': 'A', 'connection_string': 'aa'}
    assert not (tmp_path / 'profiles.json.tmp').exists()


def test_record_file_rejects_foreign_document(tmp_path: Path):
    path = tmp_path / 'profiles.json'
    path.write_text('{"something": "else"}')
    with pytest.raises(StorageError):
        open_backend('records', path).initialize()
    path.write_text('not json')
    with pytest.raises(StorageError):
        open_backend('records', path).initialize()


def test_sqlite_rejects_non_database(tmp_path: Path):
    path = tmp_path / 'profiles.db'
    path.write_bytes(b'this is not a sqlite database file' * 10)
    b = open_backend('sqlite', path)
    with pytest.raises(StorageError):
        b.initialize()
    b.close()


def test_sqlite_schema(tmp_path: Path):
    import sqlite3
    path = tmp_path / 'profiles.db'
    with open_backend('sqlite', path) as b:
        b.initialize()
    conn = sqlite3.connect(path)
    cols = conn.execute('PRAGMA table_info(connection_profiles)').fetchall()
    conn.close()
    assert [(c[1], c[2], c[3], c[5]) for c in cols] == [
        ('id', 'TEXT', 0, 1), ('name', 'TEXT', 1, 0), ('connection_string', 'TEXT', 1, 0)
    ]


def test_backup_copies_records(backend, tmp_path: Path):
    put(backend, StoredProfile('a', 'A', 'aa'))
    dest = backend.backup(tmp_path / 'bk' / 'copy')
    assert dest.exists()
    with open_backend(backend.kind, dest) as copy:
        copy.initialize()
        assert read(copy) == [StoredProfile('a', 'A', 'aa')]


def test_upsert_rejects_non_string_fields(backend):
    backend.begin(write=True)
    with pytest.raises(InvalidRecord):
        backend.upsert(StoredProfile('a', None, 'aa'))
    backend.upsert(StoredProfile('b', 'B', 'bb'))
    backend.commit()
    assert read(backend) == [StoredProfile('b', 'B', 'bb')]


def test_record_file_with_null_field_is_storage_error(tmp_path: Path):
    path = tmp_path / 'profiles.json'
    path.write_text(json.dumps({
        'format': 'connvault-records', 'version': 1,
        'profiles': {'a': {'id': 'a', 'name': None, 'connection_string': 'aa'}},
    }))
    b = open_backend('records', path)
    b.initialize()
    with pytest.raises(InvalidRecord):
        read(b)
    b.close()


def test_rollback_from_other_thread_leaves_transaction_alone(backend):
    backend.begin(write=True)
    t = threading.Thread(target=backend.rollback)
    t.start()
    t.join(timeout=5)
    backend.upsert(StoredProfile('a', 'A', 'aa'))
    backend.commit()
    assert [r.id for r in read(backend)] == ['a']


def test_close_waits_for_owning_transaction(tmp_path: Path):
    for kind in KINDS:
        path = tmp_path / f'p.{kind}'
        b = open_backend(kind, path)
        b.initialize()
        b.begin(write=True)
        t = threading.Thread(target=b.close)
        t.start()
        t.join(timeout=0.2)
        assert t.is_alive()
        b.upsert(StoredProfile('a', 'A', 'aa'))
        b.commit()
        t.join(timeout=5)
        assert not t.is_alive()
        with open_backend(kind, path) as again:
            again.initialize()
            assert [r.id for r in read(again)] == ['a']


def test_nested_begin_rejected(backend):
    backend.begin()
    with pytest.raises(StorageError):
        backend.begin()
    backend.commit()
