"""Shared fixtures: a throwaway sqlite database, a media root and an in-memory storage server."""

from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from mediavault import database, models, quota
from mediavault.errors import StorageServerError
from mediavault.main import app, get_media_root, get_storage_client, upload_limiter


class FakeStorageServer:
    """Stand-in for StorageServerClient that records calls and can be told to fail."""

    def __init__(self):
        self.files = {}
        self.calls = []
        self.fail = set()
        self.receive_tokens = []
        self.issued_token = None
        self.renamed_token = None
        self.on_receive = None
        self.thumbnail = b"\xff\xd8\xff\xe0fake-jpeg"
        self._counter = 0

    def _record(self, op, *args):
        self.calls.append((op, *args))
        if op in self.fail:
            raise StorageServerError(f"{op} failed")

    def ops(self):
        return [call[0] for call in self.calls]

    def receive(self, path, owner_email, file_name, privacy):
        self._record("receive", owner_email, file_name, privacy)
        data = Path(path).read_bytes()
        if self.on_receive is not None:
            self.on_receive()
        if self.receive_tokens:
            token = self.receive_tokens.pop(0)
        else:
            self._counter += 1
            token = f"tok-{self._counter}"
        self.files[(owner_email, file_name)] = data
        return token

    def rename_file(self, token, new_name, owner_email):
        self._record("rename_file", token, new_name, owner_email)
        return self.renamed_token

    def delete_file(self, owner_email, token=None, file_name=None):
        self._record("delete_file", owner_email, token, file_name)

    def fetch_thumbnail(self, token):
        self._record("fetch_thumbnail", token)
        return self.thumbnail

    def issue_token(self, file_name, owner_email):
        self._record("issue_token", file_name, owner_email)
        return self.issued_token

    def download_url(self, token):
        return f"http://storage.test/api/initiate-download/{token}"

    def close(self):
        pass


@pytest.fixture
def engine(tmp_path):
    engine = database.make_engine(f"sqlite:///{tmp_path / 'mediavault-test.db'}")
    models.Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def media_root(tmp_path):
    root = tmp_path / "videos"
    root.mkdir()
    return root


@pytest.fixture
def storage():
    return FakeStorageServer()


@pytest.fixture
def small_free_plan(monkeypatch):
    """Scale the Free plan down to 500 bytes so quota scenarios stay cheap."""
    monkeypatch.setitem(quota.STORAGE_LIMITS, quota.Plan.FREE, 500)
    return 500


@pytest.fixture
def make_user(db):
    def _make_user(email="a@x.com", plan="Free", used=0, limit=None):
        user = models.User(
            email=email,
            plan=plan,
            storage_used=used,
            storage_limit=quota.limit_for(plan) if limit is None else limit,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make_user


@pytest.fixture
def make_entry(db):
    """Seed a ledger row (and optionally its meta row) directly."""

    def _make_entry(token="tok-1", email="a@x.com", file_name="clip.mp4", size=300, privacy="public", meta=True):
        entry = models.FileToken(token=token, file_path=f"{email}/{file_name}", user_email=email, file_size=size)
        db.add(entry)
        if meta:
            db.add(models.FileMeta(token=token, size=size, privacy=privacy))
        db.commit()
        return entry

    return _make_entry


@pytest.fixture
def client(session_factory, storage, media_root):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[database.get_db] = override_get_db
    app.dependency_overrides[get_storage_client] = lambda: storage
    app.dependency_overrides[get_media_root] = lambda: media_root
    upload_limiter.reset()
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        upload_limiter.reset()
