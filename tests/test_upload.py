"""Tests for the upload saga."""

import io

import pytest

from mediavault import crud, models
from mediavault.coordinators import UploadCoordinator, UploadRequest, staging_dir
from mediavault.errors import QuotaExceeded, UnsupportedType, UploadFailed, UserNotFound
from mediavault.quota import Plan


def do_upload(db, storage, media_root, name="clip.mp4", data=b"x" * 300, email="a@x.com",
              privacy="public", declared=None):
    request = UploadRequest(
        owner_email=email,
        file_name=name,
        source=io.BytesIO(data),
        declared_size=declared,
        privacy=privacy,
    )
    return UploadCoordinator(db, storage, media_root).upload(request)


def ledger_rows(db):
    db.expire_all()
    return db.query(models.FileToken).all()


def meta_rows(db):
    db.expire_all()
    return db.query(models.FileMeta).all()


def staged_files(media_root):
    return list(staging_dir(media_root).glob("*"))


def used_by(db, email="a@x.com"):
    db.expire_all()
    return crud.get_user(db, email).storage_used


class TestSuccessfulUpload:
    def test_charges_quota_and_creates_one_ledger_and_meta_row(self, db, storage, media_root, make_user, small_free_plan):
        make_user(used=100)

        outcome = do_upload(db, storage, media_root, data=b"x" * 300, privacy="private")

        assert outcome.token == "tok-1"
        assert outcome.storage_used == 400
        assert outcome.storage_limit == 500
        assert outcome.remaining_storage == 100
        assert outcome.plan is Plan.FREE
        assert outcome.privacy == "private"
        assert outcome.views == 0
        assert outcome.size == 300
        assert outcome.updated is False
        assert used_by(db) == 400

        [entry] = ledger_rows(db)
        assert (entry.token, entry.file_path, entry.user_email, entry.file_size) == (
            "tok-1", "a@x.com/clip.mp4", "a@x.com", 300,
        )
        [meta] = meta_rows(db)
        assert (meta.token, meta.size, meta.privacy) == ("tok-1", 300, "private")

    def test_transfers_bytes_and_purges_staged_copy(self, db, storage, media_root, make_user, small_free_plan):
        make_user()

        do_upload(db, storage, media_root, data=b"payload")

        assert storage.files[("a@x.com", "clip.mp4")] == b"payload"
        assert storage.calls[0] == ("receive", "a@x.com", "clip.mp4", "public")
        assert staged_files(media_root) == []

    def test_repairs_stale_cached_limit(self, db, storage, media_root, make_user, small_free_plan):
        make_user(limit=5 * 1024 ** 3)

        outcome = do_upload(db, storage, media_root)

        assert outcome.storage_limit == 500
        db.expire_all()
        assert crud.get_user(db, "a@x.com").storage_limit == 500

    def test_extension_check_is_case_insensitive(self, db, storage, media_root, make_user, small_free_plan):
        make_user()

        outcome = do_upload(db, storage, media_root, name="CLIP.MOV")

        assert outcome.file_name == "CLIP.MOV"


class TestReupload:
    def test_reuses_token_and_updates_meta(self, db, storage, media_root, make_user, small_free_plan):
        make_user()
        first = do_upload(db, storage, media_root, data=b"x" * 100, privacy="public")
        second = do_upload(db, storage, media_root, data=b"y" * 150, privacy="private")

        assert second.token == first.token == "tok-1"
        assert second.updated is True
        [entry] = ledger_rows(db)
        assert entry.file_size == 150
        [meta] = meta_rows(db)
        assert (meta.size, meta.privacy) == (150, "private")
        assert storage.ops() == ["receive", "receive"]

    def test_identical_bytes_do_not_double_count(self, db, storage, media_root, make_user, small_free_plan):
        make_user()
        do_upload(db, storage, media_root, data=b"x" * 200)
        outcome = do_upload(db, storage, media_root, data=b"x" * 200)

        assert outcome.storage_used == 200
        assert used_by(db) == 200

    def test_same_name_for_another_user_is_a_new_file(self, db, storage, media_root, make_user, small_free_plan):
        make_user("a@x.com")
        make_user("b@x.com")
        do_upload(db, storage, media_root, email="a@x.com")
        do_upload(db, storage, media_root, email="b@x.com")

        assert sorted(e.token for e in ledger_rows(db)) == ["tok-1", "tok-2"]

    def test_smaller_reupload_refunds_the_difference(self, db, storage, media_root, make_user, small_free_plan):
        make_user()
        do_upload(db, storage, media_root, data=b"x" * 300)

        outcome = do_upload(db, storage, media_root, data=b"x" * 100)

        assert outcome.storage_used == 100
        assert used_by(db) == 100

    def test_smaller_reupload_never_drives_usage_negative(self, db, storage, media_root, make_user, make_entry, small_free_plan):
        # usage has drifted below the recorded ledger size
        make_user(used=0)
        make_entry(size=300)

        outcome = do_upload(db, storage, media_root, data=b"x" * 100)

        assert outcome.storage_used == 0
        assert used_by(db) == 0
        [entry] = ledger_rows(db)
        assert entry.file_size == 100


class TestRejectedUpload:
    def test_quota_scenario(self, db, storage, media_root, make_user, small_free_plan):
        # a@x.com on Free (limit scaled to 500): 400 fits, a further 150 does not
        make_user()
        first = do_upload(db, storage, media_root, name="first.mp4", data=b"x" * 400)
        assert (first.storage_used, first.remaining_storage) == (400, 100)

        with pytest.raises(QuotaExceeded) as excinfo:
            do_upload(db, storage, media_root, name="second.mp4", data=b"x" * 150)

        assert excinfo.value.remaining == 100
        assert excinfo.value.attempted == 150
        assert excinfo.value.payload() == {
            "error": "File size exceeds remaining storage capacity",
            "remainingStorage": 100,
            "fileSize": 150,
        }
        assert used_by(db) == 400
        assert len(ledger_rows(db)) == 1
        assert len(meta_rows(db)) == 1
        assert staged_files(media_root) == []
        assert storage.ops() == ["receive"]

    def test_declared_size_is_checked(self, db, storage, media_root, make_user, small_free_plan):
        make_user()

        with pytest.raises(QuotaExceeded):
            do_upload(db, storage, media_root, data=b"x" * 10, declared=501)

        assert storage.calls == []

    def test_rejected_upload_still_repairs_limit(self, db, storage, media_root, make_user, small_free_plan):
        make_user(limit=10 ** 9)

        with pytest.raises(QuotaExceeded):
            do_upload(db, storage, media_root, data=b"x" * 600)

        db.expire_all()
        assert crud.get_user(db, "a@x.com").storage_limit == 500

    def test_unsupported_type(self, db, storage, media_root, make_user, small_free_plan):
        make_user()

        with pytest.raises(UnsupportedType):
            do_upload(db, storage, media_root, name="notes.txt")

        assert storage.calls == []
        assert used_by(db) == 0
        assert ledger_rows(db) == []
        assert meta_rows(db) == []
        assert staged_files(media_root) == []

    def test_unknown_owner(self, db, storage, media_root):
        with pytest.raises(UserNotFound):
            do_upload(db, storage, media_root, email="ghost@x.com")

        assert storage.calls == []
        assert staged_files(media_root) == []
        assert not (media_root / "ghost@x.com").exists()

    def test_transfer_failure_leaves_no_records(self, db, storage, media_root, make_user, small_free_plan):
        make_user()
        storage.fail.add("receive")

        with pytest.raises(UploadFailed) as excinfo:
            do_upload(db, storage, media_root)

        assert excinfo.value.status_code == 502
        assert used_by(db) == 0
        assert ledger_rows(db) == []
        assert meta_rows(db) == []
        assert staged_files(media_root) == []


class TestMetaReconciliation:
    def test_existing_meta_row_is_updated_not_duplicated(self, db, storage, media_root, make_user, small_free_plan):
        make_user()
        # registered out of band before the ledger entry exists
        db.add(models.FileMeta(token="tok-1", size=1, privacy="public", views=7))
        db.commit()

        outcome = do_upload(db, storage, media_root, data=b"x" * 300, privacy="private")

        assert outcome.views == 7
        [meta] = meta_rows(db)
        assert (meta.size, meta.privacy, meta.views) == (300, "private", 7)
        assert len(ledger_rows(db)) == 1


class TestTokenFallback:
    def test_issued_token_when_receive_returns_none(self, db, storage, media_root, make_user, small_free_plan):
        make_user()
        storage.receive_tokens = [None]
        storage.issued_token = "issued-1"

        outcome = do_upload(db, storage, media_root)

        assert outcome.token == "issued-1"
        assert storage.ops() == ["receive", "issue_token"]

    def test_local_token_when_server_has_none(self, db, storage, media_root, make_user, small_free_plan):
        make_user()
        storage.receive_tokens = [None]
        storage.fail.add("issue_token")

        outcome = do_upload(db, storage, media_root)

        assert len(outcome.token) == 32
        [entry] = ledger_rows(db)
        assert entry.token == outcome.token


class TestConcurrentUploads:
    def test_racing_uploads_can_overrun_the_limit(self, db, session_factory, storage, media_root, make_user, small_free_plan):
        """
        Check-then-act: both uploads pass the quota check against the same
        stale usage. The relative update keeps both charges (no lost update),
        so usage ends above the limit.
        """
        make_user()
        other = session_factory()

        def race():
            storage.on_receive = None
            do_upload(other, storage, media_root, name="other.mp4", data=b"x" * 300)

        storage.on_receive = race
        try:
            do_upload(db, storage, media_root, name="clip.mp4", data=b"x" * 300)
        finally:
            other.close()

        assert used_by(db) == 600
        assert len(ledger_rows(db)) == 2
