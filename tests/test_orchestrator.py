"""Client orchestration, end-to-end against the app and against scripted APIs."""

from unittest.mock import MagicMock

import pytest

from chunkvault.chunker import split
from chunkvault.client.api import UploadApiClient
from chunkvault.client.orchestrator import UploadOrchestrator, UploadState, upload_file
from chunkvault.exceptions import (
    AuthExpired,
    ReadError,
    SessionInitError,
    TransferFailed,
    UploadCancelled,
)
from chunkvault.hashing import hash_bytes

MiB = 1024 * 1024
CHUNK = 16
DATA = bytes(range(100))  # 7 parts of 16 bytes, last one 4


class RecordingApi(UploadApiClient):
    """Real client that records part attempts and can inject failures."""

    def __init__(self, *args, fake_redis=None, expire_before=None, drop_at=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.fake_redis = fake_redis
        self.expire_before = dict(expire_before or {})
        self.drop_at = drop_at
        self.attempts = []
        self.refreshes = 0

    def upload_part(self, session_id, part_number, data, credential):
        self.attempts.append(part_number)
        if self.expire_before.get(part_number, 0) > 0:
            self.expire_before[part_number] -= 1
            self.fake_redis.expire_now("upload_credential:*")
        if part_number == self.drop_at:
            self.drop_at = None
            raise TransferFailed("connection reset", session_id=session_id, part_number=part_number)
        return super().upload_part(session_id, part_number, data, credential)

    def refresh_credential(self, session_id, content_hash):
        self.refreshes += 1
        return super().refresh_credential(session_id, content_hash)


@pytest.fixture
def recording_api(client, fake_redis):
    def _make(**kwargs):
        return RecordingApi("http://testserver", timeout=5, http=client, fake_redis=fake_redis, **kwargs)
    return _make


def preload_parts(api, path, data, part_numbers, chunk_size=CHUNK, parent_id=""):
    """Simulate an earlier run that stored some parts and then dropped."""
    plan = split(len(data), chunk_size)
    init = api.init_upload(path.name, len(data), hash_bytes(data), len(plan), parent_id, chunk_size)
    for r in plan:
        if r.part_number in part_numbers:
            api.upload_part(init["session_id"], r.part_number, data[r.start:r.end], init["credential"])
    return init["session_id"]


def test_upload_then_identical_content_is_instant(api, make_file, fake_s3):
    first = upload_file(api, make_file(DATA, "a.bin"), parent_id="root", chunk_size=CHUNK)

    assert first.instant is False
    assert first.parts_transferred == [1, 2, 3, 4, 5, 6, 7]
    assert first.file["size"] == len(DATA)
    puts = len(fake_s3.put_calls)

    second = upload_file(api, make_file(DATA, "b.bin"), parent_id="root", chunk_size=CHUNK)

    assert second.instant is True
    assert second.content_hash == first.content_hash
    assert second.parts_transferred == []
    assert second.file["name"] == "b.bin"
    assert second.file["id"] != first.file["id"]
    assert len(fake_s3.put_calls) == puts


def test_resume_transfers_only_missing_tail(recording_api, make_file, fake_s3):
    path = make_file(DATA)
    api = recording_api()
    session_id = preload_parts(api, path, DATA, {1, 2, 3})
    api.attempts.clear()

    orchestrator = UploadOrchestrator(api, path, chunk_size=CHUNK)
    result = orchestrator.run()

    assert result.session_id == session_id
    assert api.attempts == [4, 5, 6, 7]
    assert result.parts_skipped == [1, 2, 3]
    assert fake_s3.read(f"objects/{hash_bytes(DATA)}") == DATA


def test_five_mib_scenario_resumes_only_part_two(recording_api, make_file):
    data = bytes(range(256)) * (5 * MiB // 256)
    path = make_file(data, "big.bin")
    api = recording_api()
    preload_parts(api, path, data, {1, 3}, chunk_size=2 * MiB)
    api.attempts.clear()

    result = upload_file(api, path, chunk_size=2 * MiB)

    assert api.attempts == [2]
    assert result.parts_skipped == [1, 3]
    assert result.file["size"] == 5 * MiB


def test_drop_mid_transfer_then_rerun(recording_api, make_file):
    path = make_file(DATA)
    api = recording_api(drop_at=4)

    orchestrator = UploadOrchestrator(api, path, chunk_size=CHUNK)
    with pytest.raises(TransferFailed) as exc_info:
        orchestrator.run()

    assert orchestrator.state == UploadState.FAILED
    assert exc_info.value.part_number == 4
    assert exc_info.value.session_id == orchestrator.session_id
    api.attempts.clear()

    result = UploadOrchestrator(api, path, chunk_size=CHUNK).run()

    assert result.session_id == orchestrator.session_id
    assert api.attempts == [4, 5, 6, 7]


def test_single_expiry_refreshes_once_and_retries_same_part(recording_api, make_file):
    api = recording_api(expire_before={3: 1})

    orchestrator = UploadOrchestrator(api, make_file(DATA), chunk_size=CHUNK)
    result = orchestrator.run()

    assert api.refreshes == 1
    assert api.attempts == [1, 2, 3, 3, 4, 5, 6, 7]
    assert result.parts_transferred == [1, 2, 3, 4, 5, 6, 7]


def test_second_consecutive_expiry_fails_the_part(recording_api, make_file):
    api = recording_api(expire_before={3: 2})

    orchestrator = UploadOrchestrator(api, make_file(DATA), chunk_size=CHUNK)
    with pytest.raises(TransferFailed) as exc_info:
        orchestrator.run()

    assert api.refreshes == 1
    assert api.attempts == [1, 2, 3, 3]
    assert exc_info.value.part_number == 3
    assert orchestrator.state == UploadState.FAILED


def test_progress_is_monotonic_and_counts_skipped_parts(recording_api, make_file):
    path = make_file(DATA)
    api = recording_api()
    preload_parts(api, path, DATA, {2, 5})
    seen = []

    UploadOrchestrator(api, path, chunk_size=CHUNK, on_progress=seen.append).run()

    assert len(seen) == 7
    assert seen == sorted(seen)
    assert seen[-1] == 100.0


def test_cancel_leaves_parts_for_later_resume(api, make_file):
    path = make_file(DATA)
    holder = {}

    def cancel_after_first_part(percent):
        holder["orchestrator"].cancel()

    orchestrator = UploadOrchestrator(api, path, chunk_size=CHUNK, on_progress=cancel_after_first_part)
    holder["orchestrator"] = orchestrator

    with pytest.raises(UploadCancelled):
        orchestrator.run()

    assert orchestrator.state == UploadState.ABORTED
    client_session = orchestrator.session_id
    status = api.get_session_status(client_session)
    assert status["status"] == "aborted"
    assert status["uploaded_parts"] == [1]

    result = UploadOrchestrator(api, path, chunk_size=CHUNK).run()
    assert result.session_id == client_session
    assert result.parts_skipped == [1]


def test_unreadable_source_creates_no_session(api, tmp_path, fake_redis):
    orchestrator = UploadOrchestrator(api, tmp_path / "missing.bin", chunk_size=CHUNK)

    with pytest.raises(ReadError):
        orchestrator.run()

    assert orchestrator.state == UploadState.FAILED
    assert fake_redis.keys("upload_session:*") == []


def test_rejected_init_is_session_init_error(api, make_file, test_settings):
    test_settings.MAX_FILE_SIZE = 10

    with pytest.raises(SessionInitError):
        upload_file(api, make_file(DATA), chunk_size=CHUNK)


def test_empty_file_uploads(api, make_file):
    seen = []
    result = upload_file(api, make_file(b"", "empty.txt"), on_progress=seen.append)

    assert result.file["size"] == 0
    assert seen == [100.0]


def scripted_api(upload_side_effect):
    api = MagicMock()
    api.init_upload.return_value = {"instant": False, "session_id": "s-1", "credential": "c-1"}
    api.get_session_status.return_value = {"uploaded_parts": []}
    api.upload_part.side_effect = upload_side_effect
    api.refresh_credential.return_value = "c-2"
    api.complete_upload.return_value = {"id": "f-1", "name": "x"}
    return api


def test_scripted_retry_uses_refreshed_credential(make_file):
    api = scripted_api([AuthExpired("expired"), None])

    result = UploadOrchestrator(api, make_file(b"tiny"), chunk_size=CHUNK).run()

    assert api.refresh_credential.call_count == 1
    assert [c.args[3] for c in api.upload_part.call_args_list] == ["c-1", "c-2"]
    assert [c.args[1] for c in api.upload_part.call_args_list] == [1, 1]
    api.complete_upload.assert_called_once_with("s-1", 1, hash_bytes(b"tiny"))
    assert result.file["id"] == "f-1"


def test_scripted_no_third_attempt(make_file):
    api = scripted_api([AuthExpired("expired"), AuthExpired("expired"), None])

    with pytest.raises(TransferFailed):
        UploadOrchestrator(api, make_file(b"tiny"), chunk_size=CHUNK).run()

    assert api.upload_part.call_count == 2
    assert api.refresh_credential.call_count == 1
    api.complete_upload.assert_not_called()


def test_scripted_other_failures_are_not_retried(make_file):
    api = scripted_api([TransferFailed("500 from server")])

    with pytest.raises(TransferFailed):
        UploadOrchestrator(api, make_file(b"tiny"), chunk_size=CHUNK).run()

    assert api.upload_part.call_count == 1
    api.refresh_credential.assert_not_called()


def test_scripted_instant_skips_transfer(make_file):
    api = MagicMock()
    api.init_upload.return_value = {"instant": True, "file": {"id": "f-9", "name": "x"}}

    result = UploadOrchestrator(api, make_file(b"known"), chunk_size=CHUNK).run()

    assert result.instant is True
    api.get_session_status.assert_not_called()
    api.upload_part.assert_not_called()
    api.complete_upload.assert_not_called()
