"""マルチパートアップロード全体の流れのテスト"""
import dataclasses
import threading
import time

import httpx
import pytest

from multipart_uploader.errors import ConfigurationError
from multipart_uploader.models.upload import CoordinatorState, PartStatus, SessionStatus

MIB = 1024 * 1024


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def blocking_part(release: threading.Event, entered: threading.Semaphore = None):
    """release されるまで応答を返さないハンドラー"""
    def handler(request):
        if entered is not None:
            entered.release()
        release.wait(5)
        return httpx.Response(200, headers={"ETag": '"late"'})
    return handler


def wait_entered(entered: threading.Semaphore, count: int):
    for _ in range(count):
        assert entered.acquire(timeout=5)


def test_twelve_mib_upload_succeeds(manager_factory, options, store, fake_s3, make_file):
    opts = dataclasses.replace(options, chunk_size=5 * MIB, io_chunksize=256 * 1024)
    manager = manager_factory(opts)
    path = make_file(12 * MIB)

    session = manager.start(path).wait(timeout=10)

    assert session.status is SessionStatus.SUCCEEDED
    assert session.state is CoordinatorState.SUCCEEDED
    assert session.overall_progress_fraction == 1.0
    assert session.public_url == "https://bucket.test/1700000000_video.mp4"
    assert [p.byte_length for p in session.parts] == [5 * MIB, 5 * MIB, 2 * MIB]
    assert all(p.status is PartStatus.COMPLETED for p in session.parts)
    assert store.initiated == [("video.mp4", "video/mp4")]

    with open(path, "rb") as f:
        assert fake_s3.assembled() == f.read()


def test_receipts_are_submitted_in_part_order(manager_factory, options, store, fake_s3, make_file):
    """後ろのパーツほど早く終わっても完了時はパーツ番号順"""
    def delayed(part_number):
        def handler(request):
            time.sleep((6 - part_number) * 0.05)
            return httpx.Response(200, headers={"ETag": f'"etag-{part_number}"'})
        return handler

    for n in range(1, 6):
        fake_s3.behaviors[n] = delayed(n)

    session = manager_factory(options).start(make_file(5 * 1024)).wait(timeout=10)

    assert session.status is SessionStatus.SUCCEEDED
    receipts = store.completed[0]
    assert [r.part_number for r in receipts] == [1, 2, 3, 4, 5]
    assert [r.integrity_tag for r in receipts] == [f"etag-{n}" for n in range(1, 6)]


def test_part_failure_fails_session_without_waiting(manager_factory, options, store, fake_s3, make_file):
    """パーツ3の失敗で、4・5の決着を待たずにセッションが ERRORED になる"""
    release = threading.Event()
    fake_s3.behaviors[3] = lambda request: httpx.Response(500, text="InternalError")
    fake_s3.behaviors[4] = blocking_part(release)
    fake_s3.behaviors[5] = blocking_part(release)
    manager = manager_factory(options)

    try:
        handle = manager.start(make_file(5 * 1024))
        session = handle.wait(timeout=5)

        assert session.status is SessionStatus.ERRORED
        assert session.error.kind == "part_upload"
        assert session.error.part_number == 3
        assert session.part(3).status is PartStatus.ERRORED
        assert session.part(4).status is not PartStatus.COMPLETED
        assert session.part(5).status is not PartStatus.COMPLETED
    finally:
        release.set()

    time.sleep(0.2)
    assert handle.snapshot().status is SessionStatus.ERRORED
    assert store.completed == []


def test_part_failure_stops_siblings_when_enabled(manager_factory, options, store, fake_s3, make_file):
    """cancel_siblings_on_failure なら、まだ送信していないパーツは送られない"""
    gate = threading.Event()
    store.authorize_hooks[4] = lambda: gate.wait(5)
    fake_s3.behaviors[3] = lambda request: httpx.Response(500, text="InternalError")
    manager = manager_factory(dataclasses.replace(options, cancel_siblings_on_failure=True))

    try:
        session = manager.start(make_file(5 * 1024)).wait(timeout=5)
    finally:
        gate.set()

    assert session.status is SessionStatus.ERRORED
    assert session.error.part_number == 3
    assert store.completed == []

    time.sleep(0.2)
    assert 4 not in fake_s3.bodies


def test_transport_error_on_second_of_four_parts(manager_factory, options, store, fake_s3, make_file):
    def refuse(request):
        raise httpx.ConnectError("connection reset", request=request)

    fake_s3.behaviors[2] = refuse

    session = manager_factory(options).start(make_file(4 * 1024)).wait(timeout=5)

    assert session.status is SessionStatus.ERRORED
    assert session.error.part_number == 2
    assert "connection reset" in session.error.message
    assert store.completed == []


def test_initiation_failure_starts_no_parts(manager_factory, options, store, fake_s3, make_file):
    store.fail_initiate = True

    session = manager_factory(options).start(make_file(3 * 1024)).wait(timeout=5)

    assert session.status is SessionStatus.ERRORED
    assert session.error.kind == "initiation"
    assert session.parts == []
    assert fake_s3.bodies == {}


def test_completion_failure_is_fatal(manager_factory, options, store, make_file):
    store.fail_complete = True

    session = manager_factory(options).start(make_file(3 * 1024)).wait(timeout=5)

    assert session.status is SessionStatus.ERRORED
    assert session.error.kind == "completion"
    assert all(p.status is PartStatus.COMPLETED for p in session.parts)


def test_empty_file_is_rejected_before_any_request(manager_factory, options, store, make_file):
    with pytest.raises(ConfigurationError):
        manager_factory(options).start(make_file(0))
    assert store.initiated == []


@pytest.mark.parametrize("cancel_calls", [1, 2])
def test_cancel_aborts_upload(manager_factory, options, store, fake_s3, make_file, cancel_calls):
    """cancel を何回呼んでも終了状態は同じ"""
    release = threading.Event()
    entered = threading.Semaphore(0)
    for n in (1, 2, 3):
        fake_s3.behaviors[n] = blocking_part(release, entered)
    manager = manager_factory(options)

    try:
        handle = manager.start(make_file(3 * 1024))
        wait_entered(entered, 3)
        for _ in range(cancel_calls):
            manager.cancel(handle)
        session = handle.wait(timeout=5)
    finally:
        release.set()

    assert session.status is SessionStatus.ABORTED
    assert session.state is CoordinatorState.ABORTED
    assert session.cancellation_requested is True
    assert session.error is None
    assert [p.status for p in session.parts] == [PartStatus.ABORTED] * 3
    assert store.aborted == ["upload-1"]
    assert store.completed == []

    handle.cancel()
    assert handle.snapshot().status is SessionStatus.ABORTED
    assert store.aborted == ["upload-1"]


def test_cancel_skips_parts_not_yet_started(manager_factory, options, store, fake_s3, make_file):
    release = threading.Event()
    entered = threading.Semaphore(0)
    fake_s3.behaviors[1] = blocking_part(release, entered)
    manager = manager_factory(dataclasses.replace(options, max_concurrency=1))

    try:
        handle = manager.start(make_file(3 * 1024))
        wait_entered(entered, 1)
        handle.cancel()
        session = handle.wait(timeout=5)
    finally:
        release.set()

    assert session.status is SessionStatus.ABORTED
    assert store.authorized == [1]
    assert session.part(2).status is PartStatus.ABORTED
    assert session.part(3).status is PartStatus.ABORTED


def test_listener_sees_non_decreasing_progress(manager_factory, options, fake_s3, make_file):
    release = threading.Event()
    fake_s3.behaviors[1] = blocking_part(release)
    snapshots = []
    manager = manager_factory(options)

    try:
        handle = manager.start(make_file(4 * 1024 + 100))
        handle.add_listener(snapshots.append)
    finally:
        release.set()
    handle.wait(timeout=5)

    deadline = time.monotonic() + 2
    while not (snapshots and snapshots[-1].is_terminal) and time.monotonic() < deadline:
        time.sleep(0.01)

    fractions = [s.overall_progress_fraction for s in snapshots]
    assert fractions == sorted(fractions)
    assert snapshots[-1].status is SessionStatus.SUCCEEDED


def test_finished_session_is_observable_for_retention_period(manager_factory, options, make_file):
    clock = FakeClock()
    manager = manager_factory(options, clock=clock)

    handle = manager.start(make_file(2 * 1024))
    handle.wait(timeout=5)

    assert [s.session_id for s in manager.sessions()] == [handle.session_id]
    clock.now += options.session_retention_seconds
    assert manager.sessions() == []
    assert manager.snapshot(handle.session_id) is None


def test_start_prunes_expired_sessions(manager_factory, options, make_file):
    clock = FakeClock()
    manager = manager_factory(options, clock=clock)
    first = manager.start(make_file(2 * 1024, name="a.bin"))
    first.wait(timeout=5)

    clock.now += options.session_retention_seconds
    second = manager.start(make_file(2 * 1024, name="b.bin"))

    assert list(manager._coordinators) == [second.session_id]
    second.wait(timeout=5)


def test_aborted_session_is_removed_immediately(manager_factory, options, fake_s3, make_file):
    release = threading.Event()
    entered = threading.Semaphore(0)
    fake_s3.behaviors[1] = blocking_part(release, entered)
    manager = manager_factory(dataclasses.replace(options, cancel_grace_seconds=0.1))

    try:
        handle = manager.start(make_file(1024))
        wait_entered(entered, 1)
        manager.cancel(handle.session_id)
        handle.wait(timeout=5)
    finally:
        release.set()

    assert manager.sessions() == []


def test_active_session_limit_queues_later_uploads(manager_factory, options, store, fake_s3, make_file):
    release = threading.Event()
    entered = threading.Semaphore(0)
    fake_s3.behaviors[1] = blocking_part(release, entered)
    manager = manager_factory(dataclasses.replace(options, max_active_sessions=1))

    try:
        first = manager.start(make_file(1024, name="a.bin"))
        wait_entered(entered, 1)
        second = manager.start(make_file(1024, name="b.bin"))
        time.sleep(0.2)

        assert len(store.initiated) == 1
        assert second.snapshot().state is CoordinatorState.INITIATING
    finally:
        release.set()

    assert first.wait(timeout=5).status is SessionStatus.SUCCEEDED
    assert second.wait(timeout=5).status is SessionStatus.SUCCEEDED
    assert len(store.initiated) == 2


def test_cancel_while_waiting_for_admission(manager_factory, options, store, fake_s3, make_file):
    release = threading.Event()
    entered = threading.Semaphore(0)
    fake_s3.behaviors[1] = blocking_part(release, entered)
    manager = manager_factory(dataclasses.replace(options, max_active_sessions=1))

    try:
        first = manager.start(make_file(1024, name="a.bin"))
        wait_entered(entered, 1)
        second = manager.start(make_file(1024, name="b.bin"))
        second.cancel()
        session = second.wait(timeout=5)
    finally:
        release.set()

    assert session.status is SessionStatus.ABORTED
    assert first.wait(timeout=5).status is SessionStatus.SUCCEEDED
    assert [name for name, _ in store.initiated] == ["a.bin"]
