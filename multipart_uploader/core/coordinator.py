"""マルチパートアップロード1件のライフサイクル管理"""
import copy
import os
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from operator import attrgetter
from typing import Callable, Dict, List, Optional, Sequence, Set

from ..errors import CompletionError, InitiationError, PartUploadError
from ..models.config import UploadOptions
from ..models.upload import (
    ChunkDescriptor,
    CoordinatorState,
    ErrorInfo,
    PartReceipt,
    PartState,
    PartStatus,
    ProgressEvent,
    SessionStatus,
    UploadSession,
)
from ..utils.file_utils import FileDataSource, FileInfo
from ..utils.logger import LoggerManager
from ..utils.progress import ProgressAggregator
from .part_uploader import PartUploader
from .store import ObjectStore

SessionListener = Callable[[UploadSession], None]


@dataclass(frozen=True)
class _PartSucceeded:
    receipt: PartReceipt


@dataclass(frozen=True)
class _PartFailed:
    error: PartUploadError


class _CancelRequest:
    pass


class _Outcome(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_TERMINAL_STATES = {
    SessionStatus.SUCCEEDED: CoordinatorState.SUCCEEDED,
    SessionStatus.ERRORED: CoordinatorState.ERRORED,
    SessionStatus.ABORTED: CoordinatorState.ABORTED,
}


class UploadCoordinator:
    """1ファイル分のマルチパートアップロードを駆動する

    状態遷移: INITIATING -> UPLOADING -> COMPLETING -> SUCCEEDED
    （ERRORED / ABORTED で終了、CANCELLING は中断待ち）

    パーツのスレッドは進捗イベントと結果をメールボックスに積むだけで、
    UploadSession を書き換えるのはコーディネーターのスレッドだけ。
    外部からは snapshot() のコピーを読む。
    """

    def __init__(self, session_id: str, file_info: FileInfo,
                 descriptors: Sequence[ChunkDescriptor],
                 store: ObjectStore, part_uploader: PartUploader,
                 options: UploadOptions, content_type: Optional[str] = None,
                 key_prefix: str = "",
                 admission: Optional[threading.Semaphore] = None,
                 clock: Callable[[], float] = time.time):
        self.file_info = file_info
        self.descriptors = list(descriptors)
        self.store = store
        self.part_uploader = part_uploader
        self.options = options
        self.content_type = content_type or file_info.content_type
        self.key_prefix = key_prefix
        self.admission = admission
        self.clock = clock
        self.logger = LoggerManager.get_logger()

        self.session = UploadSession(
            session_id=session_id,
            file_identity=os.path.abspath(file_info.path),
            file_name=file_info.name,
            total_bytes=file_info.size,
            start_timestamp=clock(),
        )

        self._lock = threading.Lock()
        self._mailbox: "queue.Queue[object]" = queue.Queue()
        self._abort_event = threading.Event()
        self._terminal = threading.Event()
        self._listeners: List[SessionListener] = []
        self._receipts: Dict[int, PartReceipt] = {}
        self._futures: Dict[int, Future] = {}
        self._aggregator: Optional[ProgressAggregator] = None
        self._cancelling = False
        self._thread: Optional[threading.Thread] = None

    @property
    def session_id(self) -> str:
        return self.session.session_id

    # ---- 呼び出し側から使う操作 ----

    def start(self):
        """バックグラウンドスレッドで実行を開始"""
        self._thread = threading.Thread(
            target=self.run, name=f"upload-{self.session_id[:8]}", daemon=True
        )
        self._thread.start()

    def snapshot(self) -> UploadSession:
        with self._lock:
            return copy.deepcopy(self.session)

    def wait(self, timeout: Optional[float] = None) -> UploadSession:
        """終了状態になるまで待ってスナップショットを返す"""
        self._terminal.wait(timeout)
        return self.snapshot()

    def cancel(self):
        """中断を要求する（何度呼んでも同じ）"""
        if self._terminal.is_set():
            return
        if not self._abort_event.is_set():
            self.logger.info(f"Cancellation requested for {self.file_info.name}")
        self._abort_event.set()
        self._mailbox.put(_CancelRequest())

    def add_listener(self, listener: SessionListener):
        self._listeners.append(listener)

    # ---- 実行本体 ----

    def run(self):
        try:
            if self.admission is None:
                self._execute()
            elif self._acquire_admission():
                try:
                    self._execute()
                finally:
                    self.admission.release()
        except Exception as e:
            self.logger.exception(f"Unexpected error uploading {self.file_info.path}")
            self._finish(SessionStatus.ERRORED, error=ErrorInfo("unexpected", str(e)))

    def _acquire_admission(self) -> bool:
        while not self.admission.acquire(timeout=0.1):
            if self._abort_event.is_set():
                self._mark_cancelling()
                self._finish(SessionStatus.ABORTED)
                return False
        return True

    def _execute(self):
        if self._abort_event.is_set():
            self._mark_cancelling()
            self._finish(SessionStatus.ABORTED)
            return

        try:
            upload_id, storage_key = self.store.initiate_multipart_upload(
                self.file_info.name, self.content_type, key_prefix=self.key_prefix
            )
        except InitiationError as e:
            self.logger.error(f"Failed to start upload of {self.file_info.path}: {e}")
            self._finish(SessionStatus.ERRORED, error=ErrorInfo("initiation", str(e)))
            return

        with self._lock:
            self.session.upload_id = upload_id
            self.session.storage_key = storage_key
            self.session.parts = [
                PartState(part_number=d.part_number, byte_length=d.byte_length)
                for d in self.descriptors
            ]
            self.session.state = CoordinatorState.UPLOADING
            self._aggregator = ProgressAggregator(self.session.total_bytes, self.session.start_timestamp)
        self._notify()

        if self._abort_event.is_set():
            self._mark_cancelling()
            for descriptor in self.descriptors:
                self._set_part_status(descriptor.part_number, PartStatus.ABORTED)
            self._abort_remote(upload_id, storage_key)
            self._finish(SessionStatus.ABORTED)
            return

        self.logger.info(
            f"Uploading {self.file_info.name} in {len(self.descriptors)} parts "
            f"(upload_id={upload_id})"
        )
        outcome = self._upload_parts(upload_id, storage_key)

        if outcome is _Outcome.CANCELLED:
            self._abort_remote(upload_id, storage_key)
            self._finish(SessionStatus.ABORTED)
        elif outcome is _Outcome.COMPLETED:
            self._complete(upload_id, storage_key)

    def _upload_parts(self, upload_id: str, storage_key: str) -> _Outcome:
        workers = min(self.options.max_concurrency or len(self.descriptors), len(self.descriptors))
        data_source = FileDataSource(self.file_info.path, self.options.io_chunksize)
        pool = ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix=f"part-{self.session_id[:8]}"
        )
        try:
            for descriptor in self.descriptors:
                self._futures[descriptor.part_number] = pool.submit(
                    self._upload_part, descriptor, data_source, upload_id, storage_key
                )
            return self._collect()
        finally:
            # 送信済みのパーツはそのまま走らせる。未着手のものだけ取り消す
            pool.shutdown(wait=False, cancel_futures=True)

    def _upload_part(self, descriptor: ChunkDescriptor, data_source: FileDataSource,
                     upload_id: str, storage_key: str):
        """ワーカースレッド側。結果は必ず値としてメールボックスに渡す"""
        try:
            receipt = self.part_uploader.upload(
                descriptor, data_source, upload_id, storage_key,
                on_progress=self._mailbox.put,
                abort_event=self._abort_event,
            )
        except PartUploadError as e:
            self._mailbox.put(_PartFailed(e))
        except Exception as e:
            self.logger.exception(f"Unexpected error in part {descriptor.part_number}")
            self._mailbox.put(_PartFailed(PartUploadError(descriptor.part_number, e)))
        else:
            self._mailbox.put(_PartSucceeded(receipt))

    def _collect(self) -> _Outcome:
        """全パーツの決着まで（または失敗・中断まで）イベントを処理"""
        settled: Set[int] = set()
        deadline: Optional[float] = None

        while len(settled) < len(self.descriptors):
            timeout = None
            if deadline is not None:
                timeout = deadline - time.monotonic()
                if timeout <= 0:
                    self._give_up_unsettled(settled)
                    break

            try:
                message = self._mailbox.get(timeout=timeout)
            except queue.Empty:
                self._give_up_unsettled(settled)
                break

            if isinstance(message, ProgressEvent):
                self._apply_progress(message)
            elif isinstance(message, _PartSucceeded):
                settled.add(message.receipt.part_number)
                self._apply_receipt(message.receipt)
            elif isinstance(message, _PartFailed):
                error = message.error
                settled.add(error.part_number)
                self._apply_part_failure(error)
                if error.cancelled or self._cancelling:
                    if not self._cancelling:
                        deadline = self._begin_cancelling(settled)
                else:
                    self._fail_fast(error)
                    return _Outcome.FAILED
            elif isinstance(message, _CancelRequest):
                if not self._cancelling:
                    deadline = self._begin_cancelling(settled)

        return _Outcome.CANCELLED if self._cancelling else _Outcome.COMPLETED

    def _begin_cancelling(self, settled: Set[int]) -> float:
        self._abort_event.set()
        self._mark_cancelling()
        for part_number, future in self._futures.items():
            if part_number not in settled and future.cancel():
                settled.add(part_number)
                self._set_part_status(part_number, PartStatus.ABORTED)
        self._notify()
        return time.monotonic() + self.options.cancel_grace_seconds

    def _give_up_unsettled(self, settled: Set[int]):
        unsettled = [d.part_number for d in self.descriptors if d.part_number not in settled]
        self.logger.warning(
            f"Cancellation grace period elapsed for {self.file_info.name}; "
            f"parts still in flight: {unsettled}"
        )
        for part_number in unsettled:
            self._set_part_status(part_number, PartStatus.ABORTED)

    def _fail_fast(self, error: PartUploadError):
        self.logger.error(f"Upload of {self.file_info.name} failed: {error}")
        if self.options.cancel_siblings_on_failure:
            self._abort_event.set()
        self._finish(
            SessionStatus.ERRORED,
            error=ErrorInfo("part_upload", error.reason or str(error), error.part_number),
        )

    def _abort_remote(self, upload_id: str, storage_key: str):
        """ベストエフォート。失敗してもセッションは ABORTED のまま"""
        try:
            self.store.abort_multipart_upload(upload_id, storage_key)
        except Exception as e:
            self.logger.warning(f"Failed to abort multipart upload {upload_id}: {e}")

    def _complete(self, upload_id: str, storage_key: str):
        # 並行アップロードなので到着順はばらばら。完了にはパーツ番号順が必要
        receipts = sorted(self._receipts.values(), key=attrgetter("part_number"))
        with self._lock:
            self.session.state = CoordinatorState.COMPLETING
        self._notify()

        try:
            public_url = self.store.complete_multipart_upload(upload_id, storage_key, receipts)
        except CompletionError as e:
            self.logger.error(f"Failed to assemble {self.file_info.name}: {e}")
            self._finish(SessionStatus.ERRORED, error=ErrorInfo("completion", str(e)))
            return

        self._finish(SessionStatus.SUCCEEDED, public_url=public_url)

    # ---- セッションの更新（コーディネーターのスレッドからのみ） ----

    def _apply_progress(self, event: ProgressEvent):
        with self._lock:
            if self.session.is_terminal or self._aggregator is None:
                return
            part = self.session.part(event.part_number)
            if part.status not in (PartStatus.PENDING, PartStatus.UPLOADING):
                return
            if not self._aggregator.record(event):
                return
            part.status = PartStatus.UPLOADING
            part.progress_fraction = self._aggregator.part_bytes(part.part_number) / part.byte_length
            part.instantaneous_speed = self._aggregator.part_speed(part.part_number)
            self._refresh_totals()
        self._notify()

    def _apply_receipt(self, receipt: PartReceipt):
        self._receipts[receipt.part_number] = receipt
        with self._lock:
            if self.session.is_terminal:
                return
            part = self.session.part(receipt.part_number)
            self._aggregator.record(
                ProgressEvent(part.part_number, part.byte_length, part.byte_length, self.clock())
            )
            part.status = PartStatus.COMPLETED
            part.progress_fraction = 1.0
            self._refresh_totals()
        self.logger.debug(f"Part {receipt.part_number}/{len(self.descriptors)} completed")
        self._notify()

    def _apply_part_failure(self, error: PartUploadError):
        status = PartStatus.ABORTED if error.cancelled else PartStatus.ERRORED
        self._set_part_status(error.part_number, status, error.reason)
        self._notify()

    def _set_part_status(self, part_number: int, status: PartStatus, reason: Optional[str] = None):
        with self._lock:
            if self.session.is_terminal:
                return
            part = self.session.part(part_number)
            part.status = status
            part.instantaneous_speed = 0.0
            part.error = reason

    def _mark_cancelling(self):
        self._cancelling = True
        with self._lock:
            if self.session.is_terminal:
                return
            self.session.cancellation_requested = True
            self.session.state = CoordinatorState.CANCELLING

    def _refresh_totals(self):
        summary = self._aggregator.summary(self.clock())
        self.session.overall_progress_fraction = max(
            self.session.overall_progress_fraction, summary.progress_fraction
        )
        self.session.overall_speed = summary.speed
        self.session.elapsed_duration = summary.elapsed
        self.session.estimated_remaining_duration = summary.remaining

    def _finish(self, status: SessionStatus, error: Optional[ErrorInfo] = None,
                public_url: Optional[str] = None):
        """終了状態へ遷移（一度きり）"""
        with self._lock:
            if self.session.is_terminal:
                return
            if self._aggregator is not None:
                self._refresh_totals()
            else:
                self.session.elapsed_duration = max(self.clock() - self.session.start_timestamp, 0.0)
            self.session.status = status
            self.session.state = _TERMINAL_STATES[status]
            self.session.estimated_remaining_duration = 0.0
            self.session.error = error
            self.session.public_url = public_url
            self.session.finished_at = self.clock()

        self._terminal.set()
        if status is SessionStatus.SUCCEEDED:
            self.logger.info(f"Upload of {self.file_info.name} succeeded: {public_url}")
        elif status is SessionStatus.ABORTED:
            self.logger.info(f"Upload of {self.file_info.name} aborted")
        self._notify()

    def _notify(self):
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                self.logger.warning(f"Session listener raised: {e}")
