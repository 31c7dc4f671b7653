"""単一パーツのアップロード"""
import threading
import time
from typing import Callable, Iterator, Optional

import httpx

from ..errors import CancellationRequested, PartUploadError
from ..models.upload import ChunkDescriptor, PartReceipt, ProgressEvent
from ..utils.file_utils import FileDataSource
from ..utils.logger import LoggerManager
from .store import ObjectStore

ProgressCallback = Callable[[ProgressEvent], None]


class PartUploader:
    """署名付きURLへ1パーツ分のバイト列を PUT する

    呼び出しごとの状態しか持たないので、複数スレッドから同時に使ってよい。
    リトライはしない。
    """

    def __init__(self, store: ObjectStore, http_client: httpx.Client,
                 progress_interval: float = 0.02,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.http_client = http_client
        self.progress_interval = progress_interval
        self.clock = clock
        self.logger = LoggerManager.get_logger()

    def upload(self, descriptor: ChunkDescriptor, data_source: FileDataSource,
               upload_id: str, storage_key: str,
               on_progress: Optional[ProgressCallback] = None,
               abort_event: Optional[threading.Event] = None) -> PartReceipt:
        part_number = descriptor.part_number
        abort_event = abort_event or threading.Event()
        emit = on_progress or (lambda event: None)

        try:
            self._check_abort(abort_event)
            url = self.store.authorize_part_upload(upload_id, part_number, storage_key)
            self._check_abort(abort_event)

            self.logger.debug(
                f"Uploading part {part_number}: offset={descriptor.byte_offset}, "
                f"size={descriptor.byte_length}"
            )
            response = self.http_client.put(
                url,
                content=self._stream(descriptor, data_source, emit, abort_event),
                headers={"Content-Length": str(descriptor.byte_length)},
            )
        except PartUploadError:
            raise
        except CancellationRequested as e:
            raise PartUploadError(part_number, e, cancelled=True) from e
        except Exception as e:
            # トランスポートの中断でも例外の種類はまちまちなのでフラグで判定
            raise PartUploadError(part_number, e, cancelled=abort_event.is_set()) from e

        if not response.is_success:
            # 中断要求の後に返ったエラー応答は中断として扱う
            raise PartUploadError(
                part_number, f"HTTP {response.status_code} {response.reason_phrase}",
                cancelled=abort_event.is_set(),
            )

        etag = response.headers.get("ETag", "").strip().strip('"')
        if not etag:
            raise PartUploadError(part_number, "response carried no ETag header")

        self.logger.debug(f"Part {part_number} uploaded, ETag: {etag}")
        return PartReceipt(part_number=part_number, integrity_tag=etag)

    def _stream(self, descriptor: ChunkDescriptor, data_source: FileDataSource,
                emit: ProgressCallback, abort_event: threading.Event) -> Iterator[bytes]:
        """ブロックを返しつつ進捗を間引いて通知する"""
        part_number = descriptor.part_number
        total = descriptor.byte_length
        sent = 0

        emit(ProgressEvent(part_number, 0, total, self.clock()))
        last_emit = self.clock()

        for block in data_source.read_range(descriptor.byte_offset, total):
            self._check_abort(abort_event)
            yield block
            sent += len(block)

            now = self.clock()
            if sent >= total or now - last_emit >= self.progress_interval:
                emit(ProgressEvent(part_number, sent, total, now))
                last_emit = now

        self._check_abort(abort_event)

    @staticmethod
    def _check_abort(abort_event: threading.Event):
        if abort_event.is_set():
            raise CancellationRequested("upload cancelled")
