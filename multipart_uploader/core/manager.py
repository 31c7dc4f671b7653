"""アップロードセッションの開始・参照・中断"""
import threading
import time
import uuid
from typing import Callable, Dict, List, Optional, Union

import httpx

from ..models.config import UploadOptions
from ..models.upload import SessionStatus, UploadSession
from ..utils.file_utils import FileScanner
from ..utils.logger import LoggerManager
from .coordinator import SessionListener, UploadCoordinator
from .part_uploader import PartUploader
from .planner import plan_chunks
from .store import ObjectStore


class UploadHandle:
    """開始したセッションへの参照"""

    def __init__(self, coordinator: UploadCoordinator):
        self._coordinator = coordinator

    @property
    def session_id(self) -> str:
        return self._coordinator.session_id

    def snapshot(self) -> UploadSession:
        return self._coordinator.snapshot()

    def wait(self, timeout: Optional[float] = None) -> UploadSession:
        return self._coordinator.wait(timeout)

    def cancel(self):
        self._coordinator.cancel()

    def add_listener(self, listener: SessionListener):
        """状態が変わるたびにスナップショットを受け取る"""
        self._coordinator.add_listener(listener)


class UploadManager:
    """ファイルごとのマルチパートアップロードを管理

    セッション同士は独立して並行に進む。max_active_sessions を指定すると
    同時に走るセッション数を制限する。
    """

    def __init__(self, store: ObjectStore, options: UploadOptions,
                 http_client: Optional[httpx.Client] = None,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.options = options
        self.clock = clock
        self.logger = LoggerManager.get_logger()

        self._owns_client = http_client is None
        self.http_client = http_client or httpx.Client(timeout=options.request_timeout_seconds)
        self.part_uploader = PartUploader(
            store, self.http_client, options.progress_interval_seconds, clock
        )
        self._admission = (
            threading.BoundedSemaphore(options.max_active_sessions)
            if options.max_active_sessions else None
        )
        self._coordinators: Dict[str, UploadCoordinator] = {}
        self._lock = threading.Lock()

    def start(self, path: str, content_type: Optional[str] = None,
              key_prefix: str = "") -> UploadHandle:
        """アップロードを開始してすぐにハンドルを返す

        分割パラメータが不正なら通信前に ConfigurationError を送出する。
        key_prefix はオブジェクトキーの先頭に付く。
        """
        # 保持期間を過ぎたセッションはここでも片付ける
        self.prune()
        file_info = FileScanner().get_file_info(path)
        descriptors = plan_chunks(file_info.size, self.options.chunk_size)

        coordinator = UploadCoordinator(
            session_id=uuid.uuid4().hex,
            file_info=file_info,
            descriptors=descriptors,
            store=self.store,
            part_uploader=self.part_uploader,
            options=self.options,
            content_type=content_type,
            key_prefix=key_prefix,
            admission=self._admission,
            clock=self.clock,
        )
        with self._lock:
            self._coordinators[coordinator.session_id] = coordinator

        self.logger.info(
            f"Starting multipart upload of {file_info.path} "
            f"({file_info.size} bytes, {len(descriptors)} parts)"
        )
        coordinator.start()
        return UploadHandle(coordinator)

    def cancel(self, target: Union[UploadHandle, str]):
        """中断を要求する。終了済みや未知のセッションなら何もしない"""
        session_id = target.session_id if isinstance(target, UploadHandle) else target
        with self._lock:
            coordinator = self._coordinators.get(session_id)
        if coordinator is not None:
            coordinator.cancel()

    def snapshot(self, session_id: str) -> Optional[UploadSession]:
        self.prune()
        with self._lock:
            coordinator = self._coordinators.get(session_id)
        return coordinator.snapshot() if coordinator is not None else None

    def sessions(self) -> List[UploadSession]:
        """観測可能なセッションの一覧"""
        self.prune()
        with self._lock:
            coordinators = list(self._coordinators.values())
        return [coordinator.snapshot() for coordinator in coordinators]

    def prune(self):
        """保持期間を過ぎた終了済みセッションを取り除く（中断済みは即時）"""
        now = self.clock()
        with self._lock:
            for session_id, coordinator in list(self._coordinators.items()):
                session = coordinator.snapshot()
                if not session.is_terminal:
                    continue
                if (session.status is SessionStatus.ABORTED
                        or now - session.finished_at >= self.options.session_retention_seconds):
                    del self._coordinators[session_id]

    def close(self):
        if self._owns_client:
            self.http_client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
