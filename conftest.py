"""共通の pytest フィクスチャ"""
import threading
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import httpx
import pytest

from multipart_uploader.core.manager import UploadManager
from multipart_uploader.core.store import ObjectStore
from multipart_uploader.errors import CompletionError, InitiationError
from multipart_uploader.models.config import UploadOptions
from multipart_uploader.models.upload import PartReceipt


class FakeStore(ObjectStore):
    """メモリ上で動くストア（呼び出しを記録する）

    authorize_hooks[part_number] に登録した関数は署名の直前に呼ばれる（ブロックしてよい）。
    """

    def __init__(self):
        self.lock = threading.Lock()
        self.initiated: List[Tuple[str, str]] = []
        self.keys: List[str] = []
        self.authorized: List[int] = []
        self.authorize_hooks: Dict[int, Callable[[], None]] = {}
        self.completed: List[List[PartReceipt]] = []
        self.aborted: List[str] = []
        self.put_objects: List[str] = []
        self.fail_initiate = False
        self.fail_complete = False

    def initiate_multipart_upload(self, filename: str, content_type: str,
                                  key_prefix: str = "") -> Tuple[str, str]:
        with self.lock:
            if self.fail_initiate:
                raise InitiationError("AccessDenied")
            self.initiated.append((filename, content_type))
            key = f"{key_prefix}1700000000_{filename}"
            self.keys.append(key)
            return f"upload-{len(self.initiated)}", key

    def authorize_part_upload(self, upload_id: str, part_number: int, storage_key: str) -> str:
        hook = self.authorize_hooks.get(part_number)
        if hook is not None:
            hook()
        with self.lock:
            self.authorized.append(part_number)
        return f"https://bucket.test/{storage_key}?partNumber={part_number}&uploadId={upload_id}"

    def complete_multipart_upload(self, upload_id: str, storage_key: str,
                                  receipts: Sequence[PartReceipt]) -> str:
        if self.fail_complete:
            raise CompletionError("InvalidPart")
        with self.lock:
            self.completed.append(list(receipts))
        return f"https://bucket.test/{storage_key}"

    def abort_multipart_upload(self, upload_id: str, storage_key: str) -> None:
        with self.lock:
            self.aborted.append(upload_id)

    def put_object(self, path: str, filename: str, content_type: str,
                   key_prefix: str = "") -> str:
        key = f"{key_prefix}1700000000_{filename}"
        with self.lock:
            self.put_objects.append(path)
            self.keys.append(key)
        return f"https://bucket.test/{key}"


class FakeS3:
    """署名付きURLへの PUT を受ける MockTransport

    behaviors[part_number] にハンドラーを登録するとそのパーツだけ挙動を変えられる。
    """

    def __init__(self):
        self.lock = threading.Lock()
        self.bodies: Dict[int, bytes] = {}
        self.behaviors: Dict[int, Callable[[httpx.Request], httpx.Response]] = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        part_number = int(request.url.params["partNumber"])
        with self.lock:
            self.bodies[part_number] = request.content
        behavior = self.behaviors.get(part_number)
        if behavior is not None:
            return behavior(request)
        return httpx.Response(200, headers={"ETag": f'"etag-{part_number}"'})

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))

    def assembled(self) -> bytes:
        return b"".join(self.bodies[n] for n in sorted(self.bodies))


def pattern_bytes(size: int) -> bytes:
    return bytes(i % 251 for i in range(size))


@pytest.fixture
def make_file(tmp_path):
    """指定サイズのファイルを作るファクトリ"""
    def _make(size: int, name: str = "video.mp4", directory=None) -> str:
        path = (directory or tmp_path) / name
        path.write_bytes(pattern_bytes(size))
        return str(path)
    return _make


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def fake_s3():
    return FakeS3()


@pytest.fixture
def options():
    """テスト用に小さなチャンクで動かす設定"""
    return UploadOptions(
        multipart_threshold=1024,
        chunk_size=1024,
        io_chunksize=256,
        progress_interval_seconds=0,
        cancel_grace_seconds=0.3,
        session_retention_seconds=2.0,
        enable_progress=False,
    )


@pytest.fixture
def manager_factory(store, fake_s3):
    """UploadManager を作るファクトリ（終了時に閉じる）"""
    created = []

    def _create(opts: UploadOptions, clock: Optional[Callable[[], float]] = None) -> UploadManager:
        kwargs = {"clock": clock} if clock is not None else {}
        manager = UploadManager(store, opts, http_client=fake_s3.client(), **kwargs)
        created.append(manager)
        return manager

    yield _create
    for manager in created:
        manager.http_client.close()
