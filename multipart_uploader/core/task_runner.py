"""アップロードタスクの実行"""
import os
import time
from typing import List, Optional, Tuple

from ..errors import UploadError
from ..models.config import Config, UploadTask
from ..models.upload import SessionStatus
from ..utils.file_utils import FileInfo, FileScanner
from ..utils.logger import LoggerManager
from ..utils.progress import ConsoleProgress
from .manager import UploadHandle, UploadManager
from .planner import requires_multipart
from .s3_client import S3ClientManager
from .store import S3ObjectStore


class TaskRunner:
    """アップロードタスクを実行"""

    def __init__(self, config: Config, store: Optional[S3ObjectStore] = None,
                 manager: Optional[UploadManager] = None):
        self.config = config
        self.options = config.options
        self.logger = LoggerManager.get_logger()

        if store is None:
            client_manager = S3ClientManager(config.aws)
            store = S3ObjectStore(client_manager.get_client(), config.aws, config.options)
        self.store = store
        self.manager = manager or UploadManager(store, config.options)
        self.file_scanner = FileScanner(config.options.exclude_patterns)
        self.progress = ConsoleProgress() if config.options.enable_progress else None

    def run_all_tasks(self) -> Tuple[int, int]:
        """全てのタスクを実行"""
        total_tasks = len(self.config.upload_tasks)
        successful_tasks = 0
        failed_tasks = 0

        self.logger.info(f"Starting upload tasks: {total_tasks} tasks to process")

        for i, task in enumerate(self.config.upload_tasks, 1):
            if not task.enabled:
                self.logger.info(f"Skipping disabled task: {task.name}")
                continue

            self.logger.info(f"Task {i}/{total_tasks}: Starting '{task.name}'")

            try:
                if self._run_single_task(task):
                    successful_tasks += 1
                    self.logger.info(f"Task {i}/{total_tasks}: '{task.name}' completed successfully")
                else:
                    failed_tasks += 1
                    self.logger.error(f"Task {i}/{total_tasks}: '{task.name}' failed")
            except Exception as e:
                failed_tasks += 1
                self.logger.error(f"Task {i}/{total_tasks}: '{task.name}' failed with error: {e}")

        self.logger.info(
            f"Upload tasks completed: {successful_tasks} successful, {failed_tasks} failed"
        )
        return successful_tasks, failed_tasks

    def _run_single_task(self, task: UploadTask) -> bool:
        """単一タスクを実行"""
        if os.path.isfile(task.source):
            files = [self.file_scanner.get_file_info(task.source)]
        elif os.path.isdir(task.source):
            files = list(self.file_scanner.scan_directory(task.source, task.recursive))
            if not files:
                self.logger.warning(f"No files found in {task.source}")
                return True
        else:
            self.logger.error(f"Source is neither file nor directory: {task.source}")
            return False

        successful, failed = self.upload_files(files, task.key_prefix or "")
        self.logger.info(f"Task '{task.name}': {successful} successful, {failed} failed")
        return failed == 0

    def upload_files(self, files: List[FileInfo], key_prefix: str = "") -> Tuple[int, int]:
        """しきい値でマルチパート／単発を振り分けてアップロード

        キーは key_prefix + ソースからの相対ディレクトリ + タイムスタンプ付きファイル名。

        Returns:
            (成功数, 失敗数) のタプル
        """
        if self.options.dry_run:
            for file_info in files:
                mode = "multipart" if self._is_multipart(file_info) else "single"
                self.logger.info(f"[DRY RUN]: Would upload {file_info.path} ({mode})")
            return len(files), 0

        small = [f for f in files if not self._is_multipart(f)]
        large = [f for f in files if self._is_multipart(f)]

        successful = 0
        failed = 0
        for file_info in small:
            if self._upload_small_file(file_info, key_prefix):
                successful += 1
            else:
                failed += 1

        large_ok, large_failed = self._upload_large_files(large, key_prefix)
        return successful + large_ok, failed + large_failed

    def _is_multipart(self, file_info: FileInfo) -> bool:
        return requires_multipart(file_info.size, self.options.multipart_threshold)

    @staticmethod
    def _object_prefix(key_prefix: str, file_info: FileInfo) -> str:
        directory = os.path.dirname(file_info.relative_path)
        if not directory:
            return key_prefix
        return f"{key_prefix}{directory.replace(os.sep, '/')}/"

    def _upload_small_file(self, file_info: FileInfo, key_prefix: str = "") -> bool:
        try:
            self.store.put_object(
                file_info.path, file_info.name, file_info.content_type,
                key_prefix=self._object_prefix(key_prefix, file_info),
            )
            return True
        except Exception as e:
            self.logger.error(f"Error uploading file {file_info.path}: {e}")
            return False

    def _upload_large_files(self, files: List[FileInfo], key_prefix: str = "") -> Tuple[int, int]:
        """全ファイルのセッションを同時に開始して結果を待つ"""
        successful = 0
        failed = 0
        running = []
        for file_info in files:
            handle = self._start(file_info, key_prefix)
            if handle is None:
                failed += 1
            else:
                running.append((file_info, handle))

        for file_info, handle in running:
            if self._wait_with_retries(file_info, handle, key_prefix):
                successful += 1
            else:
                failed += 1
        return successful, failed

    def _start(self, file_info: FileInfo, key_prefix: str = "") -> Optional[UploadHandle]:
        try:
            handle = self.manager.start(
                file_info.path, file_info.content_type,
                key_prefix=self._object_prefix(key_prefix, file_info),
            )
        except (UploadError, ValueError, OSError) as e:
            self.logger.error(f"Could not start upload of {file_info.path}: {e}")
            return None
        if self.progress is not None:
            handle.add_listener(self.progress)
        return handle

    def _wait_with_retries(self, file_info: FileInfo, handle: UploadHandle,
                           key_prefix: str = "") -> bool:
        """失敗したらファイル全体をやり直す（max_retries 回まで）"""
        attempt = 0
        while True:
            session = handle.wait()
            if session.status is SessionStatus.SUCCEEDED:
                return True
            if session.status is SessionStatus.ABORTED or attempt >= self.options.max_retries:
                self.logger.error(
                    f"Upload failed after {attempt + 1} attempts: {file_info.path}"
                )
                return False

            wait_time = 2 ** attempt  # 指数バックオフ
            attempt += 1
            self.logger.warning(
                f"Upload failed (attempt {attempt}/{self.options.max_retries + 1}), "
                f"retrying in {wait_time}s: {file_info.path}"
            )
            time.sleep(wait_time)
            handle = self._start(file_info, key_prefix)
            if handle is None:
                return False
