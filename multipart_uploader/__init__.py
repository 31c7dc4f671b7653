"""S3 マルチパートアップローダー パッケージ"""
from typing import Tuple
from .models.config import Config
from .utils.logger import LoggerManager
from .core.task_runner import TaskRunner
from .core.manager import UploadHandle, UploadManager


class MultipartUploader:
    """設定ファイルからタスクを実行するメインクラス"""

    def __init__(self, config_path: str = "config.json"):
        self.config = Config.from_file(config_path)

        self.logger = LoggerManager.setup(self.config.logging)
        self.logger.info("Multipart uploader initialized")

        self.task_runner = TaskRunner(self.config)

    def run(self) -> Tuple[int, int]:
        """アップロードタスクを実行"""
        self.logger.info("Starting S3 upload process...")
        try:
            return self.task_runner.run_all_tasks()
        finally:
            self.task_runner.manager.close()


__all__ = ['MultipartUploader', 'Config', 'UploadManager', 'UploadHandle']
