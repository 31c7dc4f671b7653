"""マルチパートアップロードのコアモジュール"""
from .planner import plan_chunks, requires_multipart
from .store import ObjectStore, S3ObjectStore
from .s3_client import S3ClientManager
from .part_uploader import PartUploader
from .coordinator import UploadCoordinator
from .manager import UploadHandle, UploadManager
from .task_runner import TaskRunner

__all__ = [
    'plan_chunks',
    'requires_multipart',
    'ObjectStore',
    'S3ObjectStore',
    'S3ClientManager',
    'PartUploader',
    'UploadCoordinator',
    'UploadHandle',
    'UploadManager',
    'TaskRunner',
]
