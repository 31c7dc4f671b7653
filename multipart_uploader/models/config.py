"""設定管理用のデータクラス"""
from dataclasses import dataclass, field
from typing import List, Optional
import json
import os
import re

from ..errors import ConfigurationError

MIB = 1024 * 1024


@dataclass
class LoggingConfig:
    """ロギング設定"""
    level: str = "INFO"
    format: str = "%(asctime)s - %(levelname)s - %(message)s"
    file: Optional[str] = None


@dataclass
class AssumeRoleConfig:
    """AssumeRole設定"""
    role_arn: str
    session_name: str
    external_id: Optional[str] = None
    duration_seconds: int = 3600

    def __post_init__(self):
        """AssumeRole設定のバリデーション"""
        arn_pattern = r'^arn:aws:iam::[0-9]{12}:role\/[a-zA-Z0-9+=,.@_-]+$'
        if not re.match(arn_pattern, self.role_arn):
            raise ConfigurationError(
                f"Invalid role_arn format: {self.role_arn}. "
                "Expected format: arn:aws:iam::ACCOUNT_ID:role/ROLE_NAME"
            )

        if not self.session_name or not self.session_name.strip():
            raise ConfigurationError("session_name cannot be empty")

        # 2-64文字の英数字、アンダースコア、ハイフン、ピリオドのみ
        if not re.match(r'^[a-zA-Z0-9_.-]{2,64}$', self.session_name):
            raise ConfigurationError(
                f"Invalid session_name: {self.session_name}. "
                "Must be 2-64 characters long and contain only alphanumeric characters, "
                "underscores, hyphens, and periods"
            )

        if not (900 <= self.duration_seconds <= 43200):
            raise ConfigurationError(
                f"Invalid duration_seconds: {self.duration_seconds}. "
                "Must be between 900 and 43200 seconds (15 minutes to 12 hours)"
            )


@dataclass
class AWSConfig:
    """AWS関連の設定"""
    region: str
    bucket: str
    profile: Optional[str] = None
    endpoint_url: Optional[str] = None
    assume_role: Optional[AssumeRoleConfig] = None

    def __post_init__(self):
        if not self.region:
            raise ConfigurationError("aws.region is required")
        if not self.bucket:
            raise ConfigurationError("aws.bucket is required")
        if self.assume_role:
            if isinstance(self.assume_role, dict):
                self.assume_role = AssumeRoleConfig(**self.assume_role)
            elif not isinstance(self.assume_role, AssumeRoleConfig):
                raise TypeError(
                    f"assume_role must be dict or AssumeRoleConfig, got {type(self.assume_role)}"
                )

    @classmethod
    def from_dict(cls, data: dict) -> 'AWSConfig':
        """環境変数 AWS_REGION / AWS_BUCKET で上書きして作成"""
        values = dict(data)
        if os.environ.get("AWS_REGION"):
            values["region"] = os.environ["AWS_REGION"]
        if os.environ.get("AWS_BUCKET"):
            values["bucket"] = os.environ["AWS_BUCKET"]
        values.setdefault("region", "")
        values.setdefault("bucket", "")
        return cls(**values)


@dataclass
class UploadOptions:
    """アップロードオプション"""
    multipart_threshold: int = 5 * MIB  # これを超えるとマルチパート
    chunk_size: int = 5 * MIB
    max_concurrency: Optional[int] = None  # None: パーツ数だけ同時実行
    max_active_sessions: Optional[int] = None  # None: ファイル間の上限なし
    presign_expires_seconds: int = 3600
    progress_interval_seconds: float = 0.02
    io_chunksize: int = 262144  # 256KB
    cancel_grace_seconds: float = 10.0
    cancel_siblings_on_failure: bool = False
    session_retention_seconds: float = 2.0
    object_acl: Optional[str] = "public-read"
    request_timeout_seconds: float = 300.0
    max_retries: int = 0
    exclude_patterns: List[str] = field(default_factory=list)
    dry_run: bool = False
    enable_progress: bool = True

    def __post_init__(self):
        positive = {
            "multipart_threshold": self.multipart_threshold,
            "chunk_size": self.chunk_size,
            "presign_expires_seconds": self.presign_expires_seconds,
            "io_chunksize": self.io_chunksize,
            "request_timeout_seconds": self.request_timeout_seconds,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ConfigurationError(f"{name} must be positive, got {value}")

        for name in ("max_concurrency", "max_active_sessions"):
            value = getattr(self, name)
            if value is not None and value < 1:
                raise ConfigurationError(f"{name} must be at least 1 or null, got {value}")

        if self.progress_interval_seconds < 0:
            raise ConfigurationError("progress_interval_seconds cannot be negative")
        if self.cancel_grace_seconds < 0:
            raise ConfigurationError("cancel_grace_seconds cannot be negative")
        if self.session_retention_seconds < 0:
            raise ConfigurationError("session_retention_seconds cannot be negative")
        if self.max_retries < 0:
            raise ConfigurationError("max_retries cannot be negative")


@dataclass
class UploadTask:
    """個別のアップロードタスク"""
    name: str
    source: str

    description: Optional[str] = None
    enabled: bool = True
    key_prefix: Optional[str] = None  # オブジェクトキーの先頭に付ける
    recursive: bool = False


@dataclass
class Config:
    """メイン設定クラス"""
    logging: LoggingConfig
    aws: AWSConfig
    options: UploadOptions
    upload_tasks: List[UploadTask]

    @classmethod
    def from_file(cls, config_path: str) -> 'Config':
        """設定ファイルから読み込み"""
        if not os.path.exists(config_path):
            raise FileNotFoundError(f"Configuration file {config_path} not found.")

        try:
            with open(config_path, "r", encoding="utf-8") as file:
                data = json.load(file)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Error decoding JSON from {config_path}: {e}") from e

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> 'Config':
        """辞書から各セクションをパース"""
        try:
            return cls(
                logging=LoggingConfig(**data.get("logging", {})),
                aws=AWSConfig.from_dict(data.get("aws", {})),
                options=UploadOptions(**data.get("options", {})),
                upload_tasks=[UploadTask(**task) for task in data.get("upload_tasks", [])],
            )
        except ConfigurationError:
            raise
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Error loading configuration: {e}") from e
