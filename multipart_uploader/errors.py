"""アップロード処理の例外定義"""
from typing import Optional


class UploadError(RuntimeError):
    """アップロード関連エラーの基底クラス"""


class ConfigurationError(UploadError, ValueError):
    """設定値・分割パラメータが不正"""


class InitiationError(UploadError):
    """マルチパートアップロードの開始をバックエンドが拒否した"""


class CompletionError(UploadError):
    """パーツからのオブジェクト組み立てに失敗した"""


class CancellationRequested(UploadError):
    """ユーザー操作による中断（エラーではない）"""


class PartUploadError(UploadError):
    """単一パーツの転送失敗"""

    def __init__(self, part_number: int, cause, cancelled: bool = False):
        self.part_number = part_number
        self.cause = cause
        self.cancelled = cancelled
        super().__init__(f"Part {part_number} failed: {cause}")

    @property
    def reason(self) -> Optional[str]:
        return str(self.cause) if self.cause is not None else None
