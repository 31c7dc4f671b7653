"""マルチパートアップロードのデータモデル"""
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class PartStatus(str, Enum):
    """パーツ単位の状態"""
    PENDING = "pending"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    ERRORED = "errored"
    ABORTED = "aborted"


class SessionStatus(str, Enum):
    """セッション全体の状態（UIに見せるもの）"""
    UPLOADING = "uploading"
    SUCCEEDED = "succeeded"
    ERRORED = "errored"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.UPLOADING


class CoordinatorState(str, Enum):
    """コーディネーターの内部状態"""
    INITIATING = "initiating"
    UPLOADING = "uploading"
    CANCELLING = "cancelling"
    COMPLETING = "completing"
    SUCCEEDED = "succeeded"
    ERRORED = "errored"
    ABORTED = "aborted"


@dataclass(frozen=True)
class ChunkDescriptor:
    """ファイルの連続したバイト範囲（1始まりのパーツ番号）"""
    part_number: int
    byte_offset: int
    byte_length: int

    @property
    def end_offset(self) -> int:
        return self.byte_offset + self.byte_length


@dataclass(frozen=True)
class PartReceipt:
    """パーツ保存の証明（完了処理に必要）"""
    part_number: int
    integrity_tag: str


@dataclass(frozen=True)
class ProgressEvent:
    """パーツ転送の進捗通知"""
    part_number: int
    bytes_sent: int
    bytes_total: int
    timestamp: float


@dataclass
class ErrorInfo:
    """表示用のエラー詳細"""
    kind: str
    message: str
    part_number: Optional[int] = None


@dataclass
class PartState:
    """パーツごとの進捗状態"""
    part_number: int
    byte_length: int
    status: PartStatus = PartStatus.PENDING
    progress_fraction: float = 0.0
    instantaneous_speed: float = 0.0  # bytes/sec
    error: Optional[str] = None


@dataclass
class UploadSession:
    """1ファイル分のアップロード状態

    コーディネーターだけが書き換える。外部には `snapshot()` のコピーを渡す。
    """
    session_id: str
    file_identity: str
    file_name: str
    total_bytes: int
    start_timestamp: float
    status: SessionStatus = SessionStatus.UPLOADING
    state: CoordinatorState = CoordinatorState.INITIATING
    overall_progress_fraction: float = 0.0
    overall_speed: float = 0.0
    elapsed_duration: float = 0.0
    estimated_remaining_duration: float = 0.0
    parts: List[PartState] = field(default_factory=list)
    cancellation_requested: bool = False
    upload_id: Optional[str] = None
    storage_key: Optional[str] = None
    public_url: Optional[str] = None
    error: Optional[ErrorInfo] = None
    finished_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def part(self, part_number: int) -> PartState:
        return self.parts[part_number - 1]
