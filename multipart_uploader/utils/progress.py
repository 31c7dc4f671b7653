"""アップロード進捗の集計と表示"""
import sys
import threading
from dataclasses import dataclass
from typing import Dict, Optional, TextIO, Tuple

from ..models.upload import PartStatus, ProgressEvent, SessionStatus, UploadSession


@dataclass(frozen=True)
class ProgressSummary:
    """集計結果"""
    bytes_sent: int
    progress_fraction: float
    speed: float  # bytes/sec
    elapsed: float
    remaining: float


class ProgressAggregator:
    """パーツごとの進捗イベントを全体の進捗に畳み込む

    パーツごとに最新の (bytes_sent, timestamp) だけを保持し、合計は差分の積み上げ
    ではなく最新値の和で求める。bytes_sent が前回値より小さいイベントは捨てるので、
    重複や順序の入れ替わりがあっても全体の進捗は減らない。

    スレッドセーフではない。呼び出し側（コーディネーター）が直列化する。
    """

    def __init__(self, total_bytes: int, started_at: float):
        self.total_bytes = total_bytes
        self.started_at = started_at
        self._parts: Dict[int, Tuple[int, float]] = {}
        self._speeds: Dict[int, float] = {}
        self._bytes_sent = 0

    def record(self, event: ProgressEvent) -> bool:
        """イベントを取り込む。受理したら True"""
        previous = self._parts.get(event.part_number)
        bytes_sent = min(max(event.bytes_sent, 0), event.bytes_total)

        if previous is not None:
            previous_bytes, previous_time = previous
            if bytes_sent < previous_bytes:
                return False
            elapsed = event.timestamp - previous_time
            if elapsed > 0:
                self._speeds[event.part_number] = (bytes_sent - previous_bytes) / elapsed
            self._bytes_sent += bytes_sent - previous_bytes
        else:
            self._speeds.setdefault(event.part_number, 0.0)
            self._bytes_sent += bytes_sent

        self._parts[event.part_number] = (bytes_sent, event.timestamp)
        return True

    def part_bytes(self, part_number: int) -> int:
        return self._parts.get(part_number, (0, 0.0))[0]

    def part_speed(self, part_number: int) -> float:
        return self._speeds.get(part_number, 0.0)

    @property
    def bytes_sent(self) -> int:
        return self._bytes_sent

    def summary(self, now: float) -> ProgressSummary:
        """現在時刻での進捗・速度・残り時間"""
        sent = self._bytes_sent
        fraction = min(max(sent / self.total_bytes, 0.0), 1.0) if self.total_bytes > 0 else 0.0
        elapsed = now - self.started_at
        speed = sent / elapsed if elapsed > 0 else 0.0
        remaining = (self.total_bytes - sent) / speed if speed > 0 else 0.0
        return ProgressSummary(
            bytes_sent=sent,
            progress_fraction=fraction,
            speed=speed,
            elapsed=max(elapsed, 0.0),
            remaining=max(remaining, 0.0),
        )


class ConsoleProgress:
    """セッションのスナップショットをコンソールに表示"""

    def __init__(self, stream: Optional[TextIO] = None, min_interval: float = 0.5):
        self.stream = stream or sys.stdout
        self.min_interval = min_interval
        self.lock = threading.Lock()
        self._last_render: Dict[str, float] = {}

    def __call__(self, session: UploadSession):
        """UploadHandle のリスナーとして使用"""
        with self.lock:
            if session.is_terminal:
                self._last_render.pop(session.session_id, None)
                self._display_result(session)
                return

            last = self._last_render.get(session.session_id)
            if last is not None and session.elapsed_duration - last < self.min_interval:
                return
            self._last_render[session.session_id] = session.elapsed_duration
            self._display_progress(session)

    def _display_progress(self, session: UploadSession):
        progress = session.overall_progress_fraction * 100
        sent = int(session.total_bytes * session.overall_progress_fraction)
        speed = session.overall_speed / 1024 / 1024  # MB/s
        done = sum(1 for part in session.parts if part.status is PartStatus.COMPLETED)

        self.stream.write(
            f"\r{session.file_name}: {progress:.1f}% ({sent}/{session.total_bytes}) "
            f"[{done}/{len(session.parts)} parts] - {speed:.2f} MB/s "
            f"- ETA: {session.estimated_remaining_duration:.0f}s"
        )
        self.stream.flush()

    def _display_result(self, session: UploadSession):
        if session.status is SessionStatus.SUCCEEDED:
            speed = session.overall_speed / 1024 / 1024
            message = f"Complete! - {speed:.2f} MB/s - {session.elapsed_duration:.1f}s"
        elif session.status is SessionStatus.ABORTED:
            message = "Aborted"
        else:
            message = f"Failed: {session.error.message if session.error else 'unknown error'}"
        self.stream.write(f"\r{session.file_name}: {message}\n")
        self.stream.flush()
