"""ファイル操作関連のユーティリティ"""
import os
import fnmatch
import mimetypes
from typing import Iterator, List, Generator
from dataclasses import dataclass

DEFAULT_CONTENT_TYPE = "application/octet-stream"


@dataclass
class FileInfo:
    """ファイル情報"""
    path: str
    size: int
    relative_path: str

    @property
    def name(self) -> str:
        return os.path.basename(self.path)

    @property
    def content_type(self) -> str:
        guessed, _ = mimetypes.guess_type(self.name)
        return guessed or DEFAULT_CONTENT_TYPE


class FileDataSource:
    """ファイルの指定範囲をブロック単位で読み出す"""

    def __init__(self, path: str, block_size: int = 262144):
        self.path = path
        self.block_size = block_size

    def read_range(self, offset: int, length: int) -> Iterator[bytes]:
        """[offset, offset+length) をストリームで返す（呼び出しごとに別ハンドル）"""
        with open(self.path, "rb") as f:
            f.seek(offset)
            remaining = length
            while remaining > 0:
                block = f.read(min(self.block_size, remaining))
                if not block:
                    raise IOError(
                        f"Unexpected end of file {self.path} at offset {offset + length - remaining}"
                    )
                remaining -= len(block)
                yield block


class FileScanner:
    """ファイルスキャン機能"""

    def __init__(self, exclude_patterns: List[str] = None):
        self.exclude_patterns = exclude_patterns or []

    def should_exclude(self, file_path: str) -> bool:
        """ファイルが除外パターンに一致するかチェック"""
        file_name = os.path.basename(file_path)

        for pattern in self.exclude_patterns:
            if fnmatch.fnmatch(file_name, pattern):
                return True
            if fnmatch.fnmatch(file_path, f"*{pattern}*"):
                return True

        return False

    def scan_directory(self, directory: str, recursive: bool = False) -> Generator[FileInfo, None, None]:
        """ディレクトリをスキャンしてファイル情報を生成"""
        if not os.path.isdir(directory):
            raise ValueError(f"Not a directory: {directory}")

        if recursive:
            for root, dirs, files in os.walk(directory):
                # 除外パターンに一致するディレクトリは降りない
                dirs[:] = [d for d in dirs if not self.should_exclude(os.path.join(root, d))]

                for file in sorted(files):
                    file_path = os.path.join(root, file)
                    if not self.should_exclude(file_path):
                        yield self._file_info(file_path, os.path.relpath(file_path, directory))
        else:
            for item in sorted(os.listdir(directory)):
                file_path = os.path.join(directory, item)
                if os.path.isfile(file_path) and not self.should_exclude(file_path):
                    yield self._file_info(file_path, item)

    def get_file_info(self, file_path: str) -> FileInfo:
        """単一ファイルの情報を取得"""
        if not os.path.isfile(file_path):
            raise ValueError(f"Not a file: {file_path}")
        return self._file_info(file_path, os.path.basename(file_path))

    @staticmethod
    def _file_info(file_path: str, relative_path: str) -> FileInfo:
        return FileInfo(
            path=file_path,
            size=os.path.getsize(file_path),
            relative_path=relative_path
        )
