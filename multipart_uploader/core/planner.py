"""ファイルのチャンク分割"""
from typing import List

from ..errors import ConfigurationError
from ..models.config import MIB
from ..models.upload import ChunkDescriptor

DEFAULT_CHUNK_SIZE = 5 * MIB
DEFAULT_MULTIPART_THRESHOLD = 5 * MIB


def plan_chunks(total_bytes: int, chunk_size: int = DEFAULT_CHUNK_SIZE) -> List[ChunkDescriptor]:
    """[0, total_bytes) を chunk_size ごとに隙間なく分割

    最後のチャンク以外はすべて chunk_size バイト。パーツ番号は 1..N。
    """
    if total_bytes <= 0:
        raise ConfigurationError(f"total_bytes must be positive, got {total_bytes}")
    if chunk_size <= 0:
        raise ConfigurationError(f"chunk_size must be positive, got {chunk_size}")

    part_count = -(-total_bytes // chunk_size)
    chunks = []
    for index in range(part_count):
        offset = index * chunk_size
        chunks.append(ChunkDescriptor(
            part_number=index + 1,
            byte_offset=offset,
            byte_length=min(chunk_size, total_bytes - offset),
        ))
    return chunks


def requires_multipart(total_bytes: int, threshold: int = DEFAULT_MULTIPART_THRESHOLD) -> bool:
    """しきい値を超えるファイルだけマルチパートで送る"""
    return total_bytes > threshold
