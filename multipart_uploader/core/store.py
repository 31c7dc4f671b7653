"""オブジェクトストレージとのやり取り"""
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional, Sequence, Tuple
from urllib.parse import quote

from botocore.exceptions import BotoCoreError, ClientError

from ..errors import CompletionError, InitiationError, UploadError
from ..models.config import AWSConfig, UploadOptions
from ..models.upload import PartReceipt
from ..utils.logger import LoggerManager


class ObjectStore(ABC):
    """マルチパートアップロードに必要なバックエンド操作"""

    @abstractmethod
    def initiate_multipart_upload(self, filename: str, content_type: str,
                                  key_prefix: str = "") -> Tuple[str, str]:
        """(upload_id, storage_key) を返す。失敗時は InitiationError"""

    @abstractmethod
    def authorize_part_upload(self, upload_id: str, part_number: int, storage_key: str) -> str:
        """1パーツだけ書き込める期限付きURLを返す"""

    @abstractmethod
    def complete_multipart_upload(self, upload_id: str, storage_key: str,
                                  receipts: Sequence[PartReceipt]) -> str:
        """パーツ番号順のレシートで組み立て、公開URLを返す。失敗時は CompletionError"""

    @abstractmethod
    def abort_multipart_upload(self, upload_id: str, storage_key: str) -> None:
        """ベストエフォートで中断"""


class S3ObjectStore(ObjectStore):
    """boto3 を使った S3 実装"""

    def __init__(self, s3_client, aws_config: AWSConfig, options: UploadOptions,
                 clock: Callable[[], float] = time.time):
        self.s3_client = s3_client
        self.aws_config = aws_config
        self.options = options
        self.clock = clock
        self.logger = LoggerManager.get_logger()

    @property
    def bucket(self) -> str:
        return self.aws_config.bucket

    def make_key(self, filename: str, key_prefix: str = "") -> str:
        """タイムスタンプ付きの一意なキー"""
        return f"{key_prefix}{int(self.clock())}_{filename}"

    def public_url(self, key: str) -> str:
        if self.aws_config.endpoint_url:
            base = self.aws_config.endpoint_url.rstrip("/")
            return f"{base}/{self.bucket}/{quote(key)}"
        return f"https://s3.{self.aws_config.region}.amazonaws.com/{self.bucket}/{quote(key)}"

    def initiate_multipart_upload(self, filename: str, content_type: str,
                                  key_prefix: str = "") -> Tuple[str, str]:
        key = self.make_key(filename, key_prefix)
        try:
            response = self.s3_client.create_multipart_upload(
                Bucket=self.bucket,
                Key=key,
                ContentType=content_type,
            )
        except (ClientError, BotoCoreError) as e:
            raise InitiationError(f"Failed to initiate multipart upload for {filename}: {e}") from e

        upload_id = response.get('UploadId')
        if not upload_id:
            raise InitiationError(f"No UploadId returned for {filename}")

        self.logger.info(f"Initiated multipart upload {upload_id} for {self.bucket}/{key}")
        return upload_id, key

    def authorize_part_upload(self, upload_id: str, part_number: int, storage_key: str) -> str:
        try:
            return self.s3_client.generate_presigned_url(
                'upload_part',
                Params={
                    'Bucket': self.bucket,
                    'Key': storage_key,
                    'UploadId': upload_id,
                    'PartNumber': part_number,
                },
                ExpiresIn=self.options.presign_expires_seconds,
            )
        except (ClientError, BotoCoreError) as e:
            raise UploadError(f"Failed to create presigned URL for part {part_number}: {e}") from e

    def complete_multipart_upload(self, upload_id: str, storage_key: str,
                                  receipts: Sequence[PartReceipt]) -> str:
        parts = [
            {'PartNumber': receipt.part_number, 'ETag': receipt.integrity_tag}
            for receipt in receipts
        ]
        try:
            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket,
                Key=storage_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts},
            )
        except (ClientError, BotoCoreError) as e:
            raise CompletionError(f"Failed to complete multipart upload {upload_id}: {e}") from e

        self._apply_acl(storage_key)
        self.logger.info(f"Completed multipart upload {upload_id} ({len(parts)} parts)")
        return self.public_url(storage_key)

    def abort_multipart_upload(self, upload_id: str, storage_key: str) -> None:
        try:
            self.s3_client.abort_multipart_upload(
                Bucket=self.bucket,
                Key=storage_key,
                UploadId=upload_id,
            )
            self.logger.info(f"Aborted multipart upload {upload_id}")
        except (ClientError, BotoCoreError) as e:
            self.logger.warning(f"Failed to abort multipart upload {upload_id}: {e}")

    def put_object(self, path: str, filename: str, content_type: str,
                   key_prefix: str = "") -> str:
        """しきい値以下のファイル用の単発アップロード（コア外）"""
        key = self.make_key(filename, key_prefix)
        extra_args = {'ContentType': content_type}
        if self.options.object_acl:
            extra_args['ACL'] = self.options.object_acl
        self.s3_client.upload_file(path, self.bucket, key, ExtraArgs=extra_args)
        self.logger.info(f"Uploaded {path} to {self.bucket}/{key}")
        return self.public_url(key)

    def _apply_acl(self, key: str, acl: Optional[str] = None):
        acl = acl or self.options.object_acl
        if not acl:
            return
        try:
            self.s3_client.put_object_acl(Bucket=self.bucket, Key=key, ACL=acl)
        except (ClientError, BotoCoreError) as e:
            raise CompletionError(f"Failed to set object ACL on {key}: {e}") from e
