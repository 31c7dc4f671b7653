"""S3クライアント管理"""
import boto3
from typing import Optional, Dict, Any
from botocore.config import Config as BotoConfig
from botocore.exceptions import NoCredentialsError, ClientError
from ..models.config import AWSConfig
from ..utils.logger import LoggerManager


class S3ClientManager:
    """S3クライアントの作成と管理

    プロファイル指定の有無は _base_session() だけが見る。
    AssumeRole が設定されていれば、その一時認証情報のセッションで S3 クライアントを作る。
    """

    def __init__(self, aws_config: AWSConfig):
        self.aws_config = aws_config
        self.logger = LoggerManager.get_logger()
        self._client: Optional[Any] = None

    def get_client(self):
        """S3クライアントを取得（必要に応じて作成）"""
        if self._client is None:
            self._client = self._create_client()
        return self._client

    def _base_session(self) -> boto3.Session:
        """環境変数 / プロファイルの認証情報を使うセッション"""
        if self.aws_config.profile:
            return boto3.Session(profile_name=self.aws_config.profile)
        return boto3.Session()

    def _client_kwargs(self) -> Dict[str, Any]:
        # 署名付きURLは SigV4 で発行する
        kwargs: Dict[str, Any] = {
            'region_name': self.aws_config.region,
            'config': BotoConfig(signature_version='s3v4'),
        }
        if self.aws_config.endpoint_url:
            kwargs['endpoint_url'] = self.aws_config.endpoint_url
        return kwargs

    def _create_client(self):
        try:
            session = self._base_session()
            source = "default credentials"
            if self.aws_config.assume_role:
                role_credentials = self._assume_role(session)
                if role_credentials is not None:
                    session = boto3.Session(**role_credentials)
                    source = "assumed role credentials"

            s3_client = session.client('s3', **self._client_kwargs())
            self.logger.info(f"S3 client created with {source}.")
            return s3_client

        except NoCredentialsError:
            self.logger.error("AWS credentials not available.")
            raise
        except Exception as e:
            self.logger.error(f"Error creating S3 client: {e}")
            raise

    def _assume_role(self, session: boto3.Session) -> Optional[Dict[str, str]]:
        """一時認証情報を boto3.Session の引数名で返す。失敗時は None（通常の認証に戻る）"""
        role = self.aws_config.assume_role
        sts_client = session.client(
            'sts',
            region_name=self.aws_config.region,
            endpoint_url=f"https://sts.{self.aws_config.region}.amazonaws.com",
        )
        params = {
            'RoleArn': role.role_arn,
            'RoleSessionName': role.session_name,
            'DurationSeconds': role.duration_seconds,
        }
        if role.external_id:
            params['ExternalId'] = role.external_id

        try:
            credentials = sts_client.assume_role(**params)['Credentials']
        except ClientError as e:
            self.logger.error(f"Error assuming role {role.role_arn}: {e}")
            return None

        self.logger.info(f"Assumed role successfully: {role.role_arn}")
        return {
            'aws_access_key_id': credentials['AccessKeyId'],
            'aws_secret_access_key': credentials['SecretAccessKey'],
            'aws_session_token': credentials['SessionToken'],
        }
