import os
import logging
import time
from typing import Dict, Any, Optional

import boto3
from botocore.exceptions import ClientError, BotoCoreError
from botocore.config import Config

from docjobs.exceptions import ServiceUnavailable
from .abstract_storage import AbstractStorage

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = ('500', '502', '503', '504', 'Throttling', 'SlowDown',
                    'RequestTimeout', 'ServiceUnavailable')
NOT_FOUND_ERRORS = ('404', 'NoSuchKey', 'NotFound')


class S3Storage(AbstractStorage):
    """
    S3 implementation of the storage backend

    Stores job inputs and outputs in Amazon S3 (or any S3 compatible store
    reachable through ``endpoint_url``). Credentials come from the config,
    then environment variables, then the IAM role / default profile.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize S3 storage

        Args:
            config: Configuration dictionary with:
                - bucket: S3 bucket name (required)
                - access_key / secret_key / session_token: optional credentials
                - region: AWS region (default: us-east-1)
                - endpoint_url: optional custom endpoint
                - prefix: Optional S3 key prefix
                - max_retries: Maximum retry attempts (default: 3)
                - retry_delay: Base delay between retries in seconds (default: 1.0)
                - connect_timeout / read_timeout: seconds (default: 60)
        """
        self.config = config

        self.bucket = config.get('bucket')
        if not self.bucket:
            raise ValueError("S3 bucket name is required in configuration")

        credentials = self._get_credentials(config)
        self.region = credentials['region']
        self.prefix = (config.get('prefix') or '').strip('/')
        if self.prefix:
            self.prefix += '/'

        self.max_retries = config.get('max_retries', 3)
        self.retry_delay = config.get('retry_delay', 1.0)

        boto_config = Config(
            retries={
                'max_attempts': self.max_retries,
                'mode': 'adaptive'
            },
            connect_timeout=config.get('connect_timeout', 60),
            read_timeout=config.get('read_timeout', 60)
        )

        client_kwargs = {
            'service_name': 's3',
            'region_name': self.region,
            'config': boto_config
        }
        if config.get('endpoint_url'):
            client_kwargs['endpoint_url'] = config['endpoint_url']

        if credentials['access_key'] and credentials['secret_key']:
            client_kwargs['aws_access_key_id'] = credentials['access_key']
            client_kwargs['aws_secret_access_key'] = credentials['secret_key']
            if credentials['session_token']:
                client_kwargs['aws_session_token'] = credentials['session_token']

        self.s3 = boto3.client(**client_kwargs)
        self.ensure_storage_exists()

    def _get_credentials(self, config: Dict[str, Any]) -> Dict[str, Optional[str]]:
        credentials = {
            'access_key': config.get('access_key') or os.getenv('AWS_ACCESS_KEY_ID'),
            'secret_key': config.get('secret_key') or os.getenv('AWS_SECRET_ACCESS_KEY'),
            'session_token': config.get('session_token') or os.getenv('AWS_SESSION_TOKEN'),
            'region': config.get('region') or os.getenv('AWS_DEFAULT_REGION', 'us-east-1')
        }
        logger.info(f"S3 storage initialized with bucket: {self.bucket}, region: {credentials['region']}")
        return credentials

    def _get_full_key(self, key: str) -> str:
        key = key.lstrip('/')
        return f"{self.prefix}{key}" if self.prefix else key

    @staticmethod
    def _error_code(e: Exception) -> str:
        if isinstance(e, ClientError):
            return str(e.response.get('Error', {}).get('Code', ''))
        return ''

    def _retry_on_error(self, func, *args, **kwargs):
        """
        Retry a client call on transient errors with exponential backoff

        Raises:
            ClientError: For non-retryable errors (e.g. missing key)
            ServiceUnavailable: When retries are exhausted or the client cannot connect
        """
        for attempt in range(self.max_retries):
            try:
                return func(*args, **kwargs)
            except (ClientError, BotoCoreError) as e:
                error_code = self._error_code(e)
                transient = (error_code in RETRYABLE_ERRORS or 'timeout' in str(e).lower()
                             or isinstance(e, BotoCoreError))
                if not transient:
                    raise
                if attempt < self.max_retries - 1:
                    wait_time = self.retry_delay * (2 ** attempt)
                    logger.warning(f"S3 operation failed (attempt {attempt + 1}/{self.max_retries}): {e}. Retrying in {wait_time}s...")
                    time.sleep(wait_time)
                    continue
                logger.error(f"S3 operation failed after {self.max_retries} attempts: {e}")
                raise ServiceUnavailable("Object storage unavailable") from e

    def ensure_storage_exists(self) -> None:
        """Ensure S3 bucket exists"""
        try:
            self._retry_on_error(self.s3.head_bucket, Bucket=self.bucket)
        except ClientError as e:
            if self._error_code(e) not in NOT_FOUND_ERRORS:
                logger.error(f"Failed to access S3 bucket {self.bucket}: {e}")
                raise ServiceUnavailable("Object storage unavailable") from e
            create_params = {'Bucket': self.bucket}
            if self.region != 'us-east-1':
                create_params['CreateBucketConfiguration'] = {
                    'LocationConstraint': self.region
                }
            try:
                self._retry_on_error(self.s3.create_bucket, **create_params)
            except ClientError as create_error:
                logger.error(f"Failed to create S3 bucket {self.bucket}: {create_error}")
                raise ServiceUnavailable("Object storage unavailable") from create_error
            logger.info(f"Created S3 bucket: {self.bucket}")

    def put(self, key: str, data: bytes) -> str:
        full_key = self._get_full_key(key)
        try:
            self._retry_on_error(self.s3.put_object, Bucket=self.bucket, Key=full_key, Body=data)
        except ClientError as e:
            logger.error(f"Failed to save content to S3 key {full_key}: {e}")
            raise ServiceUnavailable("Object storage unavailable") from e
        logger.debug(f"Saved {len(data)} bytes to S3: {full_key}")
        return f"s3://{self.bucket}/{full_key}"

    def get(self, key: str) -> bytes:
        full_key = self._get_full_key(key)
        try:
            response = self._retry_on_error(self.s3.get_object, Bucket=self.bucket, Key=full_key)
        except ClientError as e:
            if self._error_code(e) in NOT_FOUND_ERRORS:
                raise FileNotFoundError(f"File not found in S3: {full_key}") from e
            logger.error(f"Failed to load content from S3 key {full_key}: {e}")
            raise ServiceUnavailable("Object storage unavailable") from e
        return response['Body'].read()

    def delete(self, key: str) -> bool:
        if not self.exists(key):
            return False
        full_key = self._get_full_key(key)
        try:
            self._retry_on_error(self.s3.delete_object, Bucket=self.bucket, Key=full_key)
        except ClientError as e:
            logger.warning(f"Failed to delete content from S3 key {full_key}: {e}")
            return False
        logger.debug(f"Deleted content from S3: {full_key}")
        return True

    def exists(self, key: str) -> bool:
        full_key = self._get_full_key(key)
        try:
            self._retry_on_error(self.s3.head_object, Bucket=self.bucket, Key=full_key)
            return True
        except ClientError as e:
            if self._error_code(e) in NOT_FOUND_ERRORS:
                return False
            logger.error(f"Error checking existence of S3 key {full_key}: {e}")
            raise ServiceUnavailable("Object storage unavailable") from e

    def get_url(self, key: str, expires_in: Optional[int] = 3600) -> str:
        """
        Generate a presigned download URL

        Args:
            key: Storage key
            expires_in: Expiration time in seconds (default: 3600)
        """
        full_key = self._get_full_key(key)
        try:
            return self.s3.generate_presigned_url(
                'get_object',
                Params={'Bucket': self.bucket, 'Key': full_key},
                ExpiresIn=expires_in or 3600
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to generate presigned URL for S3 key {full_key}: {e}")
            raise ServiceUnavailable("Object storage unavailable") from e
