"""Alibaba Cloud OSS key store.

Keys are stored as objects named ``prefix + key`` and encrypted at rest
by OSS with a KMS managed key.
"""

import oss2
from oss2.exceptions import NoSuchKey, OssError

from vault_operator.config import KVConfig
from vault_operator.exceptions import ConfigurationError, KVError, NotFoundError
from vault_operator.kv import Service, object_name, register

_SSE_HEADER = "x-oss-server-side-encryption"
_SSE_KEY_ID_HEADER = "x-oss-server-side-encryption-key-id"


class OSSStorage(Service):
    """Key store backed by an Alibaba OSS bucket."""

    def __init__(self, bucket: oss2.Bucket, prefix: str = "", kms_key_id: str = "") -> None:
        self.bucket = bucket
        self.prefix = prefix
        self.kms_key_id = kms_key_id

    def __repr__(self) -> str:
        return f"OSSStorage(bucket={self.bucket.bucket_name!r}, prefix={self.prefix!r})"

    def _headers(self) -> dict[str, str]:
        headers = {_SSE_HEADER: "KMS"}
        if self.kms_key_id:
            headers[_SSE_KEY_ID_HEADER] = self.kms_key_id
        return headers

    def set(self, key: str, value: bytes) -> None:
        name = object_name(self.prefix, key)
        try:
            self.bucket.put_object(name, value, headers=self._headers())
        except OssError as err:
            raise KVError(
                f"Error writing key '{name}' to OSS bucket '{self.bucket.bucket_name}': {err.message}"
            ) from err

    def get(self, key: str) -> bytes:
        name = object_name(self.prefix, key)
        try:
            return self.bucket.get_object(name).read()
        except NoSuchKey as err:
            raise NotFoundError(f"Error getting object for key '{name}': {err.message}") from err
        except OssError as err:
            raise KVError(f"Error getting object for key '{name}': {err.message}") from err

    def test(self, key: str) -> None:
        try:
            self.bucket.get_bucket_info()
        except OssError as err:
            raise KVError(f"OSS bucket '{self.bucket.bucket_name}' is not reachable: {err.message}") from err


@register("alibaba-kms-oss")
def new(config: KVConfig) -> OSSStorage:
    missing = [
        flag
        for flag, value in (
            ("--oss-endpoint", config.oss_endpoint),
            ("--oss-bucket", config.oss_bucket),
            ("--oss-access-key-id", config.oss_access_key_id),
            ("--oss-access-key-secret", config.oss_access_key_secret),
        )
        if not value
    ]
    if missing:
        raise ConfigurationError(f"The alibaba-kms-oss key store requires: {', '.join(missing)}")

    auth = oss2.Auth(config.oss_access_key_id, config.oss_access_key_secret)
    bucket = oss2.Bucket(auth, config.oss_endpoint, config.oss_bucket)
    return OSSStorage(bucket=bucket, prefix=config.oss_prefix, kms_key_id=config.kms_key_id)
