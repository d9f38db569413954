"""S3 storage backend."""

from typing import Any, Dict, List, Optional, Tuple
from concurrent.futures import ThreadPoolExecutor

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError

from ps_orchestrator.storage.backend import join_path
from ps_orchestrator.utils.config import PSConfig
from ps_orchestrator.utils.logging import get_logger


class S3Backend:
    """
    S3 (or S3-compatible) storage backend.

    Keys are relative to ``config.storage_base_path``, which must be an
    ``s3://bucket/prefix`` URI. S3 has no atomic rename: ``rename`` copies
    every object and deletes the source, copying the ``commit_last`` object
    after all others so that a reader keyed on it never sees a partial
    destination.
    """

    def __init__(self, config: PSConfig):
        """
        Initialize S3 backend.

        Args:
            config: Job configuration with S3 settings
        """
        if not config.storage_base_path.startswith("s3://"):
            raise ValueError("S3 backend requires storage_base_path of the form s3://bucket/prefix")

        self.config = config
        self.logger = get_logger("s3_backend")
        self.bucket, self.root = self._parse_s3_path(config.storage_base_path)

        boto_config = BotoConfig(
            max_pool_connections=config.s3_max_concurrency,
            retries={"max_attempts": 3, "mode": "adaptive"}
        )
        client_kwargs: Dict[str, Any] = {
            "config": boto_config,
            "region_name": config.s3_region,
        }
        if config.s3_endpoint_url:
            client_kwargs["endpoint_url"] = config.s3_endpoint_url

        self._s3 = boto3.client("s3", **client_kwargs)
        self._executor = ThreadPoolExecutor(max_workers=config.s3_max_concurrency)

    @staticmethod
    def _parse_s3_path(s3_path: str) -> Tuple[str, str]:
        """Parse an S3 URI into bucket and key."""
        if s3_path.startswith("s3://"):
            s3_path = s3_path[5:]
        parts = s3_path.split("/", 1)
        return parts[0], parts[1].strip("/") if len(parts) > 1 else ""

    def _key(self, path: str) -> str:
        return join_path(self.root, path)

    def _relative(self, key: str) -> str:
        if self.root and key.startswith(self.root + "/"):
            return key[len(self.root) + 1:]
        return key

    def write(self, path: str, data: bytes):
        key = self._key(path)
        if len(data) > self.config.s3_multipart_threshold:
            self._multipart_upload(key, data)
        else:
            self._s3.put_object(Bucket=self.bucket, Key=key, Body=data)
        self.logger.debug(f"Uploaded {len(data)} bytes to s3://{self.bucket}/{key}")

    def _multipart_upload(self, key: str, data: bytes):
        mpu = self._s3.create_multipart_upload(Bucket=self.bucket, Key=key)
        upload_id = mpu["UploadId"]

        try:
            part_size = self.config.s3_multipart_threshold
            futures = []
            for number, start in enumerate(range(0, len(data), part_size), start=1):
                futures.append((number, self._executor.submit(
                    self._s3.upload_part,
                    Bucket=self.bucket,
                    Key=key,
                    UploadId=upload_id,
                    PartNumber=number,
                    Body=data[start:start + part_size],
                )))

            parts = [{"PartNumber": n, "ETag": f.result()["ETag"]} for n, f in futures]
            self._s3.complete_multipart_upload(
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": parts}
            )
        except Exception:
            self._s3.abort_multipart_upload(Bucket=self.bucket, Key=key, UploadId=upload_id)
            raise

    def read(self, path: str) -> bytes:
        key = self._key(path)
        try:
            response = self._s3.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                raise FileNotFoundError(f"s3://{self.bucket}/{key}") from e
            raise
        return response["Body"].read()

    def exists(self, path: str) -> bool:
        key = self._key(path)
        try:
            self._s3.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404", "NotFound"):
                return bool(self._list_keys(key + "/", max_keys=1))
            raise

    def _list_keys(self, prefix: str, max_keys: Optional[int] = None) -> List[str]:
        keys = []
        paginator = self._s3.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for obj in page.get("Contents", []):
                keys.append(obj["Key"])
                if max_keys is not None and len(keys) >= max_keys:
                    return keys
        return keys

    def list(self, prefix: str) -> List[str]:
        key = self._key(prefix)
        keys = self._list_keys(key + "/") or [k for k in self._list_keys(key) if k == key]
        return sorted(self._relative(k) for k in keys)

    def list_children(self, prefix: str) -> List[str]:
        key = self._key(prefix) + "/"
        children = set()
        paginator = self._s3.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=key, Delimiter="/"):
            for common in page.get("CommonPrefixes", []):
                children.add(common["Prefix"][len(key):].rstrip("/"))
            for obj in page.get("Contents", []):
                children.add(obj["Key"][len(key):])
        return sorted(c for c in children if c)

    def delete(self, path: str):
        self._s3.delete_object(Bucket=self.bucket, Key=self._key(path))

    def delete_prefix(self, prefix: str):
        key = self._key(prefix)
        keys = self._list_keys(key + "/") + [k for k in self._list_keys(key) if k == key]

        # delete_objects accepts at most 1000 keys
        for i in range(0, len(keys), 1000):
            self._s3.delete_objects(
                Bucket=self.bucket,
                Delete={"Objects": [{"Key": k} for k in keys[i:i + 1000]]}
            )
        self.logger.debug(f"Deleted {len(keys)} objects under s3://{self.bucket}/{key}")

    def rename(self, src: str, dst: str, overwrite: bool = False, commit_last: Optional[str] = None):
        """
        Move every object under ``src`` to ``dst``.

        Args:
            src: Source key (object or prefix)
            dst: Destination key
            overwrite: Replace an existing ``dst``
            commit_last: Name (relative to ``src``) of the object copied last
        """
        src_key, dst_key = self._key(src), self._key(dst)
        src_keys = self._list_keys(src_key + "/") or [k for k in self._list_keys(src_key) if k == src_key]
        if not src_keys:
            raise FileNotFoundError(f"Rename source does not exist: {src}")

        if self.exists(dst):
            if not overwrite:
                raise FileExistsError(f"Rename target exists: {dst}")
            self.delete_prefix(dst)

        marker = join_path(src_key, commit_last) if commit_last else None
        ordered = [k for k in src_keys if k != marker] + [k for k in src_keys if k == marker]

        for key in ordered:
            target = dst_key + key[len(src_key):]
            self._s3.copy_object(
                Bucket=self.bucket,
                Key=target,
                CopySource={"Bucket": self.bucket, "Key": key},
            )

        self.delete_prefix(src)
        self.logger.debug(f"Renamed s3://{self.bucket}/{src_key} -> {dst_key}")

    def restore_interrupted(self, path: str):
        """
        Nothing to restore on S3.

        An overwriting rename deletes the old target before copying, so an
        interrupted overwrite leaves a target without its commit marker,
        which readers already treat as missing.
        """

    def close(self):
        self._executor.shutdown(wait=True)
