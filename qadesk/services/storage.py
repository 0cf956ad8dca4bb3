"""Object storage for call recordings.

One client per app, built in ``create_app`` from ``STORAGE_BACKEND``:

* ``azure``: Azure Blob Storage, read URLs are SAS tokens
* ``s3``: any S3 compatible store through boto3, read URLs are presigned
* ``local``: a directory tree, read URLs are signed links served by the app

Containers map to blob containers, S3 buckets or top level directories.
"""
import json
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote, unquote, urlparse

import boto3
from azure.core.exceptions import ResourceExistsError, ResourceNotFoundError
from azure.storage.blob import BlobSasPermissions, BlobServiceClient, ContentSettings, generate_blob_sas
from botocore.client import Config
from botocore.exceptions import ClientError
from flask import current_app
from itsdangerous import BadData, URLSafeTimedSerializer

from ..errors import Forbidden, NotFound, ServiceUnavailable, ValidationError
from .metadata import parse_date

CONTAINER_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9-]{1,61}[a-z0-9]$")

AUDIO_CONTENT_TYPES = {
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "ogg": "audio/ogg",
    "m4a": "audio/mp4",
    "aac": "audio/aac",
    "flac": "audio/flac",
    "webm": "audio/webm",
    "mp4": "audio/mp4",
    "3gp": "audio/3gpp",
    "amr": "audio/amr",
    "wma": "audio/x-ms-wma",
}
DEFAULT_CONTENT_TYPE = "audio/mpeg"


def content_type_for(filename: str) -> str:
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    return AUDIO_CONTENT_TYPES.get(ext, DEFAULT_CONTENT_TYPE)


def validate_container_name(name: str) -> str:
    if not name or not CONTAINER_NAME_RE.match(name) or "--" in name:
        raise ValidationError(
            "Invalid container name. Use 3-63 lowercase letters, numbers and single hyphens, "
            "starting and ending with a letter or number."
        )
    return name


@dataclass
class BlobInfo:
    name: str
    size: Optional[int] = None
    last_modified: Optional[datetime] = None
    content_type: Optional[str] = None
    url: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    def to_dict(self):
        return {
            "name": self.name,
            "size": self.size,
            "lastModified": self.last_modified.isoformat() if self.last_modified else None,
            "contentType": self.content_type,
            "url": self.url,
            "metadata": self.metadata,
        }


class BlobStorage:
    """Operations every backend provides."""

    backend = None

    def list_containers(self) -> List[dict]:
        raise NotImplementedError

    def container_exists(self, container: str) -> bool:
        raise NotImplementedError

    def create_container(self, container: str, public: bool = False) -> bool:
        """Create the container; False when it already existed."""
        raise NotImplementedError

    def list_blobs(self, container: str, prefix: Optional[str] = None) -> List[BlobInfo]:
        raise NotImplementedError

    def upload(self, container: str, name: str, data: bytes, content_type: Optional[str] = None,
               metadata: Optional[Dict[str, str]] = None) -> BlobInfo:
        raise NotImplementedError

    def delete_blob(self, container: str, name: str) -> None:
        raise NotImplementedError

    def blob_url(self, container: str, name: str) -> str:
        raise NotImplementedError

    def parse_blob_url(self, url: str) -> Tuple[str, str]:
        raise NotImplementedError

    def generate_sas_url(self, container: str, name: str, expiry_minutes: int,
                         content_type: Optional[str] = None) -> str:
        raise NotImplementedError

    def require_container(self, container: str):
        if not self.container_exists(container):
            raise NotFound(f"Container '{container}' not found")

    def delete_blobs(self, container: str, names: List[str]) -> Tuple[int, List[dict]]:
        deleted, failed = 0, []
        for name in names:
            try:
                self.delete_blob(container, name)
                deleted += 1
            except Exception as e:
                current_app.logger.warning("delete of %s/%s failed: %s", container, name, e)
                failed.append({"name": name, "error": str(e)})
        return deleted, failed

    def list_folders(self, container: str) -> List[str]:
        """Top level virtual folders, newest first when they are named by date."""
        folders = {b.name.split("/", 1)[0] for b in self.list_blobs(container) if "/" in b.name}
        try:
            dated = [(parse_date(f), f) for f in folders]
        except ValueError:
            dated = None
        if dated and all(d is not None for d, _ in dated):
            return [f for _, f in sorted(dated, reverse=True)]
        return sorted(folders)


class AzureBlobClient(BlobStorage):
    backend = "azure"

    def __init__(self, service: BlobServiceClient, account_name: str, account_key: str):
        self.service = service
        self.account_name = account_name
        self.account_key = account_key

    @classmethod
    def from_config(cls, config) -> "AzureBlobClient":
        conn = config.get("AZURE_STORAGE_CONNECTION_STRING")
        if conn:
            service = BlobServiceClient.from_connection_string(conn)
            key = getattr(service.credential, "account_key", None)
            if not key:
                raise ValueError("connection string must carry an account key to sign URLs")
            return cls(service, service.account_name, key)
        name = config.get("AZURE_STORAGE_ACCOUNT_NAME")
        key = config.get("AZURE_STORAGE_ACCOUNT_KEY")
        if not name or not key:
            raise ValueError("AZURE_STORAGE_ACCOUNT_NAME and AZURE_STORAGE_ACCOUNT_KEY are required")
        service = BlobServiceClient(
            account_url=f"https://{name}.blob.core.windows.net",
            credential={"account_name": name, "account_key": key},
        )
        return cls(service, name, key)

    def list_containers(self):
        return [
            {"name": c.name, "lastModified": c.last_modified.isoformat() if c.last_modified else None,
             "metadata": c.metadata or {}}
            for c in self.service.list_containers(include_metadata=True)
        ]

    def container_exists(self, container):
        return self.service.get_container_client(container).exists()

    def create_container(self, container, public=False):
        try:
            self.service.create_container(container, public_access="blob" if public else None)
            return True
        except ResourceExistsError:
            return False

    def list_blobs(self, container, prefix=None):
        client = self.service.get_container_client(container)
        if not client.exists():
            return []
        out = []
        for b in client.list_blobs(name_starts_with=prefix or None, include=["metadata"]):
            settings = b.content_settings
            out.append(BlobInfo(
                name=b.name,
                size=b.size,
                last_modified=b.last_modified,
                content_type=settings.content_type if settings else None,
                url=self.blob_url(container, b.name),
                metadata=b.metadata or {},
            ))
        return out

    def upload(self, container, name, data, content_type=None, metadata=None):
        client = self.service.get_blob_client(container, name)
        client.upload_blob(
            data,
            overwrite=True,
            content_settings=ContentSettings(content_type=content_type or content_type_for(name)),
            metadata=metadata or None,
        )
        return BlobInfo(name=name, size=len(data), content_type=content_type, url=client.url, metadata=metadata or {})

    def delete_blob(self, container, name):
        try:
            self.service.get_blob_client(container, name).delete_blob()
        except ResourceNotFoundError:
            raise NotFound(f"Blob '{name}' not found")

    def blob_url(self, container, name):
        return f"https://{self.account_name}.blob.core.windows.net/{container}/{quote(name)}"

    def parse_blob_url(self, url):
        path = unquote(urlparse(url).path).lstrip("/")
        container, _, name = path.partition("/")
        if not container or not name:
            raise ValidationError("Invalid blob URL format")
        return container, name

    def generate_sas_url(self, container, name, expiry_minutes, content_type=None):
        now = datetime.now(timezone.utc)
        token = generate_blob_sas(
            account_name=self.account_name,
            container_name=container,
            blob_name=name,
            account_key=self.account_key,
            permission=BlobSasPermissions(read=True),
            # clock skew between us and the storage service
            start=now - timedelta(minutes=5),
            expiry=now + timedelta(minutes=expiry_minutes),
            protocol="https",
            content_type=content_type or content_type_for(name),
            content_disposition="inline",
            cache_control="no-cache",
        )
        return f"{self.blob_url(container, name)}?{token}"


class S3BlobClient(BlobStorage):
    backend = "s3"

    def __init__(self, client, region=None):
        self.s3 = client
        self.region = region

    @classmethod
    def from_config(cls, config) -> "S3BlobClient":
        s3_kwargs = {}
        endpoint = config.get("S3_ENDPOINT")
        if endpoint:
            s3_kwargs["endpoint_url"] = endpoint
        region = config.get("S3_REGION")
        if region:
            s3_kwargs["region_name"] = region
        client = boto3.client(
            "s3",
            aws_access_key_id=config.get("S3_ACCESS_KEY"),
            aws_secret_access_key=config.get("S3_SECRET_KEY"),
            config=Config(signature_version="s3v4", s3={"addressing_style": "virtual"}),
            **s3_kwargs,
        )
        return cls(client, region)

    def list_containers(self):
        resp = self.s3.list_buckets()
        return [
            {"name": b["Name"], "lastModified": b["CreationDate"].isoformat() if b.get("CreationDate") else None,
             "metadata": {}}
            for b in resp.get("Buckets", [])
        ]

    def container_exists(self, container):
        try:
            self.s3.head_bucket(Bucket=container)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchBucket", "NotFound"):
                return False
            raise

    def create_container(self, container, public=False):
        if self.container_exists(container):
            return False
        kwargs = {"Bucket": container}
        if self.region and self.region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
        self.s3.create_bucket(**kwargs)
        return True

    def list_blobs(self, container, prefix=None):
        if not self.container_exists(container):
            return []
        paginator = self.s3.get_paginator("list_objects_v2")
        kwargs = {"Bucket": container}
        if prefix:
            kwargs["Prefix"] = prefix
        out = []
        for page in paginator.paginate(**kwargs):
            for obj in page.get("Contents", []):
                out.append(BlobInfo(
                    name=obj["Key"],
                    size=obj.get("Size"),
                    last_modified=obj.get("LastModified"),
                    content_type=content_type_for(obj["Key"]),
                    url=self.blob_url(container, obj["Key"]),
                ))
        return out

    def upload(self, container, name, data, content_type=None, metadata=None):
        self.s3.put_object(
            Bucket=container, Key=name, Body=data,
            ContentType=content_type or content_type_for(name),
            Metadata=metadata or {},
        )
        return BlobInfo(name=name, size=len(data), content_type=content_type,
                        url=self.blob_url(container, name), metadata=metadata or {})

    def delete_blob(self, container, name):
        self.s3.delete_object(Bucket=container, Key=name)

    def delete_blobs(self, container, names):
        if not names:
            return 0, []
        resp = self.s3.delete_objects(
            Bucket=container, Delete={"Objects": [{"Key": n} for n in names], "Quiet": True},
        )
        failed = [{"name": e.get("Key"), "error": e.get("Message")} for e in resp.get("Errors", [])]
        return len(names) - len(failed), failed

    def blob_url(self, container, name):
        return f"s3://{container}/{name}"

    def parse_blob_url(self, url):
        if not url.startswith("s3://"):
            raise ValidationError("Invalid blob URL format")
        container, _, name = url[len("s3://"):].partition("/")
        if not container or not name:
            raise ValidationError("Invalid blob URL format")
        return container, name

    def generate_sas_url(self, container, name, expiry_minutes, content_type=None):
        return self.s3.generate_presigned_url(
            "get_object",
            Params={
                "Bucket": container,
                "Key": name,
                "ResponseContentType": content_type or content_type_for(name),
                "ResponseContentDisposition": "inline",
                "ResponseCacheControl": "no-cache",
            },
            ExpiresIn=expiry_minutes * 60,
        )


class LocalBlobClient(BlobStorage):
    """Filesystem backend for development and tests."""

    backend = "local"
    META_FILE = ".blobmeta.json"

    def __init__(self, root: str, base_url: str, secret_key: str):
        self.root = os.path.abspath(root)
        self.base_url = base_url.rstrip("/")
        self.signer = URLSafeTimedSerializer(secret_key, salt="local-blob")

    def _container_dir(self, container):
        validate_container_name(container)
        return os.path.join(self.root, container)

    def _blob_path(self, container, name):
        parts = name.split("/")
        if any(p in ("", ".", "..") or "\\" in p for p in parts):
            raise ValidationError(f"Invalid blob name: {name}")
        return os.path.join(self._container_dir(container), *parts)

    def _read_meta(self, container):
        path = os.path.join(self._container_dir(container), self.META_FILE)
        if not os.path.exists(path):
            return {}
        with open(path, encoding="utf-8") as f:
            return json.load(f)

    def _write_meta(self, container, meta):
        path = os.path.join(self._container_dir(container), self.META_FILE)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(meta, f)

    def list_containers(self):
        if not os.path.isdir(self.root):
            return []
        out = []
        for name in sorted(os.listdir(self.root)):
            path = os.path.join(self.root, name)
            if os.path.isdir(path) and CONTAINER_NAME_RE.match(name):
                modified = datetime.fromtimestamp(os.path.getmtime(path), tz=timezone.utc)
                out.append({"name": name, "lastModified": modified.isoformat(), "metadata": {}})
        return out

    def container_exists(self, container):
        return os.path.isdir(self._container_dir(container))

    def create_container(self, container, public=False):
        path = self._container_dir(container)
        if os.path.isdir(path):
            return False
        os.makedirs(path)
        return True

    def list_blobs(self, container, prefix=None):
        base = self._container_dir(container)
        if not os.path.isdir(base):
            return []
        meta = self._read_meta(container)
        out = []
        for dirpath, _, filenames in os.walk(base):
            for fn in filenames:
                if fn.startswith("."):
                    continue
                full = os.path.join(dirpath, fn)
                name = os.path.relpath(full, base).replace(os.sep, "/")
                if prefix and not name.startswith(prefix):
                    continue
                out.append(BlobInfo(
                    name=name,
                    size=os.path.getsize(full),
                    last_modified=datetime.fromtimestamp(os.path.getmtime(full), tz=timezone.utc),
                    content_type=content_type_for(name),
                    url=self.blob_url(container, name),
                    metadata=meta.get(name, {}),
                ))
        return sorted(out, key=lambda b: b.name)

    def upload(self, container, name, data, content_type=None, metadata=None):
        path = self._blob_path(container, name)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)
        if metadata:
            meta = self._read_meta(container)
            meta[name] = metadata
            self._write_meta(container, meta)
        return BlobInfo(name=name, size=len(data), content_type=content_type or content_type_for(name),
                        url=self.blob_url(container, name), metadata=metadata or {})

    def delete_blob(self, container, name):
        path = self._blob_path(container, name)
        if not os.path.isfile(path):
            raise NotFound(f"Blob '{name}' not found")
        os.remove(path)

    def blob_path(self, container, name):
        return self._blob_path(container, name)

    def blob_url(self, container, name):
        return f"{self.base_url}/{container}/{quote(name)}"

    def parse_blob_url(self, url):
        if not url.startswith(self.base_url + "/"):
            raise ValidationError("Invalid blob URL format")
        container, _, name = unquote(url[len(self.base_url) + 1:]).partition("?")[0].partition("/")
        if not container or not name:
            raise ValidationError("Invalid blob URL format")
        return container, name

    def generate_sas_url(self, container, name, expiry_minutes, content_type=None):
        token = self.signer.dumps({
            "c": container,
            "b": name,
            "m": int(expiry_minutes),
            "ct": content_type or content_type_for(name),
        })
        return f"{self.blob_url(container, name)}?token={token}"

    def verify_token(self, container, name, token) -> str:
        """Return the content type a signed link was issued for."""
        try:
            data = self.signer.loads(token or "")
            # lifetime is part of the signed payload
            self.signer.loads(token, max_age=int(data.get("m", 0)) * 60)
        except BadData:
            raise Forbidden("Invalid or expired link")
        if data.get("c") != container or data.get("b") != name:
            raise Forbidden("Invalid or expired link")
        return data.get("ct") or content_type_for(name)


def build_blob_client(app) -> Optional[BlobStorage]:
    """Construct the configured storage client, or None when it cannot be."""
    config = app.config
    backend = (config.get("STORAGE_BACKEND") or "azure").lower()
    try:
        if backend == "azure":
            client = AzureBlobClient.from_config(config)
        elif backend == "s3":
            client = S3BlobClient.from_config(config)
        elif backend == "local":
            client = LocalBlobClient(config["LOCAL_STORAGE_DIR"], config["LOCAL_BLOB_BASE_URL"], config["SECRET_KEY"])
        else:
            raise ValueError(f"unknown STORAGE_BACKEND {backend!r}")
    except Exception as e:
        app.logger.warning("Object storage unavailable (%s backend): %s", backend, e)
        return None
    app.logger.info("Object storage backend: %s", backend)
    return client


def get_blob_client() -> BlobStorage:
    client = current_app.extensions.get("blob_client")
    if client is None:
        raise ServiceUnavailable("Object storage service not available")
    return client
