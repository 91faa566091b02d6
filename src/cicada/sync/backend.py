"""Storage backend abstraction for sync sources and destinations.

This module provides:
- StorageBackend: Abstract List/Stat/Get/Put/Delete capability
- LocalBackend: Local filesystem tree
- S3Backend: S3-compatible object storage (AWS, MinIO, OVH)
- parse_s3_uri / create_backend: Backend selection by location scheme
"""

from __future__ import annotations

import contextlib
import errno
import hashlib
import logging
import os
import shutil
import stat as stat_module
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import IO, TYPE_CHECKING, Any

from cicada.core.config import S3Settings
from cicada.core.errors import (
    ConfigError,
    PermanentTransferError,
    TransferError,
    TransientTransferError,
)
from cicada.sync.retry import translate_os_error
from cicada.sync.types import EntryKind, ManifestEntry, ScanWarning, join_path, split_path

if TYPE_CHECKING:
    from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

HASH_CHUNK_SIZE = 1024 * 1024

# Prefix/suffix of in-flight files written by LocalBackend.put
PARTIAL_PREFIX = ".cicada-"
PARTIAL_SUFFIX = ".part"

# S3 user-metadata keys written on upload
META_MTIME = "cicada-mtime"
META_MD5 = "cicada-md5"


def compute_md5(path: Path) -> str:
    """Compute the hex MD5 of a file, reading it in chunks."""
    digest = hashlib.md5(usedforsecurity=False)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


class StorageBackend(ABC):
    """Abstract interface for a sync location.

    All paths are relative to the backend root and use forward slashes.
    Every I/O method raises TransferError subclasses (transient or
    permanent) rather than library-specific exceptions.
    """

    @property
    @abstractmethod
    def location(self) -> str:
        """Return a human-readable description of the location."""

    @property
    @abstractmethod
    def supports_checksums(self) -> bool:
        """Whether listed entries carry content checksums."""

    @property
    def walk_root(self) -> Path | None:
        """Directory the scanner may walk directly (None for listings)."""
        return None

    def describe(self, path: str, st: os.stat_result) -> ManifestEntry:
        """Build an entry from a stat result (backends with a walk_root only)."""
        raise NotImplementedError(f"{type(self).__name__} cannot be walked directly")

    @abstractmethod
    def list(self, prefix: str = "", warnings: list[ScanWarning] | None = None) -> list[ManifestEntry]:
        """List all entries under a relative prefix (unsorted).

        Entries that cannot be described are skipped and reported in
        ``warnings`` when a list is given; otherwise they raise.
        """

    @abstractmethod
    def stat(self, path: str) -> ManifestEntry | None:
        """Get metadata for one path, or None if it does not exist."""

    @abstractmethod
    def get(self, path: str) -> contextlib.AbstractContextManager[IO[bytes]]:
        """Open a path for reading as a binary stream."""

    @abstractmethod
    def put(
        self,
        path: str,
        stream: IO[bytes],
        size: int | None = None,
        mtime: float | None = None,
        checksum: str | None = None,
    ) -> None:
        """Write a stream to a path, replacing any existing content."""

    @abstractmethod
    def delete(self, path: str, is_dir: bool = False) -> None:
        """Delete a path. Deleting a missing path is not an error."""

    def close(self) -> None:
        """Release resources held by the backend."""

    def __enter__(self) -> StorageBackend:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.location!r})"


class LocalBackend(StorageBackend):
    """Local filesystem tree."""

    def __init__(self, root: Path | str, checksums: bool = True, create: bool = True) -> None:
        """Initialize local backend.

        Args:
            root: Root directory of the tree.
            checksums: Compute MD5 checksums for listed files.
            create: Create the root directory if it does not exist.
        """
        self._root = Path(root).expanduser().resolve()
        self._checksums = checksums
        if create:
            try:
                self._root.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ConfigError(f"Cannot create directory {self._root}: {e}") from e

    @property
    def root(self) -> Path:
        return self._root

    @property
    def location(self) -> str:
        """Return the local root path."""
        return str(self._root)

    @property
    def supports_checksums(self) -> bool:
        return self._checksums

    @property
    def walk_root(self) -> Path:
        return self._root

    def full_path(self, path: str) -> Path:
        """Resolve a relative path inside the root."""
        try:
            segments = split_path(path)
        except ValueError as e:
            raise PermanentTransferError(str(e), path=path) from e
        return self._root.joinpath(*segments)

    def describe(self, path: str, st: os.stat_result) -> ManifestEntry:
        """Build a manifest entry for a path from its stat result."""
        is_dir = stat_module.S_ISDIR(st.st_mode)
        checksum = None
        if self._checksums and not is_dir:
            checksum = compute_md5(self.full_path(path))
        return ManifestEntry.create(
            path,
            size=0 if is_dir else st.st_size,
            mtime=st.st_mtime,
            checksum=checksum,
            kind=EntryKind.DIRECTORY if is_dir else EntryKind.FILE,
        )

    def list(self, prefix: str = "", warnings: list[ScanWarning] | None = None) -> list[ManifestEntry]:
        """List all regular files under a prefix (symlinks are skipped)."""
        base = self.full_path(prefix) if prefix else self._root
        entries: list[ManifestEntry] = []
        for dirpath, dirnames, filenames in os.walk(base):
            current = Path(dirpath)
            dirnames[:] = [d for d in dirnames if not (current / d).is_symlink()]
            for filename in filenames:
                file_path = current / filename
                if file_path.is_symlink() or is_partial_name(filename):
                    continue
                rel = join_path(file_path.relative_to(self._root).parts)
                try:
                    entries.append(self.describe(rel, file_path.stat()))
                except FileNotFoundError:
                    continue
                except OSError as e:
                    if warnings is None:
                        raise translate_os_error(e, rel) from e
                    logger.warning("Cannot read %s: %s", rel, e.strerror or e)
                    warnings.append(ScanWarning(path=rel, reason=e.strerror or str(e)))
        return entries

    def stat(self, path: str) -> ManifestEntry | None:
        full = self.full_path(path)
        try:
            st = full.stat()
            return self.describe(path, st)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise translate_os_error(e, path) from e

    @contextlib.contextmanager
    def get(self, path: str) -> Iterator[IO[bytes]]:
        full = self.full_path(path)
        try:
            f = open(full, "rb")
        except OSError as e:
            raise translate_os_error(e, path) from e
        with f:
            yield f

    def put(
        self,
        path: str,
        stream: IO[bytes],
        size: int | None = None,
        mtime: float | None = None,
        checksum: str | None = None,
    ) -> None:
        """Write atomically: temp file in the target directory, then rename."""
        full = self.full_path(path)
        tmp_name: str | None = None
        try:
            full.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                dir=full.parent,
                prefix=PARTIAL_PREFIX,
                suffix=PARTIAL_SUFFIX,
                delete=False,
            ) as tmp:
                tmp_name = tmp.name
                shutil.copyfileobj(stream, tmp, HASH_CHUNK_SIZE)
            os.replace(tmp_name, full)
            tmp_name = None
            if mtime is not None:
                os.utime(full, (mtime, mtime))
        except OSError as e:
            raise translate_os_error(e, path) from e
        finally:
            if tmp_name is not None:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_name)

    def delete(self, path: str, is_dir: bool = False) -> None:
        """Delete a file and prune parent directories left empty.

        A directory that still has content is left in place.
        """
        full = self.full_path(path)
        try:
            if full.is_dir() and not full.is_symlink():
                full.rmdir()
            else:
                full.unlink()
        except FileNotFoundError:
            logger.debug("Delete of missing path ignored: %s", path)
            return
        except OSError as e:
            if is_dir and e.errno in (errno.ENOTEMPTY, errno.EEXIST):
                logger.debug("Directory not empty, kept: %s", path)
                return
            raise translate_os_error(e, path) from e

        parent = full.parent
        while parent != self._root and self._root in parent.parents:
            try:
                parent.rmdir()
            except OSError:
                break
            parent = parent.parent


def is_partial_name(name: str) -> bool:
    """Whether a file name is an in-flight LocalBackend.put temp file."""
    return name.startswith(PARTIAL_PREFIX) and name.endswith(PARTIAL_SUFFIX)


# S3 error codes that will not succeed on retry
PERMANENT_S3_CODES = frozenset({
    "AccessDenied",
    "AllAccessDisabled",
    "InvalidAccessKeyId",
    "InvalidBucketName",
    "InvalidObjectName",
    "KeyTooLongError",
    "NoSuchBucket",
    "NoSuchKey",
    "SignatureDoesNotMatch",
    "403",
    "404",
})

# S3 error codes that indicate throttling or a temporary server issue
TRANSIENT_S3_CODES = frozenset({
    "InternalError",
    "RequestLimitExceeded",
    "RequestTimeout",
    "RequestTimeTooSkewed",
    "ServiceUnavailable",
    "SlowDown",
    "Throttling",
    "ThrottlingException",
})


def translate_client_error(exc: Exception, path: str = "") -> TransferError:
    """Translate a botocore exception into the transfer error taxonomy."""
    from botocore.exceptions import (
        ClientError,
        ConnectionClosedError,
        ConnectTimeoutError,
        EndpointConnectionError,
        NoCredentialsError,
        ParamValidationError,
        ReadTimeoutError,
    )

    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = str(error.get("Code", ""))
        status = int(exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0) or 0)
        message = f"{code}: {error.get('Message', exc)}"
        if code in TRANSIENT_S3_CODES or status >= 500 or status == 429:
            return TransientTransferError(message, path=path)
        return PermanentTransferError(message, path=path)
    if isinstance(exc, (NoCredentialsError, ParamValidationError)):
        return PermanentTransferError(str(exc), path=path)
    if isinstance(
        exc,
        (EndpointConnectionError, ConnectionClosedError, ConnectTimeoutError, ReadTimeoutError),
    ):
        return TransientTransferError(str(exc), path=path)
    if isinstance(exc, OSError):
        return translate_os_error(exc, path)
    return TransientTransferError(f"{type(exc).__name__}: {exc}", path=path)


def _is_not_found(exc: ClientError) -> bool:
    code = str(exc.response.get("Error", {}).get("Code", ""))
    return code in ("404", "NoSuchKey", "NotFound")


class S3Backend(StorageBackend):
    """S3-compatible object storage under a bucket prefix."""

    def __init__(
        self,
        bucket: str,
        prefix: str = "",
        settings: S3Settings | None = None,
        client: Any = None,
        checksums: bool = True,
    ) -> None:
        """Initialize S3 backend.

        Args:
            bucket: S3 bucket name.
            prefix: Key prefix acting as the tree root.
            settings: Region, endpoint, profile and transfer tuning.
            client: Pre-built boto3 S3 client (built from settings if None).
            checksums: Report ETag checksums in listings. When off, each
                listed object is read back for the mtime stored on upload.
        """
        self._bucket = bucket
        self._checksums = checksums
        self._prefix = join_path(split_path(prefix))
        self._settings = settings or S3Settings()
        if client is None:
            import boto3
            from botocore.config import Config as BotoConfig

            session = boto3.session.Session(profile_name=self._settings.profile)
            client = session.client(
                "s3",
                endpoint_url=self._settings.endpoint_url,
                region_name=self._settings.region,
                # Retries are handled by the executor's RetryPolicy
                config=BotoConfig(
                    retries={"max_attempts": 1, "mode": "standard"},
                    connect_timeout=10,
                    read_timeout=60,
                ),
            )
        self._client: Any = client

    @property
    def bucket(self) -> str:
        return self._bucket

    @property
    def prefix(self) -> str:
        return self._prefix

    @property
    def location(self) -> str:
        """Return the S3 URI of the tree root."""
        if self._prefix:
            return f"s3://{self._bucket}/{self._prefix}"
        return f"s3://{self._bucket}"

    @property
    def supports_checksums(self) -> bool:
        return self._checksums

    def _key(self, path: str) -> str:
        """Get the S3 key for a relative path."""
        rel = join_path(split_path(path))
        if not self._prefix:
            return rel
        return f"{self._prefix}/{rel}" if rel else f"{self._prefix}/"

    def _relative(self, key: str) -> str:
        if self._prefix:
            return key[len(self._prefix) + 1:]
        return key

    def _checksum_for(self, key: str, etag: str) -> str | None:
        """ETag is the MD5 unless the object was uploaded in parts."""
        etag = etag.strip('"')
        if etag and "-" not in etag:
            return etag
        return self._head(key).get("Metadata", {}).get(META_MD5)

    def _head(self, key: str) -> dict[str, Any]:
        try:
            return self._client.head_object(Bucket=self._bucket, Key=key)
        except Exception as e:
            raise translate_client_error(e, key) from e

    @staticmethod
    def _stored_mtime(head: dict[str, Any]) -> float:
        """Source mtime recorded on upload, else the object's LastModified."""
        stored = head.get("Metadata", {}).get(META_MTIME)
        if stored:
            try:
                return float(stored)
            except ValueError:
                logger.debug("Ignoring malformed %s metadata: %r", META_MTIME, stored)
        return head["LastModified"].timestamp()

    def _entry_from_object(self, obj: dict[str, Any]) -> ManifestEntry | None:
        key: str = obj["Key"]
        rel = self._relative(key)
        if not split_path(rel):
            return None
        if key.endswith("/"):
            return ManifestEntry.create(
                rel,
                size=0,
                mtime=obj["LastModified"].timestamp(),
                kind=EntryKind.DIRECTORY,
            )
        if not self._checksums:
            # LastModified is the upload time; compare against the source mtime
            return ManifestEntry.create(
                rel,
                size=int(obj["Size"]),
                mtime=self._stored_mtime(self._head(key)),
            )
        return ManifestEntry.create(
            rel,
            size=int(obj["Size"]),
            mtime=obj["LastModified"].timestamp(),
            checksum=self._checksum_for(key, obj.get("ETag", "")),
        )

    def _list_prefix(
        self,
        key_prefix: str,
        delimiter: str | None = None,
    ) -> tuple[list[ManifestEntry], list[str], list[ScanWarning]]:
        """List one key prefix, following pagination.

        Keys that do not map to a valid relative path are skipped and
        returned as warnings.
        """
        entries: list[ManifestEntry] = []
        common: list[str] = []
        skipped: list[ScanWarning] = []
        kwargs: dict[str, Any] = {"Bucket": self._bucket, "Prefix": key_prefix}
        if delimiter:
            kwargs["Delimiter"] = delimiter
        paginator = self._client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(**kwargs):
                for obj in page.get("Contents", []):
                    try:
                        entry = self._entry_from_object(obj)
                    except ValueError as e:
                        logger.warning("Skipping object %s: %s", obj["Key"], e)
                        skipped.append(ScanWarning(path=obj["Key"], reason=str(e)))
                        continue
                    if entry is not None:
                        entries.append(entry)
                common.extend(cp["Prefix"] for cp in page.get("CommonPrefixes", []))
        except TransferError:
            raise
        except Exception as e:
            raise translate_client_error(e, key_prefix) from e
        return entries, common, skipped

    def list(self, prefix: str = "", warnings: list[ScanWarning] | None = None) -> list[ManifestEntry]:
        """List entries, fanning out one batch per top-level prefix.

        Batches run in parallel and are concatenated in completion order;
        callers must sort the result.
        """
        base = self._key(prefix) if (prefix or self._prefix) else ""
        if base and not base.endswith("/"):
            base += "/"

        entries, batches, skipped = self._list_prefix(base, delimiter="/")
        if batches:
            workers = max(1, min(self._settings.list_workers, len(batches)))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="S3List") as pool:
                for batch_entries, _, batch_skipped in pool.map(self._list_prefix, batches):
                    entries.extend(batch_entries)
                    skipped.extend(batch_skipped)
            logger.debug("Listed %d objects under %s in %d batches", len(entries), base, len(batches))

        if skipped:
            if warnings is None:
                first = skipped[0]
                raise PermanentTransferError(f"Invalid object key: {first.reason}", path=first.path)
            warnings.extend(skipped)
        return entries

    def stat(self, path: str) -> ManifestEntry | None:
        from botocore.exceptions import ClientError

        key = self._key(path)
        try:
            head = self._client.head_object(Bucket=self._bucket, Key=key)
        except ClientError as e:
            if _is_not_found(e):
                return None
            raise translate_client_error(e, path) from e
        except Exception as e:
            raise translate_client_error(e, path) from e

        checksum = None
        if self._checksums:
            etag = head.get("ETag", "").strip('"')
            checksum = etag if etag and "-" not in etag else head.get("Metadata", {}).get(META_MD5)
        return ManifestEntry.create(
            path,
            size=int(head["ContentLength"]),
            mtime=self._stored_mtime(head),
            checksum=checksum,
        )

    @contextlib.contextmanager
    def get(self, path: str) -> Iterator[IO[bytes]]:
        try:
            response = self._client.get_object(Bucket=self._bucket, Key=self._key(path))
        except Exception as e:
            raise translate_client_error(e, path) from e
        body = response["Body"]
        try:
            yield body
        finally:
            body.close()

    def put(
        self,
        path: str,
        stream: IO[bytes],
        size: int | None = None,
        mtime: float | None = None,
        checksum: str | None = None,
    ) -> None:
        from boto3.s3.transfer import TransferConfig

        metadata: dict[str, str] = {}
        if mtime is not None:
            metadata[META_MTIME] = f"{mtime:.6f}"
        if checksum:
            metadata[META_MD5] = checksum

        config = TransferConfig(
            multipart_threshold=self._settings.multipart_threshold,
            use_threads=False,
        )
        try:
            self._client.upload_fileobj(
                stream,
                self._bucket,
                self._key(path),
                ExtraArgs={"Metadata": metadata} if metadata else None,
                Config=config,
            )
        except TransferError:
            raise
        except Exception as e:
            raise translate_client_error(e, path) from e

    def delete(self, path: str, is_dir: bool = False) -> None:
        """Delete an object, or the marker key of a directory entry."""
        key = self._key(path) + "/" if is_dir else self._key(path)
        try:
            self._client.delete_object(Bucket=self._bucket, Key=key)
        except Exception as e:
            raise translate_client_error(e, path) from e


def parse_s3_uri(uri: str) -> tuple[str, str]:
    """Parse s3://bucket/key into bucket and key.

    Raises:
        ConfigError: If the URI is not a valid S3 URI.
    """
    if not uri.startswith("s3://"):
        raise ConfigError("invalid S3 URI: must start with s3://")
    bucket, _, key = uri[len("s3://"):].partition("/")
    if not bucket:
        raise ConfigError("invalid S3 URI: missing bucket")
    return bucket, key.strip("/")


def create_backend(
    location: str,
    s3_settings: S3Settings | None = None,
    checksums: bool = True,
) -> StorageBackend:
    """Factory function to create a backend from a location string.

    Args:
        location: Local directory path or s3://bucket/prefix URI.
        s3_settings: Settings used for S3 locations.
        checksums: Whether local trees compute MD5 checksums.

    Returns:
        Configured StorageBackend instance.

    Raises:
        ConfigError: If the location scheme is unknown or invalid.
    """
    if location.startswith("s3://"):
        bucket, prefix = parse_s3_uri(location)
        return S3Backend(bucket, prefix, settings=s3_settings, checksums=checksums)

    scheme, sep, _ = location.partition("://")
    if sep and scheme != "file":
        raise ConfigError(f"Unknown location scheme: {scheme}://")
    if sep:
        location = location[len("file://"):]
    return LocalBackend(location, checksums=checksums, create=False)
