"""Shared pytest fixtures for cicada tests."""

import logging
import os
import time
from collections.abc import Callable
from pathlib import Path

import pytest

# A fixed point in the past so min-age checks never defer test files
OLD_MTIME = time.time() - 3600

TreeWriter = Callable[..., Path]


@pytest.fixture
def write_tree() -> TreeWriter:
    """Return a helper writing {relative path: content} into a directory.

    Usage:
        write_tree(tmp_path / "src", {"a.txt": b"hello", "d/b.txt": "x" * 20})
    """

    def _write(root: Path, files: dict[str, bytes | str], mtime: float | None = OLD_MTIME) -> Path:
        root.mkdir(parents=True, exist_ok=True)
        for rel, content in files.items():
            path = root / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            data = content.encode() if isinstance(content, str) else content
            path.write_bytes(data)
            if mtime is not None:
                os.utime(path, (mtime, mtime))
        return root

    return _write


@pytest.fixture
def cicada_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point CICADA_HOME at a temporary directory."""
    home = tmp_path / "cicada-home"
    monkeypatch.setenv("CICADA_HOME", str(home))
    return home


@pytest.fixture
def s3_client(monkeypatch: pytest.MonkeyPatch):
    """Moto-backed S3 client with an empty ``test-bucket``."""
    pytest.importorskip("moto")
    import boto3
    from moto import mock_aws

    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")

    with mock_aws():
        client = boto3.client("s3", region_name="us-east-1")
        client.create_bucket(Bucket="test-bucket")
        yield client


@pytest.fixture(autouse=True)
def reset_cicada_logger():
    """Undo handler changes made by CLI logging setup."""
    yield
    logger = logging.getLogger("cicada")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
