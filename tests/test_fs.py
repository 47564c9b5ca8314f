import os
from pathlib import Path

import pytest

from canvasflow.service.fs import PathTraversalError, atomic_write_bytes, safe_join


def test_safe_join_accepts_media_key(tmp_path: Path):
    result = safe_join(tmp_path, "image/canvas-1/node-1/abc.png")

    assert tmp_path.resolve() in result.parents


def test_safe_join_rejects_traversal(tmp_path: Path):
    with pytest.raises(PathTraversalError):
        safe_join(tmp_path, os.path.join("image", "..", "..", "escape.txt"))


def test_safe_join_rejects_absolute(tmp_path: Path):
    with pytest.raises(PathTraversalError):
        safe_join(tmp_path, str(Path("/tmp/absolute.txt")))


def test_atomic_write_creates_parents_and_leaves_no_temp(tmp_path: Path):
    target = tmp_path / "video" / "c" / "n" / "clip.mp4"

    atomic_write_bytes(target, b"first")
    atomic_write_bytes(target, b"second")

    assert target.read_bytes() == b"second"
    assert [p.name for p in target.parent.iterdir()] == ["clip.mp4"]


def test_atomic_write_stores_large_payload_completely(tmp_path: Path):
    target = tmp_path / "large.bin"
    data = os.urandom(3 * 1024 * 1024) + b"tail"

    atomic_write_bytes(target, data)

    assert target.stat().st_size == len(data)
    assert target.read_bytes() == data
