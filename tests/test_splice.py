import os

import pytest

from fusekit import splice
from fusekit.splice import PairPool, SpliceError


def test_copy_file(tmp_path):
    src = tmp_path / "src"
    dst = tmp_path / "dst"
    src.write_bytes(b"hello")
    dst.write_bytes(b"")
    splice.copy_file(str(dst), str(src), 0o755)
    assert dst.read_bytes() == b"hello"


def test_copy_file_creates_destination(tmp_path):
    src = tmp_path / "src"
    dst = tmp_path / "new"
    src.write_bytes(b"payload" * 1000)
    splice.copy_file(str(dst), str(src), 0o644)
    assert dst.read_bytes() == b"payload" * 1000


def test_splice_copy(tmp_path):
    data = bytes(i % 256 for i in range(2 * 1024 * 1024))
    src_path = tmp_path / "src"
    src_path.write_bytes(data)
    dst_path = tmp_path / "dst"

    limit = splice.max_pipe_size()
    assert limit % 4096 == 0
    assert limit >= 4096

    pool = PairPool()
    pair = pool.get()
    try:
        pair.max_grow()
        with open(src_path, "rb") as src, open(dst_path, "wb") as dst:
            copied = splice.splice_copy(dst, src, pair)
    finally:
        pair.close()
    assert copied == len(data)
    assert dst_path.read_bytes() == data


def test_pair_size(tmp_path):
    pair = splice.get()
    try:
        pair.max_grow()
        data = bytes(i % 256 for i in range(pair.cap() + 100))
        path = tmp_path / "splice"
        path.write_bytes(data)
        with open(path, "rb") as f:
            with pytest.raises(SpliceError):
                pair.load_from(f, len(data))
    finally:
        splice.done(pair)


def test_discard():
    pair = splice.get()
    try:
        assert pair.write(b"hello") == 5
        pair.discard()
        with pytest.raises(BlockingIOError):
            pair.read(1)
    finally:
        splice.done(pair)


def test_load_from_at_and_write_to(tmp_path):
    src = tmp_path / "src"
    src.write_bytes(b"hello world")
    dst = tmp_path / "dst"
    pair = splice.new_pair()
    with pair:
        with open(src, "rb") as f:
            assert pair.load_from_at(f, 5, 6) == 5
        with open(dst, "wb") as out:
            assert pair.write_to(out, 5) == 5
    assert dst.read_bytes() == b"world"


def test_grow_beyond_max_fails():
    with splice.new_pair() as pair:
        before = pair.cap()
        with pytest.raises(SpliceError):
            pair.grow(splice.max_pipe_size() + 4096)
        assert pair.cap() == before


def test_grow_to_smaller_size_keeps_capacity():
    with splice.new_pair() as pair:
        before = pair.cap()
        pair.grow(before // 2)
        assert pair.cap() == before


def test_read_write_roundtrip():
    with splice.new_pair() as pair:
        pair.write(b"abc")
        assert pair.read(10) == b"abc"
        assert pair.read_fd() != pair.write_fd()


def test_pool_accounting():
    pool = PairPool()
    first = pool.get()
    second = pool.get()
    assert pool.used() == 2
    assert pool.total() == 2
    pool.done(first)
    assert pool.used() == 1
    assert pool.total() == 2
    pool.drop(second)
    assert pool.used() == 0
    assert pool.total() == 1
    reused = pool.get()
    assert reused is first
    pool.done(reused)
    pool.clear()
    assert pool.total() == 0


def test_copy_fds_with_raw_descriptors(tmp_path):
    src = tmp_path / "src"
    dst = tmp_path / "dst"
    src.write_bytes(b"x" * 300_000)
    src_fd = os.open(src, os.O_RDONLY)
    dst_fd = os.open(dst, os.O_WRONLY | os.O_CREAT, 0o644)
    try:
        splice.copy_fds(dst_fd, src_fd)
    finally:
        os.close(src_fd)
        os.close(dst_fd)
    assert dst.read_bytes() == b"x" * 300_000