"""Pipe pairs for zero-copy file transfer with splice(2), and a pool of them."""

from __future__ import annotations

import fcntl
import functools
import os
import threading

DEFAULT_PIPE_SIZE = 16 * 4096
F_SETPIPE_SZ = getattr(fcntl, "F_SETPIPE_SZ", 1031)
F_GETPIPE_SZ = getattr(fcntl, "F_GETPIPE_SZ", 1032)
_SPLICE_F_NONBLOCK = getattr(os, "SPLICE_F_NONBLOCK", 0x2)


class SpliceError(Exception):
    """A pipe pair could not be sized or used as requested."""


@functools.lru_cache(maxsize=None)
def _pipe_limits() -> tuple[int, bool]:
    try:
        with open("/proc/sys/fs/pipe-max-size") as f:
            max_size = int(f.read().split()[0])
    except (OSError, ValueError, IndexError):
        max_size = DEFAULT_PIPE_SIZE

    r, w = os.pipe()
    try:
        size = fcntl.fcntl(r, F_GETPIPE_SZ)
        fcntl.fcntl(r, F_SETPIPE_SZ, 2 * size)
        can_resize = True
    except OSError:
        can_resize = False
    finally:
        os.close(r)
        os.close(w)
    return max_size, can_resize


@functools.lru_cache(maxsize=None)
def _dev_null_fd() -> int:
    return os.open("/dev/null", os.O_WRONLY)


def resizable():
    """Whether pipe buffers can be resized on this system."""
    return _pipe_limits()[1]


def max_pipe_size():
    """The largest pipe buffer size the system allows."""
    return _pipe_limits()[0]


def _fd(obj) -> int:
    return obj if isinstance(obj, int) else obj.fileno()


class Pair:
    """A non-blocking pipe used as a splice buffer."""

    def __init__(self, r: int, w: int, size: int):
        self._r = r
        self._w = w
        self.size = size

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def grow(self, n):
        """Enlarge the pipe buffer to at least ``n`` bytes."""
        if n <= self.size:
            return
        if not resizable():
            raise SpliceError(f"splice: want {n} bytes, but not resizable")
        limit = max_pipe_size()
        if n > limit:
            raise SpliceError(f"splice: want {n} bytes, max pipe size {limit}")
        try:
            self.size = fcntl.fcntl(self._r, F_SETPIPE_SZ, n)
        except OSError as e:
            raise SpliceError(f"splice: fcntl returned {e}") from e

    def max_grow(self):
        """Double the buffer until it cannot grow any further."""
        while True:
            try:
                self.grow(2 * self.size)
            except SpliceError:
                return

    def cap(self):
        return self.size

    def close(self):
        """Close both ends, raising the first failure."""
        first = None
        for fd in (self._r, self._w):
            try:
                os.close(fd)
            except OSError as e:
                first = first or e
        if first is not None:
            raise first

    def read(self, size):
        return os.read(self._r, size)

    def write(self, data):
        return os.write(self._w, data)

    def read_fd(self):
        return self._r

    def write_fd(self):
        return self._w

    def load_from_at(self, fd, size, offset):
        """Splice ``size`` bytes at ``offset`` of ``fd`` into the pipe."""
        return os.splice(_fd(fd), self._w, size, offset_src=offset)

    def load_from(self, fd, size):
        """Splice up to ``size`` bytes from ``fd`` into the pipe."""
        if size > self.size:
            raise SpliceError(f"LoadFrom: not enough space {size}, {self.size}")
        return os.splice(_fd(fd), self._w, size)

    def write_to(self, fd, n):
        """Splice up to ``n`` bytes from the pipe into ``fd``."""
        return os.splice(self._r, _fd(fd), n)

    def discard(self):
        """Throw away whatever is buffered in the pipe."""
        try:
            os.splice(self._r, _dev_null_fd(), self.size, flags=_SPLICE_F_NONBLOCK)
        except BlockingIOError:
            pass
        except OSError as e:
            # Something closed our fd behind our back; the pair is unusable.
            for fd in (self._r, self._w):
                try:
                    os.close(fd)
                except OSError:
                    pass
            raise SpliceError(
                f"splicing into /dev/null: {e} (close R {self._r}, close W {self._w})"
            ) from e


def new_pair():
    """Create a fresh non-blocking pipe pair."""
    r, w = os.pipe2(os.O_NONBLOCK)
    try:
        size = fcntl.fcntl(r, F_GETPIPE_SZ)
    except OSError as e:
        pair = Pair(r, w, DEFAULT_PIPE_SIZE)
        if e.errno == 22:  # EINVAL: size query unsupported
            return pair
        pair.close()
        raise SpliceError(f"fcntl getsize: {e}") from e
    return Pair(r, w, size)


class PairPool:
    """A thread-safe pool of reusable pipe pairs."""

    def __init__(self):
        self._lock = threading.Lock()
        self._unused: list[Pair] = []
        self._used_count = 0

    def get(self):
        with self._lock:
            self._used_count += 1
            if self._unused:
                return self._unused.pop()
            return new_pair()

    def done(self, pair):
        """Empty a pair and return it to the pool."""
        pair.discard()
        with self._lock:
            self._used_count -= 1
            self._unused.append(pair)

    def drop(self, pair):
        """Close a pair instead of returning it."""
        pair.close()
        with self._lock:
            self._used_count -= 1

    def clear(self):
        with self._lock:
            for pair in self._unused:
                try:
                    pair.close()
                except OSError:
                    pass
            self._unused.clear()

    def total(self):
        with self._lock:
            return self._used_count + len(self._unused)

    def used(self):
        with self._lock:
            return self._used_count


_pool = PairPool()


def get():
    return _pool.get()


def done(pair):
    _pool.done(pair)


def drop(pair):
    _pool.drop(pair)


def total():
    return _pool.total()


def used():
    return _pool.used()


def clear_splice_pool():
    _pool.clear()


def splice_copy(dst, src, pair):
    """Copy from ``src`` to ``dst`` through ``pair``; return bytes written."""
    src_fd, dst_fd = _fd(src), _fd(dst)
    copied = 0
    while True:
        n = pair.load_from(src_fd, pair.size)
        if n == 0:
            break
        m = pair.write_to(dst_fd, n)
        copied += m
        if m < n or n < pair.size:
            break
    return copied


def _plain_copy(dst_fd: int, src_fd: int) -> None:
    while chunk := os.read(src_fd, 64 * 1024):
        view = memoryview(chunk)
        while view:
            view = view[os.write(dst_fd, view):]


def copy_fds(dst, src):
    """Copy all of ``src`` into ``dst``, by splice where possible."""
    try:
        pair = _pool.get()
    except (OSError, SpliceError):
        _plain_copy(_fd(dst), _fd(src))
        return
    try:
        try:
            pair.grow(256 * 1024)
        except SpliceError:
            pass
        splice_copy(dst, src, pair)
    finally:
        _pool.done(pair)


def copy_file(dst_name, src_name, mode):
    """Copy file ``src_name`` to ``dst_name``, creating it with ``mode``."""

    def opener(path, _flags):
        return os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)

    with open(src_name, "rb") as src, open(dst_name, "wb", opener=opener) as dst:
        copy_fds(dst, src)