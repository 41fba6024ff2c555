"""POSIX conformance checks for regular files on a mounted file system.

Each check takes the path of an empty, writable directory (usually the
mount point of the file system under test) and raises
:class:`PosixCheckFailure` when the file system does not behave as POSIX
requires. On success a check returns what it observed.
"""

from __future__ import annotations

import errno
import fcntl
import logging
import mmap
import os
import random
import struct
import sys
from concurrent.futures import ThreadPoolExecutor
from contextlib import ExitStack, contextmanager

_log = logging.getLogger(__name__)

_F_OFD_GETLK = getattr(fcntl, "F_OFD_GETLK", 36)
# struct flock on 64-bit Linux: l_type, l_whence, l_start, l_len, l_pid.
_FLOCK = struct.Struct("hhqqi4x")


class PosixCheckFailure(AssertionError):
    """The file system under test did not behave as expected."""


@contextmanager
def _step(label: str):
    try:
        yield
    except OSError as e:
        raise PosixCheckFailure(f"{label}: {e}") from e


def _path(mnt, name: str) -> str:
    return os.path.join(os.fspath(mnt), name)


def _write_file(path: str, data: bytes, mode: int) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as f:
        f.write(data)


def _read_file(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def list_fds(pid=0, prefix=""):
    """List the open file descriptors of process ``pid`` (0 for this one).

    Entries look like ``"3rw=/path"``. Pipes, the event-poll descriptor and,
    when ``prefix`` is given, targets not starting with it are left out and
    summarised in a final ``"(filtered: ...)"`` entry.
    """
    if not sys.platform.startswith("linux") and pid > 0:
        return []
    directory = f"/proc/{pid}/fd" if pid > 0 else "/dev/fd"
    try:
        names = os.listdir(directory)
    except OSError as e:
        _log.warning("ListFds: %s", e)
        return []

    out: list[str] = []
    filtered: list[str] = []
    for name in names:
        fd_path = f"{directory}/{name}"
        try:
            mode = os.lstat(fd_path).st_mode
            target = os.readlink(fd_path)
        except OSError:
            # The descriptor was closed in the meantime.
            continue
        if mode & 0o400:
            name += "r"
        if mode & 0o200:
            name += "w"
        if target.startswith(("pipe:", "anon_inode:[eventpoll]")):
            filtered.append(target)
            continue
        if prefix and not target.startswith(prefix):
            filtered.append(target)
            continue
        out.append(f"{name}={target}")
    out.append(f"(filtered: {', '.join(filtered)})")
    return out


def direct_io(mnt):
    """Write and read back a file opened with O_DIRECT.

    Return False when the file system does not support O_DIRECT.
    """
    o_direct = getattr(os, "O_DIRECT", None)
    if o_direct is None:
        return False
    fn = _path(mnt, "file.txt")
    data = b"bye" * 4096
    try:
        fd = os.open(fn, os.O_TRUNC | os.O_CREAT | o_direct | os.O_WRONLY, 0o644)
    except OSError as e:
        if e.errno == errno.EINVAL:
            return False
        raise PosixCheckFailure(f"Open: {e}") from e

    # O_DIRECT wants aligned buffers; anonymous maps are page aligned.
    with mmap.mmap(-1, len(data)) as buf:
        buf[:] = data
        try:
            with _step("Write"):
                n = os.write(fd, buf)
        finally:
            with _step("Close"):
                os.close(fd)
        if n != len(data):
            raise PosixCheckFailure(f"Write: short write ({n})")

        with _step("Open 2"):
            fd = os.open(fn, o_direct | os.O_RDONLY)
        try:
            buf[:] = b"xxx" * 4096
            with _step("ReadAt"):
                n = os.readv(fd, [buf])
            if n != len(data):
                raise PosixCheckFailure(f"ReadAt: short read ({n})")
            roundtrip = bytes(buf)
        finally:
            os.close(fd)
    if roundtrip != data:
        raise PosixCheckFailure(
            f"roundtrip made changes: got {roundtrip[:10]!r}.., want {data[:10]!r}.."
        )
    return True


def symlink_readlink(mnt):
    """Create a symlink and read it back; return its target."""
    link = _path(mnt, "link")
    with _step("Symlink"):
        os.symlink("/foobar", link)
    with _step("Readlink"):
        val = os.readlink(link)
    if val != "/foobar":
        raise PosixCheckFailure(f"symlink mismatch: {val}")
    return val


def file_basic(mnt):
    """Write, read and fstat a file; return the fstat result."""
    content = b"hello world"
    fn = _path(mnt, "file")
    with _step("WriteFile"):
        _write_file(fn, content, 0o755)
    with _step("ReadFile"):
        got = _read_file(fn)
    if got != content:
        raise PosixCheckFailure(f"ReadFile: got {got!r}, want {content!r}")

    with _step("Open"):
        f = open(fn, "rb")
    with f:
        with _step("Fstat"):
            st = os.fstat(f.fileno())
    if st.st_size != len(content):
        raise PosixCheckFailure(f"got size {st.st_size} want {len(content)}")
    want_mode = 0o100000 | 0o755
    if st.st_mode != want_mode:
        raise PosixCheckFailure(f"Fstat: got mode {st.st_mode:o}, want {want_mode:o}")
    return st


def truncate_file(mnt):
    """Truncate an open file with ftruncate; return the remaining content."""
    content = b"hello world"
    trunc = 5
    fn = _path(mnt, "file")
    with _step("WriteFile"):
        _write_file(fn, content, 0o755)
    with _step("Open"):
        fd = os.open(fn, os.O_RDWR)
    try:
        with _step("Truncate"):
            os.ftruncate(fd, trunc)
    finally:
        with _step("Close"):
            os.close(fd)
    with _step("ReadFile"):
        got = _read_file(fn)
    if got != content[:trunc]:
        raise PosixCheckFailure(f"got {got!r}, want {content[:trunc]!r}")
    return got


def truncate_no_file(mnt):
    """Truncate a file by name; return its lstat result."""
    fn = _path(mnt, "file")
    with _step("WriteFile"):
        _write_file(fn, b"hello", 0o644)
    with _step("Truncate"):
        os.truncate(fn, 1)
    with _step("Lstat"):
        st = os.lstat(fn)
    if st.st_size != 1:
        raise PosixCheckFailure(f"got size {st.st_size}, want 1")
    return st


def fd_leak(mnt):
    """Read a file 100 times and check that no descriptors leak.

    Return the descriptor listing on Linux, an empty list elsewhere.
    """
    fn = _path(mnt, "file")
    with _step("WriteFile"):
        _write_file(fn, b"hello world", 0o755)
    for _ in range(100):
        with _step("ReadFile"):
            _read_file(fn)
    if not sys.platform.startswith("linux"):
        return []
    infos = list_fds(0, "")
    if len(infos) > 15:
        raise PosixCheckFailure(
            f"found {len(infos)} open file descriptors for 100x ReadFile: {infos}"
        )
    return infos


def nlink_zero(mnt):
    """Overwrite an open file by rename; its link count must drop to zero.

    Return the fstat result of the overwritten file.
    """
    src = _path(mnt, "src")
    dst = _path(mnt, "dst")
    with _step("WriteFile"):
        _write_file(src, b"source", 0o644)
        _write_file(dst, b"dst", 0o644)
    with _step("Open"):
        fd = os.open(dst, os.O_RDONLY)
    try:
        with _step("Fstat before"):
            st = os.fstat(fd)
        if st.st_nlink != 1:
            raise PosixCheckFailure(f"Nlink of file: got {st.st_nlink}, want 1")
        with _step("Rename"):
            os.rename(src, dst)
        with _step("Fstat after"):
            st = os.fstat(fd)
        if st.st_nlink != 0:
            raise PosixCheckFailure(
                f"Nlink of overwritten file: got {st.st_nlink}, want 0"
            )
        return st
    finally:
        os.close(fd)


def _comparable(st: os.stat_result) -> tuple:
    # ctime changes on unlink and nlink drops to zero; the rest must stay.
    return (
        st.st_mode, st.st_ino, st.st_dev, st.st_rdev, st.st_uid, st.st_gid,
        st.st_size, st.st_blksize, st.st_blocks, st.st_atime_ns, st.st_mtime_ns,
    )


def fstat_deleted(mnt):
    """Fstat several open, deleted files in random order.

    Each result must match the stat taken before deletion, apart from ctime
    and the link count. Return the fstat results ordered by file number.
    """
    i_max = 9
    with ExitStack() as stack:
        files: dict[int, tuple[int, os.stat_result]] = {}
        for i in range(i_max + 1):
            path = _path(mnt, str(i))
            with _step("WriteFile"):
                _write_file(path, bytes(i), 0o644)
            with _step("Stat"):
                st = os.stat(path)
            with _step("Open"):
                fd = os.open(path, os.O_RDONLY)
            stack.callback(os.close, fd)
            files[i] = (fd, st)
            with _step("Unlink"):
                os.unlink(path)

        results: dict[int, os.stat_result] = {}
        for i in random.sample(sorted(files), len(files)):
            fd, before = files[i]
            with _step("Fstat"):
                after = os.fstat(fd)
            if after.st_nlink != 0 or _comparable(before) != _comparable(after):
                raise PosixCheckFailure(f"stat mismatch: want={before}\n have={after}")
            results[i] = after
    return [results[i] for i in sorted(results)]


def parallel_file_open(mnt):
    """Open, read and write one file from 10 threads; return its final content."""
    fn = _path(mnt, "file")
    with _step("WriteFile"):
        _write_file(fn, b"content", 0o644)

    def one(b: int) -> OSError | None:
        try:
            fd = os.open(fn, os.O_RDWR)
        except OSError as e:
            return e
        try:
            try:
                os.read(fd, 10)
                os.pwrite(fd, bytes([b]), 2)
            except OSError:
                pass
        finally:
            os.close(fd)
        return None

    with ThreadPoolExecutor(max_workers=10) as pool:
        errors = [e for e in pool.map(one, range(10)) if e is not None]
    if errors:
        raise PosixCheckFailure("; ".join(str(e) for e in errors))
    with _step("ReadFile"):
        return _read_file(fn)


def append_write(mnt):
    """Write twice to a file opened with O_APPEND; return what was read back."""
    fn = _path(mnt, "file")
    with _step("Open"):
        fd = os.open(fn, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
    try:
        with _step("Write 1"):
            os.write(fd, b"hello")
        with _step("Write 2"):
            os.write(fd, b"world")
    finally:
        with _step("Close"):
            os.close(fd)
    want = b"helloworld"
    with _step("ReadFile"):
        got = _read_file(fn)
    if got != want:
        raise PosixCheckFailure(f"got {got!r} want {want!r}")
    return got


def fallocate(mnt):
    """Allocate space past the end of a file; return the new file size."""
    fn = _path(mnt, "file")
    with _step("OpenFile failed"):
        fd = os.open(fn, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, 0o666)
    try:
        with _step("Fallocate failed"):
            os.posix_fallocate(fd, 1024, 4096)
        with _step("Lstat failed"):
            size = os.lstat(fn).st_size
    finally:
        os.close(fd)
    if size < 1024 + 4096:
        raise PosixCheckFailure(
            f"fallocate should have changed file size. Got {size} bytes"
        )
    return size


def fcntl_flock_set_lk(mnt):
    """Take a write lock with F_SETLK and F_SETLKW and query it from another fd.

    Return the lock types reported by F_OFD_GETLK.
    """
    commands = [
        ("F_SETLK", fcntl.LOCK_EX | fcntl.LOCK_NB),
        ("F_SETLKW", fcntl.LOCK_EX),
    ]
    seen = []
    with ExitStack() as stack:
        for i, (name, op) in enumerate(commands):
            filename = _path(mnt, f"file{i}")
            with _step("Open failed"):
                f1 = stack.enter_context(open(filename, "wb"))
            with _step(f"FcntlFlock {name} failed"):
                fcntl.lockf(f1, op)
            with _step("Open failed"):
                f2 = stack.enter_context(open(filename, "r+b"))
            query = _FLOCK.pack(fcntl.F_WRLCK, os.SEEK_SET, 0, 0, 0)
            with _step("FcntlFlock failed"):
                reply = fcntl.fcntl(f2.fileno(), _F_OFD_GETLK, query)
            lock_type = _FLOCK.unpack(reply)[0]
            if lock_type != fcntl.F_WRLCK:
                raise PosixCheckFailure(
                    f"got lk.Type={lock_type}, want {fcntl.F_WRLCK}"
                )
            seen.append(lock_type)
    return seen


def fcntl_flock_locks_file(mnt):
    """A read lock on a write-locked file must fail with EAGAIN.

    Return the error that the second lock attempt raised.
    """
    filename = _path(mnt, "test")
    with ExitStack() as stack:
        with _step("Open failed"):
            f1 = stack.enter_context(open(filename, "wb"))
        with _step("FcntlFlock failed"):
            fcntl.lockf(f1, fcntl.LOCK_EX | fcntl.LOCK_NB)
        with _step("Open failed"):
            f2 = stack.enter_context(open(filename, "r+b"))
        try:
            fcntl.lockf(f2, fcntl.LOCK_SH | fcntl.LOCK_NB)
        except OSError as e:
            if e.errno == errno.EAGAIN:
                return e
            raise PosixCheckFailure(f"FcntlFlock returned {e}, expected EAGAIN") from e
    raise PosixCheckFailure("FcntlFlock returned success, expected EAGAIN")


def lseek_hole_seeks_to_eof(mnt):
    """SEEK_HOLE in a file without holes must land on its end; return the offset."""
    fn = _path(mnt, "file.bin")
    content = b"abcxyz\n" * 1024
    with _step("WriteFile"):
        _write_file(fn, content, 0o644)
    with _step("Open"):
        fd = os.open(fn, os.O_RDONLY)
    try:
        with _step("Seek"):
            off = os.lseek(fd, len(content) // 2, os.SEEK_HOLE)
    finally:
        os.close(fd)
    if off != len(content):
        raise PosixCheckFailure(f"got offset {off}, want {len(content)}")
    return off