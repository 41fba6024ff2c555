"""A copy-on-write union of directory trees with deletion markers.

The first root is writable; the others are read-only layers below it.
Files that exist only in a lower layer are copied up ("promoted") before
they are modified. Deleting such a file leaves a marker file in the
``DELETIONS`` directory of the writable root, which hides it from then on.
Paths given to :class:`UnionFS` are relative to the union's root.
"""

from __future__ import annotations

import errno
import hashlib
import logging
import os
import shutil
import stat
from dataclasses import dataclass, replace

DEL_DIR = "DELETIONS"

_log = logging.getLogger(__name__)


def file_path_hash(path):
    """Name of the marker for ``path``: a hash of its directory plus its base name."""
    cut = path.rfind("/") + 1
    directory, base = path[:cut], path[cut:]
    digest = hashlib.md5(directory.encode()).hexdigest()[:16]
    return f"{digest}-{base}"


DEL_DIR_HASH = file_path_hash(DEL_DIR)


def _clean(path: str) -> str:
    return "/".join(part for part in path.split("/") if part and part != ".")


def _join(*parts: str) -> str:
    return _clean("/".join(parts))


def _parent(path: str) -> str:
    return path.rpartition("/")[0]


def _real(root: str, rel: str) -> str:
    return os.path.join(root, rel) if rel else root


def _error(code: int, path: str | None = None) -> OSError:
    return OSError(code, os.strerror(code), path)


@dataclass(frozen=True)
class Attr:
    """File attributes as reported by the union."""

    mode: int
    ino: int
    nlink: int
    uid: int
    gid: int
    size: int
    atime_ns: int
    mtime_ns: int
    ctime_ns: int

    @classmethod
    def from_stat(cls, st: os.stat_result) -> "Attr":
        return cls(
            mode=st.st_mode,
            ino=st.st_ino,
            nlink=st.st_nlink,
            uid=st.st_uid,
            gid=st.st_gid,
            size=st.st_size,
            atime_ns=st.st_atime_ns,
            mtime_ns=st.st_mtime_ns,
            ctime_ns=st.st_ctime_ns,
        )


@dataclass(frozen=True)
class DirEntry:
    """A directory listing entry: name and file type bits."""

    name: str
    mode: int


class UnionFS:
    """A union over ``roots``; ``roots[0]`` receives all writes."""

    def __init__(self, roots):
        self.roots = [os.fspath(r) for r in roots]
        if not self.roots:
            raise ValueError("a union needs at least one root")

    # Deletion markers

    def marker_path(self, name):
        return os.path.join(self.roots[0], DEL_DIR, file_path_hash(_clean(name)))

    def all_markers(self):
        """Names of all marker files in the writable root."""
        directory = os.path.join(self.roots[0], DEL_DIR)
        with os.scandir(directory) as entries:
            return {e.name for e in entries if e.is_file(follow_symlinks=False)}

    def write_marker(self, name):
        """Record ``name`` as deleted."""
        name = _clean(name)
        directory = os.path.join(self.roots[0], DEL_DIR)
        try:
            os.stat(directory)
        except FileNotFoundError:
            try:
                os.mkdir(directory, 0o755)
            except OSError as e:
                _log.error("Mkdir %r: %s", directory, e)
                raise _error(errno.EIO, directory) from e
        fd = os.open(self.marker_path(name), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
        with os.fdopen(fd, "wb") as f:
            f.write(name.encode())

    def rm_marker(self, name):
        os.unlink(self.marker_path(name))

    def is_deleted(self, name):
        try:
            os.stat(self.marker_path(name))
        except OSError:
            return False
        return True

    # Branch resolution

    def get_branch(self, name):
        """Return ``(index, stat)`` of the root holding ``name``, or None."""
        name = _clean(name)
        if self.is_deleted(name):
            return None
        for index, root in enumerate(self.roots):
            try:
                return index, os.lstat(_real(root, name))
            except OSError:
                continue
        return None

    def del_path(self, path):
        """Remove ``path`` from the writable root and hide lower copies."""
        path = _clean(path)
        branch = self.get_branch(path)
        if branch is None:
            return
        index, st = branch
        if index == 0:
            real = _real(self.roots[0], path)
            if stat.S_ISDIR(st.st_mode):
                os.rmdir(real)
            else:
                os.unlink(real)
            branch = self.get_branch(path)
            if branch is None:
                return
            index = branch[0]
        if index > 0:
            self.write_marker(path)

    def promote(self, path):
        """Copy ``path`` and any missing ancestors up into the writable root."""
        path = _clean(path)
        pending = []
        current = path
        while current:
            branch = self.get_branch(current)
            if branch is None:
                _log.warning("promote called on nonexistent file %r", current)
                raise _error(errno.EIO, current)
            index, st = branch
            if index == 0:
                break
            pending.append((current, index, st))
            current = _parent(current)

        for name, index, st in reversed(pending):
            dest = _real(self.roots[0], name)
            if stat.S_ISDIR(st.st_mode):
                os.mkdir(dest, stat.S_IMODE(st.st_mode))
            elif stat.S_ISREG(st.st_mode):
                self.promote_regular_file(name, index, st)
            else:
                raise _error(errno.EIO, name)
            try:
                os.utime(dest, ns=(st.st_atime_ns, st.st_mtime_ns))
            except OSError:
                pass

    def promote_regular_file(self, path, index, st):
        """Copy the regular file ``path`` from ``roots[index]`` to the writable root."""
        path = _clean(path)
        dest_fd = os.open(
            _real(self.roots[0], path),
            os.O_WRONLY | os.O_CREAT | os.O_TRUNC,
            stat.S_IMODE(st.st_mode),
        )
        with os.fdopen(dest_fd, "wb") as dest:
            with open(_real(self.roots[index], path), "rb") as src:
                shutil.copyfileobj(src, dest, 128 << 10)

    # File system operations

    def lookup(self, path):
        """Attributes of an entry, with execute bits added to its mode."""
        path = _clean(path)
        if path == DEL_DIR:
            raise _error(errno.ENOENT, path)
        branch = self.get_branch(path)
        if branch is None:
            raise _error(errno.ENOENT, path)
        attr = Attr.from_stat(branch[1])
        return replace(attr, mode=attr.mode | 0o111)

    def getattr(self, path):
        branch = self.get_branch(path)
        if branch is None:
            raise _error(errno.ENOENT, path)
        return Attr.from_stat(branch[1])

    def open(self, path, flags):
        """Open ``path``, promoting it first when opened for writing; return an fd."""
        path = _clean(path)
        writing = bool(flags & (os.O_RDWR | os.O_WRONLY))
        branch = self.get_branch(path)
        if branch is None:
            raise _error(errno.ENOENT, path)
        index = branch[0]
        if writing and index > 0:
            self.promote(path)
            index = 0
        return os.open(_real(self.roots[index], path), flags)

    def create(self, path, flags, mode):
        """Create a file in the writable root; return ``(fd, attr)``."""
        path = _clean(path)
        if path == DEL_DIR:
            raise _error(errno.EPERM, path)
        parent = _parent(path)
        branch = self.get_branch(parent)
        if branch is not None and branch[0] > 0:
            self.promote(parent)
        try:
            self.rm_marker(path)
        except FileNotFoundError:
            pass

        real = _real(self.roots[0], path)
        fd = os.open(real, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        try:
            st = os.fstat(fd)
        except OSError:
            os.close(fd)
            try:
                os.unlink(real)
            except OSError:
                pass
            raise
        return fd, Attr.from_stat(st)

    def unlink(self, path):
        self.del_path(path)

    def rmdir(self, path):
        self.del_path(path)

    def symlink(self, target, path):
        """Create a symlink in the writable root and return its attributes."""
        path = _clean(path)
        try:
            self.promote(_parent(path))
        except OSError:
            pass
        real = _real(self.roots[0], path)
        os.symlink(target, real)
        return Attr.from_stat(os.lstat(real))

    def readlink(self, path):
        path = _clean(path)
        branch = self.get_branch(path)
        if branch is None:
            raise _error(errno.ENOENT, path)
        return os.readlink(_real(self.roots[branch[0]], path))

    def readdir(self, path):
        """Merged listing of a directory, without deleted entries.

        The entry with the greatest name comes first.
        """
        directory = _clean(path)
        markers = {DEL_DIR_HASH}
        try:
            markers |= self.all_markers()
        except OSError:
            pass

        names: dict[str, int] = {}
        for root in reversed(self.roots):
            names.update(_read_root(_real(root, directory)))

        entries = [
            DirEntry(name, mode)
            for name, mode in names.items()
            if file_path_hash(_join(directory, name)) not in markers
        ]
        if entries:
            top = max(range(len(entries)), key=lambda i: entries[i].name)
            entries = entries[top:] + entries[:top]
        return entries

    def setattr(self, path, mode=None, uid=None, gid=None, atime=None, mtime=None, size=None):
        """Change attributes after promoting ``path``.

        ``atime`` and ``mtime`` are in nanoseconds; None leaves a value alone.
        """
        path = _clean(path)
        self.promote(path)
        real = _real(self.roots[0], path)
        if mode is not None:
            os.chmod(real, mode)
        if uid is not None or gid is not None:
            os.chown(real, -1 if uid is None else uid, -1 if gid is None else gid)
        if atime is not None or mtime is not None:
            if atime is None or mtime is None:
                current = os.stat(real)
                atime = current.st_atime_ns if atime is None else atime
                mtime = current.st_mtime_ns if mtime is None else mtime
            os.utime(real, ns=(atime, mtime))
        if size is not None:
            os.truncate(real, size)
        return Attr.from_stat(os.lstat(real))


def _read_root(directory: str) -> dict[str, int]:
    result: dict[str, int] = {}
    try:
        with os.scandir(directory) as entries:
            for entry in entries:
                try:
                    result[entry.name] = stat.S_IFMT(entry.stat(follow_symlinks=False).st_mode)
                except OSError:
                    return result
    except OSError:
        pass
    return result