"""In-memory file trees built from zip and tar archives.

A tree is made of :class:`Directory`, :class:`MemFile`, :class:`Symlink` and
:class:`ZipFile` nodes. :class:`MultiZipFS` exposes several archives under
one root: creating a symlink ``config/NAME -> ARCHIVE`` mounts the archive
at ``NAME``, and removing the symlink unmounts it again.
"""

from __future__ import annotations

import bz2
import calendar
import errno
import gzip
import logging
import os
import posixpath
import stat
import tarfile
import threading
import zipfile
from dataclasses import dataclass

_log = logging.getLogger(__name__)

_BLOCK_SIZE = 512

# Creator systems whose external attributes hold MS-DOS attribute bits.
_MSDOS_CREATORS = {0, 11, 14, 19}
_UNIX_CREATOR = 3
_MSDOS_READONLY = 0x01


def _error(code: int, path: str | None = None) -> OSError:
    return OSError(code, os.strerror(code), path)


def _components(path: str) -> list[str]:
    return [part for part in path.split("/") if part and part != "."]


@dataclass
class Attr:
    """Attributes of a node; ``mode`` holds permission bits only."""

    mode: int = 0
    size: int = 0
    uid: int = 0
    gid: int = 0
    nlink: int = 1
    atime: float = 0
    mtime: float = 0
    ctime: float = 0
    blksize: int = 0
    blocks: int = 0


class Node:
    """A node of an in-memory tree."""

    kind = stat.S_IFREG
    default_perm = 0o644

    def __init__(self, attr: Attr | None = None, kind: int | None = None):
        self.attr = attr if attr is not None else Attr(mode=self.default_perm)
        if kind is not None:
            self.kind = kind

    @property
    def mode(self) -> int:
        """File type bits combined with the permission bits."""
        return self.kind | (self.attr.mode & 0o7777)


class Directory(Node):
    """A directory holding named children."""

    kind = stat.S_IFDIR
    default_perm = 0o755

    def __init__(self, attr: Attr | None = None):
        super().__init__(attr)
        self.children: dict[str, Node] = {}

    def get_child(self, name):
        return self.children.get(name)

    def add_child(self, name, node):
        """Add ``node`` as ``name``, replacing any existing child."""
        self.children[name] = node

    def rm_child(self, name):
        """Remove and return the child ``name``, or None if there is none."""
        return self.children.pop(name, None)

    def walk(self, path):
        """The node at the slash-separated ``path`` below this one, or None."""
        node: Node = self
        for part in _components(path):
            if not isinstance(node, Directory):
                return None
            child = node.get_child(part)
            if child is None:
                return None
            node = child
        return node

    def _ensure_dirs(self, directory: str) -> "Directory | None":
        node: Node = self
        for part in _components(directory):
            if not isinstance(node, Directory):
                return None
            child = node.get_child(part)
            if child is None:
                child = Directory()
                node.add_child(part, child)
            node = child
        return node if isinstance(node, Directory) else None


class MemFile(Node):
    """A file, device or fifo whose content is held in memory."""

    def __init__(self, data: bytes = b"", attr: Attr | None = None, kind: int | None = None):
        super().__init__(attr, kind)
        self.data = bytes(data)

    def read(self, size, offset):
        return self.data[offset:offset + size]


class Symlink(Node):
    """A symbolic link pointing at ``target``."""

    kind = stat.S_IFLNK
    default_perm = 0o777

    def __init__(self, target: str, attr: Attr | None = None):
        super().__init__(attr)
        self.target = target


def _zip_perm(info: zipfile.ZipInfo) -> int:
    if info.create_system == _UNIX_CREATOR:
        return (info.external_attr >> 16) & 0o7777
    if info.create_system in _MSDOS_CREATORS:
        return 0o444 if info.external_attr & _MSDOS_READONLY else 0o666
    return 0


class ZipFile(Node):
    """A file inside a zip archive, unpacked when first opened."""

    def __init__(self, archive: zipfile.ZipFile, info: zipfile.ZipInfo):
        self._archive = archive
        self.info = info
        self._lock = threading.Lock()
        self._data: bytes | None = None
        super().__init__(self._compute_attr())

    def _compute_attr(self) -> Attr:
        mtime = calendar.timegm(tuple(self.info.date_time) + (0, 0, 0))
        size = self.info.file_size
        return Attr(
            mode=_zip_perm(self.info),
            size=size,
            nlink=1,
            atime=mtime,
            mtime=mtime,
            ctime=mtime,
            blksize=_BLOCK_SIZE,
            blocks=(size + _BLOCK_SIZE - 1) // _BLOCK_SIZE,
        )

    def getattr(self):
        return self.attr

    def open(self):
        """Unpack the file's content if needed and return it."""
        with self._lock:
            if self._data is None:
                try:
                    self._data = self._archive.read(self.info)
                except (OSError, zipfile.BadZipFile, RuntimeError, ValueError) as e:
                    raise _error(errno.EIO, self.info.filename) from e
            return self._data

    def read(self, size, offset):
        data = self.open()
        return data[offset:offset + size]


def _split(name: str) -> tuple[str, str]:
    cleaned = posixpath.normpath(name)
    cut = cleaned.rfind("/") + 1
    return cleaned[:cut], cleaned[cut:]


def build_zip_tree(archive):
    """Build a tree of the files in an open :class:`zipfile.ZipFile`."""
    root = Directory()
    for info in archive.infolist():
        if info.is_dir():
            continue
        directory, base = _split(info.filename)
        parent = root._ensure_dirs(directory)
        if parent is None:
            _log.warning("entry %r: parent is not a directory", info.filename)
            continue
        parent.add_child(base, ZipFile(archive, info))
    return root


def header_to_attr(info):
    """Attributes of a :class:`tarfile.TarInfo` entry."""
    pax = info.pax_headers or {}

    def _time(key: str) -> float:
        try:
            return float(pax[key])
        except (KeyError, ValueError):
            return 0

    return Attr(
        mode=info.mode,
        size=info.size,
        uid=info.uid,
        gid=info.gid,
        atime=_time("atime"),
        mtime=info.mtime,
        ctime=_time("ctime"),
    )


def _tar_node(tf: tarfile.TarFile, member: tarfile.TarInfo) -> Node | None:
    attr = header_to_attr(member)
    if member.issym():
        return Symlink(member.linkname, attr)
    if member.islnk():
        _log.warning("entry %r: hard links are not supported", member.name)
        return None
    if member.ischr():
        return MemFile(attr=attr, kind=stat.S_IFCHR)
    if member.isblk():
        return MemFile(attr=attr, kind=stat.S_IFBLK)
    if member.isdir():
        return Directory(attr)
    if member.isfifo():
        return MemFile(attr=attr, kind=stat.S_IFIFO)
    if member.isreg():
        extracted = tf.extractfile(member)
        data = extracted.read() if extracted is not None else b""
        return MemFile(data, attr=attr)
    _log.warning("entry %r: unsupported type %r", member.name, member.type)
    return None


def build_tar_tree(stream):
    """Build a tree from an uncompressed tar stream, then close the stream.

    Reading stops at the first damaged entry; what was read so far is kept.
    """
    root = Directory()
    try:
        try:
            tf = tarfile.open(fileobj=stream, mode="r|")
        except (tarfile.TarError, OSError, EOFError) as e:
            _log.error("Add: %s", e)
            return root
        with tf:
            members = iter(tf)
            while True:
                try:
                    member = next(members)
                except StopIteration:
                    break
                except (tarfile.TarError, OSError, EOFError) as e:
                    _log.error("Add: %s", e)
                    break
                try:
                    node = _tar_node(tf, member)
                except (tarfile.TarError, OSError, EOFError) as e:
                    _log.error("Add: %s", e)
                    break
                if node is None:
                    continue
                directory, base = _split(member.name)
                parent = root._ensure_dirs(directory)
                if parent is None or parent.get_child(base) is not None:
                    continue
                parent.add_child(base, node)
    finally:
        stream.close()
    return root


def new_zip_tree(name):
    """Tree of the zip file ``name``; the archive stays open for reading."""
    return build_zip_tree(zipfile.ZipFile(name))


def new_tar_compressed_tree(name, fmt):
    """Tree of a tar file compressed with ``fmt``: ``"gz"`` or ``"bz2"``."""
    if fmt == "gz":
        stream = gzip.open(name, "rb")
    elif fmt == "bz2":
        stream = bz2.open(name, "rb")
    else:
        raise ValueError(f"unknown compression format {fmt!r}")
    try:
        stream.peek(1)
    except BaseException:
        stream.close()
        raise
    return build_tar_tree(stream)


def new_archive_tree(name):
    """Tree of an archive, its format chosen by the file name's suffix."""
    if name.endswith(".zip"):
        return new_zip_tree(name)
    if name.endswith(".tar.gz"):
        return new_tar_compressed_tree(name, "gz")
    if name.endswith(".tar.bz2"):
        return new_tar_compressed_tree(name, "bz2")
    if name.endswith(".tar"):
        return build_tar_tree(open(name, "rb"))
    raise ValueError(f"unknown archive format {name!r}")


class MultiZipFS:
    """A root that mounts archives configured through ``config`` symlinks."""

    def __init__(self):
        self.root = Directory()
        self.config = Directory()
        self.root.add_child("config", self.config)

    def symlink(self, target, base):
        """Mount the archive ``target`` at ``base``; return the config link."""
        try:
            tree = new_archive_tree(target)
        except (OSError, ValueError, zipfile.BadZipFile, tarfile.TarError) as e:
            _log.error("NewArchiveFileSystem failed: %s", e)
            raise _error(errno.EINVAL, target) from e
        self.root.add_child(base, tree)
        link = Symlink(target)
        self.config.add_child(base, link)
        return link

    def unlink(self, base):
        """Unmount the archive configured as ``base``."""
        if self.config.get_child(base) is None:
            raise _error(errno.ENOENT, base)
        mounted = self.root.get_child(base)
        if mounted is None:
            raise _error(errno.ENOENT, base)
        self.root.rm_child(base)
        if isinstance(mounted, Directory):
            mounted.children.clear()
        self.config.rm_child(base)

    def readlink(self, base):
        link = self.config.get_child(base)
        if not isinstance(link, Symlink):
            raise _error(errno.ENOENT, base)
        return link.target

    def lookup(self, path):
        node = self.root.walk(path)
        if node is None:
            raise _error(errno.ENOENT, path)
        return node

    def listdir(self, path):
        node = self.lookup(path)
        if not isinstance(node, Directory):
            raise _error(errno.ENOTDIR, path)
        return sorted(node.children)