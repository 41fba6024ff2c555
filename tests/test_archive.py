import errno
import io
import stat
import tarfile
import zipfile
from datetime import datetime, timezone

import pytest

from fusekit.archive import (
    Attr,
    Directory,
    MemFile,
    MultiZipFS,
    Symlink,
    ZipFile,
    build_tar_tree,
    build_zip_tree,
    header_to_attr,
    new_archive_tree,
    new_tar_compressed_tree,
    new_zip_tree,
)

TEST_DATA = {
    "file.txt": "content",
    "dir/": "",
    "dir/subfile1": "content2",
    "dir/subdir/subfile": "content3",
}

TAR_CONTENTS = {
    "emptydir/": "",
    "file.txt": "content",
    "dir/subfile.txt": "other content",
}


def create_zip(data):
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zw:
        for k in sorted(data):
            zw.writestr(k, data[k])
    buf.seek(0)
    return buf


def create_tar(contents):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tw:
        for k, v in contents.items():
            info = tarfile.TarInfo(k)
            info.mode = 0o464
            info.uid = 42
            info.gid = 42
            info.mtime = 1_600_000_000
            if k.endswith("/"):
                info.type = tarfile.DIRTYPE
                tw.addfile(info)
            else:
                info.size = len(v)
                tw.addfile(info, io.BytesIO(v.encode()))
    buf.seek(0)
    return buf


@pytest.fixture
def zip_path(tmp_path):
    path = tmp_path / "test.zip"
    with zipfile.ZipFile(path, "w") as zw:
        info = zipfile.ZipInfo("file.txt", date_time=(2011, 2, 22, 12, 56, 12))
        info.create_system = 3
        info.external_attr = 0o664 << 16
        zw.writestr(info, "hello\n")
        zw.writestr("subdir/other.txt", "other\n")
    return str(path)


def test_zip_tree_contents():
    root = build_zip_tree(zipfile.ZipFile(create_zip(TEST_DATA)))
    for k, v in TEST_DATA.items():
        node = root.walk(k)
        if k.endswith("/"):
            assert isinstance(node, Directory)
            continue
        assert node.read(1024, 0) == v.encode()
    got = {name: isinstance(ch, Directory) for name, ch in root.children.items()}
    assert got == {"dir": True, "file.txt": False}


def test_zip_tree_added_as_child():
    tree = build_zip_tree(zipfile.ZipFile(create_zip(TEST_DATA)))
    root = Directory()
    root.add_child("sub", tree)
    assert root.walk("sub/dir/subdir/subfile").read(100, 0) == b"content3"


def test_zip_file_attributes(zip_path):
    root = new_archive_tree(zip_path)
    assert sorted(root.children) == ["file.txt", "subdir"]
    assert isinstance(root.get_child("subdir"), Directory)
    f = root.get_child("file.txt")
    assert isinstance(f, ZipFile)
    attr = f.getattr()
    assert attr.mode == 0o664
    assert attr.blocks == 1
    assert attr.nlink == 1
    want = datetime(2011, 2, 22, 12, 56, 12, tzinfo=timezone.utc).timestamp()
    assert attr.mtime == want
    assert f.mode == stat.S_IFREG | 0o664
    assert f.open() == b"hello\n"
    assert f.read(1024, 0) == b"hello\n"
    assert f.read(2, 1) == b"el"


def test_new_zip_tree(zip_path):
    root = new_zip_tree(zip_path)
    assert root.walk("subdir/other.txt").read(100, 0) == b"other\n"


def test_tar_tree():
    root = build_tar_tree(create_tar(TAR_CONTENTS))
    for k, want in TAR_CONTENTS.items():
        node = root.walk(k)
        assert node is not None
        if k.endswith("/"):
            assert node.mode == stat.S_IFDIR | 0o464
        else:
            assert node.mode == stat.S_IFREG | 0o464
            assert node.read(1024, 0) == want.encode()
            assert node.attr.uid == 42


def test_tar_closes_stream():
    stream = create_tar(TAR_CONTENTS)
    build_tar_tree(stream)
    assert stream.closed


def test_tar_symlink_and_long_name():
    buf = io.BytesIO()
    long_name = "d/" + "x" * 150
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.GNU_FORMAT) as tw:
        link = tarfile.TarInfo("d/link")
        link.type = tarfile.SYMTYPE
        link.linkname = "target"
        tw.addfile(link)
        info = tarfile.TarInfo(long_name)
        info.size = 3
        tw.addfile(info, io.BytesIO(b"abc"))
    buf.seek(0)
    root = build_tar_tree(buf)
    node = root.walk("d/link")
    assert isinstance(node, Symlink)
    assert node.target == "target"
    assert root.walk(long_name).read(10, 0) == b"abc"


def test_tar_compressed(tmp_path):
    for suffix, mode in ((".tar.gz", "w:gz"), (".tar.bz2", "w:bz2"), (".tar", "w")):
        path = tmp_path / f"a{suffix}"
        with tarfile.open(path, mode) as tw:
            info = tarfile.TarInfo("f")
            info.size = 2
            tw.addfile(info, io.BytesIO(b"hi"))
        root = new_archive_tree(str(path))
        assert root.walk("f").read(10, 0) == b"hi"


def test_tar_compressed_bad_format(tmp_path):
    with pytest.raises(ValueError):
        new_tar_compressed_tree(str(tmp_path / "x.tar"), "xz")


def test_tar_gz_bad_data(tmp_path):
    path = tmp_path / "bad.tar.gz"
    path.write_bytes(b"not gzip at all")
    with pytest.raises(OSError):
        new_tar_compressed_tree(str(path), "gz")


def test_unknown_archive_format():
    with pytest.raises(ValueError):
        new_archive_tree("file.rar")


def test_header_to_attr():
    info = tarfile.TarInfo("x")
    info.mode = 0o640
    info.size = 12
    info.uid = 7
    info.gid = 8
    info.mtime = 1000
    attr = header_to_attr(info)
    assert (attr.mode, attr.size, attr.uid, attr.gid, attr.mtime) == (0o640, 12, 7, 8, 1000)


def test_mem_file_read():
    f = MemFile(b"hello world", attr=Attr(mode=0o600))
    assert f.read(5, 6) == b"world"
    assert f.read(100, 20) == b""
    assert f.mode == stat.S_IFREG | 0o600


def test_directory_children():
    d = Directory()
    f = MemFile(b"x")
    d.add_child("a", f)
    assert d.get_child("a") is f
    assert d.walk("a/b") is None
    assert d.rm_child("a") is f
    assert d.get_child("a") is None
    assert d.mode == stat.S_IFDIR | 0o755


def test_multizip_fs(zip_path):
    mfs = MultiZipFS()
    assert mfs.listdir("") == ["config"]

    mfs.symlink(zip_path, "zipmount")
    assert isinstance(mfs.lookup("zipmount"), Directory)
    assert len(mfs.listdir("")) == 2
    assert mfs.readlink("zipmount") == zip_path
    assert isinstance(mfs.lookup("config/zipmount"), Symlink)
    assert isinstance(mfs.lookup("zipmount/subdir"), Directory)

    mfs.unlink("zipmount")
    with pytest.raises(OSError) as exc:
        mfs.lookup("zipmount")
    assert exc.value.errno == errno.ENOENT
    assert mfs.listdir("") == ["config"]


def test_multizip_bad_archive(tmp_path):
    mfs = MultiZipFS()
    with pytest.raises(OSError) as exc:
        mfs.symlink(str(tmp_path / "missing.zip"), "m")
    assert exc.value.errno == errno.EINVAL


def test_multizip_unlink_missing():
    mfs = MultiZipFS()
    with pytest.raises(OSError) as exc:
        mfs.unlink("nothing")
    assert exc.value.errno == errno.ENOENT


def test_multizip_listdir_not_dir(zip_path):
    mfs = MultiZipFS()
    mfs.symlink(zip_path, "z")
    with pytest.raises(OSError) as exc:
        mfs.listdir("z/file.txt")
    assert exc.value.errno == errno.ENOTDIR