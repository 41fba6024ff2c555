# fusekit

Building blocks for user-space file systems on Linux. Everything works on
ordinary directories and files; no kernel mount is needed.

- `fusekit.access` — `has_access(caller_uid, caller_gid, file_uid, file_gid,
  perm, mask)` decides whether a caller may access a file with the given
  permission bits for the requested rwx `mask`. Root may do anything; when
  only the group bits would grant access, the caller's supplementary groups
  are looked up.
- `fusekit.splice` — `Pair`, a non-blocking pipe used as a `splice(2)`
  buffer (`grow()`, `max_grow()`, `load_from()`, `write_to()`, `discard()`,
  ...), and `PairPool`, a thread-safe pool of pairs. Module-level `get()`,
  `done()`, `drop()`, `total()`, `used()` and `clear_splice_pool()` work on a
  shared pool. `splice_copy()`, `copy_fds()` and `copy_file()` copy data
  through a pair; `copy_fds()` falls back to plain reads and writes when no
  pair can be had. Sizing failures raise `SpliceError`.
- `fusekit.unionfs` — `UnionFS(roots)`, a copy-on-write union of directory
  trees. `roots[0]` takes all writes; the other roots are read-only layers.
  Files from a lower layer are copied up (`promote()`) before being opened
  for writing or having attributes changed. Deleting a lower-layer entry
  writes a marker file into `DELETIONS` in the writable root, which hides
  it from `lookup()`, `getattr()` and `readdir()`. Errors are raised as
  `OSError` with the matching errno.
- `fusekit.archive` — in-memory trees (`Directory`, `MemFile`, `Symlink`,
  `ZipFile`) built from zip, `.tar`, `.tar.gz` and `.tar.bz2` archives by
  `new_archive_tree()`. Zip entries are unpacked lazily on first read.
  `MultiZipFS` keeps a root with a `config` directory: `symlink(target,
  base)` mounts the archive `target` at `base` and records a link under
  `config`; `unlink(base)` removes both again.
- `fusekit.posix_files` and `fusekit.posix_dirs` — POSIX conformance checks
  to run against a directory, typically the mount point of a file system
  under test. Each check raises `PosixCheckFailure` on a mismatch and
  otherwise returns what it observed. `posix_dirs.all_checks()` maps the
  check names to the functions; `direct_io()` returns `False` when the file
  system refuses `O_DIRECT`, and `rename_open_dir()` returns `None` on a
  known limitation instead of failing. `posix_files.list_fds()` lists a
  process's open file descriptors.

## What it does not do

fusekit does not talk to the kernel's FUSE interface: it cannot mount
`UnionFS` or an archive tree as a real file system, and it has no command
line program. A FUSE server library is needed to serve these trees to
other processes.

## Installing

```
pip install .
```

## Examples

```python
from fusekit.access import has_access
has_access(1000, 1000, 1000, 1000, 0o644, 4)   # True: the owner may read
```

```python
from fusekit.splice import copy_file
copy_file("copy.bin", "original.bin", 0o644)   # destination first
```

```python
from fusekit.unionfs import UnionFS
union = UnionFS(["/srv/rw", "/srv/ro"])
union.unlink("dir/file")        # writes a deletion marker if needed
print([entry.name for entry in union.readdir("dir")])
```

```python
from fusekit.archive import new_archive_tree
root = new_archive_tree("data.zip")
node = root.walk("dir/subfile")
print(node.read(1024, 0))
```

```python
from fusekit.posix_dirs import all_checks
for name, check in all_checks().items():
    check(f"/mnt/myfs/{name}")  # each check wants its own empty directory
```

## Running the tests

```
pip install .[test]
pytest
```