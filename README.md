# fstransfer

A library for working with directory trees on POSIX systems. It has no
third-party dependencies and needs Python 3.10 or later.

## Modules

- **`fstransfer.changes`**: compare two sorted streams of entries.
  `double_walk_diff(change_fn, a, b, filter_fn=None, differ=DiffType.CONTENT)`
  takes two walkers (callables with no arguments that return an iterable of
  `CurrentPath` objects, each a path and a `FileStat`) and calls
  `change_fn(kind, path, stat)` for every `ChangeKind.ADD`, `MODIFY` or
  `DELETE`. Entries below a deleted directory are not reported separately.
  `DiffType.NONE` reports every common path as modified, `METADATA` compares
  size, modification time, mode, owner, device numbers and link target, and
  `CONTENT` additionally compares the bytes of both files (`compare_file_content`).
  `compare_path`, `path_change`, `compare_stat`, `same_file` and
  `empty_walker` are available on their own.
- **`fstransfer.diskwriter`**: `DiskWriter(dest, DiskWriterOptions(...))`
  applies changes with `handle_change(kind, path, stat)`. It creates
  directories, regular files, symlinks, hard links (a non-empty `linkname`
  on a regular file) and device nodes or fifos, then sets xattrs, owner,
  permissions and modification time. Existing entries are replaced through a
  temporary name and a rename. File data comes from exactly one of
  `sync_data_cb` or `async_data_cb`, each called as `cb(path, writer)`;
  asynchronous callbacks run in background threads, and `wait()` joins them,
  re-raises the first error and restores directory modification times. A
  `notify_cb(kind, path, hashed)` receives a `HashedWriter` whose
  `digest()` is a `sha256:<hex>` string (or `None` for deletions); the hash
  can be replaced through `content_hasher`. A `filter_fn(path, stat)` that
  returns false skips a change and may edit the stat copy it is given. After
  a failure the writer refuses further changes.
- **`fstransfer.copier`**: `copy(src_root, src, dst_root, dst, info=None)`
  copies a file or tree with `cp -a` semantics. Source and destination are
  resolved as if their root were `/`. `CopyInfo` controls ownership
  (`chown`, e.g. `with_chown(uid, gid)`), a fixed timestamp (`utime`),
  permission bits (`mode`), wildcard sources (`allow_wildcards`; raises
  `FileNotFoundError` when nothing matches), copying a directory's contents
  rather than the directory (`copy_dir_contents`), following a final
  symlink in the source (`follow_links`), `include_patterns`,
  `exclude_patterns`, xattr error handling (`xattr_error_handler`, e.g.
  `allow_xattr_errors`) and `change_func`. Hard links inside the copied
  tree are kept, sockets are copied as plain device stubs.
- **`fstransfer.patterns`**: `PatternMatcher(patterns)` matches paths against
  ignore-file style patterns (`*`, `?`, `[...]`, `**`, and `!` to
  re-include); `matches_using_parent_results(path, parent_info)` returns the
  result and a `MatchInfo` to pass on to the entries of a directory.
- **`fstransfer.paths`**: `scoped_join` and `root_path` resolve paths and
  symlinks without leaving a root; `contains_wildcards`, `split_wildcards`,
  `rel` and `resolve_wildcards` expand wildcard sources.
- **`fstransfer.mkdir`**: `mkdir_all(path, perm, chowner, when)`, `utimes`,
  `chown`, the `User` type, and `get_link_info` / `get_link_source` for
  tracking hard links by inode.
- **`fstransfer.chtimes`**: `chtimes(path, unix_nanos)` sets access and
  modification times without following symlinks where the platform allows.
- **`fstransfer.benchdata`**: `create_test_dir`, `fill_test_dir`,
  `write_file`, `random_id` and `mutate` build and randomly change trees of
  files for benchmarks (`BENCH_BASE_DIR` and `BENCH_FILE_SIZE` are read
  from the environment).

## Examples

```python
from fstransfer.copier import CopyInfo, copy

# Copy the contents of /src/app into /dst/app, leaving out build output.
info = CopyInfo(copy_dir_contents=True, exclude_patterns=["**/build"])
copy("/src", "app", "/dst", "app", info)
```

Changes can be followed as they happen; the callback receives the change
kind, the path relative to the destination root and a `FileStat`:

```python
from fstransfer.copier import CopyInfo, copy

seen = []
copy("/src", "/.", "/dst", "/",
     CopyInfo(change_func=lambda kind, path, stat: seen.append(f"{kind}:{path}")))
```

## What it does not do

The package has no walker that reads a directory from disk into
`CurrentPath` entries; callers supply their own walkers to
`double_walk_diff`. It has no network or stream protocol for sending a tree
from one side to another and no command-line programs: everything is used
as a library.

## Notes

Setting ownership, creating device nodes and writing some extended
attributes need root privileges. Copying is meant for controlled,
containerised environments; paths are resolved inside the given roots, but
the destination is written without further sandboxing.