import hashlib
import os
import shutil
import stat as statmod
import time

import pytest

from fstransfer.changes import ChangeKind, CurrentPath, FileStat
from fstransfer.diskwriter import (
    DiskWriter,
    DiskWriterOptions,
    HashedWriter,
    LazyFileWriter,
    create_special_file,
    mkdev,
    next_suffix,
    rename_file,
    rewrite_metadata,
)

MTIME = 1_600_000_000 * 10**9


def _stat(path, kind, linkname="", size=0):
    modes = {
        "dir": statmod.S_IFDIR | 0o755,
        "file": statmod.S_IFREG | 0o644,
        "symlink": statmod.S_IFLNK | 0o777,
    }
    return FileStat(
        path=path,
        mode=modes[kind],
        uid=os.getuid(),
        gid=os.getgid(),
        size=size,
        mod_time=MTIME,
        linkname=linkname,
    )


def change_stream(lines):
    out = []
    for line in lines:
        parts = line.split(" ")
        kind = {"ADD": ChangeKind.ADD, "CHG": ChangeKind.MODIFY, "DEL": ChangeKind.DELETE}[parts[0]]
        path, typ = parts[1], parts[2]
        extra = parts[3] if len(parts) > 3 else ""
        data = b""
        linkname = ""
        if typ == "symlink":
            linkname = extra
        elif typ == "file" and extra.startswith(">"):
            linkname = extra[1:]
        elif typ == "file":
            data = extra.encode()
        st = _stat(path, typ, linkname, len(data))
        out.append((kind, path, st, data))
    return out


def tmp_dir(root, changes):
    for _kind, path, st, data in changes:
        full = os.path.join(root, path)
        if st.is_dir():
            os.mkdir(full)
        elif st.is_symlink():
            os.symlink(st.linkname, full)
        elif st.linkname:
            os.link(os.path.join(root, st.linkname), full)
        else:
            with open(full, "wb") as f:
                f.write(data)
    return root


def walk_tree(root):
    inodes = {}
    result = []

    def visit(dirpath, rel):
        for name in sorted(os.listdir(dirpath)):
            full = os.path.join(dirpath, name)
            relpath = f"{rel}/{name}" if rel else name
            st = os.lstat(full)
            linkname = ""
            if statmod.S_ISLNK(st.st_mode):
                linkname = os.readlink(full)
            elif statmod.S_ISREG(st.st_mode) and st.st_nlink > 1:
                if st.st_ino in inodes:
                    linkname = inodes[st.st_ino]
                else:
                    inodes[st.st_ino] = relpath
            devmajor = devminor = 0
            if statmod.S_ISCHR(st.st_mode) or statmod.S_ISBLK(st.st_mode):
                devmajor, devminor = os.major(st.st_rdev), os.minor(st.st_rdev)
            fs = FileStat(
                path=relpath,
                mode=st.st_mode,
                uid=st.st_uid,
                gid=st.st_gid,
                size=st.st_size,
                mod_time=st.st_mtime_ns,
                linkname=linkname,
                devmajor=devmajor,
                devminor=devminor,
            )
            result.append(CurrentPath(relpath, fs))
            if statmod.S_ISDIR(st.st_mode):
                visit(full, relpath)

    visit(root, "")
    return result


def describe(root):
    lines = []
    for cp in walk_tree(root):
        st = cp.stat
        if st.is_dir():
            typ = "dir"
        elif st.is_symlink():
            typ = f"symlink:{st.linkname}"
        else:
            typ = "file"
        line = f"{typ} {cp.path}"
        if not st.is_symlink() and st.linkname:
            line += f" >{st.linkname}"
        lines.append(line + "\n")
    return "".join(lines)


def noop_write_to(_path, _writer):
    return None


def new_write_to(base_dir, delay=0.0):
    def write_to(path, writer):
        if delay:
            time.sleep(delay)
        with open(os.path.join(base_dir, path), "rb") as f:
            writer.write(f.read())

    return write_to


def apply_all(dw, changes):
    for kind, path, st, _data in changes:
        dw.handle_change(kind, path, st)


def test_writer_simple(tmp_path):
    changes = change_stream([
        "ADD bar dir",
        "ADD bar/foo file",
        "ADD bar/foo2 symlink ../foo",
        "ADD foo file",
        "ADD foo2 file >foo",
    ])
    dw = DiskWriter(str(tmp_path), DiskWriterOptions(sync_data_cb=noop_write_to))
    apply_all(dw, changes)
    assert describe(str(tmp_path)) == (
        "dir bar\n"
        "file bar/foo\n"
        "symlink:../foo bar/foo2\n"
        "file foo\n"
        "file foo2 >foo\n"
    )


def test_writer_file_to_dir(tmp_path):
    dest = tmp_dir(str(tmp_path), change_stream(["ADD foo file data1"]))
    dw = DiskWriter(dest, DiskWriterOptions(sync_data_cb=noop_write_to))
    apply_all(dw, change_stream(["ADD foo dir", "ADD foo/bar file data2"]))
    assert describe(dest) == "dir foo\nfile foo/bar\n"


def test_writer_dir_to_file(tmp_path):
    dest = tmp_dir(str(tmp_path), change_stream(["ADD foo dir", "ADD foo/bar file data2"]))
    dw = DiskWriter(dest, DiskWriterOptions(sync_data_cb=noop_write_to))
    apply_all(dw, change_stream(["ADD foo file data1"]))
    assert describe(dest) == "file foo\n"


def test_walker_writer_simple(tmp_path):
    src = tmp_path / "src"
    src.mkdir()
    tmp_dir(str(src), change_stream([
        "ADD bar dir",
        "ADD bar/foo file",
        "ADD bar/foo2 symlink ../foo",
        "ADD foo file mydata",
        "ADD foo2 file",
    ]))
    dest = tmp_path / "dest"
    dest.mkdir()
    dw = DiskWriter(str(dest), DiskWriterOptions(sync_data_cb=new_write_to(str(src))))
    for cp in walk_tree(str(src)):
        dw.handle_change(ChangeKind.ADD, cp.path, cp.stat)

    assert describe(str(dest)) == (
        "dir bar\n"
        "file bar/foo\n"
        "symlink:../foo bar/foo2\n"
        "file foo\n"
        "file foo2\n"
    )
    assert (dest / "foo").read_bytes() == b"mydata"


def test_walker_writer_async(tmp_path):
    src = tmp_path / "src"
    src.mkdir()
    tmp_dir(str(src), change_stream([
        "ADD foo dir",
        "ADD foo/foo1 file data1",
        "ADD foo/foo2 file data2",
        "ADD foo/foo3 file data3",
        "ADD foo/foo4 file >foo/foo3",
        "ADD foo5 file data5",
    ]))
    dest = tmp_path / "dest"
    dest.mkdir()
    dw = DiskWriter(str(dest), DiskWriterOptions(async_data_cb=new_write_to(str(src), 0.3)))

    start = time.monotonic()
    for cp in walk_tree(str(src)):
        dw.handle_change(ChangeKind.ADD, cp.path, cp.stat)
    dw.wait()
    duration = time.monotonic() - start

    assert (dest / "foo" / "foo3").read_text() == "data3"
    assert (dest / "foo" / "foo4").read_text() == "data3"
    assert os.lstat(dest / "foo" / "foo3").st_ino == os.lstat(dest / "foo" / "foo4").st_ino
    assert (dest / "foo5").read_text() == "data5"
    assert duration < 1.0


def test_async_data_restores_mtime(tmp_path):
    src = tmp_path / "src"
    src.mkdir()
    (src / "a").write_bytes(b"abc")
    dest = tmp_path / "dest"
    dest.mkdir()
    dw = DiskWriter(str(dest), DiskWriterOptions(async_data_cb=new_write_to(str(src))))
    dw.handle_change(ChangeKind.ADD, "a", _stat("a", "file", size=3))
    dw.wait()
    assert (dest / "a").read_bytes() == b"abc"
    assert os.lstat(dest / "a").st_mtime_ns == MTIME


def test_wait_restores_directory_times(tmp_path):
    dw = DiskWriter(str(tmp_path), DiskWriterOptions(sync_data_cb=noop_write_to))
    dw.handle_change(ChangeKind.ADD, "d", _stat("d", "dir"))
    dw.handle_change(ChangeKind.ADD, "d/f", _stat("d/f", "file"))
    assert os.stat(tmp_path / "d").st_mtime_ns != MTIME
    dw.wait()
    assert os.stat(tmp_path / "d").st_mtime_ns == MTIME


def test_async_error_is_raised_by_wait(tmp_path):
    def failing(_path, _writer):
        raise OSError("boom")

    dw = DiskWriter(str(tmp_path), DiskWriterOptions(async_data_cb=failing))
    dw.handle_change(ChangeKind.ADD, "a", _stat("a", "file"))
    with pytest.raises(OSError, match="boom"):
        dw.wait()
    with pytest.raises(RuntimeError, match="cancelled"):
        dw.handle_change(ChangeKind.ADD, "b", _stat("b", "file"))


def test_options_require_exactly_one_data_callback(tmp_path):
    with pytest.raises(ValueError, match="no data callback"):
        DiskWriter(str(tmp_path), DiskWriterOptions())
    with pytest.raises(ValueError, match="both"):
        DiskWriter(
            str(tmp_path),
            DiskWriterOptions(sync_data_cb=noop_write_to, async_data_cb=noop_write_to),
        )


def test_delete_removes_and_notifies(tmp_path):
    tmp_dir(str(tmp_path), change_stream(["ADD foo dir", "ADD foo/bar file x"]))
    seen = []
    dw = DiskWriter(
        str(tmp_path),
        DiskWriterOptions(
            sync_data_cb=noop_write_to,
            notify_cb=lambda kind, p, info: seen.append((kind, p, info)),
        ),
    )
    dw.handle_change(ChangeKind.DELETE, "foo", None)
    assert not (tmp_path / "foo").exists()
    assert seen == [(ChangeKind.DELETE, "foo", None)]


def test_filter_can_block_delete(tmp_path):
    (tmp_path / "keep").write_text("x")
    dw = DiskWriter(
        str(tmp_path),
        DiskWriterOptions(sync_data_cb=noop_write_to, filter_fn=lambda p, st: False),
    )
    dw.handle_change(ChangeKind.DELETE, "keep", None)
    assert (tmp_path / "keep").read_text() == "x"


def test_filter_can_rewrite_metadata(tmp_path):
    def filt(path, st):
        st.mode = statmod.S_IFREG | 0o600
        return True

    dw = DiskWriter(str(tmp_path), DiskWriterOptions(sync_data_cb=noop_write_to, filter_fn=filt))
    dw.handle_change(ChangeKind.ADD, "f", _stat("f", "file"))
    assert statmod.S_IMODE(os.lstat(tmp_path / "f").st_mode) == 0o600


def test_modify_of_missing_path_fails(tmp_path):
    dw = DiskWriter(str(tmp_path), DiskWriterOptions(sync_data_cb=noop_write_to))
    with pytest.raises(FileNotFoundError):
        dw.handle_change(ChangeKind.MODIFY, "missing", _stat("missing", "file"))


def test_notify_receives_digest(tmp_path):
    src = tmp_path / "src"
    src.mkdir()
    (src / "foo").write_bytes(b"mydata")
    dest = tmp_path / "dest"
    dest.mkdir()
    digests = {}

    def write_and_close(path, writer):
        new_write_to(str(src))(path, writer)
        writer.close()

    def notify(kind, p, info):
        digests[p] = info.digest()

    dw = DiskWriter(str(dest), DiskWriterOptions(sync_data_cb=write_and_close, notify_cb=notify))
    dw.handle_change(ChangeKind.ADD, "d", _stat("d", "dir"))
    dw.handle_change(ChangeKind.ADD, "foo", _stat("foo", "file", size=6))
    assert digests["foo"] == "sha256:" + hashlib.sha256(b"mydata").hexdigest()
    assert digests["d"] == "sha256:" + hashlib.sha256(b"").hexdigest()
    assert (dest / "foo").read_bytes() == b"mydata"


def test_hashed_writer_forwards_and_hashes(tmp_path):
    target = tmp_path / "out"
    with open(target, "wb") as f:
        hw = HashedWriter(lambda st: hashlib.sha256(), _stat("out", "file"), f)
        assert hw.digest() == ""
        assert hw.write(b"hello") == 5
        hw.close()
    assert target.read_bytes() == b"hello"
    assert hw.digest() == "sha256:" + hashlib.sha256(b"hello").hexdigest()


def test_lazy_file_writer_handles_read_only_file(tmp_path):
    target = tmp_path / "ro"
    target.write_bytes(b"")
    os.chmod(target, 0o444)
    lw = LazyFileWriter(str(target))
    assert lw.write(b"data") == 4
    lw.close()
    assert target.read_bytes() == b"data"
    assert statmod.S_IMODE(os.stat(target).st_mode) == 0o444


def test_lazy_file_writer_opens_nothing_without_writes(tmp_path):
    lw = LazyFileWriter(str(tmp_path / "never"))
    lw.close()
    assert not (tmp_path / "never").exists()


def test_mkdev_round_trip():
    dev = mkdev(1, 9)
    assert (os.major(dev), os.minor(dev)) == (1, 9)
    dev = mkdev(2, 3)
    assert (os.major(dev), os.minor(dev)) == (2, 3)


def test_create_special_file_fifo(tmp_path):
    path = str(tmp_path / "fifo")
    st = FileStat(path="fifo", mode=statmod.S_IFIFO | 0o640)
    create_special_file(path, st)
    result = os.lstat(path)
    assert statmod.S_ISFIFO(result.st_mode)
    assert statmod.S_IMODE(result.st_mode) == 0o640


def test_rewrite_metadata_sets_mode_and_time(tmp_path):
    path = tmp_path / "f"
    path.write_text("x")
    st = _stat("f", "file")
    st.mode = statmod.S_IFREG | 0o600
    rewrite_metadata(str(path), st)
    result = os.lstat(path)
    assert statmod.S_IMODE(result.st_mode) == 0o600
    assert result.st_mtime_ns == MTIME


def test_rename_file_replaces_destination(tmp_path):
    (tmp_path / "a").write_text("new")
    (tmp_path / "b").write_text("old")
    rename_file(str(tmp_path / "a"), str(tmp_path / "b"))
    assert (tmp_path / "b").read_text() == "new"
    assert not (tmp_path / "a").exists()


def test_next_suffix_shape():
    first = next_suffix()
    second = next_suffix()
    assert len(first) == 9 and first.isdigit()
    assert len(second) == 9 and second.isdigit()
    assert first != second


def test_existing_dir_gets_metadata_only(tmp_path):
    (tmp_path / "d").mkdir()
    (tmp_path / "d" / "inner").write_text("keep")
    dw = DiskWriter(str(tmp_path), DiskWriterOptions(sync_data_cb=noop_write_to))
    st = _stat("d", "dir")
    st.mode = statmod.S_IFDIR | 0o700
    dw.handle_change(ChangeKind.MODIFY, "d", st)
    assert (tmp_path / "d" / "inner").read_text() == "keep"
    assert statmod.S_IMODE(os.lstat(tmp_path / "d").st_mode) == 0o700
    shutil.rmtree(tmp_path / "d")
    assert list(os.listdir(tmp_path)) == []