"""Setting modification times without following symbolic links."""

from __future__ import annotations

import os
import stat


def chtimes(path: str, unix_nanos: int) -> None:
    """Set access and modification time of ``path`` to ``unix_nanos``.

    Symbolic links themselves are updated where the platform allows it and are
    left untouched otherwise.
    """
    times = (unix_nanos, unix_nanos)
    if os.utime in os.supports_follow_symlinks:
        os.utime(path, ns=times, follow_symlinks=False)
        return
    if stat.S_ISLNK(os.lstat(path).st_mode):
        return
    os.utime(path, ns=times)