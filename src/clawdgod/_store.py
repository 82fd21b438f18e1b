"""Small JSON state files shared between the daemon and the CLI.

Writers take an exclusive ``flock`` on a sidecar ``<file>.lock``, re-read
the file, change it and replace it atomically. Readers need no lock since
the file is only ever swapped in whole.
"""

from __future__ import annotations

import fcntl
import json
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional


@contextmanager
def locked(path: Optional[Path]) -> Iterator[None]:
    """Hold the cross-process write lock for ``path`` (no-op when None)."""
    if path is None:
        yield
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path.with_name(path.name + ".lock"), "a") as handle:
        fcntl.flock(handle, fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle, fcntl.LOCK_UN)


def read_json(path: Path) -> Any:
    """Parsed contents of ``path``, or None if it does not exist."""
    if not path.exists():
        return None
    return json.loads(path.read_text(encoding="utf-8"))


def write_json(path: Path, data: Any) -> None:
    """Replace ``path`` with ``data`` in one rename. Call under ``locked``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
    tmp.replace(path)
