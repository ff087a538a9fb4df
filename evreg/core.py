"""Canonical JSON and digest helpers shared by snapshots, events and the CLI.

Canonical form: keys sorted, no insignificant whitespace, UTF-8, and no
floats anywhere in the tree. Equal states always serialize to equal bytes,
so a snapshot digest identifies a registry state.
"""

from __future__ import annotations

import hashlib
import json
import os
import pathlib
import tempfile
from typing import Any, Iterator, Tuple


def sha256_bytes(data: bytes) -> str:
    """Lowercase hex SHA-256 of `data`."""
    return hashlib.sha256(data).hexdigest()


def load_json(path: pathlib.Path) -> Any:
    return json.loads(pathlib.Path(path).read_text(encoding="utf-8"))


def _floats(obj: Any, where: str = "$") -> Iterator[Tuple[str, float]]:
    if isinstance(obj, float):
        yield where, obj
    elif isinstance(obj, dict):
        for key, value in obj.items():
            yield from _floats(value, f"{where}.{key}")
    elif isinstance(obj, (list, tuple)):
        for index, value in enumerate(obj):
            yield from _floats(value, f"{where}[{index}]")


def canonical_json_bytes(obj: Any) -> bytes:
    """Canonical JSON encoding of `obj`.

    Raises:
        ValueError: `obj` contains a float
    """
    for where, value in _floats(obj):
        raise ValueError(f"Float not allowed in canonical JSON at {where}: {value!r}")
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def write_canonical_json(path: pathlib.Path, obj: Any) -> str:
    """Atomically replace `path` with the canonical encoding of `obj`.

    The bytes go to a uniquely named temporary file in the same directory,
    which is fsynced and then renamed over `path`, so readers see either the
    old document or the new one. A trailing newline is appended on disk.

    Returns:
        SHA-256 of the canonical bytes, excluding the newline
    """
    path = pathlib.Path(path)
    canonical = canonical_json_bytes(obj)
    tmp = tempfile.NamedTemporaryFile(
        dir=path.parent, prefix=f".{path.name}.", suffix=".tmp", delete=False
    )
    try:
        with tmp:
            tmp.write(canonical + b"\n")
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp.name, path)
    except Exception:
        os.unlink(tmp.name)
        raise
    return sha256_bytes(canonical)
