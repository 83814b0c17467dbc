"""JSON file persistence for the inventory collection.

The store is a single JSON document::

    {"schemaVersion": 1, "updatedAt": "...", "totalItems": N, "items": [...]}

Older files holding a bare list of items are still accepted on read
(reported as schema version 0).  Writes go to a temporary file in the same
directory and are renamed over the target, so readers only ever see a
complete document.  The previous document is copied into ``backups/``
first, keeping the newest ``MAX_BACKUPS`` snapshots.

Single writer per path is assumed.  :func:`store_lock` is available for
callers that cannot guarantee it.
"""

from __future__ import annotations

import contextlib
import glob
import json
import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, List, Optional, Sequence, Union

from .config import MAX_BACKUPS, SCHEMA_VERSION
from .schema import InventoryItem, normalize_collection, to_timestamp
from .utils import to_iso, utc_now

logger = logging.getLogger(__name__)

PathLike = Union[str, "os.PathLike[str]"]

BACKUP_DIRNAME = "backups"
# Backups are named <store stem>-YYYYMMDD-HHMMSS[-NN].json.
DEFAULT_BACKUP_STEM = "inventory"


class StoreWriteError(OSError):
    """The store file could not be written; the previous content is intact."""


class StoreLockedError(RuntimeError):
    """Another writer holds the advisory lock for this store."""


@dataclass
class StoreSnapshot:
    schema_version: int = 0
    updated_at: Optional[str] = None
    items: List[InventoryItem] = field(default_factory=list)


def read_inventory(path: PathLike) -> StoreSnapshot:
    """Load and normalise the collection at ``path``.

    Never raises for a missing or unreadable file: both come back as an
    empty snapshot.
    """
    try:
        with open(path, "r", encoding="utf-8") as fh:
            parsed = json.load(fh)
    except FileNotFoundError:
        return StoreSnapshot()
    except (OSError, ValueError) as e:
        logger.warning("Could not read inventory file %s (%s); treating as empty.", path, e)
        return StoreSnapshot()

    if isinstance(parsed, list):
        return StoreSnapshot(schema_version=0, items=normalize_collection(parsed))

    if isinstance(parsed, dict) and isinstance(parsed.get("items"), list):
        try:
            version = int(parsed.get("schemaVersion") or 0)
        except (TypeError, ValueError):
            version = 0
        return StoreSnapshot(
            schema_version=version,
            updated_at=to_timestamp(parsed.get("updatedAt")),
            items=normalize_collection(parsed["items"]),
        )

    logger.warning("Inventory file %s has an unexpected shape; treating as empty.", path)
    return StoreSnapshot()


def load_items(path: PathLike) -> List[InventoryItem]:
    return read_inventory(path).items


# ---- Backups -----------------------------------------------------------------

def backup_dir_for(path: PathLike) -> Path:
    return Path(path).resolve().parent / BACKUP_DIRNAME


def _backup_re(stem: str) -> "re.Pattern[str]":
    return re.compile(rf"^{re.escape(stem)}-(\d{{8}}-\d{{6}})(?:-(\d+))?\.json$")


def _backup_sort_key(p: Path, pattern: "re.Pattern[str]"):
    m = pattern.match(p.name)
    stamp, seq = (m.group(1), int(m.group(2) or 0)) if m else ("", 0)
    try:
        mtime = p.stat().st_mtime_ns
    except OSError:
        mtime = 0
    return (mtime, stamp, seq)


def list_backups(backups_dir: PathLike, stem: str = DEFAULT_BACKUP_STEM) -> List[Path]:
    """Backups of the store file named ``<stem>.json``, newest first.

    Stores sharing a directory share ``backups/``; each one only ever sees
    and prunes its own snapshots.
    """
    d = Path(backups_dir)
    if not d.is_dir():
        return []
    pattern = _backup_re(stem)
    found = [p for p in d.iterdir() if p.is_file() and pattern.match(p.name)]
    return sorted(found, key=lambda p: _backup_sort_key(p, pattern), reverse=True)


def prune_backups(
    backups_dir: PathLike, max_keep: int = MAX_BACKUPS, stem: str = DEFAULT_BACKUP_STEM
) -> int:
    """Delete all but the ``max_keep`` newest backups.  Returns how many went."""
    removed = 0
    for old in list_backups(backups_dir, stem)[max(0, max_keep):]:
        try:
            old.unlink()
            removed += 1
        except OSError as e:
            logger.warning("Failed to delete old backup %s: %s", old, e)
    return removed


def _next_backup_path(backups_dir: Path, stem: str) -> Path:
    stamp = utc_now().strftime("%Y%m%d-%H%M%S")
    pattern = _backup_re(stem)
    # Several writes can land in the same second; number them after the
    # highest one present so pruning never hands out an older sequence.
    taken = [
        int(m.group(2) or 0)
        for m in (pattern.match(p.name) for p in backups_dir.glob(f"{glob.escape(stem)}-{stamp}*.json"))
        if m and m.group(1) == stamp
    ]
    if not taken:
        return backups_dir / f"{stem}-{stamp}.json"
    return backups_dir / f"{stem}-{stamp}-{max(taken) + 1:02d}.json"


def make_backup(path: PathLike, max_keep: int = MAX_BACKUPS) -> Optional[Path]:
    """Snapshot the current file and prune old snapshots of that file.

    Failures are logged and swallowed; a missed backup never blocks a write.
    """
    src = Path(path)
    if not src.exists():
        return None
    stem = src.stem
    try:
        backups_dir = backup_dir_for(src)
        backups_dir.mkdir(parents=True, exist_ok=True)
        target = _next_backup_path(backups_dir, stem)
        shutil.copyfile(src, target)
    except OSError as e:
        logger.warning("Backup of %s failed (continuing anyway): %s", src, e)
        return None

    try:
        prune_backups(backups_dir, max_keep, stem)
    except OSError as e:
        logger.warning("Pruning backups in %s failed: %s", backups_dir, e)
    return target


# ---- Writes ------------------------------------------------------------------

def _atomic_write_text(path: Path, data: str) -> None:
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise


def write_inventory(
    path: PathLike,
    items: Sequence[Any],
    *,
    max_backups: int = MAX_BACKUPS,
) -> dict:
    """Back up, then atomically replace ``path`` with the normalised ``items``.

    Returns the payload that was written.  Raises :class:`TypeError` for a
    non-list ``items`` and :class:`StoreWriteError` when the new document
    cannot be committed.
    """
    normalized = normalize_collection(items)
    payload = {
        "schemaVersion": SCHEMA_VERSION,
        "updatedAt": to_iso(utc_now()),
        "totalItems": len(normalized),
        "items": [it.to_dict() for it in normalized],
    }
    data = json.dumps(payload, indent=2, ensure_ascii=False)

    target = Path(path)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise StoreWriteError(f"cannot create directory for {target}: {e}") from e

    make_backup(target, max_backups)

    try:
        _atomic_write_text(target, data)
    except OSError as e:
        raise StoreWriteError(f"failed to write {target}: {e}") from e

    logger.debug("Wrote %d items to %s", len(normalized), target)
    return payload


def save_items(path: PathLike, items: Sequence[Any]) -> dict:
    return write_inventory(path, items)


# ---- Advisory lock -----------------------------------------------------------

def _pid_alive(pid: int) -> bool:
    if os.name != "posix":
        # No cheap liveness probe; assume the holder is still running.
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _holder_pid(lock_path: Path) -> Optional[int]:
    try:
        return int(lock_path.read_text(encoding="ascii").strip())
    except (OSError, ValueError):
        return None


@contextlib.contextmanager
def store_lock(path: PathLike) -> Iterator[Path]:
    """Hold ``<path>.lock`` for the duration of the block.

    The lock file is created with exclusive-create semantics and records the
    holder's PID; a second holder gets :class:`StoreLockedError` instead of
    waiting.  A lock left behind by a process that no longer exists is
    removed and taken over.  A lock file without a readable PID is never
    treated as stale and has to be deleted by hand.
    """
    lock_path = Path(f"{path}.lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    flags = os.O_CREAT | os.O_EXCL | os.O_WRONLY
    try:
        fd = os.open(str(lock_path), flags)
    except FileExistsError as e:
        pid = _holder_pid(lock_path)
        if pid is None or _pid_alive(pid):
            raise StoreLockedError(f"{lock_path} is held by another writer (pid {pid})") from e
        logger.warning("Removing stale lock %s left by pid %d", lock_path, pid)
        with contextlib.suppress(FileNotFoundError):
            lock_path.unlink()
        try:
            fd = os.open(str(lock_path), flags)
        except FileExistsError as e2:
            raise StoreLockedError(f"{lock_path} is held by another writer") from e2
    try:
        os.write(fd, str(os.getpid()).encode("ascii"))
    finally:
        os.close(fd)
    try:
        yield lock_path
    finally:
        with contextlib.suppress(FileNotFoundError):
            lock_path.unlink()


__all__ = [
    "StoreSnapshot",
    "StoreWriteError",
    "StoreLockedError",
    "read_inventory",
    "write_inventory",
    "load_items",
    "save_items",
    "make_backup",
    "list_backups",
    "prune_backups",
    "backup_dir_for",
    "store_lock",
]
