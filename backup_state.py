"""
On-disk state shared between innobackup runs.

Every backup type owns a JSON state record (completion date, checkpoint and
storage key of the last good backup), an advisory lock file and a pair of log
files, all kept under a single state directory. The log helpers read the
innobackupex log from the end because it can grow to hundreds of megabytes.
"""
from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import IO, Dict, Iterable, Optional, Set, Tuple


logger = logging.getLogger(__name__)

TAIL_CHUNK_SIZE = 512
CHECKPOINT_WINDOW = 30
DIAGNOSTIC_WINDOW = 10

CHECKPOINT_PATTERN = re.compile(r"The latest check point \(for incremental\): '(\d+)'")
SUCCESS_PATTERN = re.compile(r"completed OK")

PROCESS_FAILURE_PATTERNS: Tuple[Tuple[str, str], ...] = (
    ("Option user requires an argument", "invalid sql user"),
    ("Access denied for user", "unable to connect to DB"),
    ("Can't change dir to", "insufficient file access"),
)

UPLOAD_FAILURE_PATTERNS: Tuple[Tuple[str, str], ...] = (
    ("The specified bucket does not exist", "bucket incorrect"),
    ("The AWS Access Key Id you", "invalid AWS key"),
    ("The request signature we calculated", "invalid Secret key"),
)


class BackupType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


@dataclass(frozen=True)
class StateRecord:
    date: datetime
    checkpoint: Optional[str]
    storage_key: Optional[str]
    size: Optional[int] = None

    def to_json(self) -> Dict[str, object]:
        return {
            "date": self.date.isoformat(),
            "checkpoint": self.checkpoint,
            "storageKey": self.storage_key,
            "size": self.size,
        }

    @classmethod
    def from_json(cls, data: object) -> "StateRecord":
        if not isinstance(data, dict):
            raise TypeError("state record must be a JSON object")
        date = datetime.fromisoformat(str(data["date"]))
        if date.tzinfo is None:
            date = date.astimezone()
        # "lsn" and "file" are the field names written by older releases.
        checkpoint = data.get("checkpoint", data.get("lsn"))
        storage_key = data.get("storageKey", data.get("file"))
        size = data.get("size")
        return cls(
            date=date,
            checkpoint=str(checkpoint) if checkpoint is not None else None,
            storage_key=storage_key,
            size=int(size) if size is not None else None,
        )


class StateStore:
    """
    State records and advisory locks for each backup type.

    Locks are taken with a non-blocking ``flock`` and the file handle is kept
    open for the lifetime of the store. There is no unlock call: the lock is
    dropped when the process exits, which also clears locks left behind by a
    crashed run.
    """

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir
        self._lock_handles: Dict[BackupType, IO[str]] = {}

    def state_file(self, backup_type: BackupType) -> Path:
        return self.state_dir / f"backup_{backup_type.value}_state"

    def lock_file(self, backup_type: BackupType) -> Path:
        return self.state_dir / f"backup_{backup_type.value}.lock"

    def process_log(self, backup_type: BackupType) -> Path:
        return self.state_dir / f"backup_{backup_type.value}_innobackup_log"

    def upload_log(self, backup_type: BackupType) -> Path:
        return self.state_dir / f"backup_{backup_type.value}_upload_log"

    def artifact_path(self, backup_type: BackupType, run_id: str) -> Path:
        return self.state_dir / f"backup_{backup_type.value}_{run_id}.xbstream"

    def read_state(self, backup_type: BackupType) -> Optional[StateRecord]:
        path = self.state_file(backup_type)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug("No %s backup state at %s", backup_type.value, path)
            return None
        except OSError as error:
            logger.warning(
                "Unable to read %s backup state %s: %s", backup_type.value, path, error
            )
            return None
        try:
            return StateRecord.from_json(json.loads(text))
        except (KeyError, TypeError, ValueError) as error:
            logger.warning(
                "Unable to read %s backup state %s: %s", backup_type.value, path, error
            )
            return None

    def write_state(self, backup_type: BackupType, record: StateRecord) -> None:
        path = self.state_file(backup_type)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=path.name + ".", suffix=".tmp", dir=str(path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(record.to_json(), handle)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug("Recorded %s backup state in %s", backup_type.value, path)

    def try_acquire_lock(self, backup_type: BackupType) -> bool:
        handle = self._lock_handles.get(backup_type)
        if handle is None:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            handle = self.lock_file(backup_type).open("a", encoding="utf-8")
            self._lock_handles[backup_type] = handle
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return False
        handle.truncate(0)
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        return True

    def is_lock_held(self, backup_type: BackupType) -> bool:
        """True when another process holds the lock for ``backup_type``.

        The probe takes the lock when it is free, so repeated probes from the
        same store keep answering False.
        """
        return not self.try_acquire_lock(backup_type)


def tail_file(path: Path, lines: int, *, chunk_size: int = TAIL_CHUNK_SIZE) -> str:
    """Return the end of ``path`` holding at least its last ``lines`` lines."""
    with path.open("rb") as handle:
        handle.seek(0, os.SEEK_END)
        offset = handle.tell()
        newlines = 0
        while offset > 0 and newlines <= lines:
            to_read = min(chunk_size, offset)
            handle.seek(offset - to_read)
            chunk = handle.read(to_read)
            for byte in reversed(chunk):
                if byte == 0x0A:
                    newlines += 1
                    if newlines > lines:
                        break
                offset -= 1
        handle.seek(offset)
        return handle.read().decode("utf-8", errors="replace")


def extract_checkpoint(path: Path) -> Optional[str]:
    try:
        tail = tail_file(path, CHECKPOINT_WINDOW)
    except FileNotFoundError:
        logger.warning("Backup log %s not found; no checkpoint available", path)
        return None
    match = CHECKPOINT_PATTERN.search(tail)
    return match.group(1) if match else None


def indicates_success(path: Path) -> bool:
    try:
        return SUCCESS_PATTERN.search(tail_file(path, 1)) is not None
    except FileNotFoundError:
        return False


def classify_failure(path: Path, patterns: Iterable[Tuple[str, str]]) -> Set[str]:
    try:
        tail = tail_file(path, DIAGNOSTIC_WINDOW)
    except FileNotFoundError:
        return set()
    return {tag for needle, tag in patterns if needle in tail}
