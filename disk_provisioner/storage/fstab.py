"""Lock-guarded editor for the persistent mount table (/etc/fstab).

Every device lifecycle reads and rewrites the same file, so all mutations go
through one MountTable instance and its re-entrant lock. Rewrites go to a
temporary file in the same directory and are moved into place, so a crash
never leaves a half-written table behind.

Usage:
    from disk_provisioner.storage.fstab import MountTable

    table = MountTable("/etc/fstab")
    with table.locked():
        table.remove_lines_matching(lambda line: references_device(line, "vdb"))
        table.append_record(PersistentMountRecord.for_uuid(uuid, "/mnt/minio1", "xfs"))
"""

from __future__ import annotations

import contextlib
import os
import tempfile
import threading
from pathlib import Path
from typing import Callable, Generator

from disk_provisioner.domain.models import PersistentMountRecord, device_node_pattern
from disk_provisioner.logging import LoggerFactory
from disk_provisioner.storage.exceptions import MountTableError


log = LoggerFactory.for_fstab()


def references_device(line: str, device_name: str) -> bool:
    """True when the line's source field is the device or one of its partitions.

    Comments and UUID=/LABEL= keyed lines never match.
    """
    record = PersistentMountRecord.from_line(line)
    if record is None:
        return False
    return device_node_pattern(device_name).match(record.source) is not None


class MountTable:
    """Serializing access point for one fstab file."""

    def __init__(self, path: str | os.PathLike = "/etc/fstab"):
        self.path = Path(path)
        self._lock = threading.RLock()

    @contextlib.contextmanager
    def locked(self) -> Generator[MountTable, None, None]:
        """Hold exclusive access to the table for a read-modify-write cycle."""
        with self._lock:
            yield self

    def read_lines(self) -> list[str]:
        with self._lock:
            try:
                return self.path.read_text(encoding="utf-8").splitlines()
            except FileNotFoundError:
                return []
            except OSError as error:
                raise MountTableError(str(self.path), str(error)) from error

    def read_records(self) -> list[PersistentMountRecord]:
        records = []
        for line in self.read_lines():
            record = PersistentMountRecord.from_line(line)
            if record is not None:
                records.append(record)
        return records

    def records_for_uuid(self, filesystem_uuid: str) -> list[PersistentMountRecord]:
        return [r for r in self.read_records() if r.filesystem_uuid == filesystem_uuid]

    def records_for_mount_point(self, mount_point: str) -> list[PersistentMountRecord]:
        return [r for r in self.read_records() if r.mount_point == mount_point]

    def device_entries(self, device_name: str) -> list[str]:
        return [line for line in self.read_lines() if references_device(line, device_name)]

    def _write_lines(self, lines: list[str]) -> None:
        content = "\n".join(lines)
        if lines:
            content += "\n"
        directory = self.path.parent
        try:
            fd, tmp_name = tempfile.mkstemp(prefix=".fstab.", dir=directory)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(content)
                    handle.flush()
                    os.fsync(handle.fileno())
                if self.path.exists():
                    os.chmod(tmp_name, self.path.stat().st_mode & 0o7777)
                else:
                    os.chmod(tmp_name, 0o644)
                os.replace(tmp_name, self.path)
            except BaseException:
                with contextlib.suppress(FileNotFoundError):
                    os.unlink(tmp_name)
                raise
        except OSError as error:
            raise MountTableError(str(self.path), str(error)) from error

    def remove_lines_matching(self, predicate: Callable[[str], bool]) -> list[str]:
        """Drop every line the predicate accepts; returns the removed lines."""
        with self._lock:
            lines = self.read_lines()
            kept = [line for line in lines if not predicate(line)]
            removed = [line for line in lines if predicate(line)]
            if removed:
                self._write_lines(kept)
                for line in removed:
                    log.info(f"Removed fstab entry: {line.strip()}")
            return removed

    def append_record(self, record: PersistentMountRecord) -> None:
        """Append one record, replacing any older record for the same UUID."""
        with self._lock:
            lines = self.read_lines()
            record_uuid = record.filesystem_uuid
            if record_uuid:

                def _same_uuid(line: str) -> bool:
                    existing = PersistentMountRecord.from_line(line)
                    return existing is not None and existing.filesystem_uuid == record_uuid

                lines = [line for line in lines if not _same_uuid(line)]
            lines.append(record.to_line())
            self._write_lines(lines)
            log.info(f"Added fstab entry: {record.to_line()}")
