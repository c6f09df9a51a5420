"""
File-based mutual exclusion for infrastructure cycles.

This is a local primitive, not distributed consensus: instances on
different hosts only exclude each other when the lock file lives on storage
they all share.
"""

from __future__ import annotations

import json
import os
import time
from datetime import timedelta
from pathlib import Path

import structlog

from tablekeeper.core.errors import LockError
from tablekeeper.models import LockRecord, utc_now

logger = structlog.get_logger()


class LockManager:
    """Acquire and release the infrastructure lock file."""

    def __init__(self, lock_file_path: str | Path, lock_timeout: float, environment: str) -> None:
        self.lock_file_path = Path(lock_file_path)
        self.lock_timeout = lock_timeout
        self.environment = environment

    def acquire_lock(self, owner_id: str) -> LockRecord:
        """Take the lock for ``owner_id`` or raise LockError if someone else holds it.

        Re-acquiring a live lock the caller already owns extends its expiry.
        """
        self.lock_file_path.parent.mkdir(parents=True, exist_ok=True)

        existing = self._read_lock_file()
        if existing is not None and not existing.is_expired():
            if existing.owner == owner_id and existing.environment == self.environment:
                return self._extend_lock(existing)
            raise LockError(
                f"lock held by {existing.owner} until {existing.expires_at.isoformat()}",
                details={"owner": existing.owner, "lock_id": existing.id},
            )

        now = utc_now()
        record = LockRecord(
            id=f"infra-lock-{time.time_ns()}",
            owner=owner_id,
            acquired_at=now,
            expires_at=now + timedelta(seconds=self.lock_timeout),
            environment=self.environment,
        )
        if existing is None:
            self._remove_unreadable_lock()
            self._create_exclusive(record)
        else:
            logger.info("expired_lock_taken_over", previous_owner=existing.owner)
            self._write_lock_file(record)
            holder = self._read_lock_file()
            if holder is None or holder.id != record.id:
                raise LockError(
                    f"lock taken over by {holder.owner if holder else 'unknown'}",
                    details={"owner": holder.owner if holder else None},
                )

        logger.info("lock_acquired", lock_id=record.id, owner=owner_id)
        return record

    def release_lock(self, record: LockRecord) -> None:
        """Remove the lock file if it still holds ``record``; otherwise do nothing."""
        try:
            current = self._read_lock_file(strict=True)
        except FileNotFoundError:
            return

        if current is None or current.id != record.id:
            logger.debug(
                "lock_release_skipped",
                lock_id=record.id,
                current_owner=current.owner if current else None,
            )
            return

        try:
            self.lock_file_path.unlink()
        except FileNotFoundError:
            return
        logger.info("lock_released", lock_id=record.id, owner=record.owner)

    def current_lock(self) -> LockRecord | None:
        record = self._read_lock_file()
        if record is None or record.is_expired():
            return None
        return record

    def cleanup_expired_locks(self) -> bool:
        """Delete the lock file if its record has expired. Returns True if removed."""
        record = self._read_lock_file()
        if record is None or not record.is_expired():
            return False
        try:
            self.lock_file_path.unlink()
        except FileNotFoundError:
            return False
        logger.info("expired_lock_removed", lock_id=record.id, owner=record.owner)
        return True

    def _extend_lock(self, existing: LockRecord) -> LockRecord:
        extended = LockRecord(
            id=existing.id,
            owner=existing.owner,
            acquired_at=existing.acquired_at,
            expires_at=utc_now() + timedelta(seconds=self.lock_timeout),
            environment=existing.environment,
        )
        self._write_lock_file(extended)
        logger.debug("lock_extended", lock_id=extended.id, expires_at=extended.expires_at.isoformat())
        return extended

    def _read_lock_file(self, strict: bool = False) -> LockRecord | None:
        try:
            data = json.loads(self.lock_file_path.read_text())
            return LockRecord.from_dict(data)
        except FileNotFoundError:
            if strict:
                raise
            return None
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.warning("lock_file_unreadable", path=str(self.lock_file_path), error=str(exc))
            return None

    def _remove_unreadable_lock(self) -> None:
        """Delete a lock file that exists but does not parse; a valid file is left alone."""
        try:
            LockRecord.from_dict(json.loads(self.lock_file_path.read_text()))
        except FileNotFoundError:
            return
        except (ValueError, KeyError, TypeError, AttributeError):
            logger.warning("unreadable_lock_removed", path=str(self.lock_file_path))
            self.lock_file_path.unlink(missing_ok=True)

    def _temp_path(self) -> Path:
        return self.lock_file_path.with_name(
            f"{self.lock_file_path.name}.tmp.{os.getpid()}.{time.time_ns()}"
        )

    def _write_temp(self, record: LockRecord) -> Path:
        temp_path = self._temp_path()
        temp_path.write_text(json.dumps(record.to_dict(), indent=2))
        return temp_path

    def _write_lock_file(self, record: LockRecord) -> None:
        temp_path = self._write_temp(record)
        try:
            os.replace(temp_path, self.lock_file_path)
        except OSError as exc:
            temp_path.unlink(missing_ok=True)
            raise LockError(f"failed to write lock file: {exc}") from exc

    def _create_exclusive(self, record: LockRecord) -> None:
        # link() refuses to overwrite, so only one first acquirer can win
        temp_path = self._write_temp(record)
        try:
            os.link(temp_path, self.lock_file_path)
        except FileExistsError as exc:
            holder = self._read_lock_file()
            raise LockError(
                f"lock held by {holder.owner if holder else 'unknown'}",
                details={"owner": holder.owner if holder else None},
            ) from exc
        except OSError:
            # filesystems without hard links fall back to O_EXCL
            self._create_with_excl(record)
        finally:
            temp_path.unlink(missing_ok=True)

    def _create_with_excl(self, record: LockRecord) -> None:
        try:
            fd = os.open(self.lock_file_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError as exc:
            raise LockError("lock held by another owner") from exc
        with os.fdopen(fd, "w") as f:
            f.write(json.dumps(record.to_dict(), indent=2))
