"""Session checkpoint storage.

Sessions live in memory only; a checkpoint is written on explicit request.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import re
import shutil
import tempfile
from pathlib import Path

from workspace_rag.core.errors import CheckpointError, SessionNotFoundError

from .models import Session

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


class SessionStorage:
    """Writes session checkpoints as JSON files.

    Writes are atomic (temp file, then rename) and keep a backup of the
    previous checkpoint, used when the current file is corrupted.

    Attributes:
        storage_dir: Directory holding checkpoint files.
    """

    SESSION_EXTENSION = ".json"
    BACKUP_EXTENSION = ".backup"

    def __init__(self, storage_dir: Path) -> None:
        self.storage_dir = storage_dir

    def get_path(self, session_id: str) -> Path:
        if not _SAFE_ID.match(session_id) or session_id.startswith("."):
            raise CheckpointError(f"Invalid session id for checkpoint: {session_id!r}")
        return self.storage_dir / f"{session_id}{self.SESSION_EXTENSION}"

    def get_backup_path(self, session_id: str) -> Path:
        return self.get_path(session_id).with_suffix(self.BACKUP_EXTENSION)

    def exists(self, session_id: str) -> bool:
        return self.get_path(session_id).exists()

    def save(self, session: Session) -> Path:
        """Checkpoint a session.

        Raises:
            CheckpointError: If the file cannot be written.
        """
        session_path = self.get_path(session.id)
        backup_path = self.get_backup_path(session.id)
        json_data = session.to_json()

        try:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
            if session_path.exists():
                try:
                    shutil.copy2(session_path, backup_path)
                except OSError as e:
                    logger.warning(f"Failed to create checkpoint backup: {e}")

            fd, temp_path = tempfile.mkstemp(suffix=self.SESSION_EXTENSION, dir=self.storage_dir)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(json_data)
                Path(temp_path).replace(session_path)
            except BaseException:
                with contextlib.suppress(OSError):
                    Path(temp_path).unlink()
                raise
        except OSError as e:
            raise CheckpointError(f"Failed to checkpoint session {session.id}: {e}") from e

        logger.debug(f"Checkpointed session {session.id} to {session_path}")
        return session_path

    def load(self, session_id: str, auto_recover: bool = True) -> Session:
        """Load a checkpoint, falling back to its backup if it is corrupted.

        Raises:
            SessionNotFoundError: If no checkpoint exists.
            CheckpointError: If the checkpoint and its backup are unreadable.
        """
        session_path = self.get_path(session_id)
        if not session_path.exists():
            raise SessionNotFoundError(f"No checkpoint for session {session_id}")

        try:
            return Session.from_json(session_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            backup_path = self.get_backup_path(session_id)
            if auto_recover and backup_path.exists():
                logger.warning(f"Checkpoint {session_id} is corrupted, recovering from backup")
                try:
                    return Session.from_json(backup_path.read_text(encoding="utf-8"))
                except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError):
                    pass
            raise CheckpointError(f"Checkpoint for session {session_id} is corrupted") from e
        except OSError as e:
            raise CheckpointError(f"Failed to read checkpoint {session_id}: {e}") from e

    def delete(self, session_id: str) -> bool:
        deleted = False
        for path in (self.get_path(session_id), self.get_backup_path(session_id)):
            if path.exists():
                with contextlib.suppress(OSError):
                    path.unlink()
                    deleted = True
        return deleted

    def list_session_ids(self) -> list[str]:
        if not self.storage_dir.exists():
            return []
        return sorted(p.stem for p in self.storage_dir.glob(f"*{self.SESSION_EXTENSION}"))
