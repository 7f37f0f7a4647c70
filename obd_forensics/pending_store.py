"""JSON file storage for an interrupted fuel-audit session.

Only one session can be pending at a time, so the store is a single
file.  Writes go to a temporary sibling first and are then renamed, so
a crash mid-write never leaves a truncated file behind.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Union

import structlog
from pydantic import ValidationError

from obd_forensics.schemas import PendingSession

logger = structlog.get_logger(__name__)


class PendingSessionStore:
    def __init__(self, path: Union[str, Path]) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def save(self, pending: PendingSession) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(pending.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp, self._path)
        logger.info(
            "pending_session_saved",
            path=str(self._path),
            session_id=pending.session_id,
            samples=len(pending.samples),
        )

    def load(self) -> Optional[PendingSession]:
        """Return the stored session, or ``None`` when absent or unreadable."""
        if not self._path.exists():
            return None
        try:
            return PendingSession.model_validate_json(self._path.read_text(encoding="utf-8"))
        except (ValidationError, ValueError):
            logger.exception("pending_session_unreadable", path=str(self._path))
            return None

    def clear(self) -> None:
        if self._path.exists():
            self._path.unlink()
            logger.info("pending_session_cleared", path=str(self._path))
