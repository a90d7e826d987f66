"""Durable local storage of the logged-in session.

The session file is the only on-disk representation of being logged in. It
lives in the per-user configuration directory and is kept readable by the
owner only.
"""

import logging
import os
import tempfile
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ValidationError

from social.skyscraper.atproto.errors import SessionCorrupt, SessionIOError

logger = logging.getLogger(__name__)

SESSION_FILE_NAME = "session.json"
DIRECTORY_MODE = 0o700
FILE_MODE = 0o600


class SessionKind(str, Enum):
    """How a stored session was obtained, which decides whether it can be renewed."""

    app_password = "app_password"
    oauth = "oauth"


class SessionRecord(BaseModel):
    """Credentials for the single locally stored account."""

    did: str
    handle: str
    access_jwt: str
    refresh_jwt: str
    pds_endpoint: Optional[str] = None
    kind: SessionKind = SessionKind.app_password


class SessionStore:
    """Reads and writes the session file in a configuration directory.

    There is no cross-process locking: the last writer wins.
    """

    def __init__(self, config_dir: Path) -> None:
        self._config_dir = Path(config_dir)

    @property
    def path(self) -> Path:
        return self._config_dir / SESSION_FILE_NAME

    def save(self, record: SessionRecord) -> None:
        """Write the record, enforcing owner-only permissions on every write.

        Raises:
            SessionIOError: If the directory or file cannot be written.
        """
        try:
            self._config_dir.mkdir(mode=DIRECTORY_MODE, parents=True, exist_ok=True)
            os.chmod(self._config_dir, DIRECTORY_MODE)

            fd, tmp_name = tempfile.mkstemp(
                dir=self._config_dir, prefix=".session-", suffix=".tmp"
            )
            try:
                os.fchmod(fd, FILE_MODE)
                with os.fdopen(fd, "w", encoding="utf-8") as fl:
                    fl.write(record.model_dump_json(indent=2))
                os.replace(tmp_name, self.path)
            except BaseException:
                _unlink_if_exists(tmp_name)
                raise

            os.chmod(self.path, FILE_MODE)
        except OSError as e:
            raise SessionIOError(f"Unable to save session to {self.path}: {e}") from e

        logger.debug("Saved session for %s", record.handle)

    def load(self) -> Optional[SessionRecord]:
        """Read the stored record.

        Returns:
            The stored record, or None when no session file exists.

        Raises:
            SessionCorrupt: If the file exists but cannot be parsed.
        """
        try:
            data = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            raise SessionCorrupt(f"Unable to read session {self.path}: {e}") from e

        try:
            return SessionRecord.model_validate_json(data)
        except ValidationError as e:
            raise SessionCorrupt(f"Invalid session file {self.path}") from e

    def clear(self) -> None:
        """Remove the stored record. Removing a missing record is not an error.

        Raises:
            SessionIOError: If the file exists but cannot be removed.
        """
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            raise SessionIOError(f"Unable to remove session {self.path}: {e}") from e

    def last_handle(self) -> Optional[str]:
        """Handle of the stored session, for pre-filling a login prompt."""
        try:
            record = self.load()
        except SessionCorrupt:
            return None
        return record.handle if record is not None else None


def _unlink_if_exists(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
