"""
Local session persistence.

A `SessionStore` keeps exactly one record, the current `LocalSession`,
under the fixed key ``session``.  Saving overwrites it wholesale and
clearing removes it wholesale; clearing an empty store is a no-op, so
concurrent invalidation paths may both clear safely.
"""

import json
import logging
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from app.core.config import settings
from app.schemas import LocalSession

logger = logging.getLogger(__name__)

SESSION_KEY = "session"


class SessionStore(Protocol):
    def load(self) -> LocalSession | None: ...

    def save(self, session: LocalSession) -> None: ...

    def clear(self) -> None: ...


class MemorySessionStore:
    """In-process store, one per simulated client."""

    def __init__(self) -> None:
        self._records: dict[str, str] = {}

    def load(self) -> LocalSession | None:
        raw = self._records.get(SESSION_KEY)
        if raw is None:
            return None
        return LocalSession.model_validate_json(raw)

    def save(self, session: LocalSession) -> None:
        self._records[SESSION_KEY] = session.model_dump_json()

    def clear(self) -> None:
        self._records.pop(SESSION_KEY, None)


class FileSessionStore:
    """JSON file store, ``{"session": {...}}``; defaults to ``settings.SESSION_FILE``."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = Path(path or settings.SESSION_FILE)

    def load(self) -> LocalSession | None:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            logger.exception("Error reading session file %s", self.path)
            return None

        record = data.get(SESSION_KEY) if isinstance(data, dict) else None
        if record is None:
            return None
        try:
            return LocalSession.model_validate(record)
        except ValidationError:
            logger.warning("Discarding malformed session record in %s", self.path)
            return None

    def save(self, session: LocalSession) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {SESSION_KEY: session.model_dump(mode="json")}
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload), encoding="utf-8")
        tmp.replace(self.path)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
