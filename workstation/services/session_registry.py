import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from workstation.core.log import global_log


def new_session_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Session:
    id: str
    handle: object
    cwd: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    owner: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "sessionId": self.id,
            "cwd": self.cwd,
            "pid": self.handle.pid,
            "cols": self.handle.cols,
            "rows": self.handle.rows,
            "createdAt": self.created_at.isoformat(),
            "attached": self.owner is not None,
        }


class SessionRegistry:
    """In-memory map of live terminal sessions.

    Process exit and socket close both race to clean up the same entry, so
    removing an id that is already gone is a no-op.
    """

    def __init__(self):
        self._sessions: Dict[str, Session] = {}

    def put(self, session: Session):
        self._sessions[session.id] = session

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Optional[Session]:
        session = self._sessions.pop(session_id, None)
        if session:
            global_log(f"Session {session_id} removed ({len(self._sessions)} left)", level="DEBUG")
        return session

    def list(self) -> List[Session]:
        return list(self._sessions.values())

    def kill_all(self, force: bool = False) -> int:
        sessions = self.list()
        self._sessions.clear()
        for session in sessions:
            session.handle.kill(force=force)
        return len(sessions)

    def __contains__(self, session_id) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
