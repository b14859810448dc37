import asyncio
from typing import Dict, List, Optional

from workstation.core import config
from workstation.core.log import global_log
from workstation.services.pty_process import spawn_pty
from workstation.services.session_registry import Session, SessionRegistry, new_session_id


class TerminalService:
    """Creates, tracks and tears down gemini CLI terminal sessions."""

    def __init__(self, registry: Optional[SessionRegistry] = None, spawner=spawn_pty, command: Optional[str] = None):
        self.registry = registry if registry is not None else SessionRegistry()
        self.spawner = spawner
        self.command = command or config.GEMINI_CMD

    def create_session(self, cwd: Optional[str] = None, env: Optional[Dict[str, str]] = None,
                       cols: Optional[int] = None, rows: Optional[int] = None,
                       args: Optional[List[str]] = None, owner: Optional[str] = None) -> Session:
        """Spawns the CLI in a PTY and registers it. Raises SpawnError."""
        session_env = {"TERM": config.PTY_TERM, "FORCE_COLOR": "1"}
        session_env.update(env or {})
        handle = self.spawner(self.command, args or [], cwd=cwd, env=session_env, cols=cols, rows=rows)

        session = Session(id=new_session_id(), handle=handle, cwd=handle.cwd, owner=owner)
        self.registry.put(session)
        # Sessions nobody is attached to still have to leave the registry when they end
        handle.on_exit(lambda code, sig: self.registry.remove(session.id))
        global_log(f"Session {session.id} created (pid={handle.pid}, cwd={session.cwd})")
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        return self.registry.get(session_id)

    def list_sessions(self) -> List[Dict]:
        return [s.to_dict() for s in self.registry.list()]

    def write_input(self, session_id: str, data: str) -> bool:
        session = self.registry.get(session_id)
        if not session:
            return False
        session.handle.write(data)
        return True

    def close_session(self, session_id: str) -> bool:
        session = self.registry.remove(session_id)
        if not session:
            return False
        session.handle.kill()
        global_log(f"Session {session_id} closed")
        return True

    async def shutdown(self, grace: Optional[float] = None) -> int:
        """Kills every session; anything still alive after the grace period gets SIGKILL."""
        grace = config.KILL_GRACE_SECONDS if grace is None else grace
        sessions = self.registry.list()
        if not sessions:
            return 0
        global_log(f"Shutting down {len(sessions)} terminal session(s)")
        self.registry.kill_all()
        finished = await asyncio.gather(*(s.handle.wait(grace) for s in sessions))
        for session, done in zip(sessions, finished):
            if not done:
                session.handle.kill(force=True)
        return len(sessions)
