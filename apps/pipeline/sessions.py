"""
sessions.py — the live per-user sessions.

The registry is the only shared mutable state in the relay.  Every method is
synchronous, so registry mutations never interleave on the event loop; the
two indices (by user id and by downstream handle) are updated together.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Hashable, Iterable, Optional

from apps.pipeline.detector import DedupKey, ResolvedReference
from apps.pipeline.upstream import UpstreamConnector

log = logging.getLogger("scripture_streamer.sessions")


@dataclass(eq=False)
class Session:
    user_id: str
    downstream: Hashable
    upstream: Optional[UpstreamConnector] = None
    upstream_session_id: Optional[str] = None
    stop_requested: bool = False
    references: dict[DedupKey, ResolvedReference] = field(default_factory=dict)
    final_turns: list[str] = field(default_factory=list)
    # Connector of the session this one replaced; must be closed before ours opens.
    predecessor: Optional[UpstreamConnector] = None
    started_at: float = field(default_factory=time.monotonic)

    def remember(self, refs: Iterable[ResolvedReference]) -> list[ResolvedReference]:
        """Add `refs` to the session set; return only the ones not seen before."""
        new: list[ResolvedReference] = []
        for ref in refs:
            if ref.key in self.references:
                continue
            self.references[ref.key] = ref
            new.append(ref)
        return new

    @property
    def final_transcript(self) -> str:
        return " ".join(t for t in self.final_turns if t)

    def request_stop(self) -> None:
        self.stop_requested = True
        if self.upstream is not None:
            self.upstream.request_stop()

    def to_status(self) -> dict:
        return {
            "userId": self.user_id,
            "upstreamState": self.upstream.state.value if self.upstream else "idle",
            "upstreamSessionId": self.upstream_session_id,
            "finalTurns": len(self.final_turns),
            "references": len(self.references),
            "uptimeSec": round(time.monotonic() - self.started_at, 1),
        }


class SessionRegistry:

    def __init__(self) -> None:
        self._by_user: dict[str, Session] = {}
        self._by_handle: dict[Hashable, Session] = {}

    def start(self, user_id: str, downstream: Hashable) -> Session:
        """Create the session for `user_id`, tearing down any session it replaces."""
        predecessor: Optional[UpstreamConnector] = None

        previous = self._by_user.get(user_id)
        if previous is not None:
            self._remove(previous)
            previous.request_stop()
            # A replaced session may still be waiting on its own predecessor.
            predecessor = previous.upstream or previous.predecessor
            log.info("event=session_replaced user=%s", user_id)

        bound = self._by_handle.get(downstream)
        if bound is not None:
            self._remove(bound)
            bound.request_stop()
            log.info("event=session_rebound old_user=%s new_user=%s", bound.user_id, user_id)

        session = Session(user_id=user_id, downstream=downstream, predecessor=predecessor)
        self._by_user[user_id] = session
        self._by_handle[downstream] = session
        log.info("event=session_started user=%s active=%d", user_id, len(self._by_user))
        return session

    def get(self, user_id: str) -> Optional[Session]:
        return self._by_user.get(user_id)

    def get_by_downstream(self, downstream: Hashable) -> Optional[Session]:
        return self._by_handle.get(downstream)

    def stop(self, user_id: str) -> Optional[Session]:
        session = self._by_user.get(user_id)
        if session is None:
            return None
        self._remove(session)
        session.request_stop()
        log.info("event=session_stopped user=%s active=%d", user_id, len(self._by_user))
        return session

    def remove_by_downstream_handle(self, downstream: Hashable) -> Optional[Session]:
        session = self._by_handle.get(downstream)
        if session is None:
            return None
        self._remove(session)
        session.request_stop()
        log.info(
            "event=session_removed user=%s reason=downstream_closed active=%d",
            session.user_id, len(self._by_user),
        )
        return session

    def sessions(self) -> list[Session]:
        return list(self._by_user.values())

    def __len__(self) -> int:
        return len(self._by_user)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._by_user

    def _remove(self, session: Session) -> None:
        if self._by_user.get(session.user_id) is session:
            del self._by_user[session.user_id]
        if self._by_handle.get(session.downstream) is session:
            del self._by_handle[session.downstream]
