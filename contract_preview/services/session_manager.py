from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from contract_preview.services.pricing_engine import ChangeOrderLineItem, Milestone


@dataclass(frozen=True)
class PreviewSession:
    session_id: str
    project_id: str
    document_type: str
    created_at: str
    context: dict[str, Any] = field(default_factory=dict)
    milestones: tuple[Milestone, ...] = ()
    line_items: tuple[ChangeOrderLineItem, ...] = ()
    # Line item ids are never reused within a session, even after removals.
    next_line_item_number: int = 1
    saved_at: Optional[str] = None


class SessionManager:
    """Holds the current snapshot of each open preview.

    Every edit swaps in a new PreviewSession; nothing is mutated in place.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, PreviewSession] = {}
        self._lock = asyncio.Lock()

    async def create(
        self,
        project_id: str,
        document_type: str,
        context: dict[str, Any],
        milestones: tuple[Milestone, ...],
        line_items: tuple[ChangeOrderLineItem, ...],
    ) -> PreviewSession:
        async with self._lock:
            state = PreviewSession(
                session_id=str(uuid4()),
                project_id=project_id,
                document_type=document_type,
                created_at=datetime.utcnow().replace(microsecond=0).isoformat() + "Z",
                context=context,
                milestones=milestones,
                line_items=line_items,
                next_line_item_number=len(line_items) + 1,
            )
            self._sessions[state.session_id] = state
            return state

    async def get(self, session_id: str) -> Optional[PreviewSession]:
        async with self._lock:
            return self._sessions.get(session_id)

    async def update(self, session_id: str, **changes: Any) -> Optional[PreviewSession]:
        async with self._lock:
            state = self._sessions.get(session_id)
            if state is None:
                return None
            state = replace(state, **changes)
            self._sessions[session_id] = state
            return state

    async def close(self, session_id: str) -> bool:
        async with self._lock:
            return self._sessions.pop(session_id, None) is not None

    async def clear_all(self) -> None:
        async with self._lock:
            self._sessions.clear()


session_manager = SessionManager()
