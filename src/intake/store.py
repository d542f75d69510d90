"""
Per-call keyed registries.

One `CallStore` is built per engine and injected everywhere; nothing in the
package keeps module-level call state. All access happens on the event loop,
so plain dicts are enough.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Optional, Set

if TYPE_CHECKING:
    from src.intake.dashboard import DashboardContext
    from src.intake.flow import FlowState
    from src.intake.session import CallSession


@dataclass
class CallStore:
    """Session, flow, reply-timer and context registries keyed by call id."""

    sessions: Dict[str, "CallSession"] = field(default_factory=dict)
    flows: Dict[str, "FlowState"] = field(default_factory=dict)
    reply_timers: Dict[str, asyncio.Task] = field(default_factory=dict)
    contexts: Dict[str, "DashboardContext"] = field(default_factory=dict)
    # Calls that reached call.answered; used to decide whether a second media
    # connection may reuse an existing session.
    answered: Set[str] = field(default_factory=set)

    def get_session(self, call_id: str) -> Optional["CallSession"]:
        return self.sessions.get(call_id)

    def get_flow(self, call_id: str) -> Optional["FlowState"]:
        return self.flows.get(call_id)

    def get_context(self, call_id: str) -> Optional["DashboardContext"]:
        """Context stored on the live session, else the side cache."""
        session = self.sessions.get(call_id)
        if session is not None and session.context is not None:
            return session.context
        return self.contexts.get(call_id)

    def is_known(self, call_id: str) -> bool:
        return call_id in self.answered or call_id in self.flows or call_id in self.contexts

    def tracks(self, call_id: str) -> bool:
        """True if any registry still holds state for `call_id`."""
        return (
            call_id in self.sessions
            or call_id in self.flows
            or call_id in self.reply_timers
            or call_id in self.contexts
            or call_id in self.answered
        )

    def call_ids(self) -> Set[str]:
        return set(self.sessions) | set(self.flows) | set(self.reply_timers) | set(self.contexts) | self.answered

    def counts(self) -> Dict[str, int]:
        return {
            "sessions": len(self.sessions),
            "flows": len(self.flows),
            "reply_timers": len(self.reply_timers),
            "contexts": len(self.contexts),
        }
