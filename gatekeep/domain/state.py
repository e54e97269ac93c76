from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal


FlowState = Literal[
    "initiated",
    "url_issued",
    "code_received",
    "token_exchanged",
    "user_info_fetched",
    "session_created",
    "failed",
]

_TRANSITIONS: dict[str, frozenset[str]] = {
    "initiated": frozenset({"url_issued", "code_received"}),
    "url_issued": frozenset({"code_received"}),
    "code_received": frozenset({"token_exchanged"}),
    "token_exchanged": frozenset({"user_info_fetched"}),
    "user_info_fetched": frozenset({"session_created"}),
    "session_created": frozenset(),
    "failed": frozenset(),
}

TERMINAL_STATES = frozenset({"session_created", "failed"})


@dataclass
class LoginFlow:
    # One OAuth login attempt; "initiated -> code_received" covers callbacks where the URL was issued elsewhere.
    provider_id: str
    state_token: str
    state: FlowState = "initiated"
    error: Exception | None = None
    history: list[tuple[str, datetime]] = field(default_factory=list)

    def advance(self, target: FlowState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise ValueError(f"Illegal login flow transition {self.state} -> {target}")
        self.state = target
        self.history.append((target, datetime.now(timezone.utc)))

    def fail(self, error: Exception) -> None:
        if self.state in TERMINAL_STATES:
            raise ValueError(f"Login flow already terminal in state {self.state}")
        self.state = "failed"
        self.error = error
        self.history.append(("failed", datetime.now(timezone.utc)))

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES
