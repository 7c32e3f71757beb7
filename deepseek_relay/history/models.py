# deepseek_relay/history/models.py
from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, Field


class HistoryEntry(BaseModel):
    """
    One prior turn as stored by the host.

    ``role`` is the host's own vocabulary ("user", "plugin", "system", ...);
    only entries with ``status == "completed"`` are relayed to the model.
    """
    role: str
    content: str
    status: str = "completed"
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_completed(self) -> bool:
        return self.status == "completed"
