from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional


@dataclass
class Counters:
    seen: int = 0
    emitted: int = 0
    skipped: int = 0
    failed: int = 0
    pages: int = 0
    cancelled: bool = False
    last_message_id: Optional[int] = None

    def as_log_fields(self) -> Dict[str, Any]:
        return asdict(self)
