"""Process-local recall store, used when no remote memory is configured."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from loguru import logger

from .pipeline_types import GradableItem, identity_key


class InMemoryRecallStore:
    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, Any]] = {}

    def __len__(self) -> int:
        return len(self._records)

    async def recall(self, title: str, issue: str) -> Optional[Dict[str, Any]]:
        record = self._records.get(identity_key(title, issue))
        return dict(record) if record else None

    async def store(self, item: GradableItem, decision: Dict[str, Any]) -> bool:
        key = item.identity_key()
        self._records[key] = {
            "grade": decision.get("grade"),
            "confidence": decision.get("confidence"),
            "defects": list(decision.get("defects") or []),
            "estimated_value": decision.get("estimated_value"),
            "gradedAt": datetime.now(timezone.utc).isoformat(),
            "decision": decision,
        }
        logger.info("Stored grade {} for {}", decision.get("grade"), key)
        return True
