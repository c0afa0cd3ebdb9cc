from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal


@dataclass
class UserReputation:
    user_id: str
    total_predictions: int = 0
    accurate_predictions: int = 0
    reputation_score: Decimal = field(default_factory=lambda: Decimal("0"))
    updated_at: datetime | None = None

    @property
    def accuracy_pct(self) -> float:
        if self.total_predictions == 0:
            return 0.0
        return round(self.accurate_predictions / self.total_predictions * 100, 2)
