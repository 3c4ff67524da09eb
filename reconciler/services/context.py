from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.orm import Session

from ..auth import Actor
from ..config import Settings
from .outcome import ActionError, permission_denied


@dataclass
class ReceiptsContext:
    """Everything a receipt operation needs, built per request or job"""
    db: Session
    actor: Actor
    settings: Settings
    storage: Any = None
    classifier: Any = None  # OpenAIClassifier, or None when AI is disabled
    cache: Any = None  # SummaryCache
    background: Any = None  # callable(fn, *args) used to queue post-response work

    def require(self, permission: str) -> Optional[ActionError]:
        if self.actor.can(permission):
            return None
        return permission_denied()

    def invalidate_views(self):
        if self.cache is not None:
            self.cache.invalidate()
