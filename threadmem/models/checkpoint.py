"""
Checkpoint data models.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from ..utils.timestamp_utils import utc_now


@dataclass
class Checkpoint:
    """Persisted workflow execution state for a thread."""
    thread_id: str
    checkpoint_id: str
    state: Dict[str, Any]
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    parent_id: Optional[str] = None


@dataclass
class CheckpointSaverRegistration:
    """Registry entry for a named checkpoint saver."""
    name: str
    saver: Any
    saver_type: str
    is_default: bool = False
    registered_at: datetime = field(default_factory=utc_now)
