"""Storage events."""

from dataclasses import dataclass, field
from typing import Any, Optional

from coconut_jobs.core.events import Event


EVENT_REGISTER_VOLUME_ADAPTERS = "registerVolumeAdapters"
EVENT_BEFORE_RESOLVE_VOLUME_STORAGE = "beforeResolveVolumeStorage"
EVENT_AFTER_RESOLVE_VOLUME_STORAGE = "afterResolveVolumeStorage"


@dataclass
class VolumeAdaptersEvent(Event):
    """Lets handlers add or replace adapters, keyed by volume type."""
    adapters: dict[str, Any] = field(default_factory=dict)


@dataclass
class VolumeStorageEvent(Event):
    """Lets handlers supply or modify the storage settings of a volume."""
    volume: Any = None
    storage: Optional[Any] = None
