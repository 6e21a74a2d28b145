"""
Weight profiles: how component scores are combined into one overall score.

A profile is a named, versioned mapping component -> weight (normalized to
sum 1.0), optionally carrying its own match thresholds. One profile named
"global" always exists; category profiles are named after the entity type
they apply to ("pet", "electronics", ...).

The scorer never looks profiles up itself. WeightProfileProvider resolves
the profile for a query and hands it over explicitly, caching the active
versions for WEIGHT_CACHE_TTL seconds.
"""

import time
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Mapping, Optional

from .config import WEIGHT_CACHE_TTL
from .errors import ValidationError, WeightProfileNotFound

logger = logging.getLogger(__name__)

COMPONENTS = ("hash", "color", "ocr", "neural", "face", "entity", "category")

GLOBAL_PROFILE = "global"


def normalize_weights(weights: Mapping[str, float]) -> Dict[str, float]:
    """
    Validate a weight mapping and rescale it to sum 1.0.

    Raises:
        ValidationError: Unknown component, negative weight, or all zero.
    """
    unknown = set(weights) - set(COMPONENTS)
    if unknown:
        raise ValidationError(
            f"Unknown weight components: {', '.join(sorted(unknown))}", COMPONENTS)
    if any(float(w) < 0 for w in weights.values()):
        raise ValidationError("Weights must be non-negative")
    total = sum(float(w) for w in weights.values())
    if total <= 0:
        raise ValidationError("At least one weight must be positive")
    return {c: float(weights.get(c, 0.0)) / total for c in COMPONENTS}


@dataclass(frozen=True)
class WeightProfile:
    """One version of a named weight configuration."""

    name: str
    weights: Mapping[str, float]
    version: int = 0
    thresholds: Optional[Mapping[str, float]] = None
    id: Optional[str] = None
    is_active: bool = True
    parent_id: Optional[str] = None
    metrics: Mapping[str, float] = field(default_factory=dict)
    trained_at: Optional[datetime] = None

    @classmethod
    def create(cls, name: str, weights: Mapping[str, float], **kwargs) -> "WeightProfile":
        return cls(name=name, weights=normalize_weights(weights), **kwargs)

    def config_data(self) -> Dict:
        data = {"weights": dict(self.weights)}
        if self.thresholds:
            data["thresholds"] = dict(self.thresholds)
        return data

    def snapshot(self) -> Dict:
        """What a feedback record keeps about the profile that scored a match."""
        return {
            "profile_id": self.id,
            "name": self.name,
            "version": self.version,
            "weights": dict(self.weights),
        }


DEFAULT_PROFILES = {
    GLOBAL_PROFILE: WeightProfile.create(GLOBAL_PROFILE, {
        "hash": 0.20, "color": 0.10, "ocr": 0.15, "neural": 0.35,
        "face": 0.10, "entity": 0.05, "category": 0.05,
    }),
    "person": WeightProfile.create("person", {
        "hash": 0.10, "color": 0.10, "ocr": 0.05, "neural": 0.20,
        "face": 0.45, "entity": 0.05, "category": 0.05,
    }),
    "pet": WeightProfile.create("pet", {
        "hash": 0.15, "color": 0.25, "ocr": 0.05,
        "neural": 0.45, "entity": 0.05, "category": 0.05,
    }),
    "electronics": WeightProfile.create("electronics", {
        "hash": 0.20, "color": 0.10, "ocr": 0.30,
        "neural": 0.30, "entity": 0.05, "category": 0.05,
    }),
    "jewelry": WeightProfile.create("jewelry", {
        "hash": 0.20, "color": 0.20, "ocr": 0.10,
        "neural": 0.40, "entity": 0.05, "category": 0.05,
    }),
    "document": WeightProfile.create("document", {
        "hash": 0.15, "color": 0.05, "ocr": 0.55,
        "neural": 0.15, "entity": 0.05, "category": 0.05,
    }),
    "vehicle": WeightProfile.create("vehicle", {
        "hash": 0.15, "color": 0.20, "ocr": 0.30,
        "neural": 0.25, "entity": 0.05, "category": 0.05,
    }),
}

_MISSING = object()


class WeightProfileProvider:
    """
    Cached access to the active profile per name.

    Args:
        loader: Callable returning the active WeightProfile for a name, or
            None. Typically ``WeightProfileRepository.get_active``. Without
            a loader only the built-in defaults are served.
        ttl: Seconds an entry stays cached.
        defaults: Fallback profiles for names the loader does not know.
    """

    def __init__(self,
                 loader: Optional[Callable[[str], Optional[WeightProfile]]] = None,
                 ttl: float = WEIGHT_CACHE_TTL,
                 defaults: Optional[Mapping[str, WeightProfile]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.loader = loader
        self.ttl = ttl
        self.defaults = dict(DEFAULT_PROFILES if defaults is None else defaults)
        self._clock = clock
        self._cache: Dict[str, tuple] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> Optional[WeightProfile]:
        """Active profile for a name, or None if neither store nor defaults have one."""
        now = self._clock()
        with self._lock:
            cached = self._cache.get(name)
            if cached is not None and now - cached[1] < self.ttl:
                return None if cached[0] is _MISSING else cached[0]

        profile = self.loader(name) if self.loader is not None else None
        if profile is None:
            profile = self.defaults.get(name)
        else:
            logger.debug(f"Loaded weight profile {name} v{profile.version} from store")

        with self._lock:
            self._cache[name] = (_MISSING if profile is None else profile, now)
        return profile

    def resolve(self, entity_type: Optional[str]) -> WeightProfile:
        """Category profile for the entity type if one is active, else global."""
        if entity_type and entity_type != GLOBAL_PROFILE:
            profile = self.get(entity_type)
            if profile is not None:
                return profile
        profile = self.get(GLOBAL_PROFILE)
        if profile is None:
            raise LookupError("No global weight profile available")
        return profile

    def require(self, name: str) -> WeightProfile:
        """
        Active profile under exactly this name, with no global fallback.

        Raises:
            WeightProfileNotFound: Neither the store nor the defaults have it.
        """
        profile = self.get(name)
        if profile is None:
            raise WeightProfileNotFound(f"No weight profile named '{name}'")
        return profile

    def invalidate(self, name: Optional[str] = None) -> None:
        with self._lock:
            if name is None:
                self._cache.clear()
            else:
                self._cache.pop(name, None)
