"""
Profile and match store adapters.

The profile store and the match/relationship store are owned by the
profile-management side of the platform. This module defines the
interfaces the matching core consumes and in-process implementations used
for local runs (seeded from a JSON file) and tests.
"""
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from venturematch.schemas.profile import MatchStatus, parse_profile

logger = logging.getLogger(__name__)

ProfilePredicate = Callable[[object], bool]


class ProfileStore(Protocol):
    def get_profile(self, profile_id: str):
        """Return the profile or None if it does not exist."""

    def query_profiles(self, predicate: ProfilePredicate) -> List:
        """Return every profile for which ``predicate`` is true."""


class MatchStore(Protocol):
    def get_match_status(self, user_id: str, candidate_id: str) -> MatchStatus:
        """Status of the directed pair user -> candidate."""

    def record_match(self, user_id: str, candidate_id: str, status: MatchStatus,
                     compatibility: Optional[float] = None, super_like: bool = False) -> dict:
        """Create or update the directed pair user -> candidate."""


class InMemoryProfileStore:
    """Dict-backed profile store."""

    def __init__(self, profiles: Optional[Iterable] = None):
        self._profiles: Dict[str, object] = {}
        self._lock = threading.RLock()
        for profile in profiles or []:
            self.upsert(profile)

    def upsert(self, profile) -> object:
        profile = parse_profile(profile)
        with self._lock:
            self._profiles[profile.id] = profile
        return profile

    def delete(self, profile_id: str) -> bool:
        with self._lock:
            return self._profiles.pop(profile_id, None) is not None

    def get_profile(self, profile_id: str):
        with self._lock:
            return self._profiles.get(profile_id)

    def query_profiles(self, predicate: ProfilePredicate) -> List:
        with self._lock:
            snapshot = list(self._profiles.values())
        return [p for p in snapshot if predicate(p)]

    def __len__(self) -> int:
        return len(self._profiles)

    @classmethod
    def load_json(cls, path: str) -> 'InMemoryProfileStore':
        """Seed a store from a JSON file holding a list of profile records."""
        with open(path, "r", encoding="utf-8") as fh:
            records = json.load(fh)
        store = cls(records)
        logger.info(f"Loaded {len(store)} profiles from {path}")
        return store


class InMemoryMatchStore:
    """Directed match records keyed by (user_id, candidate_id)."""

    def __init__(self):
        self._matches: Dict[Tuple[str, str], dict] = {}
        self._lock = threading.Lock()

    def get_match_status(self, user_id: str, candidate_id: str) -> MatchStatus:
        with self._lock:
            record = self._matches.get((user_id, candidate_id))
        return record["status"] if record else MatchStatus.NONE

    def record_match(self, user_id: str, candidate_id: str, status: MatchStatus,
                     compatibility: Optional[float] = None, super_like: bool = False) -> dict:
        with self._lock:
            record = self._matches.get((user_id, candidate_id), {})
            record.update({
                "user_id": user_id,
                "candidate_id": candidate_id,
                "status": MatchStatus(status),
                "updated_at": datetime.now(timezone.utc).isoformat(),
            })
            if compatibility is not None:
                record["compatibility"] = compatibility
            if super_like:
                record["super_like"] = True
            self._matches[(user_id, candidate_id)] = record
            return dict(record)
