"""
Search index over marketplace profiles.

Each profile is tokenized through a static per-role field table into
(token, weight) pairs. Postings map a token to the ids of the profiles that
produced it, and every entry keeps a JSON snapshot of its profile.

Query semantics are strict AND: a profile is a candidate only if its entry
holds every query token. Filters, sort and pagination are applied to the
snapshots afterwards. Without an explicit sort, results are ordered by
relevance, the summed weight of the matched query tokens.

The index is an accelerator. When the backend is unreachable, search
answers from a direct profile-store scan with the same semantics and does
not cache that result. Indexing a profile does not invalidate cached search
pages; they expire with SEARCH_CACHE_TTL.
"""
import os
import re
import json
import time
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

import redis
from redis.exceptions import RedisError

from venturematch.adapters.memory_store import ProfileStore
from venturematch.middleware.error_handling import ErrorCode, IndexUnavailableError, InvalidProfileError, NotFoundException
from venturematch.schemas.profile import Role, dump_profile, ensure_identity, profile_role
from venturematch.schemas.search import ReindexReport, SearchOptions, SearchPage, SortSpec, Suggestion
from venturematch.utils.cache import make_cache_key
from venturematch.utils.deadline import Deadline
from venturematch.utils.logging_config import log_performance

logger = logging.getLogger(__name__)

TEXT = "text"
ARRAY = "array"
NUMBER = "number"
RANGE = "range"

_PUNCTUATION = re.compile(r"[^\w\s]")
_FIELD_TOKEN = re.compile(r"^[a-z_][a-z0-9_.]*:-?\d+(\.\d+)?$")


def normalize_text(text: Any) -> str:
    """Lowercase and strip punctuation."""
    return _PUNCTUATION.sub("", str(text).lower()).strip()


def _format_number(value: Any) -> str:
    number = float(value)
    return str(int(number)) if number.is_integer() else repr(number)


@dataclass(frozen=True)
class SearchableField:
    path: str
    weight: float
    type: str

    def tokens(self, value: Any) -> List[str]:
        if self.type == TEXT:
            return normalize_text(value).split()
        if self.type == ARRAY:
            if not isinstance(value, list):
                return []
            return [word for item in value for word in normalize_text(item).split()]
        if self.type in (NUMBER, RANGE):
            try:
                return [f"{self.path}:{_format_number(value)}"]
            except (TypeError, ValueError):
                return []
        return []


SEARCHABLE_FIELDS: Dict[Role, List[SearchableField]] = {
    Role.ENTREPRENEUR: [
        SearchableField("project_name", 2.0, TEXT),
        SearchableField("industries", 1.5, ARRAY),
        SearchableField("business_type", 1.0, TEXT),
        SearchableField("years_experience", 0.8, NUMBER),
        SearchableField("desired_investment_amount", 1.2, RANGE),
        SearchableField("features", 1.0, ARRAY),
        SearchableField("verification_level", 0.5, TEXT),
    ],
    Role.FUNDER: [
        SearchableField("name", 2.0, TEXT),
        SearchableField("areas_of_interest", 1.5, ARRAY),
        SearchableField("available_funds", 1.2, RANGE),
        SearchableField("years_experience", 0.8, NUMBER),
        SearchableField("certifications", 1.0, ARRAY),
        SearchableField("verification_level", 0.5, TEXT),
    ],
}


def tokenize_query(query: Optional[str]) -> List[str]:
    """
    Split a query into index tokens, deduplicated in order.

    Words are normalized like indexed text; ``field:value`` terms such as
    ``years_experience:5`` keep their field and have the number formatted
    the way numeric postings are indexed.
    """
    tokens = []
    for raw in (query or "").lower().split():
        if _FIELD_TOKEN.match(raw):
            path, _, number = raw.partition(":")
            tokens.append(f"{path}:{_format_number(number)}")
        else:
            tokens.extend(normalize_text(raw).split())
    return list(dict.fromkeys(tokens))


def get_path(data: Any, path: str) -> Any:
    """Resolve a dotted path inside nested dicts; None when any step is missing."""
    current = data
    for key in path.split("."):
        if not isinstance(current, dict) or key not in current:
            return None
        current = current[key]
    return current


@dataclass
class IndexEntry:
    profile_id: str
    role: Role
    tokens: Dict[str, float]
    snapshot: Dict[str, Any] = field(default_factory=dict)

    def relevance(self, query_tokens: Iterable[str]) -> float:
        return sum(self.tokens.get(token, 0.0) for token in query_tokens)


def build_entry(profile) -> IndexEntry:
    """Tokenize a profile. A token keeps the highest weight of the fields that produced it."""
    role = ensure_identity(profile)
    snapshot = dump_profile(profile)
    tokens: Dict[str, float] = {}
    for searchable in SEARCHABLE_FIELDS[role]:
        value = get_path(snapshot, searchable.path)
        if value is None:
            continue
        for token in searchable.tokens(value):
            tokens[token] = max(tokens.get(token, 0.0), searchable.weight)
    return IndexEntry(profile_id=profile.id, role=role, tokens=tokens, snapshot=snapshot)


# ---------------------------------------------------------------------------
# Filtering and ordering
# ---------------------------------------------------------------------------

def _normalize_value(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().casefold()
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def matches_condition(value: Any, condition: Any) -> bool:
    if isinstance(condition, list):
        wanted = [_normalize_value(c) for c in condition]
        if isinstance(value, list):
            return any(_normalize_value(v) in wanted for v in value)
        return value is not None and _normalize_value(value) in wanted

    if isinstance(condition, dict):
        if not _is_number(value):
            return False
        low, high = condition.get("min"), condition.get("max")
        if low is not None and value < low:
            return False
        if high is not None and value > high:
            return False
        return True

    if isinstance(value, list):
        return _normalize_value(condition) in [_normalize_value(v) for v in value]
    return value is not None and _normalize_value(value) == _normalize_value(condition)


def matches_filters(snapshot: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    return all(matches_condition(get_path(snapshot, path), cond) for path, cond in filters.items())


def _sort_value(value: Any):
    # Numbers before strings so mixed columns never compare across types.
    if _is_number(value) or isinstance(value, bool):
        return (0, float(value), "")
    if isinstance(value, str):
        return (1, 0.0, value.casefold())
    return (2, 0.0, json.dumps(value, sort_keys=True))


def order_entries(entries: List[IndexEntry], query_tokens: List[str], sort: Optional[SortSpec]) -> List[IndexEntry]:
    """
    Explicit sort: by the field, missing values last, ties by id ascending.
    Otherwise: relevance descending, ties by id ascending.
    """
    by_id = sorted(entries, key=lambda e: e.profile_id)
    if sort is None:
        return sorted(by_id, key=lambda e: -e.relevance(query_tokens))

    present, missing = [], []
    for entry in by_id:
        (missing if get_path(entry.snapshot, sort.field) is None else present).append(entry)
    present.sort(
        key=lambda e: _sort_value(get_path(e.snapshot, sort.field)),
        reverse=sort.direction == "desc"
    )
    return present + missing


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class MemoryIndexBackend:
    """In-process index. Each operation holds the lock for its duration."""

    backend_name = "memory"

    def __init__(self):
        self._entries: Dict[Role, Dict[str, IndexEntry]] = {role: {} for role in Role}
        self._postings: Dict[Role, Dict[str, Set[str]]] = {role: {} for role in Role}
        self._lock = threading.Lock()

    def put(self, entry: IndexEntry) -> None:
        with self._lock:
            self._drop(entry.role, entry.profile_id)
            self._entries[entry.role][entry.profile_id] = entry
            postings = self._postings[entry.role]
            for token in entry.tokens:
                postings.setdefault(token, set()).add(entry.profile_id)

    def remove(self, role: Role, profile_id: str) -> bool:
        with self._lock:
            return self._drop(role, profile_id)

    def _drop(self, role: Role, profile_id: str) -> bool:
        old = self._entries[role].pop(profile_id, None)
        if old is None:
            return False
        postings = self._postings[role]
        for token in old.tokens:
            ids = postings.get(token)
            if ids is not None:
                ids.discard(profile_id)
                if not ids:
                    del postings[token]
        return True

    def postings(self, role: Role, token: str) -> Set[str]:
        with self._lock:
            return set(self._postings[role].get(token, ()))

    def get(self, role: Role, profile_id: str) -> Optional[IndexEntry]:
        with self._lock:
            return self._entries[role].get(profile_id)

    def ids(self, role: Role) -> Set[str]:
        with self._lock:
            return set(self._entries[role])

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "backend": self.backend_name,
                "entries": {role.value: len(entries) for role, entries in self._entries.items()},
                "tokens": {role.value: len(postings) for role, postings in self._postings.items()},
            }


class RedisIndexBackend:
    """
    Redis-backed index.

    Layout (prefix defaults to "search"):
        {prefix}:{role}:ids             set of indexed profile ids
        {prefix}:{role}:token:{token}   set of profile ids (postings)
        {prefix}:{role}:entry:{id}      hash with tokens, profile, timestamp

    Any RedisError is raised as IndexUnavailableError.
    """

    backend_name = "redis"

    def __init__(self, url: str = "redis://localhost:6379/0", prefix: str = "search", client=None):
        self.prefix = prefix
        if client is not None:
            self._client = client
        else:
            self._client = redis.from_url(
                url,
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
            )

    def _ids_key(self, role: Role) -> str:
        return f"{self.prefix}:{Role(role).value}:ids"

    def _token_key(self, role: Role, token: str) -> str:
        return f"{self.prefix}:{Role(role).value}:token:{token}"

    def _entry_key(self, role: Role, profile_id: str) -> str:
        return f"{self.prefix}:{Role(role).value}:entry:{profile_id}"

    def _unavailable(self, action: str, error: Exception) -> IndexUnavailableError:
        logger.warning(f"Search index {action} failed: {error}")
        return IndexUnavailableError(f"Search index {action} failed", original_error=error)

    def _old_tokens(self, role: Role, profile_id: str) -> List[str]:
        raw = self._client.hget(self._entry_key(role, profile_id), "tokens")
        return list(json.loads(raw)) if raw else []

    def put(self, entry: IndexEntry) -> None:
        try:
            old_tokens = self._old_tokens(entry.role, entry.profile_id)
            pipe = self._client.pipeline()
            for token in old_tokens:
                pipe.srem(self._token_key(entry.role, token), entry.profile_id)
            for token in entry.tokens:
                pipe.sadd(self._token_key(entry.role, token), entry.profile_id)
            pipe.hset(self._entry_key(entry.role, entry.profile_id), mapping={
                "tokens": json.dumps(entry.tokens),
                "profile": json.dumps(entry.snapshot),
                "timestamp": int(time.time() * 1000),
            })
            pipe.sadd(self._ids_key(entry.role), entry.profile_id)
            pipe.execute()
        except RedisError as e:
            raise self._unavailable("write", e)

    def remove(self, role: Role, profile_id: str) -> bool:
        try:
            old_tokens = self._old_tokens(role, profile_id)
            pipe = self._client.pipeline()
            for token in old_tokens:
                pipe.srem(self._token_key(role, token), profile_id)
            pipe.delete(self._entry_key(role, profile_id))
            pipe.srem(self._ids_key(role), profile_id)
            results = pipe.execute()
            return bool(results[-1])
        except RedisError as e:
            raise self._unavailable("delete", e)

    def postings(self, role: Role, token: str) -> Set[str]:
        try:
            return set(self._client.smembers(self._token_key(role, token)))
        except RedisError as e:
            raise self._unavailable("read", e)

    def get(self, role: Role, profile_id: str) -> Optional[IndexEntry]:
        try:
            data = self._client.hgetall(self._entry_key(role, profile_id))
        except RedisError as e:
            raise self._unavailable("read", e)
        if not data:
            return None
        return IndexEntry(
            profile_id=profile_id,
            role=Role(role),
            tokens=json.loads(data.get("tokens") or "{}"),
            snapshot=json.loads(data.get("profile") or "{}"),
        )

    def ids(self, role: Role) -> Set[str]:
        try:
            return set(self._client.smembers(self._ids_key(role)))
        except RedisError as e:
            raise self._unavailable("read", e)

    def get_stats(self) -> dict:
        try:
            return {
                "backend": self.backend_name,
                "entries": {role.value: self._client.scard(self._ids_key(role)) for role in Role},
            }
        except RedisError as e:
            return {"backend": self.backend_name, "connected": False, "error": str(e)}


@dataclass
class SearchConfig:
    backend: str = "memory"            # "redis" or "memory"
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "search"
    cache_ttl_seconds: int = 300
    suggestion_limit: int = 5

    @classmethod
    def from_env(cls) -> 'SearchConfig':
        return cls(
            backend=os.getenv("INDEX_BACKEND", "memory").lower(),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            cache_ttl_seconds=int(os.getenv("SEARCH_CACHE_TTL", "300")),
        )


def create_index_backend(config: Optional[SearchConfig] = None):
    config = config or SearchConfig.from_env()
    if config.backend == "redis":
        return RedisIndexBackend(url=config.redis_url, prefix=config.key_prefix)
    return MemoryIndexBackend()


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class SearchIndexService:
    """Maintains the index and resolves searches against it."""

    def __init__(self, profile_store: ProfileStore, cache, backend=None, config: Optional[SearchConfig] = None):
        self.profile_store = profile_store
        self.cache = cache
        self.config = config or SearchConfig.from_env()
        self.backend = backend if backend is not None else create_index_backend(self.config)

    def index_profile(self, profile_id: str) -> IndexEntry:
        """
        Rebuild the index entry for one profile from the profile store.

        A profile that no longer exists has its stale entry removed and
        raises NotFoundException.
        """
        profile = self.profile_store.get_profile(profile_id)
        if profile is None:
            for role in Role:
                self.backend.remove(role, profile_id)
            raise NotFoundException("Profile", profile_id, code=ErrorCode.PROFILE_NOT_FOUND)

        entry = build_entry(profile)
        # a role change must not leave the old entry behind
        self.backend.remove(entry.role.opposite, profile_id)
        self.backend.put(entry)
        logger.debug(f"Indexed {entry.role.value} {profile_id} with {len(entry.tokens)} tokens")
        return entry

    def remove_profile(self, profile_id: str, role: Role) -> bool:
        return self.backend.remove(Role(role), profile_id)

    @log_performance("reindex_all")
    def reindex_all(self) -> ReindexReport:
        """
        Index every store profile and drop entries whose profiles are gone.

        Idempotent. Searches running meanwhile may see a partly rebuilt index.
        """
        report = ReindexReport()
        profiles = self.profile_store.query_profiles(lambda p: True)
        live_ids = {role: set() for role in Role}

        for profile in profiles:
            try:
                entry = build_entry(profile)
            except InvalidProfileError as e:
                logger.error(f"Skipping profile during reindex: {e}")
                report.failed.append(str(getattr(profile, "id", "")))
                continue
            self.backend.remove(entry.role.opposite, entry.profile_id)
            self.backend.put(entry)
            live_ids[entry.role].add(entry.profile_id)
            report.indexed += 1

        for role in Role:
            for stale_id in self.backend.ids(role) - live_ids[role]:
                if self.backend.remove(role, stale_id):
                    report.removed += 1

        logger.info(f"Reindex complete: indexed={report.indexed} removed={report.removed} failed={len(report.failed)}")
        return report

    def cache_key(self, query_tokens: List[str], options: SearchOptions) -> str:
        filters = {}
        for path, condition in options.filters.items():
            if isinstance(condition, list):
                condition = sorted({_normalize_value(c) for c in condition}, key=str)
            elif isinstance(condition, str):
                condition = _normalize_value(condition)
            filters[path] = condition
        return make_cache_key(
            "search",
            role=options.role.value,
            tokens=sorted(query_tokens),
            filters=filters,
            sort=options.sort.model_dump() if options.sort else None,
            page=options.page,
            limit=options.limit,
        )

    @log_performance("search")
    def search(self, query: str, options: Optional[SearchOptions] = None, timeout: Optional[float] = None) -> SearchPage:
        options = options or SearchOptions()
        deadline = Deadline(timeout, "search")
        query_tokens = tokenize_query(query)

        key = self.cache_key(query_tokens, options)
        cached = self.cache.get(key)
        if cached is not None:
            return SearchPage.model_validate(cached)

        try:
            entries = self._indexed_entries(options.role, query_tokens, deadline)
            degraded = False
        except IndexUnavailableError as e:
            logger.warning(f"Search index unavailable, scanning profile store instead: {e.message}")
            entries = self._scanned_entries(options.role, query_tokens, deadline)
            degraded = True

        page = self._resolve(entries, query_tokens, options, deadline, degraded)

        if not degraded:
            deadline.check()
            self.cache.set(key, page.model_dump(mode="json"), self.config.cache_ttl_seconds)
        return page

    def _indexed_entries(self, role: Role, query_tokens: List[str], deadline: Deadline) -> List[IndexEntry]:
        if query_tokens:
            ids: Optional[Set[str]] = None
            for token in query_tokens:
                deadline.check()
                postings = self.backend.postings(role, token)
                ids = postings if ids is None else ids & postings
                if not ids:
                    return []
        else:
            ids = self.backend.ids(role)

        entries = []
        for profile_id in ids:
            deadline.check()
            entry = self.backend.get(role, profile_id)
            if entry is not None:
                entries.append(entry)
        return entries

    def _scanned_entries(self, role: Role, query_tokens: List[str], deadline: Deadline) -> List[IndexEntry]:
        profiles = self.profile_store.query_profiles(lambda p: profile_role(p) == role)
        entries = []
        for profile in profiles:
            deadline.check()
            entry = build_entry(profile)
            if all(token in entry.tokens for token in query_tokens):
                entries.append(entry)
        return entries

    def _resolve(self, entries: List[IndexEntry], query_tokens: List[str], options: SearchOptions,
                 deadline: Deadline, degraded: bool) -> SearchPage:
        matched = []
        for entry in entries:
            deadline.check()
            if matches_filters(entry.snapshot, options.filters):
                matched.append(entry)

        ordered = order_entries(matched, query_tokens, options.sort)
        start = (options.page - 1) * options.limit
        return SearchPage(
            items=[e.snapshot for e in ordered[start:start + options.limit]],
            total=len(matched),
            page=options.page,
            limit=options.limit,
            role=options.role,
            degraded=degraded,
        )

    def suggest(self, query: str, role: Role = Role.ENTREPRENEUR, limit: Optional[int] = None) -> List[Suggestion]:
        """Short profile suggestions for type-ahead."""
        options = SearchOptions(role=role, limit=limit or self.config.suggestion_limit)
        page = self.search(query, options)
        suggestions = []
        for item in page.items:
            role_value = Role(item["role"])
            if role_value == Role.ENTREPRENEUR:
                industries = item.get("industries") or []
                extra = {"industry": industries[0] if industries else None}
            else:
                extra = {"available_funds": item.get("available_funds")}
            suggestions.append(Suggestion(
                id=item["id"],
                text=item.get("project_name") or item.get("name") or item["id"],
                role=role_value,
                **extra
            ))
        return suggestions

    def get_stats(self) -> dict:
        return self.backend.get_stats()
