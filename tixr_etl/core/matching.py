from __future__ import annotations
import asyncio, logging, re, time, unicodedata
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, Optional, Tuple

log = logging.getLogger(__name__)

EXACT, FUZZY = "exact", "fuzzy"
MATCH_THRESHOLD = 0.85
EARLY_EXIT_THRESHOLD = 0.95

# ---- normalisation (comparaison seulement, jamais affichée) ----

def _strip_accents(s: str) -> str:
    return "".join(c for c in unicodedata.normalize("NFKD", s) if not unicodedata.combining(c))

def normalize_artist(name: Optional[str]) -> str:
    if not name or not isinstance(name, str):
        return ""
    s = _strip_accents(name).lower()
    s = s.replace("&", " and ").replace("+", " and ")
    s = re.sub(r"[^\w\s]|_", "", s)
    s = re.sub(r"\bthe\b", " ", s)
    return re.sub(r"\s+", " ", s).strip()

# ---- distance d'édition ----

def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)
    prev = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        cur = [i]
        for j, cb in enumerate(b, 1):
            cur.append(min(prev[j] + 1, cur[j - 1] + 1, prev[j - 1] + (ca != cb)))
        prev = cur
    return prev[-1]

def similarity(a: str, b: str) -> float:
    max_len = max(len(a), len(b))
    if max_len == 0:
        return 1.0
    return (max_len - levenshtein(a, b)) / max_len

def max_length_gap(normalized: str) -> int:
    return max(3, int(len(normalized) * 0.2))

# ---- cache TTL des artistes connus ----

@dataclass(frozen=True)
class ArtistSnapshot:
    """Vue figée : lue sans verrou entre deux rafraîchissements."""
    names: Tuple[str, ...] = ()
    by_normalized: Dict[str, str] = field(default_factory=dict)
    normalized_of: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def build(cls, names: Iterable[str]) -> "ArtistSnapshot":
        unique = tuple(dict.fromkeys(n for n in names if n))
        normalized_of = {n: normalize_artist(n) for n in unique}
        by_normalized: Dict[str, str] = {}
        for n in unique:
            by_normalized.setdefault(normalized_of[n], n)
        return cls(unique, by_normalized, normalized_of)

ArtistLoader = Callable[[], Awaitable[Iterable[str]]]

class ArtistCache:
    """Noms canoniques présents dans `events`, rafraîchis en bloc toutes les `ttl` secondes."""

    def __init__(self, loader: ArtistLoader, ttl: float = 600.0,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self._loader = loader
        self._ttl = ttl
        self._clock = clock
        self._snapshot: Optional[ArtistSnapshot] = None
        self._loaded_at: Optional[float] = None
        self._lock = asyncio.Lock()
        self.refreshes = 0

    def _fresh(self) -> bool:
        return self._snapshot is not None and self._loaded_at is not None \
            and (self._clock() - self._loaded_at) < self._ttl

    def invalidate(self) -> None:
        self._loaded_at = None

    async def snapshot(self) -> ArtistSnapshot:
        if self._fresh():
            return self._snapshot
        # un seul rafraîchissement à la fois ; les autres attendent puis relisent
        async with self._lock:
            if self._fresh():
                return self._snapshot
            return await self._refresh()

    async def _refresh(self) -> ArtistSnapshot:
        log.info("Rafraîchissement du cache artistes")
        try:
            names = await self._loader()
        except Exception:
            log.exception("Cache artistes: échec du chargement, snapshot vide non mis en cache")
            return ArtistSnapshot()
        snap = ArtistSnapshot.build(names)
        self._snapshot, self._loaded_at = snap, self._clock()
        self.refreshes += 1
        log.info("Cache artistes: %s artistes uniques", len(snap.names))
        return snap

# ---- appariement ----

@dataclass(frozen=True)
class ArtistMatch:
    name: str
    similarity: float
    kind: str

def best_match(name: str, snap: ArtistSnapshot) -> Optional[ArtistMatch]:
    normalized = normalize_artist(name)
    if not normalized:
        return None
    exact = snap.by_normalized.get(normalized)
    if exact is not None:
        return ArtistMatch(exact, 1.0, EXACT)

    gap = max_length_gap(normalized)
    best: Optional[ArtistMatch] = None
    for artist in snap.names:
        candidate = snap.normalized_of.get(artist) or normalize_artist(artist)
        if abs(len(normalized) - len(candidate)) > gap:
            continue
        score = similarity(normalized, candidate)
        if score >= MATCH_THRESHOLD and (best is None or score > best.similarity):
            best = ArtistMatch(artist, score, FUZZY)
            if score >= EARLY_EXIT_THRESHOLD:
                break
    return best

class ArtistMatcher:
    def __init__(self, cache: ArtistCache) -> None:
        self.cache = cache

    async def find_similar(self, name: Optional[str]) -> Optional[ArtistMatch]:
        if not name:
            return None
        return best_match(name, await self.cache.snapshot())

    async def resolve(self, name: Optional[str]) -> Optional[str]:
        """Nom canonique existant si doublon probable, sinon le nom tel quel."""
        if not name:
            return name
        match = await self.find_similar(name)
        if match is None:
            log.info("Nouvel artiste: %s", name)
            return name
        if match.kind == FUZZY:
            log.info("Doublon probable: %s -> %s (%.1f%%)", name, match.name, match.similarity * 100)
        return match.name
