"""
Match Key Resolver.

Turns (sport, raw team1, raw team2) into a canonical MatchKey:

1. Exact: normalized, sorted token pair. Returned at once when known.
2. Alias cache: an earlier fuzzy resolution for the same exact key.
3. Token subset: both sides must be token-subset related to the two sides
   of exactly one known key, each with at least N significant tokens.
4. Otherwise a new key is minted.

A false merge corrupts two matches; a false split only loses coverage.
Every ambiguity therefore resolves to "no match".
"""

import time
from typing import Iterable, Optional, Protocol

import structlog

from config.settings import NormalizerSettings, ResolverSettings
from livefusion.errors import MalformedObservation
from livefusion.fusion.alias_cache import AliasCache
from livefusion.fusion.normalizer import normalize_name, normalize_sport
from livefusion.models.schemas import MatchKey, ResolvedKey

logger = structlog.get_logger()

# Tokens too common to identify a team on their own
ULTRA_COMMON_TOKENS = frozenset({
    "fc", "cf", "sc", "ac", "afc", "fk", "sk", "cd", "ud", "club", "team",
    "united", "utd", "city", "town", "real", "sporting", "athletic", "atletico",
    "esports", "gaming", "the", "de", "la", "el", "and", "of", "st",
})


class KeyIndex(Protocol):
    """What the resolver needs from the state store."""

    def contains(self, key: MatchKey) -> bool: ...

    def keys_for_sport(self, sport: str) -> Iterable[MatchKey]: ...


def significant_tokens(name: str) -> frozenset[str]:
    """Tokens of length >= 2 that are not ultra-common."""
    return frozenset(
        t for t in name.split(" ")
        if len(t) >= 2 and t not in ULTRA_COMMON_TOKENS
    )


class MatchKeyResolver:
    """Resolves raw team pairs to canonical match keys."""

    def __init__(
        self,
        index: KeyIndex,
        config: Optional[ResolverSettings] = None,
        normalizer_config: Optional[NormalizerSettings] = None,
    ):
        self.index = index
        self.config = config or ResolverSettings()
        self.normalizer_config = normalizer_config or NormalizerSettings()
        self.cache = AliasCache(
            capacity=self.config.alias_cache_capacity,
            ttl_seconds=self.config.alias_cache_ttl_hours * 3600,
        )
        self.logger = logger.bind(component="match_key_resolver")

        # Metrics
        self._exact_hits = 0
        self._cache_hits = 0
        self._fuzzy_hits = 0
        self._minted = 0
        self._ambiguous = 0

    # =========================================================================
    # Public API
    # =========================================================================

    def resolve(self, sport: str, team1_raw: str, team2_raw: str) -> MatchKey:
        """Resolve to a MatchKey (order-independent)."""
        return self.resolve_oriented(sport, team1_raw, team2_raw).key

    def resolve_oriented(
        self,
        sport: str,
        team1_raw: str,
        team2_raw: str,
        now: Optional[float] = None,
    ) -> ResolvedKey:
        """
        Resolve to a MatchKey plus orientation.

        `swapped` is True when raw team1 corresponds to key.team2.

        Raises:
            MalformedObservation: a name normalizes to nothing, or both
                sides normalize to the same team.
        """
        now = now if now is not None else time.time()
        canonical_sport = normalize_sport(sport)
        name1 = " ".join(normalize_name(team1_raw, self.normalizer_config))
        name2 = " ".join(normalize_name(team2_raw, self.normalizer_config))

        if not canonical_sport or not name1 or not name2:
            raise MalformedObservation(f"unnormalizable names: {team1_raw!r} vs {team2_raw!r}")
        if name1 == name2:
            raise MalformedObservation(f"both sides normalize to {name1!r}")

        exact = MatchKey.build(canonical_sport, name1, name2)
        swapped = name1 != exact.team1

        # 1. Exact
        if self.index.contains(exact):
            self._exact_hits += 1
            return ResolvedKey(exact, swapped, "exact")

        if not self.config.token_subset_matching:
            return self._mint(exact, swapped)

        # 2. Alias cache
        cached = self.cache.get(exact, now)
        if cached is not None:
            if self.index.contains(cached.canonical_key):
                self._cache_hits += 1
                return ResolvedKey(cached.canonical_key, swapped ^ cached.swapped, "alias_cache")
            self.cache.invalidate(exact)

        # 3. Token subset
        match = self._token_subset_match(exact)
        if match is not None:
            canonical, crossed, overlap = match
            self.cache.put(exact, canonical, "token_subset", overlap, crossed, now)
            self._fuzzy_hits += 1
            self.logger.info(
                "match_key_fuzzy",
                input_key=str(exact),
                canonical_key=str(canonical),
                method="token_subset",
                overlap=overlap,
                crossed=crossed,
            )
            return ResolvedKey(canonical, swapped ^ crossed, "token_subset")

        # 4. Mint
        return self._mint(exact, swapped)

    # =========================================================================
    # Matching
    # =========================================================================

    def _side_match(self, a: frozenset[str], b: frozenset[str]) -> int:
        """Overlap size when a and b are subset-related with enough tokens, else 0."""
        if not (a <= b or b <= a):
            return 0
        overlap = len(a & b)
        if overlap < self.config.min_significant_tokens:
            return 0
        return overlap

    def _token_subset_match(self, exact: MatchKey) -> Optional[tuple[MatchKey, bool, int]]:
        """Find the single known key both sides token-subset match."""
        sig1 = significant_tokens(exact.team1)
        sig2 = significant_tokens(exact.team2)
        min_tokens = self.config.min_significant_tokens
        if len(sig1) < min_tokens or len(sig2) < min_tokens:
            return None

        candidates: list[tuple[MatchKey, bool, int]] = []
        for known in self.index.keys_for_sport(exact.sport):
            if known == exact:
                continue
            k1 = significant_tokens(known.team1)
            k2 = significant_tokens(known.team2)

            straight = (self._side_match(sig1, k1), self._side_match(sig2, k2))
            crossed = (self._side_match(sig1, k2), self._side_match(sig2, k1))
            straight_ok = all(straight)
            crossed_ok = all(crossed)

            if straight_ok and crossed_ok:
                # Both orientations fit: cannot tell the teams apart
                self._ambiguous += 1
                return None
            if straight_ok:
                candidates.append((known, False, sum(straight)))
            elif crossed_ok:
                candidates.append((known, True, sum(crossed)))

        if len(candidates) > 1:
            self._ambiguous += 1
            self.logger.debug(
                "Fuzzy match ambiguous, minting new key",
                input_key=str(exact),
                candidates=[str(c[0]) for c in candidates],
            )
            return None

        return candidates[0] if candidates else None

    def _mint(self, exact: MatchKey, swapped: bool) -> ResolvedKey:
        self._minted += 1
        return ResolvedKey(exact, swapped, "new")

    # =========================================================================
    # Metrics
    # =========================================================================

    def get_metrics(self) -> dict:
        return {
            "exact_hits": self._exact_hits,
            "cache_hits": self._cache_hits,
            "fuzzy_hits": self._fuzzy_hits,
            "minted": self._minted,
            "ambiguous": self._ambiguous,
            "token_subset_enabled": self.config.token_subset_matching,
            "alias_cache": self.cache.get_metrics(),
        }
