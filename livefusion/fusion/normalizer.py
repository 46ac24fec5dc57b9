"""
Team, league and sport name normalization.

Pure functions. Steps for a team name:
    1. country-name translation on the raw lowercase text
    2. Unicode fold (NFKD, strip combining marks, casefold)
    3. punctuation cleanup + whitespace collapse
    4. qualifier suffix stripping (never below the minimum token count)
    5. country-name translation on the folded text

normalize(" ".join(tokens)) returns the same tokens (idempotent).
"""

from __future__ import annotations

import re
import unicodedata
from typing import Optional

from config.settings import NormalizerSettings

_SPACE_RE = re.compile(r"\s+")

# Letters NFKD does not decompose
_TRANSLIT_MAP = {
    "ø": "o",
    "ł": "l",
    "đ": "d",
    "ð": "d",
    "þ": "th",
    "æ": "ae",
    "œ": "oe",
    "ı": "i",
}

# Source-language country names -> English
COUNTRY_NAMES = {
    "česko": "czech republic",
    "česká republika": "czech republic",
    "čechy": "czech republic",
    "slovensko": "slovakia",
    "německo": "germany",
    "deutschland": "germany",
    "rakousko": "austria",
    "österreich": "austria",
    "polsko": "poland",
    "polska": "poland",
    "maďarsko": "hungary",
    "magyarország": "hungary",
    "francie": "france",
    "španělsko": "spain",
    "españa": "spain",
    "itálie": "italy",
    "italia": "italy",
    "anglie": "england",
    "skotsko": "scotland",
    "nizozemsko": "netherlands",
    "nederland": "netherlands",
    "belgie": "belgium",
    "švédsko": "sweden",
    "sverige": "sweden",
    "norsko": "norway",
    "norge": "norway",
    "dánsko": "denmark",
    "danmark": "denmark",
    "finsko": "finland",
    "suomi": "finland",
    "švýcarsko": "switzerland",
    "schweiz": "switzerland",
    "chorvatsko": "croatia",
    "hrvatska": "croatia",
    "srbsko": "serbia",
    "srbija": "serbia",
    "slovinsko": "slovenia",
    "rusko": "russia",
    "ukrajina": "ukraine",
    "řecko": "greece",
    "turecko": "turkey",
    "türkiye": "turkey",
    "portugalsko": "portugal",
    "brazílie": "brazil",
    "brasil": "brazil",
    "kanada": "canada",
    "japonsko": "japan",
    "jižní korea": "south korea",
    "čína": "china",
    "austrálie": "australia",
    "nový zéland": "new zealand",
    "irsko": "ireland",
    "spojené státy": "usa",
    "spojené státy americké": "usa",
    "mexiko": "mexico",
}

# Sport spellings -> canonical identifier
SPORT_ALIASES = {
    "soccer": "football",
    "football": "football",
    "fotbal": "football",
    "futbol": "football",
    "tennis": "tennis",
    "tenis": "tennis",
    "basketball": "basketball",
    "basket": "basketball",
    "basketbal": "basketball",
    "hockey": "ice_hockey",
    "ice-hockey": "ice_hockey",
    "ice hockey": "ice_hockey",
    "ice_hockey": "ice_hockey",
    "icehockey": "ice_hockey",
    "hokej": "ice_hockey",
    "cs2": "cs2",
    "cs": "cs2",
    "csgo": "cs2",
    "cs:go": "cs2",
    "cs-go": "cs2",
    "counter-strike": "cs2",
    "counter strike": "cs2",
    "counter-strike 2": "cs2",
    "valorant": "valorant",
    "val": "valorant",
    "lol": "lol",
    "league-of-legends": "lol",
    "league of legends": "lol",
    "dota": "dota2",
    "dota2": "dota2",
    "dota 2": "dota2",
    "dota-2": "dota2",
}

# Club qualifiers, always stripped from the end of a name
CLUB_SUFFIXES = frozenset({
    "fc", "cf", "sc", "ac", "afc", "sk", "fk", "club",
    "esports", "esport", "gaming", "team", "w", "women",
})

# Youth/reserve/academy qualifiers, stripped only with extended stripping on
EXTENDED_SUFFIXES = frozenset({
    "u17", "u18", "u19", "u20", "u21", "u23", "b", "ii", "iii",
    "reserves", "reserve", "academy", "youth", "jr", "junior", "juniors",
})


def fold(text: str) -> str:
    """
    Fold text into a comparison-safe form.

    NFKD decomposition, combining marks dropped, casefolded, anything
    that is not a letter or digit turned into a space.
    """
    text = unicodedata.normalize("NFKD", str(text or ""))
    text = unicodedata.normalize("NFKD", text.casefold())
    chars = []
    for ch in text:
        if unicodedata.combining(ch):
            continue
        ch = _TRANSLIT_MAP.get(ch, ch)
        chars.append(ch if ch.isalnum() else " ")
    return _SPACE_RE.sub(" ", "".join(chars)).strip()


# Folded table keys so "Novy Zeland" hits the same entry as "Nový Zéland"
_FOLDED_COUNTRY_NAMES = {fold(k): v for k, v in COUNTRY_NAMES.items()}


def _strip_suffixes(tokens: list[str], suffixes: frozenset[str], min_tokens: int) -> list[str]:
    while len(tokens) > max(min_tokens, 1) and tokens[-1] in suffixes:
        tokens = tokens[:-1]
    return tokens


def normalize_name(
    raw_name: str,
    config: Optional[NormalizerSettings] = None,
) -> tuple[str, ...]:
    """Normalize a team name into canonical tokens."""
    config = config or NormalizerSettings()

    text = _SPACE_RE.sub(" ", str(raw_name or "").strip().lower())
    text = COUNTRY_NAMES.get(text, text)
    folded = fold(text)
    if not folded:
        return ()

    suffixes = CLUB_SUFFIXES | EXTENDED_SUFFIXES if config.extended_suffix_stripping else CLUB_SUFFIXES
    tokens = _strip_suffixes(folded.split(" "), suffixes, config.min_name_tokens)

    joined = " ".join(tokens)
    translated = _FOLDED_COUNTRY_NAMES.get(joined)
    if translated:
        return tuple(translated.split(" "))
    return tuple(tokens)


def normalize_sport(raw_sport: str) -> str:
    """
    Map a sport spelling to its canonical identifier.

    Unknown sports pass through (stripped, lowercased), never dropped.
    """
    text = _SPACE_RE.sub(" ", str(raw_sport or "").strip().lower())
    if text in SPORT_ALIASES:
        return SPORT_ALIASES[text]
    folded = fold(text)
    if folded in SPORT_ALIASES:
        return SPORT_ALIASES[folded]
    return text


def normalize_league(raw_league: Optional[str]) -> str:
    return fold(raw_league or "")


def normalize(
    raw_name: str,
    raw_sport: str,
    config: Optional[NormalizerSettings] = None,
) -> tuple[tuple[str, ...], str]:
    """Return (canonical name tokens, canonical sport)."""
    return normalize_name(raw_name, config), normalize_sport(raw_sport)
