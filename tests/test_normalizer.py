"""Tests for team/sport name normalization."""

import random

import pytest

from config.settings import NormalizerSettings
from livefusion.fusion.normalizer import fold, normalize, normalize_league, normalize_name, normalize_sport


class TestFold:
    """Tests for the Unicode fold."""

    def test_strips_diacritics_and_case(self):
        assert fold("Slavia Praha") == "slavia praha"
        assert fold("Sparta Přerov") == "sparta prerov"
        assert fold("Bodø/Glimt") == "bodo glimt"

    def test_punctuation_becomes_space(self):
        assert fold("  Paris   Saint-Germain. ") == "paris saint germain"

    def test_empty(self):
        assert fold("") == ""
        assert fold(None) == ""


class TestNormalizeName:
    """Tests for team name normalization."""

    def test_club_suffix_stripped(self):
        assert normalize_name("Arsenal FC") == ("arsenal",)
        assert normalize_name("Natus Vincere Esports") == ("natus", "vincere")

    def test_suffix_never_strips_to_nothing(self):
        assert normalize_name("FC") == ("fc",)

    def test_extended_suffixes_only_when_enabled(self):
        assert normalize_name("Chelsea U21") == ("chelsea", "u21")
        config = NormalizerSettings(extended_suffix_stripping=True)
        assert normalize_name("Chelsea U21", config) == ("chelsea",)

    def test_min_name_tokens_respected(self):
        config = NormalizerSettings(min_name_tokens=2)
        assert normalize_name("Arsenal FC", config) == ("arsenal", "fc")

    def test_country_translation(self):
        assert normalize_name("Česko") == ("czech", "republic")
        assert normalize_name("Deutschland") == ("germany",)
        assert normalize_name("Novy Zeland") == ("new", "zealand")

    def test_unnormalizable_is_empty(self):
        assert normalize_name("!!!") == ()
        assert normalize_name("") == ()

    @pytest.mark.parametrize("raw", [
        "Arsenal FC",
        "Sparta Přerov",
        "Česká republika",
        "Team Liquid Gaming",
        "Real Madrid C.F.",
    ])
    def test_idempotent(self, raw):
        tokens = normalize_name(raw)
        assert normalize_name(" ".join(tokens)) == tokens

    @pytest.mark.parametrize("seed", range(5))
    def test_idempotent_random_unicode(self, seed):
        rng = random.Random(seed)
        alphabet = (
            "abcxyzABCXYZ0189"
            "ßẞøØłŁæÆœđðþıéÉñçüÖåČřž"
            "\u0301\u0308\u030c\u0327"
            "жЖяΣσςΑ東京ＡＢ１①"
            " \t.-/'&()!?,"
        )
        words = ["FC", "Club", "U21", "Česko", "España", "Österreich", "---", "..."]
        for _ in range(200):
            parts = [
                rng.choice(words) if rng.random() < 0.2
                else "".join(rng.choice(alphabet) for _ in range(rng.randint(0, 8)))
                for _ in range(rng.randint(0, 4))
            ]
            raw = " ".join(parts)
            tokens = normalize_name(raw)
            assert normalize_name(" ".join(tokens)) == tokens, repr(raw)

    def test_punctuation_only(self):
        for raw in ("...", " - / ", "\u0301\u0308", "!?&"):
            assert normalize_name(raw) == ()


class TestNormalizeSport:
    """Tests for sport canonicalization."""

    @pytest.mark.parametrize("raw,expected", [
        ("Soccer", "football"),
        ("fotbal", "football"),
        ("CS:GO", "cs2"),
        ("Counter-Strike 2", "cs2"),
        ("Dota 2", "dota2"),
        ("League of Legends", "lol"),
        ("Ice Hockey", "ice_hockey"),
        ("Tenis", "tennis"),
    ])
    def test_aliases(self, raw, expected):
        assert normalize_sport(raw) == expected

    def test_unknown_passes_through(self):
        assert normalize_sport("  Curling ") == "curling"


class TestNormalize:
    """Tests for the combined entry point."""

    def test_returns_tokens_and_sport(self):
        assert normalize("Arsenal FC", "soccer") == (("arsenal",), "football")

    def test_league(self):
        assert normalize_league("Premier League ") == "premier league"
        assert normalize_league(None) == ""
