"""Tests for the weighted winner draw."""

import random
from collections import Counter

import pytest

from lottery import build_pool, entry_category, entry_weight, pick_weighted_winner


class TestEntryCategory:
    @pytest.mark.parametrize(
        "sub_tier, expected",
        [("1000", "t1"), ("2000", "t2"), ("3000", "t3"), (3000, "t3")],
    )
    def test_sub_tier(self, sub_tier, expected):
        assert entry_category({"username": "a", "sub_tier": sub_tier}) == expected

    def test_sub_tier_beats_badges(self):
        entry = {"username": "a", "sub_tier": "2000", "badges": {"moderator": True, "broadcaster": True}}
        assert entry_category(entry) == "t2"

    def test_badge_precedence(self):
        assert entry_category({"username": "a", "badges": {"vip": True, "moderator": True}}) == "moderator"
        assert entry_category({"username": "a", "badges": {"moderator": True, "broadcaster": True}}) == "broadcaster"
        assert entry_category({"username": "a", "badges": {"vip": True}}) == "vip"

    def test_plain_viewer(self):
        assert entry_category({"username": "a"}) == "viewer"
        assert entry_category({"username": "a", "badges": None, "sub_tier": None}) == "viewer"
        assert entry_category({"username": "a", "badges": {"subscriber": True}}) == "viewer"


class TestEntryWeight:
    def test_configured_weight(self):
        assert entry_weight({"username": "a", "badges": {"moderator": True}}, {"moderator": 5}) == 5

    def test_missing_or_zero_weight_counts_once(self):
        assert entry_weight({"username": "a"}, {}) == 1
        assert entry_weight({"username": "a"}, None) == 1
        assert entry_weight({"username": "a"}, {"viewer": 0}) == 1

    def test_negative_weight_clamped_to_zero(self):
        assert entry_weight({"username": "a"}, {"viewer": -3}) == 0


class TestWeightedWinner:
    ENTRIES = [
        {"username": "a", "sub_tier": "3000"},
        {"username": "b", "badges": {"moderator": True}},
    ]
    WEIGHTS = {"t3": 1, "moderator": 5, "viewer": 1}

    def test_pool_size(self):
        pool = build_pool(self.ENTRIES, self.WEIGHTS)

        assert len(pool) == 6
        assert Counter(pool) == {"a": 1, "b": 5}

    def test_empirical_win_rate(self):
        rng = random.Random(1234)
        trials = 12000

        wins = Counter(pick_weighted_winner(self.ENTRIES, self.WEIGHTS, rng) for _ in range(trials))

        assert wins["a"] / trials == pytest.approx(1 / 6, abs=0.02)
        assert wins["b"] / trials == pytest.approx(5 / 6, abs=0.02)

    def test_empty_entries(self):
        assert pick_weighted_winner([], self.WEIGHTS) is None
        assert pick_weighted_winner(None, self.WEIGHTS) is None

    def test_everyone_weighted_out(self):
        assert pick_weighted_winner([{"username": "a"}], {"viewer": -1}) is None

    def test_single_entrant_always_wins(self):
        assert pick_weighted_winner([{"username": "solo"}], {}) == "solo"
