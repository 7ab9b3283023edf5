"""Score normalization and count parsing."""

from __future__ import annotations

import math

import pytest

from activity_ledger.sync.scores import is_blank_score, normalize_score, parse_count


@pytest.mark.parametrize("raw", ["70", "70%", " 70 % ", 0.7, 70, 70.0, "0.7"])
def test_equivalent_scores_normalize_to_70(raw):
    assert normalize_score(raw) == 70


@pytest.mark.parametrize("raw", [None, "", "   ", "NA", "n/a", "N/A", 150, -5, "abc", True, False, math.nan, math.inf])
def test_unknown_or_corrupt_scores_are_none(raw):
    assert normalize_score(raw) is None


def test_boundaries_are_kept():
    assert normalize_score(0) == 0
    assert normalize_score(1) == 1
    assert normalize_score(100) == 100
    assert normalize_score("100%") == 100
    assert normalize_score(100.0001) is None


def test_fraction_rule_can_be_disabled():
    assert normalize_score(0.85, fractions=False) == 0.85
    assert normalize_score(0.85) == 85


def test_float_noise_is_removed():
    assert normalize_score(0.85) == 85.0
    assert normalize_score("0.333") == 33.3


def test_is_blank_score():
    assert is_blank_score(None)
    assert is_blank_score(" NA ")
    assert not is_blank_score("abc")
    assert not is_blank_score(0)


@pytest.mark.parametrize(
    "raw,expected",
    [(3, 3), ("4", 4), ("4.0", 4), (0, 0), (-1, None), ("", None), ("x", None), (2.5, None), (None, None), (True, None)],
)
def test_parse_count(raw, expected):
    assert parse_count(raw) == expected
