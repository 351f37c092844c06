"""Tests for utils.helpers module."""
import math

from config import NOT_COMPUTED
from utils.helpers import add_significance_stars, format_ci, format_estimate, format_pvalue


class TestFormatPvalue:
    def test_regular(self):
        assert format_pvalue(0.0421) == '0.042'

    def test_below_threshold(self):
        assert format_pvalue(0.0001) == '<0.001'

    def test_not_computed(self):
        assert format_pvalue(NOT_COMPUTED) == 'n/a'
        assert format_pvalue(None) == 'n/a'
        assert format_pvalue(math.nan) == 'n/a'


class TestStars:
    def test_levels(self):
        assert add_significance_stars(0.0005) == '***'
        assert add_significance_stars(0.005) == '**'
        assert add_significance_stars(0.03) == '*'
        assert add_significance_stars(0.2) == ''

    def test_not_computed(self):
        assert add_significance_stars(NOT_COMPUTED) == ''


def test_format_ci():
    assert format_ci(-1.23456, 2.5) == '[-1.235, 2.500]'


def test_format_estimate():
    assert format_estimate(0.5, 0.01) == '0.500*'
