"""
Unit tests: confidence scoring for strict visit candidates.

Covers:
- Worked example (3 pings averaging 51.7m)
- Hit score cap and distance penalty cap
- Bounds: always within 0..100
- Monotonicity in hit count and average distance
"""

import pytest

from services.visits.backfill.scoring import distance_penalty, score_confidence
from services.visits.tests.conftest import make_settings


class TestDistancePenalty:
    def test_no_penalty_inside_min_radius(self, recon_settings):
        assert distance_penalty(10.0, recon_settings) == 0.0
        assert distance_penalty(35.0, recon_settings) == 0.0

    def test_linear_between_radii(self, recon_settings):
        # halfway between 35 and 150
        assert distance_penalty(92.5, recon_settings) == pytest.approx(10.0)

    def test_capped_at_twenty(self, recon_settings):
        assert distance_penalty(150.0, recon_settings) == pytest.approx(20.0)
        assert distance_penalty(5000.0, recon_settings) == pytest.approx(20.0)

    def test_degenerate_span_has_no_penalty(self):
        settings = make_settings(min_radius_m=100, max_radius_m=100)
        assert distance_penalty(120.0, settings) == 0.0


class TestScoreConfidence:
    def test_worked_example(self, recon_settings):
        # 40 + 3*5.5 = 56.5, penalty (51.7-35)/115*20 = 2.9
        assert score_confidence(3, 51.7, recon_settings) == 54

    def test_close_pings_score_hit_component_only(self, recon_settings):
        assert score_confidence(2, 20.0, recon_settings) == 51

    def test_hit_score_caps_at_95(self, recon_settings):
        assert score_confidence(11, 0.0, recon_settings) == 95
        assert score_confidence(500, 0.0, recon_settings) == 95

    def test_far_pings_lose_at_most_twenty(self, recon_settings):
        assert score_confidence(500, 10_000.0, recon_settings) == 75

    @pytest.mark.parametrize("hits", [0, 1, 2, 5, 20, 1000])
    @pytest.mark.parametrize("distance", [0.0, 35.0, 80.0, 150.0, 9999.0])
    def test_always_within_bounds(self, recon_settings, hits, distance):
        assert 0 <= score_confidence(hits, distance, recon_settings) <= 100

    def test_non_decreasing_in_hits(self, recon_settings):
        scores = [score_confidence(h, 60.0, recon_settings) for h in range(1, 30)]
        assert scores == sorted(scores)

    def test_non_increasing_in_distance(self, recon_settings):
        scores = [score_confidence(4, d, recon_settings) for d in range(35, 400, 5)]
        assert scores == sorted(scores, reverse=True)
