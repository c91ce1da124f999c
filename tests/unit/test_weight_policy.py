"""
Unit tests for the weight update policy and the tired cooldown tracker.
"""
import pytest

from markov_music.chain import policy
from markov_music.chain.config import ChainSettings, SquashConfig
from markov_music.chain.policy import Feedback, TiredTracker


class TestUpdates:
    @pytest.mark.parametrize("w", [0.0, 0.5, 7.0, 99.0])
    def test_reinforce_and_like_increase(self, settings, w):
        assert policy.reinforce(w, settings) > w
        assert policy.like(w, settings) > w

    @pytest.mark.parametrize("w", [0.5, 2.0, 7.0])
    def test_dislike_decreases(self, settings, w):
        assert policy.dislike(w, settings) < w

    def test_dislike_floors_at_zero(self, settings):
        assert policy.dislike(0.0, settings) == 0.0
        assert policy.dislike(1.0, settings) == 0.0

    def test_first_observation_is_reinforce_delta(self, settings):
        assert policy.reinforce(0.0, settings) == settings.reinforce_delta

    def test_apply_feedback(self, settings):
        assert policy.apply_feedback(Feedback.LIKE, 1.0, settings) == 3.0
        assert policy.apply_feedback("dislike", 3.0, settings) == 1.0
        assert policy.apply_feedback(Feedback.TIRED, 4.0, settings) == 4.0

    def test_unknown_feedback_rejected(self, settings):
        with pytest.raises(ValueError):
            policy.apply_feedback("meh", 1.0, settings)


class TestSettings:
    def test_defaults(self):
        settings = ChainSettings()
        assert settings.reinforce_delta > 0
        assert settings.weight_max > 0
        assert settings.reinforce_on_skip is False

    @pytest.mark.parametrize("field", ["reinforce_delta", "like_delta", "dislike_delta"])
    def test_negative_delta_rejected(self, field):
        with pytest.raises(ValueError):
            ChainSettings(**{field: -1.0})

    def test_non_positive_ceiling_rejected(self):
        with pytest.raises(ValueError):
            ChainSettings(weight_max=0.0)

    def test_squash_slope_must_be_positive(self):
        with pytest.raises(ValueError):
            SquashConfig(slope=0.0)


class TestTiredTracker:
    def test_mark_and_expire(self, clock):
        tracker = TiredTracker(60.0, clock=clock)
        tracker.mark("A")
        assert "A" in tracker
        assert tracker.active() == ["A"]
        assert tracker.remaining("A") == pytest.approx(60.0)

        clock.advance(59.0)
        assert tracker.is_tired("A")
        clock.advance(1.0)
        assert not tracker.is_tired("A")
        assert len(tracker) == 0

    def test_remark_restarts_cooldown(self, clock):
        tracker = TiredTracker(60.0, clock=clock)
        tracker.mark("A")
        clock.advance(50.0)
        tracker.mark("A")
        clock.advance(50.0)
        assert "A" in tracker

    def test_expire_returns_lapsed(self, clock):
        tracker = TiredTracker(10.0, clock=clock)
        tracker.mark("A")
        clock.advance(5.0)
        tracker.mark("B")
        clock.advance(6.0)
        assert tracker.expire() == ["A"]
        assert tracker.active() == ["B"]

    def test_clear(self, clock):
        tracker = TiredTracker(10.0, clock=clock)
        tracker.mark("A")
        tracker.clear("A")
        tracker.clear("never-marked")
        assert "A" not in tracker
        assert tracker.remaining("A") is None

    def test_negative_cooldown_rejected(self):
        with pytest.raises(ValueError):
            TiredTracker(-1.0)
