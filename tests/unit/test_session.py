"""
Unit tests for the listening session: reinforcement timing, feedback,
manual picks and the playback state machine.
"""
import pytest

from markov_music.chain.config import ChainSettings
from markov_music.chain.policy import Feedback
from markov_music.chain.store import TransitionStore
from markov_music.errors import EmptyLibraryError, PlayerError, SessionStoppedError, UnknownSongError
from markov_music.library import StaticLibrary
from markov_music.player import Seek
from markov_music.session import PlayState


class TestReinforcement:
    def test_listening_sequence_then_like(self, make_session, store):
        session = make_session()
        for song in ["A", "B", "C", "B"]:
            session.play(song)

        assert store.get_weight("A", "B") == 1.0
        assert store.get_weight("B", "C") == 1.0
        assert store.get_weight("C", "B") == 1.0
        assert len(store) == 3

        assert session.like() == 3.0
        assert store.get_weight("C", "B") == 3.0

    def test_natural_end_reinforces(self, make_session, store, player):
        store.set_weight("A", "B", 1.0)
        session = make_session()
        session.play("A")
        assert session.song_finished() == "B"
        assert store.get_weight("A", "B") == 2.0
        assert player.played == ["A", "B"]
        assert session.state is PlayState.PLAYING

    def test_next_reinforces(self, make_session, store):
        store.set_weight("A", "B", 1.0)
        session = make_session()
        session.play("A")
        session.next()
        assert store.get_weight("A", "B") == 2.0

    def test_first_song_creates_no_edge(self, make_session, store):
        session = make_session()
        first = session.start()
        assert first in ["A", "B", "C", "D", "E"]
        assert len(store) == 0
        assert session.previous_song is None

    def test_start_is_noop_once_playing(self, make_session, player):
        session = make_session()
        session.play("A")
        assert session.start() == "A"
        assert player.played == ["A"]

    def test_failed_play_does_not_reinforce(self, make_session, store, player):
        store.set_weight("A", "B", 1.0)
        session = make_session()
        session.play("A")
        player.fail_paths.add("B")

        with pytest.raises(PlayerError):
            session.song_finished()

        assert store.get_weight("A", "B") == 1.0
        assert session.current_song == "A"
        assert session.history == ["A"]

    def test_failed_auto_advance_is_retried(self, make_session, store, player):
        store.set_weight("A", "B", 5.0)
        session = make_session()
        session.play("A")
        player.fail_paths.add("B")
        player.finished = True

        with pytest.raises(PlayerError):
            session.poll()
        assert session.state is PlayState.PLAYING
        assert session.current_song == "A"

        player.fail_paths.clear()
        started = session.poll()
        assert started is not None
        assert started not in ("A", "B")
        assert player.played == ["A", started]
        assert store.get_weight("A", started) == 1.0
        assert session.poll() is None

    def test_manual_play_clears_withheld_song(self, make_session, store, player):
        store.set_weight("A", "B", 5.0)
        session = make_session()
        session.play("A")
        player.fail_paths.add("B")
        with pytest.raises(PlayerError):
            session.next()
        assert "B" in session.unplayable
        player.fail_paths.clear()
        session.play("B")
        assert "B" not in session.unplayable

    def test_weight_never_exceeds_ceiling(self, make_session, store):
        store = TransitionStore(weight_max=2.5)
        session = make_session(settings=ChainSettings(weight_max=2.5), store=store)
        for _ in range(5):
            session.play("A")
            session.play("B")
        assert store.get_weight("A", "B") == 2.5


class TestSkip:
    def test_skip_does_not_reinforce(self, make_session, store):
        store.set_weight("A", "B", 1.0)
        session = make_session()
        session.play("A")
        assert session.skip() == "B"
        assert store.get_weight("A", "B") == 1.0

    def test_skip_reinforces_when_configured(self, make_session, store):
        store.set_weight("A", "B", 1.0)
        session = make_session(settings=ChainSettings(reinforce_on_skip=True))
        session.play("A")
        session.skip()
        assert store.get_weight("A", "B") == 2.0


class TestManualPicks:
    def test_add_queues_and_reinforces_on_start(self, make_session, store):
        store.set_weight("A", "B", 1.0)
        session = make_session()
        session.play("A")
        assert session.add("D") is None
        assert session.status(include_player=False).queued == "D"
        assert store.get_weight("A", "D") == 0.0

        assert session.skip() == "D"
        assert store.get_weight("A", "D") == 1.0
        assert session.queued is None

    def test_add_from_idle_starts_immediately(self, make_session, player):
        session = make_session()
        assert session.add("C") == "C"
        assert player.played == ["C"]

    def test_failed_queued_pick_stays_queued(self, make_session, player):
        session = make_session()
        session.play("A")
        session.add("D")
        player.fail_paths.add("D")
        with pytest.raises(PlayerError):
            session.next()
        assert session.queued == "D"

    def test_unknown_song_rejected(self, make_session):
        session = make_session()
        with pytest.raises(UnknownSongError):
            session.play("Z")
        with pytest.raises(UnknownSongError):
            session.add("Z")

    def test_random_does_not_reinforce(self, make_session, store):
        session = make_session()
        session.play("A")
        song = session.random()
        assert song != "A"
        assert len(store) == 0

    def test_prev_steps_back_without_reinforcing(self, make_session, store, player):
        session = make_session()
        session.play("A")
        session.play("B")
        assert session.prev() == "A"
        assert session.current_song == "A"
        assert session.previous_song is None
        assert session.history == ["A"]
        assert dict(store.outgoing("B")) == {}
        assert player.played[-1] == "A"

    def test_prev_at_start_rewinds(self, make_session, player):
        session = make_session()
        session.play("A")
        assert session.prev() == "A"
        assert player.seeks[-1] == Seek.to(0.0)


class TestFeedback:
    def test_dislike_floors_and_prunes(self, make_session, store):
        session = make_session()
        session.play("A")
        session.play("B")
        assert session.dislike() == 0.0
        assert ("A", "B") not in store

    def test_feedback_without_predecessor_is_noop(self, make_session, store):
        session = make_session()
        session.play("A")
        assert session.like() is None
        assert len(store) == 0

    def test_feedback_with_nothing_playing(self, make_session):
        assert make_session().feedback(Feedback.LIKE) is None

    def test_tired_is_not_destructive(self, make_session, store, clock):
        session = make_session()
        session.play("A")
        session.play("B")
        session.mark_tired()

        assert store.get_weight("A", "B") == 1.0
        assert session.current_song == "B"
        assert session.status(include_player=False).tired == ("B",)

        clock.advance(61.0)
        assert session.status(include_player=False).tired == ()
        assert store.get_weight("A", "B") == 1.0

    def test_tired_song_not_selected(self, make_session, store):
        store.set_weight("A", "B", 1.0)
        store.set_weight("A", "C", 1.0)
        session = make_session()
        session.play("B")
        session.mark_tired()
        session.play("A")
        for _ in range(20):
            assert session.song_finished() == "C"
            session.play("A")


class TestStrategies:
    def test_repeat_does_not_reinforce(self, make_session, store):
        session = make_session()
        session.play("A")
        session.set_strategy("repeat")
        assert session.song_finished() == "A"
        assert store.get_weight("A", "A") == 0.0

    def test_unknown_strategy(self, make_session):
        with pytest.raises(ValueError):
            make_session().set_strategy("psychic")

    def test_strategy_instances_are_reused(self, make_session):
        session = make_session()
        markov = session.strategy
        session.set_strategy("shuffle")
        session.set_strategy("markov")
        assert session.strategy is markov


class TestLifecycle:
    def test_empty_library(self, make_session):
        session = make_session(library=StaticLibrary([]))
        with pytest.raises(EmptyLibraryError):
            session.start()

    def test_stop_is_terminal(self, make_session, player):
        session = make_session()
        session.play("A")
        session.stop()
        session.stop()
        assert session.state is PlayState.STOPPED
        assert player.stopped == 1
        with pytest.raises(SessionStoppedError):
            session.next()
        with pytest.raises(SessionStoppedError):
            session.play("B")

    def test_poll_advances_on_end_of_track(self, make_session, store, player):
        store.set_weight("A", "B", 1.0)
        session = make_session()
        session.play("A")
        assert session.poll() is None
        player.finished = True
        assert session.poll() == "B"
        assert store.get_weight("A", "B") == 2.0

    def test_pause_toggle(self, make_session, player):
        session = make_session()
        assert session.toggle_pause() is PlayState.IDLE
        session.play("A")
        assert session.toggle_pause() is PlayState.PAUSED
        assert player.paused
        assert session.toggle_pause() is PlayState.PLAYING
        assert not player.paused

    def test_volume_mute_and_seek(self, make_session, player):
        session = make_session()
        assert session.change_volume(60) == 100
        assert session.change_volume(-150) == 0
        assert session.toggle_mute() is True
        session.seek(10)
        session.seek_end()
        assert player.seeks == [Seek.by(10.0), Seek.to(-0.001)]

    def test_status_dict(self, make_session):
        session = make_session()
        session.play("A")
        session.play("B")
        status = session.status().to_dict()
        assert status["state"] == "playing"
        assert status["current"] == "B"
        assert status["previous"] == "A"
        assert status["strategy"] == "markov"
        assert status["volume"] == 50
        assert status["history_length"] == 2


class TestProperties:
    def test_repeated_likes_are_monotonic_and_bounded(self, make_session, store):
        session = make_session()
        session.play("A")
        session.play("B")
        weights = [session.like() for _ in range(80)]
        assert all(b >= a for a, b in zip(weights, weights[1:]))
        assert max(weights) == store.weight_max

    def test_expired_tired_mark_leaves_saved_store_unchanged(self, make_session, store, clock, tmp_path):
        session = make_session()
        for song in ["A", "B", "C"]:
            session.play(song)
        store.save(tmp_path / "before.db")

        session.mark_tired()
        clock.advance(120.0)
        session.poll()
        store.save(tmp_path / "after.db")

        def edges(path):
            return {(a.song, a.next, a.weight) for a in TransitionStore.load(path).associations()}

        assert edges(tmp_path / "before.db") == edges(tmp_path / "after.db")
