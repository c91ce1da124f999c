"""
Tests for the mpv JSON IPC backend against an in-process fake mpv.
"""
import json
import socket
import threading

import pytest

from markov_music.errors import PlayerError
from markov_music.player import MpvPlayer, Seek, mpv_available


class FakeMpv(threading.Thread):
    """Answers mpv IPC requests on one end of a socketpair."""

    def __init__(self, sock):
        super().__init__(daemon=True)
        self.sock = sock
        self.requests = []
        self.properties = {"volume": 42.0, "mute": False, "pause": False}
        self.pending_events = []
        self.load_events = [{"event": "start-file"}, {"event": "file-loaded"}]
        self.fail = set()

    def run(self):
        with self.sock, self.sock.makefile("rwb") as stream:
            for line in stream:
                request = json.loads(line)
                command = request["command"]
                self.requests.append(command)
                for event in self.pending_events:
                    stream.write(json.dumps(event).encode() + b"\n")
                self.pending_events = []
                if "request_id" not in request:
                    stream.flush()
                    continue
                reply = {"request_id": request["request_id"], "error": "success", "data": None}
                if command[0] in self.fail:
                    reply["error"] = "invalid parameter"
                elif command[0] == "get_property":
                    if command[1] in self.properties:
                        reply["data"] = self.properties[command[1]]
                    else:
                        reply["error"] = "property unavailable"
                elif command[0] == "set_property":
                    self.properties[command[1]] = command[2]
                stream.write(json.dumps(reply).encode() + b"\n")
                if command[0] == "loadfile" and reply["error"] == "success":
                    for event in self.load_events:
                        stream.write(json.dumps(event).encode() + b"\n")
                stream.flush()


@pytest.fixture()
def mpv(tmp_path):
    ours, theirs = socket.socketpair()
    fake = FakeMpv(theirs)
    fake.start()
    player = MpvPlayer(socket_path=str(tmp_path / "mpv.sock"), timeout=2.0)
    player._sock = ours
    yield player, fake
    player.close()
    fake.join(timeout=2)


def test_properties_round_trip(mpv):
    player, fake = mpv
    assert player.get_volume() == 42
    player.set_volume(150)
    assert fake.properties["volume"] == 100
    player.set_mute(True)
    assert player.is_muted() is True
    player.set_pause(True)
    assert player.is_paused() is True


def test_unavailable_property_uses_default(mpv):
    player, _ = mpv
    assert player.percent_pos() == 0


def test_play_loads_file_and_unpauses(mpv, tmp_path):
    player, fake = mpv
    song = tmp_path / "song.flac"
    song.write_bytes(b"")
    player.play(str(song))
    assert fake.requests[0] == ["loadfile", str(song), "replace"]
    assert fake.requests[1] == ["set_property", "pause", False]


def test_play_missing_file(mpv, tmp_path):
    player, fake = mpv
    with pytest.raises(PlayerError):
        player.play(str(tmp_path / "absent.mp3"))
    assert fake.requests == []


def test_seek_modes(mpv):
    player, fake = mpv
    player.seek(Seek.by(-10))
    player.seek(Seek.to(0))
    assert fake.requests == [["seek", -10.0, "relative"], ["seek", 0.0, "absolute"]]


def test_command_error_raises(mpv):
    player, fake = mpv
    fake.fail.add("seek")
    with pytest.raises(PlayerError, match="invalid parameter"):
        player.seek(Seek.by(5))


def test_end_of_file_event_detected(mpv):
    player, fake = mpv
    assert player.is_finished() is False
    fake.pending_events = [{"event": "end-file", "reason": "stop"}]
    player.get_volume()
    assert player.is_finished() is False

    fake.pending_events = [{"event": "end-file", "reason": "eof"}]
    player.get_volume()
    assert player.is_finished() is True
    assert player.is_finished() is False


def test_missing_binary():
    player = MpvPlayer(binary="definitely-not-mpv-binary")
    try:
        with pytest.raises(PlayerError):
            player.start()
    finally:
        player.close()
    assert not mpv_available("definitely-not-mpv-binary")


def test_unplayable_file_raises(mpv, tmp_path):
    player, fake = mpv
    song = tmp_path / "corrupt.mp3"
    song.write_bytes(b"not audio")
    fake.load_events = [
        {"event": "start-file"},
        {"event": "end-file", "reason": "error", "file_error": "unrecognized file format"},
    ]
    with pytest.raises(PlayerError, match="unrecognized file format"):
        player.play(str(song))
    assert ["set_property", "pause", False] not in fake.requests
    assert player.is_finished() is False


def test_play_times_out_without_load_confirmation(mpv, tmp_path):
    player, fake = mpv
    player.timeout = 0.2
    song = tmp_path / "song.ogg"
    song.write_bytes(b"")
    fake.load_events = [{"event": "start-file"}]
    with pytest.raises(PlayerError, match="did not start"):
        player.play(str(song))


def test_error_while_playing_counts_as_finished(mpv):
    player, _ = mpv
    player._handle_event({"event": "end-file", "reason": "error", "file_error": "read error"})
    assert player.is_finished() is True
