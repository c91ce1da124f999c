"""
Player backends.

The session only ever talks to the abstract Player; MpvPlayer drives an
``mpv --idle`` process over its JSON IPC socket.
"""
from __future__ import annotations

import json
import logging
import os
import select
import shutil
import socket
import subprocess
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from .errors import PlayerError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Seek:
    """A seek target in seconds; negative absolute values count from the end."""
    seconds: float
    absolute: bool = False

    @classmethod
    def to(cls, seconds: float) -> "Seek":
        return cls(seconds, absolute=True)

    @classmethod
    def by(cls, seconds: float) -> "Seek":
        return cls(seconds, absolute=False)


class Player(ABC):
    """Audio backend contract consumed by the session."""

    @abstractmethod
    def play(self, path: str) -> None:
        """Start playing ``path`` immediately. Raises PlayerError on failure."""

    @abstractmethod
    def stop(self) -> None:
        pass

    @abstractmethod
    def is_paused(self) -> bool:
        pass

    @abstractmethod
    def set_pause(self, paused: bool) -> None:
        pass

    @abstractmethod
    def is_muted(self) -> bool:
        pass

    @abstractmethod
    def set_mute(self, muted: bool) -> None:
        pass

    @abstractmethod
    def get_volume(self) -> int:
        pass

    @abstractmethod
    def set_volume(self, volume: int) -> None:
        """Set volume in [0, 100]."""

    @abstractmethod
    def seek(self, target: Seek) -> None:
        pass

    @abstractmethod
    def percent_pos(self) -> int:
        """Playback position of the current track as a percentage."""

    @abstractmethod
    def is_finished(self) -> bool:
        """True once after the current track ended, by playing out or by a playback error."""

    def close(self) -> None:
        """Release the backend (default: nothing to do)."""
        pass


class MpvPlayer(Player):
    """
    mpv driven through ``--input-ipc-server``.

    One persistent connection is used for commands; asynchronous mpv events
    arriving on it are inspected for ``end-file`` (reason ``eof`` or
    ``error``). play() returns only once mpv reports the file loaded.
    """

    def __init__(
        self,
        binary: str = "mpv",
        socket_path: Optional[str] = None,
        extra_args: Sequence[str] = (),
        timeout: float = 5.0,
    ):
        self.binary = binary
        self.extra_args = list(extra_args)
        self.timeout = timeout
        self._own_socket_dir: Optional[str] = None
        if socket_path is None:
            self._own_socket_dir = tempfile.mkdtemp(prefix="markov-music-mpv-")
            socket_path = os.path.join(self._own_socket_dir, "mpv.sock")
        self.socket_path = socket_path
        self._proc: Optional[subprocess.Popen] = None
        self._sock: Optional[socket.socket] = None
        self._buffer = b""
        self._request_id = 0
        self._finished = False
        self._load_state: Optional[str] = None
        self._load_error: Optional[str] = None

    # ------------------------------------------------------------------
    # Process / IPC plumbing
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._proc is not None:
            return
        if shutil.which(self.binary) is None:
            raise PlayerError(f"mpv binary not found: {self.binary}")
        cmd = [
            self.binary,
            "--idle=yes",
            "--no-video",
            "--no-terminal",
            "--keep-open=no",
            f"--input-ipc-server={self.socket_path}",
            *self.extra_args,
        ]
        logger.debug(f"Starting player: {' '.join(cmd)}")
        try:
            self._proc = subprocess.Popen(cmd, stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL)
        except OSError as e:
            raise PlayerError(f"Failed to start mpv: {e}") from e

        deadline = time.monotonic() + self.timeout
        while True:
            if self._proc.poll() is not None:
                raise PlayerError(f"mpv exited during startup (code {self._proc.returncode})")
            try:
                sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
                sock.connect(self.socket_path)
                self._sock = sock
                break
            except OSError:
                sock.close()
                if time.monotonic() > deadline:
                    self.close()
                    raise PlayerError(f"Timed out waiting for mpv IPC socket {self.socket_path}")
                time.sleep(0.05)
        logger.info("mpv player started")

    def _ensure_started(self) -> None:
        if self._sock is None:
            self.start()

    def _read_message(self, timeout: Optional[float]) -> Optional[Dict[str, Any]]:
        while b"\n" not in self._buffer:
            ready, _, _ = select.select([self._sock], [], [], timeout)
            if not ready:
                return None
            chunk = self._sock.recv(4096)
            if not chunk:
                raise PlayerError("mpv closed the IPC connection")
            self._buffer += chunk
        line, self._buffer = self._buffer.split(b"\n", 1)
        try:
            return json.loads(line.decode("utf-8", errors="replace"))
        except json.JSONDecodeError:
            logger.debug(f"Ignoring unparsable mpv message: {line[:200]!r}")
            return {}

    def _handle_event(self, message: Dict[str, Any]) -> None:
        event = message.get("event")
        if event == "end-file":
            reason = message.get("reason")
            if reason == "error" and self._load_state == "pending":
                self._load_state = "error"
                self._load_error = message.get("file_error") or "unknown error"
            elif reason in ("eof", "error"):
                # A track that dies mid-way ends it just the same
                self._finished = True
        elif event == "start-file":
            self._finished = False
        elif event in ("file-loaded", "playback-restart") and self._load_state == "pending":
            self._load_state = "loaded"

    def _wait_until_loaded(self, path: str) -> None:
        deadline = time.monotonic() + self.timeout
        try:
            while self._load_state == "pending":
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise PlayerError(f"mpv did not start {path}")
                message = self._read_message(remaining)
                if message and "event" in message:
                    self._handle_event(message)
        except OSError as e:
            raise PlayerError(f"mpv IPC error: {e}") from e
        if self._load_state == "error":
            raise PlayerError(f"mpv could not play {path}: {self._load_error}")

    def _command(self, *args: Any) -> Any:
        self._ensure_started()
        self._request_id += 1
        request_id = self._request_id
        payload = json.dumps({"command": list(args), "request_id": request_id}, separators=(",", ":"))
        try:
            self._sock.sendall(payload.encode("utf-8") + b"\n")
            deadline = time.monotonic() + self.timeout
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise PlayerError(f"mpv did not answer {args[0]!r}")
                message = self._read_message(remaining)
                if message is None:
                    continue
                if "event" in message:
                    self._handle_event(message)
                    continue
                if message.get("request_id") != request_id:
                    continue
                if message.get("error") != "success":
                    raise PlayerError(f"mpv {args[0]} failed: {message.get('error')}")
                return message.get("data")
        except OSError as e:
            raise PlayerError(f"mpv IPC error: {e}") from e

    def _drain_events(self) -> None:
        if self._sock is None:
            return
        try:
            while True:
                message = self._read_message(0)
                if message is None:
                    return
                if "event" in message:
                    self._handle_event(message)
        except OSError as e:
            raise PlayerError(f"mpv IPC error: {e}") from e

    def _get(self, name: str, default: Any = None) -> Any:
        try:
            value = self._command("get_property", name)
        except PlayerError as e:
            # Properties like percent-pos are unavailable while idle
            logger.debug(f"get_property {name}: {e}")
            return default
        return default if value is None else value

    # ------------------------------------------------------------------
    # Player contract
    # ------------------------------------------------------------------

    def play(self, path: str) -> None:
        if not Path(path).is_file():
            raise PlayerError(f"No such file: {path}")
        self._load_state, self._load_error = "pending", None
        try:
            self._command("loadfile", str(path), "replace")
            self._wait_until_loaded(str(path))
        finally:
            self._load_state = None
        self._finished = False
        self._command("set_property", "pause", False)

    def stop(self) -> None:
        if self._sock is not None:
            self._command("stop")
        self._finished = False

    def is_paused(self) -> bool:
        return bool(self._get("pause", False))

    def set_pause(self, paused: bool) -> None:
        self._command("set_property", "pause", bool(paused))

    def is_muted(self) -> bool:
        return bool(self._get("mute", False))

    def set_mute(self, muted: bool) -> None:
        self._command("set_property", "mute", bool(muted))

    def get_volume(self) -> int:
        return int(round(float(self._get("volume", 100))))

    def set_volume(self, volume: int) -> None:
        self._command("set_property", "volume", max(0, min(100, int(volume))))

    def seek(self, target: Seek) -> None:
        self._command("seek", float(target.seconds), "absolute" if target.absolute else "relative")

    def percent_pos(self) -> int:
        return int(float(self._get("percent-pos", 0)))

    def is_finished(self) -> bool:
        self._drain_events()
        finished, self._finished = self._finished, False
        return finished

    def close(self) -> None:
        if self._sock is not None:
            try:
                self._sock.sendall(b'{"command":["quit"]}\n')
            except OSError:
                pass
            self._sock.close()
            self._sock = None
        if self._proc is not None:
            try:
                self._proc.wait(timeout=self.timeout)
            except subprocess.TimeoutExpired:
                logger.warning("mpv did not quit; terminating")
                self._proc.terminate()
                self._proc.wait(timeout=self.timeout)
            self._proc = None
        if self._own_socket_dir is not None:
            shutil.rmtree(self._own_socket_dir, ignore_errors=True)
            self._own_socket_dir = None


def mpv_available(binary: str = "mpv") -> bool:
    return shutil.which(binary) is not None


__all__ = ["MpvPlayer", "Player", "Seek", "mpv_available"]
