#!/usr/bin/env python3
"""
Daemon - single-writer event loop with a Unix-socket control plane

All session and store mutations happen on the thread running EventLoop.run().
The control server's threads only decode requests and hand them over through
a queue, then wait for the loop's reply. ``status`` is answered from the last
published snapshot without touching the queue.

Protocol Version: 1 (newline-delimited JSON, one request and one reply per line)

Requests (client -> daemon):
  {"cmd":"ping","request_id":"<uuid>","protocol_version":1}
  {"cmd":"status","request_id":"<uuid>"}
  {"cmd":"next"} {"cmd":"skip"} {"cmd":"prev"} {"cmd":"random"} {"cmd":"start"}
  {"cmd":"play","song":"Artist/Album/01.flac"}
  {"cmd":"add","song":"Artist/Album/02.flac"}
  {"cmd":"like"} {"cmd":"dislike"} {"cmd":"tired"}
  {"cmd":"strategy","name":"shuffle"}
  {"cmd":"pause"} {"cmd":"mute"}
  {"cmd":"volume","delta":5}
  {"cmd":"seek","seconds":-10} {"cmd":"seek","to":"begin"|"end"}
  {"cmd":"save"} {"cmd":"stop"}

Replies (daemon -> client):
  {"request_id":"<uuid>","ok":true,"result":...}
  {"request_id":"<uuid>","ok":false,"error":"..."}
"""
from __future__ import annotations

import json
import logging
import os
import queue
import signal
import socket
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from .chain.policy import Feedback
from .chain.store import save_quietly
from .errors import EmptyLibraryError, MarkovMusicError, PlayerError, ProtocolError
from .session import PlayState, Session, SessionStatus

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 1

COMMANDS = frozenset({
    "ping", "status", "start", "next", "skip", "prev", "play", "add", "random",
    "like", "dislike", "tired", "strategy", "pause", "mute", "volume", "seek",
    "save", "stop",
})


@dataclass
class Command:
    cmd: str
    args: Dict[str, Any] = field(default_factory=dict)
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    reply: Optional["queue.Queue[Dict[str, Any]]"] = None
    cancelled: bool = False
    started: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def claim(self) -> bool:
        """Mark the command as running unless its submitter already gave up on it."""
        with self._lock:
            if self.cancelled:
                return False
            self.started = True
            return True

    def cancel(self) -> bool:
        """Withdraw the command; False when the loop has already started it."""
        with self._lock:
            if self.started:
                return False
            self.cancelled = True
            return True


def decode_request(line: Union[str, bytes]) -> Command:
    """Parse one NDJSON request line into a Command."""
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError("Request must be a JSON object")

    cmd = data.pop("cmd", None)
    if not isinstance(cmd, str) or cmd not in COMMANDS:
        raise ProtocolError(f"Unknown command: {cmd!r}")
    version = data.pop("protocol_version", PROTOCOL_VERSION)
    if version != PROTOCOL_VERSION:
        raise ProtocolError(f"Unsupported protocol version {version!r}")
    request_id = data.pop("request_id", None) or str(uuid.uuid4())
    return Command(cmd=cmd, args=data, request_id=str(request_id))


def encode_reply(request_id: Optional[str], ok: bool, result: Any = None, error: Optional[str] = None) -> bytes:
    reply: Dict[str, Any] = {"request_id": request_id, "ok": ok}
    if ok:
        reply["result"] = result
    else:
        reply["error"] = error
    return (json.dumps(reply, ensure_ascii=False) + "\n").encode("utf-8")


# ─────────────────────────────────────────────────────────────────────────────
# Event loop
# ─────────────────────────────────────────────────────────────────────────────

class EventLoop:
    """
    Consumes commands in arrival order and applies them to the session.

    Between commands it polls the player for end-of-track and autosaves a
    dirty store every ``autosave_seconds``.
    """

    def __init__(
        self,
        session: Session,
        storage_path: Union[str, Path],
        autosave_seconds: float = 0.0,
        poll_interval: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session = session
        self.storage_path = Path(storage_path)
        self.autosave_seconds = autosave_seconds
        self.poll_interval = poll_interval
        self._clock = clock
        self._last_save = clock()
        self.commands: "queue.Queue[Command]" = queue.Queue()
        self._running = False
        self._stop_requested = False
        self.saved_on_exit = False
        self._status = session.status(include_player=False)
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Any]] = {
            "ping": lambda args: "pong",
            "status": lambda args: self._publish().to_dict(),
            "start": lambda args: self.session.start(),
            "next": lambda args: self.session.next(),
            "skip": lambda args: self.session.skip(),
            "prev": lambda args: self.session.prev(),
            "play": lambda args: self.session.play(_require(args, "song")),
            "add": lambda args: self.session.add(_require(args, "song")),
            "random": lambda args: self.session.random(),
            "like": lambda args: self.session.feedback(Feedback.LIKE),
            "dislike": lambda args: self.session.feedback(Feedback.DISLIKE),
            "tired": lambda args: self.session.feedback(Feedback.TIRED),
            "strategy": lambda args: self.session.set_strategy(_require(args, "name")),
            "pause": lambda args: self.session.toggle_pause().value,
            "mute": lambda args: self.session.toggle_mute(),
            "volume": lambda args: self.session.change_volume(int(_require(args, "delta"))),
            "seek": self._seek,
            "save": lambda args: self.save(),
            "stop": self._stop,
        }

    # Thread-safe entry points -------------------------------------------

    def submit(self, cmd: str, args: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None,
               request_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Enqueue a command and block until the loop answers.

        On timeout the command is withdrawn, so a late loop never applies
        something the caller was told had failed. A command the loop already
        started gets one more timeout window to finish.
        """
        command = Command(cmd=cmd, args=dict(args or {}), reply=queue.Queue(maxsize=1))
        if request_id:
            command.request_id = request_id
        self.commands.put(command)
        try:
            return command.reply.get(timeout=timeout)
        except queue.Empty:
            pass
        if command.cancel():
            logger.warning(f"Timed out waiting for {cmd}; withdrawn")
            return {"request_id": command.request_id, "ok": False, "error": f"Timed out waiting for {cmd}; not applied"}
        try:
            return command.reply.get(timeout=timeout)
        except queue.Empty:
            return {"request_id": command.request_id, "ok": False, "error": f"Timed out waiting for {cmd}; still running"}

    def post(self, cmd: str, args: Optional[Dict[str, Any]] = None) -> None:
        """Enqueue a command without waiting for its result."""
        self.commands.put(Command(cmd=cmd, args=dict(args or {})))

    def request_stop(self) -> None:
        """Ask the loop to stop at its next turn. Safe to call from a signal handler."""
        self._stop_requested = True

    def status_snapshot(self) -> SessionStatus:
        return self._status

    @property
    def running(self) -> bool:
        return self._running

    # Loop thread only ---------------------------------------------------

    def dispatch(self, command: Command) -> Optional[Dict[str, Any]]:
        if not command.claim():
            logger.debug(f"Skipping withdrawn command {command.cmd} ({command.request_id})")
            return None
        handler = self._handlers.get(command.cmd)
        if handler is None:
            reply = {"request_id": command.request_id, "ok": False, "error": f"Unknown command: {command.cmd}"}
        else:
            try:
                result = handler(command.args)
                reply = {"request_id": command.request_id, "ok": True, "result": result}
            except EmptyLibraryError as e:
                if command.reply is not None:
                    command.reply.put({"request_id": command.request_id, "ok": False, "error": str(e)})
                raise
            except (MarkovMusicError, ValueError, KeyError, TypeError) as e:
                logger.warning(f"Command {command.cmd} failed: {e}")
                reply = {"request_id": command.request_id, "ok": False, "error": str(e)}
        self._publish()
        if command.reply is not None:
            command.reply.put(reply)
        return reply

    def tick(self) -> None:
        try:
            self.session.poll()
        except PlayerError as e:
            logger.error(f"Could not start next song: {e}")
        if self.autosave_seconds > 0 and self.session.store.dirty:
            if self._clock() - self._last_save >= self.autosave_seconds:
                save_quietly(self.session.store, self.storage_path, logger)
                self._last_save = self._clock()
        self._publish()

    def run(self) -> None:
        """Process commands until a stop command arrives, then save the store."""
        self._running = True
        logger.info("Event loop started")
        try:
            while self._running:
                try:
                    command = self.commands.get(timeout=self.poll_interval)
                except queue.Empty:
                    command = None
                if command is not None:
                    self.dispatch(command)
                if self._stop_requested and self._running:
                    logger.info("Stop requested")
                    self.dispatch(Command("stop"))
                if self._running:
                    self.tick()
        except EmptyLibraryError as e:
            logger.error(f"{e}; shutting down")
            raise
        finally:
            self._running = False
            self.shutdown()

    def shutdown(self) -> bool:
        if self.session.state is not PlayState.STOPPED:
            try:
                self.session.stop()
            except PlayerError as e:
                logger.warning(f"Player did not stop cleanly: {e}")
        saved = save_quietly(self.session.store, self.storage_path, logger)
        self.saved_on_exit = saved
        self.session.summary.log()
        self._publish()
        self._drain_pending()
        return saved

    def save(self) -> str:
        self.session.store.save(self.storage_path)
        self._last_save = self._clock()
        return str(self.storage_path)

    def _publish(self) -> SessionStatus:
        self._status = self.session.status()
        return self._status

    def _drain_pending(self) -> None:
        while True:
            try:
                command = self.commands.get_nowait()
            except queue.Empty:
                return
            if command.reply is not None:
                command.reply.put({"request_id": command.request_id, "ok": False, "error": "Daemon is shutting down"})

    def _seek(self, args: Dict[str, Any]) -> None:
        target = args.get("to")
        if target == "begin":
            self.session.seek_begin()
        elif target == "end":
            self.session.seek_end()
        elif target is not None:
            raise ValueError(f"Unknown seek target {target!r}")
        else:
            self.session.seek(float(_require(args, "seconds")))

    def _stop(self, args: Dict[str, Any]) -> str:
        self.session.stop()
        self._running = False
        return PlayState.STOPPED.value


def _require(args: Dict[str, Any], key: str) -> Any:
    if key not in args or args[key] in (None, ""):
        raise ValueError(f"Missing argument: {key}")
    return args[key]


# ─────────────────────────────────────────────────────────────────────────────
# Control server
# ─────────────────────────────────────────────────────────────────────────────

class ControlServer:
    """
    Unix socket listener feeding the event loop.

    One accept thread plus one thread per client; each request line is
    answered with exactly one reply line.
    """

    def __init__(self, socket_path: Union[str, Path], loop: EventLoop, reply_timeout: float = 5.0):
        self.socket_path = str(socket_path)
        self.loop = loop
        self.reply_timeout = reply_timeout
        self._running = False
        self._server_sock: Optional[socket.socket] = None
        self._accept_thread: Optional[threading.Thread] = None
        self._client_threads: list = []
        self._lock = threading.Lock()

    def start(self) -> None:
        if self._running:
            logger.warning("ControlServer already started")
            return

        socket_dir = os.path.dirname(self.socket_path)
        if socket_dir:
            os.makedirs(socket_dir, mode=0o700, exist_ok=True)
        if os.path.exists(self.socket_path):
            if _socket_alive(self.socket_path):
                raise OSError(f"Another daemon is listening on {self.socket_path}")
            os.unlink(self.socket_path)

        self._server_sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self._server_sock.bind(self.socket_path)
        os.chmod(self.socket_path, 0o600)
        self._server_sock.listen(5)
        self._running = True

        self._accept_thread = threading.Thread(target=self._accept_loop, name="control-accept", daemon=True)
        self._accept_thread.start()
        logger.info(f"Control socket listening on {self.socket_path}")

    def _accept_loop(self) -> None:
        while self._running:
            try:
                client_sock, _ = self._server_sock.accept()
            except OSError:
                if self._running:
                    logger.warning("Error accepting control connection")
                break
            thread = threading.Thread(target=self._handle_client, args=(client_sock,), daemon=True)
            thread.start()
            with self._lock:
                self._client_threads = [t for t in self._client_threads if t.is_alive()]
                self._client_threads.append(thread)

    def _handle_client(self, client_sock: socket.socket) -> None:
        with client_sock, client_sock.makefile("rwb") as stream:
            for line in stream:
                if not line.strip():
                    continue
                stream.write(self.handle_line(line))
                stream.flush()
                if not self._running:
                    break
        logger.debug("Control connection closed")

    def handle_line(self, line: Union[str, bytes]) -> bytes:
        """Decode one request, route it, and encode the reply."""
        try:
            command = decode_request(line)
        except ProtocolError as e:
            return encode_reply(None, False, error=str(e))

        if command.cmd == "status":
            return encode_reply(command.request_id, True, self.loop.status_snapshot().to_dict())
        if not self.loop.running:
            return encode_reply(command.request_id, False, error="Daemon is not running")

        reply = self.loop.submit(command.cmd, command.args, timeout=self.reply_timeout,
                                 request_id=command.request_id)
        return encode_reply(reply.get("request_id"), reply.get("ok", False),
                            reply.get("result"), reply.get("error"))

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._server_sock is not None:
            try:
                self._server_sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            self._server_sock.close()
            self._server_sock = None
        try:
            os.unlink(self.socket_path)
        except FileNotFoundError:
            pass
        logger.info("Control socket closed")


def _socket_alive(path: str) -> bool:
    conn = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        conn.connect(path)
        return True
    except OSError:
        return False
    finally:
        conn.close()


# ─────────────────────────────────────────────────────────────────────────────
# Client
# ─────────────────────────────────────────────────────────────────────────────

def send_command(socket_path: Union[str, Path], cmd: str, timeout: float = 5.0, **args: Any) -> Dict[str, Any]:
    """Send one request to a running daemon and return its decoded reply."""
    request = {"cmd": cmd, "request_id": str(uuid.uuid4()), "protocol_version": PROTOCOL_VERSION, **args}
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        sock.connect(str(socket_path))
        sock.sendall(json.dumps(request).encode("utf-8") + b"\n")
        chunks = []
        while True:
            chunk = sock.recv(4096)
            if not chunk:
                break
            chunks.append(chunk)
            if chunk.endswith(b"\n"):
                break
    except OSError as e:
        raise ProtocolError(f"Cannot reach daemon at {socket_path}: {e}") from e
    finally:
        sock.close()

    raw = b"".join(chunks).strip()
    if not raw:
        raise ProtocolError("Daemon closed the connection without replying")
    try:
        return json.loads(raw.decode("utf-8"))
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Invalid reply from daemon: {e}") from e


def run_daemon(
    session: Session,
    storage_path: Union[str, Path],
    socket_path: Union[str, Path],
    autosave_seconds: float = 0.0,
    poll_interval: float = 0.5,
    reply_timeout: float = 5.0,
    autostart: bool = True,
) -> bool:
    """
    Serve until stopped. Returns True when the store was saved on the way out.

    Raises:
        EmptyLibraryError: nothing playable exists
    """
    loop = EventLoop(session, storage_path, autosave_seconds=autosave_seconds, poll_interval=poll_interval)
    server = ControlServer(socket_path, loop, reply_timeout=reply_timeout)
    if autostart:
        loop.post("start")
    restore_signal = _install_stop_signal(loop)
    try:
        server.start()
        loop.run()
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        restore_signal()
        server.stop()
    return loop.saved_on_exit


def _install_stop_signal(loop: EventLoop) -> Callable[[], None]:
    """
    Route SIGTERM into a ``stop`` command so the store is saved on the way out.

    Returns a callable that puts the previous handler back. Off the main thread
    Python refuses to install handlers, so nothing is changed there.
    """
    if threading.current_thread() is not threading.main_thread():
        return lambda: None

    def _on_term(signum, frame):
        loop.request_stop()

    previous = signal.signal(signal.SIGTERM, _on_term)
    return lambda: signal.signal(signal.SIGTERM, previous if previous is not None else signal.SIG_DFL)
