# -*- coding: utf-8 -*-
"""
markov-music - Main Application
Music player that picks the next song from a Markov chain learned from your listening
"""
import argparse
import json
import logging
import sys
import uuid
from typing import List, Optional

import numpy as np

from markov_music.chain.selector import Selector
from markov_music.chain.store import TransitionStore
from markov_music.config_loader import Config
from markov_music.daemon import run_daemon, send_command
from markov_music.errors import EmptyLibraryError, MarkovMusicError, ProtocolError, StorageError
from markov_music.library import Library
from markov_music.logging_utils import add_logging_args, configure_logging, format_count, resolve_log_level
from markov_music.player import MpvPlayer
from markov_music.session import Session

logger = logging.getLogger("markov_music.app")


class MarkovMusicApp:
    """Main application orchestrator"""

    def __init__(self, config: Config):
        self.config = config
        self.settings = config.chain_settings()
        self.library = Library(config.music_directory)
        seed = config.random_seed
        self.rng = np.random.default_rng(seed)
        if seed is not None:
            logger.info(f"Using fixed random seed {seed}")

    def load_store(self) -> TransitionStore:
        return TransitionStore.load_or_empty(
            self.config.storage_file,
            weight_max=self.settings.weight_max,
            fallback_to_empty=self.config.fallback_to_empty,
        )

    def run_daemon(self, autostart: bool = True) -> int:
        store = self.load_store()
        if not self.library.songs():
            raise EmptyLibraryError(f"No playable songs under {self.library.root}")

        player = MpvPlayer(binary=self.config.mpv_binary)
        session = Session(
            store,
            self.library,
            player,
            settings=self.settings,
            strategy=self.config.strategy,
            rng=self.rng,
        )
        try:
            saved = run_daemon(
                session,
                storage_path=self.config.storage_file,
                socket_path=self.config.socket_path,
                autosave_seconds=self.config.autosave_seconds,
                poll_interval=self.config.poll_interval,
                reply_timeout=self.config.reply_timeout,
                autostart=autostart,
            )
        finally:
            player.close()
        return 0 if saved else 1

    def stats(self, song: Optional[str] = None, top: int = 10) -> int:
        store = TransitionStore.load(self.config.storage_file, weight_max=self.settings.weight_max)
        print(f"Store: {self.config.storage_file}")
        print(f"  {format_count(len(store), 'association')} between {format_count(len(store.songs()), 'song')}")

        if song is None:
            print(f"\nTop {top} transitions:")
            for assoc in store.top_edges(top):
                print(f"  {assoc.weight:8.3f}  {assoc.song}  ->  {assoc.next}")
            return 0

        selector = Selector(self.library, self.settings.squash, self.rng)
        probs = selector.probabilities(song, store)
        if not probs:
            print(f"\n{song} is a sink; the next song would be a random library pick")
            return 0
        print(f"\nNext-song distribution after {song}:")
        for next_song, p in sorted(probs.items(), key=lambda item: -item[1]):
            print(f"  {p:6.1%}  (w={store.get_weight(song, next_song):.3f})  {next_song}")
        return 0


def _ctl_args(command: str, value: Optional[str], config: Config) -> dict:
    if command in ("play", "add"):
        if not value:
            raise ValueError(f"'{command}' needs a song identifier")
        return {"song": value}
    if command == "strategy":
        if not value:
            raise ValueError("'strategy' needs a name (markov, shuffle, random, repeat, loop_back)")
        return {"name": value}
    if command == "volume":
        return {"delta": int(value) if value else config.volume_step}
    if command == "seek":
        if value in ("begin", "end"):
            return {"to": value}
        return {"seconds": float(value) if value else config.seek_seconds}
    return {}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="markov-music",
        description="Dynamic music player that chooses your music based on a Markov chain",
    )
    parser.add_argument(
        "-c", "--config",
        metavar="FILE",
        help="Use a specific configuration file instead of the default",
    )
    parser.add_argument(
        "--music-dir",
        metavar="DIR",
        help="Override library.music_directory",
    )
    parser.add_argument(
        "--storage-file",
        metavar="FILE",
        help="Override storage.storage_file",
    )
    parser.add_argument(
        "--seed",
        type=int,
        help="Fix the random seed (reproducible selection)",
    )
    add_logging_args(parser)

    sub = parser.add_subparsers(dest="command", required=True)

    daemon = sub.add_parser("daemon", help="Run the player with a control socket")
    daemon.add_argument("--socket", metavar="PATH", help="Override daemon.socket")
    daemon.add_argument(
        "--no-autostart",
        action="store_true",
        help="Wait for a 'start' command instead of playing immediately",
    )

    ctl = sub.add_parser("ctl", help="Send a command to a running daemon")
    ctl.add_argument("cmd", help="ping, status, next, skip, prev, play, add, random, like, "
                                 "dislike, tired, strategy, pause, mute, volume, seek, save, stop")
    ctl.add_argument("value", nargs="?", help="Argument for play/add/strategy/volume/seek")
    ctl.add_argument("--socket", metavar="PATH", help="Override daemon.socket")

    stats = sub.add_parser("stats", help="Summarize the learned transition store")
    stats.add_argument("--song", help="Show the next-song distribution for this identifier")
    stats.add_argument("--top", type=int, default=10, help="Number of strongest transitions to list")
    return parser


def _load_config(args) -> Config:
    overrides: dict = {}
    if args.music_dir:
        overrides.setdefault('library', {})['music_directory'] = args.music_dir
    if args.storage_file:
        overrides.setdefault('storage', {})['storage_file'] = args.storage_file
    if args.seed is not None:
        overrides.setdefault('random', {})['seed'] = args.seed
    if getattr(args, "socket", None):
        overrides.setdefault('daemon', {})['socket'] = args.socket

    if args.config:
        return Config(args.config, overrides=overrides)
    config = Config.default()
    if overrides:
        config = Config(str(config.config_path) if config.config_path else None, overrides=overrides)
    return config


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = _load_config(args)
    except (FileNotFoundError, ValueError, OSError) as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        return 1

    configure_logging(
        level=resolve_log_level(args, default=config.log_level),
        log_file=args.log_file or config.log_file,
        session_id=uuid.uuid4().hex[:8] if args.command == "daemon" else None,
    )

    if args.command == "ctl":
        try:
            reply = send_command(
                config.socket_path,
                args.cmd,
                timeout=config.reply_timeout + 1.0,
                **_ctl_args(args.cmd, args.value, config),
            )
        except (ProtocolError, ValueError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        if not reply.get("ok"):
            print(f"Error: {reply.get('error')}", file=sys.stderr)
            return 1
        print(json.dumps(reply.get("result"), indent=2, ensure_ascii=False))
        return 0

    app = MarkovMusicApp(config)
    try:
        if args.command == "daemon":
            return app.run_daemon(autostart=not args.no_autostart)
        return app.stats(song=args.song, top=args.top)
    except StorageError as e:
        logger.error(f"Can't read markov data: {e}")
        return 1
    except EmptyLibraryError as e:
        logger.error(str(e))
        return 1
    except (MarkovMusicError, OSError) as e:
        logger.error(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
