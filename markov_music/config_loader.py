"""
Configuration Loader - Manages YAML configuration and environment variables
"""
import copy
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from platformdirs import user_config_dir, user_data_dir, user_runtime_dir

from .chain.config import ChainSettings, SquashConfig

APP_NAME = "markov-music"

CONFIG_ENV_VAR = "MARKOV_MUSIC_CONFIG"

DEFAULTS: Dict[str, Dict[str, Any]] = {
    'library': {
        'music_directory': '~/Music',
    },
    'chain': {
        'reinforce_delta': 1.0,
        'like_delta': 2.0,
        'dislike_delta': 2.0,
        'weight_max': 100.0,
        'tired_cooldown_seconds': 3600.0,
        'sigmoid_slope': 3.0,
        'sigmoid_midpoint': 0.0,
        'reinforce_on_skip': False,
        'strategy': 'markov',
    },
    'storage': {
        'storage_file': None,
        'autosave_seconds': 300.0,
        'fallback_to_empty': False,
    },
    'player': {
        'mpv_binary': 'mpv',
        'volume_step': 5,
        'seek_seconds': 10.0,
    },
    'daemon': {
        'socket': None,
        'poll_interval': 0.5,
        'reply_timeout': 5.0,
    },
    'random': {
        'seed': None,
    },
    'logging': {
        'level': 'INFO',
        'file': None,
    },
}

_BOOL_KEYS = (('chain', 'reinforce_on_skip'), ('storage', 'fallback_to_empty'))


def default_config_path() -> Path:
    """Resolve the config file location ($MARKOV_MUSIC_CONFIG, then the user config dir)."""
    env_path = os.getenv(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path).expanduser()
    return Path(user_config_dir(APP_NAME)) / "config.yaml"


def _deep_merge(base: dict, override: dict) -> dict:
    result = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


class Config:
    """Configuration manager for markov-music"""

    def __init__(self, config_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None):
        self.config_path = Path(config_path).expanduser() if config_path else None
        loaded = self._load_config() if self.config_path else {}
        self.config = _deep_merge(_deep_merge(DEFAULTS, loaded), overrides or {})
        self._validate_config()

    @classmethod
    def default(cls) -> "Config":
        """Load the default config file if it exists, else built-in defaults."""
        path = default_config_path()
        if path.is_file():
            return cls(str(path))
        return cls()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Build a config purely from a dictionary (used by tests and tools)."""
        return cls(overrides=data)

    def _load_config(self) -> dict:
        """Load configuration from YAML file"""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        with open(self.config_path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValueError(f"Configuration root must be a mapping: {self.config_path}")
        return data

    def _validate_config(self):
        """Validate section types"""
        for section in DEFAULTS:
            if not isinstance(self.config.get(section), dict):
                raise ValueError(f"Configuration section '{section}' must be a mapping")
        for section, key in _BOOL_KEYS:
            value = self.config[section].get(key)
            # YAML "false" in quotes is a string, and bool("false") is True
            if not isinstance(value, bool):
                raise ValueError(f"Configuration value '{section}.{key}' must be true or false, got {value!r}")
        # Raises ValueError on bad deltas/ceiling
        self.chain_settings()

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """
        Get configuration value

        Args:
            section: Configuration section
            key: Configuration key
            default: Default value if not found

        Returns:
            Configuration value or default
        """
        if section not in self.config:
            return default
        value = self.config[section].get(key, default)
        return default if value is None else value

    def chain_settings(self) -> ChainSettings:
        """Build the frozen chain tuning values threaded into policy and selector."""
        chain = self.config['chain']
        return ChainSettings(
            reinforce_delta=float(chain['reinforce_delta']),
            like_delta=float(chain['like_delta']),
            dislike_delta=float(chain['dislike_delta']),
            weight_max=float(chain['weight_max']),
            tired_cooldown_seconds=float(chain['tired_cooldown_seconds']),
            squash=SquashConfig(
                slope=float(chain['sigmoid_slope']),
                midpoint=float(chain['sigmoid_midpoint']),
            ),
            reinforce_on_skip=bool(chain['reinforce_on_skip']),
        )

    @property
    def music_directory(self) -> Path:
        """Get music directory path (with environment variable override)"""
        value = os.getenv('MARKOV_MUSIC_MUSIC_DIR') or self.config['library']['music_directory']
        return Path(value).expanduser()

    @property
    def storage_file(self) -> Path:
        """Get transition store path (with environment variable override)"""
        value = os.getenv('MARKOV_MUSIC_STORAGE_FILE') or self.config['storage'].get('storage_file')
        if not value:
            return Path(user_data_dir(APP_NAME)) / "markov-music.db"
        return Path(value).expanduser()

    @property
    def autosave_seconds(self) -> float:
        """Seconds between autosaves of a dirty store (0 disables)"""
        return float(self.get('storage', 'autosave_seconds', 0.0))

    @property
    def fallback_to_empty(self) -> bool:
        """Start with an empty store when the persisted one is unreadable"""
        return bool(self.get('storage', 'fallback_to_empty', False))

    @property
    def strategy(self) -> str:
        """Get the initial selection strategy name"""
        return str(self.get('chain', 'strategy', 'markov'))

    @property
    def mpv_binary(self) -> str:
        return str(self.get('player', 'mpv_binary', 'mpv'))

    @property
    def volume_step(self) -> int:
        return int(self.get('player', 'volume_step', 5))

    @property
    def seek_seconds(self) -> float:
        return float(self.get('player', 'seek_seconds', 10.0))

    @property
    def socket_path(self) -> Path:
        """Get the daemon control socket path"""
        value = self.config['daemon'].get('socket')
        if not value:
            return Path(user_runtime_dir(APP_NAME)) / "markov-music.sock"
        return Path(value).expanduser()

    @property
    def poll_interval(self) -> float:
        return float(self.get('daemon', 'poll_interval', 0.5))

    @property
    def reply_timeout(self) -> float:
        return float(self.get('daemon', 'reply_timeout', 5.0))

    @property
    def random_seed(self) -> Optional[int]:
        """Get the random seed override (with environment variable override)"""
        value = os.getenv('MARKOV_MUSIC_SEED')
        if value is None:
            value = self.config['random'].get('seed')
        return None if value in (None, '') else int(value)

    @property
    def log_level(self) -> str:
        return str(self.get('logging', 'level', 'INFO')).upper()

    @property
    def log_file(self) -> Optional[str]:
        return self.get('logging', 'file', None)
