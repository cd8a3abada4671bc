"""
User Preferences Manager for MoisSense Gateway

Manages operator-specific configuration that persists across restarts
(most importantly the Auto/Manual operating mode, which is never sent to
the field node). Keeps the default config.yaml intact while allowing
user customizations, and lets environment variables override both.
"""

import copy
import logging
import os

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = os.path.join(os.path.dirname(__file__), '..', '..', 'config')

DEFAULT_CONFIG = {
    'device': {
        'api_url': 'http://localhost:1880',
        'request_timeout': 10.0,
    },
    'sync': {
        'poll_interval': 5.0,
    },
    'web': {
        'host': '0.0.0.0',
        'port': 5000,
    },
    'system': {
        'auto_mode': True,
        'log_level': 'INFO',
    },
}

# env var -> (dotted config path, type)
ENV_OVERRIDES = {
    'MOISSENSE_API_URL': ('device.api_url', str),
    'MOISSENSE_REQUEST_TIMEOUT': ('device.request_timeout', float),
    'MOISSENSE_POLL_INTERVAL': ('sync.poll_interval', float),
    'WEB_HOST': ('web.host', str),
    'WEB_PORT': ('web.port', int),
    'LOG_LEVEL': ('system.log_level', str),
}


class UserPreferencesManager:
    """
    Manages user preferences separately from the default config.yaml.
    User preferences override default config values.
    """

    def __init__(self, config_dir=None, user_config_name='user_preferences.yaml', default_config_name='config.yaml'):
        """
        Initialize the preferences manager.

        Args:
            config_dir: Directory holding both files (MOISSENSE_CONFIG_DIR or ./config by default)
            user_config_name: User preferences file (created on first save)
            default_config_name: Default config file (read-only)
        """
        self.config_dir = config_dir or os.getenv('MOISSENSE_CONFIG_DIR', DEFAULT_CONFIG_DIR)
        self.user_config_path = os.path.join(self.config_dir, user_config_name)
        self.default_config_path = os.path.join(self.config_dir, default_config_name)
        self.user_prefs = self._load_user_preferences()
        self.default_config = self._load_default_config()

    def _load_default_config(self):
        """Load default configuration from config.yaml, falling back to built-in defaults."""
        defaults = copy.deepcopy(DEFAULT_CONFIG)
        try:
            if not os.path.exists(self.default_config_path):
                logger.warning(f"[CONFIG] Config file not found: {self.default_config_path}, using defaults")
                return defaults

            with open(self.default_config_path, 'r') as f:
                config = yaml.safe_load(f)

            if not config:
                logger.warning("[CONFIG] Empty config file, using defaults")
                return defaults

            logger.info(f"[CONFIG] Loaded configuration from {self.default_config_path}")
            return self._deep_merge(defaults, config)
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"[CONFIG] Failed to load default config: {e}")
            return defaults

    def _load_user_preferences(self):
        """Load user preferences from user_preferences.yaml."""
        try:
            if os.path.exists(self.user_config_path):
                with open(self.user_config_path, 'r') as f:
                    prefs = yaml.safe_load(f)
                    logger.info(f"[CONFIG] Loaded user preferences from {self.user_config_path}")
                    return prefs if prefs else {}
            else:
                logger.info("[CONFIG] No user preferences file found, creating new one on first save")
                return {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"[CONFIG] Failed to load user preferences: {e}")
            return {}

    def save_user_preferences(self):
        """Save current user preferences to file."""
        try:
            os.makedirs(os.path.dirname(os.path.abspath(self.user_config_path)), exist_ok=True)

            with open(self.user_config_path, 'w') as f:
                yaml.safe_dump(self.user_prefs, f, default_flow_style=False)

            logger.info(f"[CONFIG] Saved user preferences to {self.user_config_path}")
            return True
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"[CONFIG] Failed to save user preferences: {e}")
            return False

    def get_merged_config(self, environ=None):
        """
        Get configuration with user preferences merged over defaults,
        then environment variables over both.
        """
        merged = self._deep_merge(copy.deepcopy(self.default_config), copy.deepcopy(self.user_prefs))
        return self._apply_env_overrides(merged, os.environ if environ is None else environ)

    def _deep_merge(self, base, override):
        """
        Recursively merge override dict into base dict.
        Override values take precedence.
        """
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                base[key] = self._deep_merge(base[key], value)
            else:
                base[key] = value
        return base

    @staticmethod
    def _apply_env_overrides(config, environ):
        for env_name, (path, cast) in ENV_OVERRIDES.items():
            raw = environ.get(env_name)
            if raw in (None, ''):
                continue
            try:
                value = cast(raw)
            except ValueError:
                logger.warning(f"[CONFIG] Ignoring {env_name}={raw!r}: expected {cast.__name__}")
                continue

            keys = path.split('.')
            current = config
            for key in keys[:-1]:
                current = current.setdefault(key, {})
            current[keys[-1]] = value
        return config

    def set_preference(self, path, value):
        """
        Set a user preference value at a specific path and save it.

        Args:
            path: Dot-separated path (e.g., 'system.auto_mode')
            value: Value to set
        """
        keys = path.split('.')
        current = self.user_prefs

        # Navigate to the correct nested dict
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value
        return self.save_user_preferences()

    def get_preference(self, path, default=None):
        """
        Get a user preference value at a specific path.
        Falls back to default config if not set in user prefs.
        """
        for source in (self.user_prefs, self.default_config):
            current = source
            for key in path.split('.'):
                if isinstance(current, dict) and key in current:
                    current = current[key]
                else:
                    break
            else:
                return current
        return default
