"""
Configuration - Shadow configuration management
"""

import os
import json
import yaml
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Set


DEFAULT_BASE_DIR = Path.home() / ".sessionshadow"
CONFIG_FILE_NAME = "config.yaml"
MARKER_FILE_NAME = "active_session.json"


def default_base_dir() -> Path:
    """Return the data directory. Honors SHADOW_HOME, defaults to ~/.sessionshadow/."""
    env = os.getenv('SHADOW_HOME')
    if env:
        return Path(env).expanduser()
    return DEFAULT_BASE_DIR


@dataclass
class ShadowConfig:
    """
    Configuration for Session Shadow.

    Can be loaded from:
    - YAML file (<base_dir>/config.yaml)
    - JSON file
    - Environment variables (SHADOW_*)
    - Programmatic defaults
    """

    # Storage settings
    base_dir: Path = field(default_factory=default_base_dir)
    max_backups: int = 5
    cleanup_max_age_days: int = 30

    # Capture settings
    ignore_commands: Set[str] = field(default_factory=lambda: {
        'clear', 'exit', 'history',
    })
    min_command_length: int = 2
    poll_interval_seconds: float = 1.0

    # Auto-save settings
    auto_save_interval_seconds: float = 30.0

    # Logging settings
    log_level: str = "WARNING"

    def __post_init__(self):
        self.base_dir = Path(self.base_dir).expanduser()
        if self.max_backups < 1:
            raise ValueError("max_backups must be at least 1")
        if self.auto_save_interval_seconds < 0:
            raise ValueError("auto_save_interval_seconds must not be negative")
        if self.poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be positive")

    @classmethod
    def from_file(cls, path: str) -> "ShadowConfig":
        """Load configuration from YAML or JSON file."""
        path = Path(path)

        if not path.exists():
            return cls()

        content = path.read_text()

        if path.suffix in ('.yaml', '.yml'):
            data = yaml.safe_load(content)
        elif path.suffix == '.json':
            data = json.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")

        return cls.from_dict(data or {})

    @classmethod
    def from_dict(cls, data: dict) -> "ShadowConfig":
        """Create config from dictionary."""
        # Flatten nested structure
        flat = {}

        if 'storage' in data:
            if data['storage'].get('base_dir'):
                flat['base_dir'] = Path(data['storage']['base_dir'])
            flat['max_backups'] = int(data['storage'].get('max_backups', 5))
            flat['cleanup_max_age_days'] = int(data['storage'].get('cleanup_max_age_days', 30))

        if 'capture' in data:
            flat['ignore_commands'] = set(data['capture'].get('ignore_commands', []))
            flat['min_command_length'] = int(data['capture'].get('min_command_length', 2))
            flat['poll_interval_seconds'] = float(data['capture'].get('poll_interval_seconds', 1.0))

        if 'autosave' in data:
            flat['auto_save_interval_seconds'] = float(data['autosave'].get('interval_seconds', 30))

        if 'logging' in data:
            flat['log_level'] = str(data['logging'].get('level', 'WARNING')).upper()

        return cls(**flat)

    @classmethod
    def from_env(cls) -> "ShadowConfig":
        """Load configuration from environment variables."""
        return cls(
            base_dir=default_base_dir(),
            max_backups=int(os.getenv('SHADOW_MAX_BACKUPS', '5')),
            auto_save_interval_seconds=float(os.getenv('SHADOW_AUTOSAVE_INTERVAL', '30')),
            poll_interval_seconds=float(os.getenv('SHADOW_POLL_INTERVAL', '1.0')),
            log_level=os.getenv('SHADOW_LOG_LEVEL', 'WARNING').upper(),
        )

    @classmethod
    def load(cls, base_dir: Optional[str] = None) -> "ShadowConfig":
        """
        Load the effective configuration.

        The config file inside the data directory wins when present;
        otherwise environment variables and defaults apply. An explicit
        ``base_dir`` replaces SHADOW_HOME and is used as the data directory.
        """
        home = Path(base_dir).expanduser() if base_dir else default_base_dir()
        config_path = home / CONFIG_FILE_NAME
        if config_path.exists():
            config = cls.from_file(str(config_path))
        else:
            config = cls.from_env()
        if base_dir:
            config.base_dir = home
        return config

    def to_dict(self) -> dict:
        """Convert config to dictionary."""
        return {
            'storage': {
                'base_dir': str(self.base_dir),
                'max_backups': self.max_backups,
                'cleanup_max_age_days': self.cleanup_max_age_days,
            },
            'capture': {
                'ignore_commands': sorted(self.ignore_commands),
                'min_command_length': self.min_command_length,
                'poll_interval_seconds': self.poll_interval_seconds,
            },
            'autosave': {
                'interval_seconds': self.auto_save_interval_seconds,
            },
            'logging': {
                'level': self.log_level,
            },
        }

    def save(self, path: Optional[str] = None):
        """Save configuration to file."""
        path = Path(path) if path else self.config_path
        data = self.to_dict()

        if path.suffix in ('.yaml', '.yml'):
            content = yaml.dump(data, default_flow_style=False)
        else:
            content = json.dumps(data, indent=2)

        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)

    @property
    def config_path(self) -> Path:
        return self.base_dir / CONFIG_FILE_NAME

    @property
    def sessions_dir(self) -> Path:
        """Directory holding canonical session files."""
        return self.base_dir / "sessions"

    @property
    def backups_dir(self) -> Path:
        """Directory holding timestamped session backups."""
        return self.base_dir / "backups"

    @property
    def logs_dir(self) -> Path:
        """Directory the shell hooks append capture lines to."""
        return self.base_dir / "logs"

    @property
    def marker_path(self) -> Path:
        """Pointer to the one active session."""
        return self.base_dir / MARKER_FILE_NAME

    def log_path(self, session_id: str) -> Path:
        return self.logs_dir / f"{session_id}.log"


# Default config file template
DEFAULT_CONFIG_YAML = """# Session Shadow Configuration

storage:
  max_backups: 5
  cleanup_max_age_days: 30

capture:
  ignore_commands:
    - clear
    - exit
    - history
  min_command_length: 2
  poll_interval_seconds: 1.0

autosave:
  interval_seconds: 30

logging:
  level: "WARNING"
"""
