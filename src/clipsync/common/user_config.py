"""
User Configuration Management

Manages user-editable settings stored in a JSON file: device name, shared
passphrase and KDF salt, the allow-list of peers, feature toggles.
Listeners registered with ConfigManager.add_listener() are told about every
change so running services can react (e.g. re-advertise on a new name).
"""
import os
import json
import logging
import threading
from pathlib import Path
from typing import Any, Callable, List, Optional
from dataclasses import dataclass, asdict, field

from clipsync import config
from clipsync.common.crypto import derive_key, generate_salt

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "config.json"

# Conversion constant
MB = 1024 * 1024


@dataclass
class SyncConfig:
    """User configuration for clipsync"""

    device_name: str = field(default_factory=config.get_default_device_name)
    sync_enabled: bool = True
    port: int = config.PORT

    # Shared secret; all devices need the same passphrase and salt
    passphrase: str = ""
    kdf_salt: str = ""  # hex

    # Operator-curated allow-list of device names
    allowed_peers: List[str] = field(default_factory=list)

    # Feature toggles
    sync_text: bool = True
    sync_snippets: bool = True
    sync_files: bool = True

    # Limits
    max_file_size_mb: int = 100
    history_limit: int = 50

    download_dir: str = field(default_factory=lambda: str(config.get_download_dir()))

    @property
    def max_file_size(self) -> int:
        return self.max_file_size_mb * MB

    def validate(self) -> List[str]:
        """Return a list of problems, empty if the config is usable"""
        errors = []

        if not isinstance(self.device_name, str) or not self.device_name.strip():
            errors.append("device_name must not be empty")

        if not isinstance(self.port, int) or not 0 < self.port < 65536:
            errors.append("port must be between 1 and 65535")

        if not isinstance(self.max_file_size_mb, int) or self.max_file_size_mb <= 0:
            errors.append("max_file_size_mb must be positive")

        if not isinstance(self.history_limit, int) or self.history_limit <= 0:
            errors.append("history_limit must be positive")

        if not isinstance(self.allowed_peers, list):
            errors.append("allowed_peers must be a list")

        try:
            bytes.fromhex(self.kdf_salt)
        except (TypeError, ValueError):
            errors.append("kdf_salt must be a hex string")

        return errors

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'SyncConfig':
        """Create config from dict, using defaults for missing or invalid keys"""
        defaults = cls()
        for key, value in data.items():
            if not hasattr(defaults, key):
                logger.debug(f"Ignoring unknown config key: {key}")
                continue

            previous = getattr(defaults, key)
            setattr(defaults, key, value)
            # Defaults are valid, so any problem now comes from this key
            problems = defaults.validate()
            if problems:
                logger.warning(f"Invalid config value for '{key}' ({'; '.join(problems)}), using default")
                setattr(defaults, key, previous)
        return defaults


class ConfigManager:
    """Loads, saves and hands out the user configuration"""

    def __init__(self, config_path: Optional[Path] = None):
        self.path = Path(config_path) if config_path else config.get_data_dir() / CONFIG_FILE_NAME
        self._config: Optional[SyncConfig] = None
        self._listeners: List[Callable[[str, Any], None]] = []
        self._lock = threading.RLock()
        self.load()

    def load(self) -> SyncConfig:
        """Load configuration from file"""
        with self._lock:
            if self.path.exists():
                try:
                    with open(self.path, 'r') as f:
                        data = json.load(f)
                    self._config = SyncConfig.from_dict(data)
                    logger.info(f"Loaded config from {self.path}")
                except (OSError, ValueError) as e:
                    logger.warning(f"Failed to load config: {e}, using defaults")
                    self._config = SyncConfig()
            else:
                logger.info("No config file found, using defaults")
                self._config = SyncConfig()

            # Per-install salt, created once and kept alongside the config
            if not self._config.kdf_salt:
                self._config.kdf_salt = generate_salt().hex()
                self.save()

            return self._config

    def save(self) -> bool:
        """Save configuration to file"""
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, 'w') as f:
                    json.dump(self._config.to_dict(), f, indent=2)

                # Holds the passphrase
                if os.name != 'nt':
                    os.chmod(self.path, 0o600)

                logger.debug(f"Saved config to {self.path}")
                return True
            except OSError as e:
                logger.error(f"Failed to save config: {e}")
                return False

    def get(self) -> SyncConfig:
        """Get current configuration"""
        return self._config

    def add_listener(self, listener: Callable[[str, Any], None]):
        """Register a callback invoked as listener(key, new_value) after a change"""
        self._listeners.append(listener)

    def _notify(self, key: str, value: Any):
        for listener in list(self._listeners):
            try:
                listener(key, value)
            except Exception as e:
                logger.error(f"Config listener failed for '{key}': {e}")

    def set(self, key: str, value: Any) -> bool:
        """Set a configuration value, persist it and notify listeners"""
        with self._lock:
            if not hasattr(self._config, key):
                logger.error(f"Unknown config key: {key}")
                return False

            if getattr(self._config, key) == value:
                return True

            previous = getattr(self._config, key)
            setattr(self._config, key, value)
            errors = self._config.validate()
            if errors:
                setattr(self._config, key, previous)
                logger.error(f"Invalid value for '{key}': {'; '.join(errors)}")
                return False
            saved = self.save()

        self._notify(key, value)
        return saved

    def reset(self) -> SyncConfig:
        """Reset to default configuration, keeping the install salt"""
        with self._lock:
            salt = self._config.kdf_salt
            self._config = SyncConfig(kdf_salt=salt)
            self.save()
        self._notify('*', None)
        return self._config

    # ========== Allow-list ==========

    def is_allowed(self, name: str) -> bool:
        return name in self._config.allowed_peers

    def allow_peer(self, name: str) -> bool:
        """Add a device to the allow-list"""
        with self._lock:
            if name in self._config.allowed_peers:
                return True
            peers = list(self._config.allowed_peers) + [name]
        logger.info(f"Authorized peer: {name}")
        return self.set('allowed_peers', peers)

    def revoke_peer(self, name: str) -> bool:
        """Remove a device from the allow-list"""
        with self._lock:
            if name not in self._config.allowed_peers:
                return True
            peers = [p for p in self._config.allowed_peers if p != name]
        logger.info(f"Revoked peer: {name}")
        return self.set('allowed_peers', peers)

    def toggle_peer(self, name: str) -> bool:
        """Flip the allow-list state of a device. Returns the new state."""
        if self.is_allowed(name):
            self.revoke_peer(name)
            return False
        self.allow_peer(name)
        return True

    # ========== Key material ==========

    def encryption_key(self) -> Optional[bytes]:
        """Derive the AES key from passphrase and salt, or None if unset"""
        cfg = self._config
        if not cfg.passphrase:
            return None
        key, _ = derive_key(cfg.passphrase, bytes.fromhex(cfg.kdf_salt))
        return key


def format_size(size_bytes: int) -> str:
    """Format bytes as human-readable string"""
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.1f} MB"
    else:
        return f"{size_bytes / (1024 * 1024 * 1024):.1f} GB"


def print_config(manager: ConfigManager):
    """Print current configuration in a readable format"""
    cfg = manager.get()

    print("\n" + "=" * 50)
    print("  ClipSync - Configuration")
    print("=" * 50)

    print(f"\n  Device Name:  {cfg.device_name}")
    print(f"  Sync:         {'ON' if cfg.sync_enabled else 'OFF'}")
    print(f"  Port:         {cfg.port}")
    print(f"  Passphrase:   {'set' if cfg.passphrase else 'NOT SET'}")

    print("\n  Feature Toggles:")
    print(f"    Text:     {'ON' if cfg.sync_text else 'OFF'}")
    print(f"    Snippets: {'ON' if cfg.sync_snippets else 'OFF'}")
    print(f"    Files:    {'ON' if cfg.sync_files else 'OFF'}")

    print("\n  Limits:")
    print(f"    Max File Size: {format_size(cfg.max_file_size)}")
    print(f"    History Limit: {cfg.history_limit} items")

    print("\n  Authorized Peers:")
    if cfg.allowed_peers:
        for name in cfg.allowed_peers:
            print(f"    - {name}")
    else:
        print("    (none)")

    print(f"\n  Download Dir: {cfg.download_dir}")
    print(f"  Config File:  {manager.path}")
    print("=" * 50 + "\n")
