"""
Static configuration for clipsync

User-editable settings live in common/user_config.py; this module only holds
constants and platform paths.
"""
import os
import sys
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

APP_NAME = "ClipSync"

# Network Settings
PORT = 5566
SERVICE_TYPE = "_clipboard-sync._tcp.local."
PROTOCOL_VERSION = "1"
CONNECT_TIMEOUT = 3.0  # seconds per address attempt
ACK_TIMEOUT = 10.0  # seconds to wait for the receiver's ack
READ_TIMEOUT = 30.0  # inbound connection read timeout
MAX_MESSAGE_SIZE = 64 * 1024 * 1024  # 64MB max frame
BUFFER_SIZE = 65536  # socket read size

# Discovery
PUBLISH_RETRY_DELAY = 2.0  # seconds before the single publish retry

# Dedup
RETENTION_WINDOW = 300.0  # 5 minutes

# File transfer
STALE_TRANSFER_TIMEOUT = 300.0  # evict pending transfers idle this long
MAINTENANCE_INTERVAL = 30.0  # sweep + liveness ping period

# Logging
LOG_LEVEL = "INFO"
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_BUFFER_SIZE = 500


def get_data_dir() -> Path:
    """Platform-specific directory for user data (config, snippets, logs)."""
    if sys.platform == 'win32':
        base = Path(os.environ.get('LOCALAPPDATA', Path.home() / 'AppData' / 'Local'))
    elif sys.platform == 'darwin':
        base = Path.home() / 'Library' / 'Application Support'
    else:
        base = Path(os.environ.get('XDG_CONFIG_HOME', Path.home() / '.config'))
    d = base / APP_NAME
    d.mkdir(parents=True, exist_ok=True)
    return d


def get_download_dir() -> Path:
    """Default directory for files received from peers"""
    return Path.home() / 'Downloads' / APP_NAME


def get_log_file() -> Path:
    return get_data_dir() / "clipsync.log"


def get_default_device_name() -> str:
    """Human-readable device name used until the user picks one"""
    import platform
    return platform.node() or "clipsync-device"
