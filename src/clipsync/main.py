"""
ClipSync - LAN clipboard, snippet and file sync agent

Commands:
    clipsync                    Start the sync agent (same as "run")
    clipsync run [--debug]      Start the sync agent in the foreground
    clipsync config             Show or modify configuration
    clipsync allow NAME         Authorize a device by name
    clipsync revoke NAME        Remove a device from the allow-list
    clipsync peers              Browse the network and list devices
"""
import sys
import time
import signal
import logging
import argparse
from pathlib import Path
from typing import Optional

from clipsync import config
from clipsync.agent import SyncEngine
from clipsync.common.discovery import PeerDiscovery
from clipsync.common.errors import SyncError, get_error_from_exception
from clipsync.common.log_buffer import RingBufferHandler
from clipsync.common.peers import PeerDirectory
from clipsync.common.stores import FileHistoryLog, HistoryClipboardStore, JsonSnippetStore
from clipsync.common.transport import Transport
from clipsync.common.user_config import ConfigManager, print_config

logger = logging.getLogger(__name__)

SNIPPETS_FILE_NAME = "snippets.json"


def setup_logging(debug: bool = False, log_file: Optional[Path] = None) -> RingBufferHandler:
    """Configure root logging; returns the in-memory log buffer"""
    handlers = [logging.StreamHandler(sys.stdout)]
    try:
        handlers.append(logging.FileHandler(log_file or config.get_log_file()))
    except OSError as e:
        print(f"[WARNING] Cannot write log file: {e}")

    log_buffer = RingBufferHandler()
    handlers.append(log_buffer)

    logging.basicConfig(
        level=logging.DEBUG if debug else getattr(logging, config.LOG_LEVEL),
        format=config.LOG_FORMAT,
        handlers=handlers
    )
    return log_buffer


class ClipSyncApp:
    """
    Process-level wiring: one instance of every service, built explicitly
    """

    def __init__(self, config_manager: ConfigManager, log_buffer: Optional[RingBufferHandler] = None):
        self.config_manager = config_manager
        self.log_buffer = log_buffer
        cfg = config_manager.get()

        self.clipboard_store = HistoryClipboardStore(limit=cfg.history_limit)
        self.snippet_store = JsonSnippetStore(config.get_data_dir() / SNIPPETS_FILE_NAME)
        self.file_history = FileHistoryLog()

        self.directory = PeerDirectory(config_manager.is_allowed)
        self.discovery = PeerDiscovery(
            self.directory,
            device_name=cfg.device_name,
            port=cfg.port,
            on_error=self._on_error
        )
        self.engine = SyncEngine(
            config_manager,
            self.clipboard_store,
            self.snippet_store,
            self.file_history,
            directory=self.directory,
            transport=Transport(cfg.port),
            discovery=self.discovery,
            on_peers_changed=self._on_peers_changed,
            on_error=self._on_error
        )

        config_manager.add_listener(self._on_config_changed)
        self._running = False

    def _on_error(self, error: SyncError):
        info = get_error_from_exception(error)
        print(f"\n{info}\n")

    def _on_peers_changed(self, names):
        allowed = [n for n in names if self.config_manager.is_allowed(n)]
        logger.info(f"Peers on network: {', '.join(names) or '(none)'}; authorized: {', '.join(allowed) or '(none)'}")

    def _on_config_changed(self, key: str, value):
        if key == 'device_name' and self.engine.is_running:
            self.discovery.restart(value)
        elif key == 'sync_enabled':
            if value:
                self.engine.start()
            else:
                self.engine.stop()
        elif key == 'history_limit':
            self.clipboard_store.limit = value

    def start(self):
        cfg = self.config_manager.get()
        if cfg.sync_enabled:
            self.engine.start()
        else:
            logger.info("Sync is disabled in configuration")
        self._running = True

        print("\n" + "=" * 50)
        print(f"  {config.APP_NAME}")
        print("=" * 50)
        print(f"  Device:     {cfg.device_name}")
        print(f"  Port:       {cfg.port}")
        print(f"  Encryption: {'AES-256-GCM' if cfg.passphrase else 'NOT CONFIGURED (set a passphrase)'}")
        print(f"  Authorized: {', '.join(cfg.allowed_peers) or '(none)'}")
        print(f"  Downloads:  {cfg.download_dir}")
        print("=" * 50)
        print("\nPress Ctrl+C to stop.\n")

    def stop(self):
        self._running = False
        self.engine.stop()

    def run_forever(self):
        """Run until interrupted"""
        try:
            while self._running:
                time.sleep(0.5)
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()


def cmd_run(args):
    """Run the sync agent in the foreground"""
    log_buffer = setup_logging(debug=args.debug)
    config_manager = ConfigManager()

    if args.name:
        config_manager.set('device_name', args.name)
    if args.port:
        config_manager.set('port', args.port)

    app = ClipSyncApp(config_manager, log_buffer)

    def signal_handler(sig, frame):
        print("\nShutting down...")
        app.stop()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        app.start()
    except SyncError as e:
        print(f"\n[ERROR] {e}")
        sys.exit(1)
    app.run_forever()


def _parse_value(value: str):
    if value.lower() in ('true', 'on', 'yes'):
        return True
    if value.lower() in ('false', 'off', 'no'):
        return False
    if value.isdigit():
        return int(value)
    return value


def cmd_config(args):
    """Show or modify configuration"""
    config_manager = ConfigManager()

    if args.reset:
        config_manager.reset()
        print("[OK] Configuration reset to defaults.")
    elif args.set:
        key, value = args.set
        value = _parse_value(value)
        if config_manager.set(key, value):
            shown = "***" if key == 'passphrase' else value
            print(f"[OK] Set {key} = {shown}")
        else:
            print(f"[ERROR] Could not set {key} (unknown key or invalid value)")
            print("\nAvailable keys:")
            for k in config_manager.get().to_dict():
                print(f"  - {k}")
            sys.exit(1)
        return

    print_config(config_manager)


def cmd_allow(args):
    """Authorize a device"""
    config_manager = ConfigManager()
    config_manager.allow_peer(args.name)
    print(f"[OK] {args.name} is authorized")


def cmd_revoke(args):
    """Remove a device from the allow-list"""
    config_manager = ConfigManager()
    if not config_manager.is_allowed(args.name):
        print(f"{args.name} was not authorized")
        return
    config_manager.revoke_peer(args.name)
    print(f"[OK] {args.name} is no longer authorized")


def cmd_peers(args):
    """Browse the network for a few seconds and list devices"""
    config_manager = ConfigManager()
    cfg = config_manager.get()
    directory = PeerDirectory(config_manager.is_allowed)
    discovery = PeerDiscovery(directory, device_name=cfg.device_name, port=cfg.port)

    print(f"\nBrowsing for {args.timeout:.0f}s...")
    discovery.start(advertise=False)
    try:
        time.sleep(args.timeout)
        peers = directory.peers()
    finally:
        discovery.stop()

    if not peers:
        print("No devices found.")
        return

    for peer in peers:
        status = "authorized" if peer.authorized else "not authorized"
        addresses = ", ".join(f"{host}:{port}" for host, port in peer.addresses)
        print(f"  {peer.name:<24} {status:<16} {addresses}")
    print()


def main():
    parser = argparse.ArgumentParser(
        prog='clipsync',
        description='Sync clipboard, snippets and files between trusted devices on the LAN'
    )
    subparsers = parser.add_subparsers(dest='command')

    run_parser = subparsers.add_parser('run', help='Start the sync agent')
    run_parser.add_argument('--port', type=int, help=f'Port to listen on (default {config.PORT})')
    run_parser.add_argument('--name', help='Device name to advertise')
    run_parser.add_argument('--debug', action='store_true', help='Enable debug logging')

    config_parser = subparsers.add_parser('config', help='Show or modify configuration')
    config_parser.add_argument('--set', nargs=2, metavar=('KEY', 'VALUE'), help='Set a configuration value')
    config_parser.add_argument('--reset', action='store_true', help='Reset to defaults')

    allow_parser = subparsers.add_parser('allow', help='Authorize a device')
    allow_parser.add_argument('name', help='Device name')

    revoke_parser = subparsers.add_parser('revoke', help='Remove a device from the allow-list')
    revoke_parser.add_argument('name', help='Device name')

    peers_parser = subparsers.add_parser('peers', help='List devices on the network')
    peers_parser.add_argument('--timeout', type=float, default=3.0, help='Seconds to browse')

    args = parser.parse_args()

    commands = {
        'run': cmd_run,
        'config': cmd_config,
        'allow': cmd_allow,
        'revoke': cmd_revoke,
        'peers': cmd_peers,
    }

    if args.command is None:
        args = parser.parse_args(['run'])

    commands[args.command](args)


if __name__ == '__main__':
    main()
