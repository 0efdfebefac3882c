"""Common modules for clipboard sync"""
from .protocol import (
    ClipboardEntry,
    ClipboardPayload,
    PayloadKind,
    Snippet,
    SnippetFolder,
    SnippetCollection,
    SyncEnvelope,
    MessageKind,
    MessageBuilder,
    MessageParser
)
from .peers import PeerDirectory, PeerIdentity
from .recent import RecentHashSet
from .discovery import PeerDiscovery
from .transport import Transport

__all__ = [
    'ClipboardEntry',
    'ClipboardPayload',
    'PayloadKind',
    'Snippet',
    'SnippetFolder',
    'SnippetCollection',
    'SyncEnvelope',
    'MessageKind',
    'MessageBuilder',
    'MessageParser',
    'PeerDirectory',
    'PeerIdentity',
    'RecentHashSet',
    'PeerDiscovery',
    'Transport'
]
