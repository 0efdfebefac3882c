"""
Content addressing for clipboard items and snippet collections

Hashes are SHA-256 hex digests over a canonical byte representation so that
two devices holding the same logical content compute the same digest:

- text is line-ending normalized (CRLF/CR -> LF) and trimmed
- binary payloads are hashed as raw bytes
- file references hash their absolute path, normalized like text
- snippet collections are flattened in id order (see hash_snippet_folders)
"""
import os
import hashlib
from typing import Iterable

from clipsync.common.errors import EncodingError


def normalize_text(text: str) -> str:
    """Convert CRLF and lone CR to LF, then trim surrounding whitespace"""
    return text.replace('\r\n', '\n').replace('\r', '\n').strip()


def _encode(text: str) -> bytes:
    try:
        return text.encode('utf-8')
    except UnicodeEncodeError as e:
        raise EncodingError(f"Text is not UTF-8 representable: {e}") from e


def hash_bytes(data: bytes) -> str:
    """SHA-256 hex digest of raw bytes"""
    return hashlib.sha256(data).hexdigest()


def hash_text(text: str) -> str:
    """
    Hash text independent of platform line endings and surrounding whitespace

    Raises:
        EncodingError: text contains code points UTF-8 cannot encode
            (e.g. lone surrogates)
    """
    return hash_bytes(_encode(normalize_text(text)))


def hash_file_ref(path: str) -> str:
    """Hash a file reference by its (normalized) absolute path string"""
    return hash_text(os.path.abspath(normalize_text(path)))


def _flag(value: bool) -> str:
    return "true" if value else "false"


def canonical_snippet_lines(folders: Iterable) -> list:
    """
    Flatten a snippet collection into its canonical line form.

    Folders are sorted by id, snippets within a folder by id. Each folder
    contributes "F|<id>|<title>|<enabled>" followed by one
    "S|<id>|<title>|<content>" line per snippet.
    """
    lines = []
    for folder in sorted(folders, key=lambda f: str(f.id)):
        lines.append(f"F|{folder.id}|{folder.title}|{_flag(folder.is_enabled)}")
        for snippet in sorted(folder.snippets, key=lambda s: str(s.id)):
            lines.append(f"S|{snippet.id}|{snippet.title}|{snippet.content}")
    return lines


def hash_snippet_folders(folders: Iterable) -> str:
    """Order-independent hash of a whole snippet collection"""
    return hash_bytes(_encode("\n".join(canonical_snippet_lines(folders))))
