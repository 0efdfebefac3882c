"""
Unit tests for protocol.py - Envelopes, payloads and framing
"""
import json
import struct
import pytest

from clipsync.common.crypto import encrypt
from clipsync.common.errors import DecryptError, ProtocolError
from clipsync.common.hashing import hash_text
from clipsync.common.protocol import (
    ACK,
    HEADER_SIZE,
    MAX_MESSAGE_SIZE,
    ClipboardEntry,
    ClipboardPayload,
    FileChunk,
    FileHeader,
    Handshake,
    MessageBuilder,
    MessageKind,
    MessageParser,
    PayloadKind,
    Ping,
    Snippet,
    SnippetCollection,
    SnippetFolder,
    SyncEnvelope,
    frame,
)


class TestClipboardPayload:
    """Tests for payload validation and titles"""

    def test_binary_kind_requires_bytes(self):
        with pytest.raises(ProtocolError):
            ClipboardPayload(PayloadKind.IMAGE, "not bytes")

    def test_text_kind_requires_str(self):
        with pytest.raises(ProtocolError):
            ClipboardPayload(PayloadKind.TEXT, b"bytes")

    def test_unknown_kind(self):
        with pytest.raises(ProtocolError):
            ClipboardPayload("video", b"")

    def test_titles(self, sample_image_bytes):
        assert ClipboardPayload.text("  Hello\nWorld ").title == "Hello World"
        assert ClipboardPayload.image(sample_image_bytes).title == "[Image]"
        assert ClipboardPayload.rich_text(b"{\\rtf1}").title == "[Rich Text]"
        assert ClipboardPayload.pdf(b"%PDF-1.4").title == "[PDF Document]"
        assert ClipboardPayload.file_ref("/home/me/report.txt").title == "[File] report.txt"

    def test_binary_roundtrip_through_dict(self, sample_image_bytes):
        payload = ClipboardPayload.image(sample_image_bytes)
        restored = ClipboardPayload.from_dict(json.loads(json.dumps(payload.to_dict())))
        assert restored == payload


class TestClipboardEntry:

    def test_capture_computes_hash(self):
        entry = ClipboardEntry.capture(ClipboardPayload.text("Hello\r\nWorld"), source_label="Notes")
        assert entry.content_hash == hash_text("Hello\nWorld")
        assert entry.source_label == "Notes"
        assert entry.created_at > 0

    def test_unhashable_text_still_captured(self):
        entry = ClipboardEntry.capture(ClipboardPayload.text("bad \ud800"))
        assert entry.content_hash is None

    def test_entry_is_immutable(self):
        entry = ClipboardEntry.capture(ClipboardPayload.text("x"))
        with pytest.raises(AttributeError):
            entry.source_label = "changed"


class TestSyncEnvelope:
    """Tests for envelope serialization"""

    def test_clipboard_envelope(self):
        entry = ClipboardEntry.capture(ClipboardPayload.text("Hello"), created_at=1000.0)
        envelope = SyncEnvelope.for_clipboard(entry, "Laptop")

        parsed = SyncEnvelope.from_json(envelope.to_json())
        assert parsed.kind == MessageKind.CLIPBOARD
        assert parsed.origin == "Laptop"
        assert parsed.content_hash == entry.content_hash
        assert parsed.payload == entry

    def test_snippet_envelope_carries_collection_hash(self):
        collection = SnippetCollection([SnippetFolder("1", "Work", [Snippet("a", "Sig", "Regards")])])
        envelope = SyncEnvelope.for_snippets(collection, "Laptop")

        parsed = SyncEnvelope.from_json(envelope.to_json())
        assert parsed.content_hash == collection.content_hash()
        assert parsed.payload == collection

    def test_control_payloads(self):
        for kind, payload in [
            (MessageKind.PING, Ping("Laptop", 12.5)),
            (MessageKind.HANDSHAKE, Handshake("Laptop", 5566, "1")),
            (MessageKind.FILE_HEADER, FileHeader("id-1", "a.txt", 10)),
            (MessageKind.FILE_CHUNK, FileChunk("id-1", 0, b"\x00\x01", True, True, 20)),
        ]:
            parsed = SyncEnvelope.from_json(SyncEnvelope(kind, payload, origin="Laptop").to_json())
            assert parsed.payload == payload

    def test_payload_must_match_kind(self):
        with pytest.raises(ProtocolError):
            SyncEnvelope(MessageKind.PING, FileHeader("id", "a", 1))

    def test_unknown_kind_rejected(self):
        data = json.dumps({'kind': 'telemetry', 'payload': {}}).encode()
        with pytest.raises(ProtocolError):
            SyncEnvelope.from_json(data)

    def test_missing_payload_field_rejected(self):
        data = json.dumps({'kind': 'file_header', 'payload': {'file_id': 'x'}}).encode()
        with pytest.raises(ProtocolError):
            SyncEnvelope.from_json(data)

    def test_invalid_json_rejected(self):
        with pytest.raises(ProtocolError):
            SyncEnvelope.from_json(b"{not json")

    def test_negative_file_size_rejected(self):
        data = json.dumps({
            'kind': 'file_header',
            'payload': {'file_id': 'x', 'file_name': 'a', 'file_size': -1}
        }).encode()
        with pytest.raises(ProtocolError):
            SyncEnvelope.from_json(data)

    def test_compressed_chunk_requires_original_size(self):
        data = json.dumps({
            'kind': 'file_chunk',
            'payload': {'file_id': 'x', 'chunk_index': 0, 'data': '', 'is_compressed': True}
        }).encode()
        with pytest.raises(ProtocolError):
            SyncEnvelope.from_json(data)

    def test_negative_original_size_rejected(self):
        data = json.dumps({
            'kind': 'file_chunk',
            'payload': {'file_id': 'x', 'chunk_index': 0, 'data': '',
                        'is_compressed': True, 'original_size': -1}
        }).encode()
        with pytest.raises(ProtocolError):
            SyncEnvelope.from_json(data)


class TestFraming:
    """Tests for length-prefixed framing"""

    def test_frame_prefix(self):
        framed = frame(b"hello")
        assert framed[:HEADER_SIZE] == struct.pack('>I', 5)
        assert framed[HEADER_SIZE:] == b"hello"

    def test_parser_handles_partial_and_multiple_frames(self):
        parser = MessageParser()
        data = frame(b"first") + frame(b"second")

        parser.feed(data[:3])
        assert parser.parse_one() is None

        parser.feed(data[3:])
        assert parser.parse_one() == b"first"
        assert parser.parse_one() == b"second"
        assert parser.parse_one() is None

    def test_oversize_length_rejected(self):
        parser = MessageParser()
        parser.feed(struct.pack('>I', MAX_MESSAGE_SIZE + 1))
        with pytest.raises(ProtocolError):
            parser.parse_one()

    def test_ack_frame(self):
        parser = MessageParser()
        parser.feed(MessageBuilder.build_ack())
        assert parser.parse_one() == ACK


class TestEncryptedEnvelope:

    def test_build_and_open(self, encryption_key):
        entry = ClipboardEntry.capture(ClipboardPayload.text("secret"))
        framed = MessageBuilder.build_envelope(SyncEnvelope.for_clipboard(entry, "Laptop"), encryption_key)

        parser = MessageParser(encryption_key)
        parser.feed(framed)
        envelope = parser.open_envelope(parser.parse_one())
        assert envelope.payload.payload.value == "secret"

    def test_plaintext_not_visible_on_wire(self, encryption_key):
        entry = ClipboardEntry.capture(ClipboardPayload.text("very secret words"))
        framed = MessageBuilder.build_envelope(SyncEnvelope.for_clipboard(entry, "Laptop"), encryption_key)
        assert b"very secret words" not in framed

    def test_wrong_key(self, encryption_key):
        entry = ClipboardEntry.capture(ClipboardPayload.text("secret"))
        framed = MessageBuilder.build_envelope(SyncEnvelope.for_clipboard(entry, "Laptop"), encryption_key)

        parser = MessageParser(b"k" * 32)
        parser.feed(framed)
        with pytest.raises(DecryptError):
            parser.open_envelope(parser.parse_one())

    def test_garbage_inside_valid_encryption(self, encryption_key):
        parser = MessageParser(encryption_key)
        with pytest.raises(ProtocolError):
            parser.open_envelope(encrypt(b"\xff\xfe not json", encryption_key).to_bytes())
