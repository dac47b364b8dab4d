"""
Tests for the encryption envelope and artifact text formats.

Uses Python's unittest module.
"""

from __future__ import annotations

import base64
import json
import unittest

from snapstash.backup.compression import ENCODING_BROTLI, ENCODING_IDENTITY
from snapstash.backup.crypto import (
    ENVELOPE_VERSION,
    HEADER_LENGTH,
    MAGIC,
    decrypt_payload,
    encrypt_payload,
    parse_header,
)
from snapstash.backup.envelope import decode_item, encode_item
from snapstash.backup.manager import get_backup_info, load_backup
from snapstash.backup.models import (
    FORMAT_VERSION,
    Backup,
    ChangeKind,
    Item,
    RegularFile,
    SourceInfo,
)
from snapstash.backup.text import (
    PLAIN_TAG,
    decode_plain_text,
    encode_plain_text,
    encrypt_text,
    is_encrypted_text,
    parse_backup_text,
)
from snapstash.errors import CryptoError, FormatError, PasswordRequiredError


def make_backup(version: int = FORMAT_VERSION) -> Backup:
    item = Item(kind=ChangeKind.ADD, path="a.txt", entry=RegularFile(content=b"hello", mode="100644"))
    return Backup(
        format_version=version,
        created_at="2024-05-01T12:00:00+00:00",
        source_root="/work/repo",
        head=None,
        payload_encoding=ENCODING_BROTLI,
        source=SourceInfo(mode="fs", root="/work/repo"),
        items=(encode_item(item, ENCODING_BROTLI),),
    )


class TestEncryptionEnvelope(unittest.TestCase):
    """Tests for encrypt_payload and decrypt_payload."""

    def test_round_trip(self) -> None:
        """Test the payload decrypts with the right password."""
        raw = encrypt_payload(b"secret payload", "hunter2")
        header, plaintext = decrypt_payload(raw, "hunter2")
        self.assertEqual(plaintext, b"secret payload")
        self.assertTrue(header.compressed)
        self.assertEqual(header.version, ENVELOPE_VERSION)

    def test_header_layout(self) -> None:
        """Test the header is 50 bytes and starts with the magic."""
        raw = encrypt_payload(b"x", "pw", compressed=False)
        self.assertEqual(HEADER_LENGTH, 50)
        self.assertEqual(raw[:4], MAGIC)
        self.assertEqual(raw[4], ENVELOPE_VERSION)
        self.assertEqual(raw[5], 0)
        self.assertEqual(len(raw), HEADER_LENGTH + 1)

    def test_fresh_salt_and_nonce(self) -> None:
        """Test two encryptions of the same input differ."""
        self.assertNotEqual(encrypt_payload(b"same", "pw"), encrypt_payload(b"same", "pw"))

    def test_wrong_password(self) -> None:
        """Test a wrong password fails authentication."""
        raw = encrypt_payload(b"payload", "right")
        with self.assertRaises(CryptoError):
            decrypt_payload(raw, "wrong")

    def test_tampered_ciphertext(self) -> None:
        """Test a flipped ciphertext byte fails authentication."""
        raw = bytearray(encrypt_payload(b"payload bytes", "pw"))
        raw[HEADER_LENGTH] ^= 0x01
        with self.assertRaises(CryptoError):
            decrypt_payload(bytes(raw), "pw")

    def test_short_buffer(self) -> None:
        """Test buffers shorter than the header are rejected."""
        with self.assertRaises(FormatError) as cm:
            parse_header(MAGIC + b"\x02")
        self.assertIn("too short", str(cm.exception))

    def test_bad_magic(self) -> None:
        """Test a header with the wrong magic is rejected."""
        raw = b"XXXX" + encrypt_payload(b"payload", "pw")[4:]
        with self.assertRaises(FormatError) as cm:
            parse_header(raw)
        self.assertIn("magic", str(cm.exception))

    def test_unsupported_version(self) -> None:
        """Test a header with an unknown version is rejected before decrypting."""
        raw = bytearray(encrypt_payload(b"payload", "pw"))
        raw[4] = 9
        with self.assertRaises(FormatError) as cm:
            decrypt_payload(bytes(raw), "pw")
        self.assertIn("version", str(cm.exception))

    def test_empty_ciphertext(self) -> None:
        """Test a bare header without ciphertext is rejected."""
        raw = encrypt_payload(b"payload", "pw")[:HEADER_LENGTH]
        with self.assertRaises(FormatError):
            decrypt_payload(raw, "pw")

    def test_empty_password_refused(self) -> None:
        """Test encryption needs a password."""
        with self.assertRaises(CryptoError):
            encrypt_payload(b"payload", "")


class TestArtifactText(unittest.TestCase):
    """Tests for plain, encrypted and legacy artifact text."""

    def test_plain_round_trip(self) -> None:
        """Test plain artifacts carry the tag and decode without a password."""
        backup = make_backup()
        text = encode_plain_text(backup)
        self.assertTrue(text.startswith(PLAIN_TAG))
        decoded = parse_backup_text(text)
        self.assertEqual(decoded, backup)
        self.assertFalse(decoded.encrypted)

    def test_untagged_plain(self) -> None:
        """Test plain artifacts without the tag are still readable."""
        backup = make_backup()
        text = encode_plain_text(backup)[len(PLAIN_TAG):]
        self.assertEqual(parse_backup_text(text), backup)
        self.assertEqual(decode_plain_text(text), backup)

    def test_encrypted_round_trip(self) -> None:
        """Test encrypted artifacts decode with the password."""
        backup = make_backup()
        text = encrypt_text(backup, "hunter2")
        self.assertTrue(is_encrypted_text(text))
        decoded = parse_backup_text(text, "hunter2")
        self.assertEqual(decoded, backup)
        self.assertTrue(decoded.encrypted)
        self.assertTrue(get_backup_info(decoded).encrypted)

    def test_encrypted_surrounded_by_whitespace(self) -> None:
        """Test surrounding whitespace does not hide the format."""
        text = "\n  " + encrypt_text(make_backup(), "pw") + "\n"
        self.assertTrue(is_encrypted_text(text))
        self.assertEqual(len(parse_backup_text(text, "pw").items), 1)

    def test_plain_is_not_encrypted(self) -> None:
        """Test plain text is not mistaken for encrypted text."""
        self.assertFalse(is_encrypted_text(encode_plain_text(make_backup())))
        self.assertFalse(is_encrypted_text("abc"))

    def test_password_required(self) -> None:
        """Test reading an encrypted artifact without a password."""
        text = encrypt_text(make_backup(), "hunter2")
        with self.assertRaises(PasswordRequiredError):
            parse_backup_text(text)

    def test_wrong_password(self) -> None:
        """Test reading an encrypted artifact with the wrong password."""
        text = encrypt_text(make_backup(), "hunter2")
        with self.assertRaises(CryptoError):
            parse_backup_text(text, "letmein")

    def test_unsupported_version(self) -> None:
        """Test artifacts from a newer writer are rejected."""
        text = encode_plain_text(make_backup(version=7))
        with self.assertRaises(FormatError) as cm:
            parse_backup_text(text)
        self.assertIn("Unsupported backup format version", str(cm.exception))

    def test_empty_artifact(self) -> None:
        """Test an empty artifact is malformed."""
        with self.assertRaises(FormatError):
            parse_backup_text("   \n")

    def test_garbage_artifact(self) -> None:
        """Test text that is not base64 is malformed."""
        with self.assertRaises(FormatError):
            parse_backup_text("SSP1:not base64!!")

    def test_load_backup_from_bytes(self) -> None:
        """Test artifacts can be loaded from raw file bytes."""
        data = (encode_plain_text(make_backup()) + "\n").encode("ascii")
        self.assertEqual(len(load_backup(data).items), 1)


class TestLegacyJson(unittest.TestCase):
    """Tests for the all-JSON artifact format."""

    def test_version_one_records(self) -> None:
        """Test version 1 files with inline records."""
        text = json.dumps(
            {
                "version": 1,
                "createdAt": "2023-01-01T00:00:00Z",
                "repoRoot": "/old/repo",
                "head": "abc123",
                "data": [
                    {"kind": "A", "path": "a.txt", "contentBase64": base64.b64encode(b"old").decode("ascii")},
                    {"kind": "D", "path": "b.txt"},
                ],
            }
        )
        backup = parse_backup_text(text)
        self.assertEqual(backup.format_version, 1)
        self.assertEqual(backup.source_root, "/old/repo")
        self.assertEqual(backup.head, "abc123")
        self.assertEqual(backup.payload_encoding, ENCODING_IDENTITY)
        first = decode_item(backup.items[0], backup.payload_encoding)
        self.assertEqual(first.entry.content, b"old")
        second = decode_item(backup.items[1], backup.payload_encoding)
        self.assertEqual(second.kind, ChangeKind.DELETE)

    def test_version_two_blobs(self) -> None:
        """Test version 2 JSON files with base64 item blobs."""
        blob = make_backup().items[0]
        text = json.dumps(
            {
                "version": 2,
                "createdAt": "2024-01-01T00:00:00Z",
                "repoRoot": "/repo",
                "payloadEncoding": "br",
                "source": {"mode": "index", "root": "/repo", "excludes": ["dist/"]},
                "data": [base64.b64encode(blob).decode("ascii")],
            }
        )
        backup = parse_backup_text(text)
        self.assertEqual(backup.source.excludes, ("dist/",))
        self.assertEqual(decode_item(backup.items[0], backup.payload_encoding).path, "a.txt")

    def test_missing_data(self) -> None:
        """Test JSON without a data list is malformed."""
        with self.assertRaises(FormatError):
            parse_backup_text('{"version": 1}')

    def test_invalid_json(self) -> None:
        """Test broken JSON is malformed."""
        with self.assertRaises(FormatError):
            parse_backup_text("{not json")


if __name__ == "__main__":
    unittest.main()
