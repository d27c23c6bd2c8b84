"""
Unit tests for artifact encryption (mealmate_backup/backup/encryption.py).
"""

import os

import pytest

from mealmate_backup.backup.encryption import (
    ArtifactCipher,
    EncryptionError,
    DecryptionError,
    MissingKeyError,
    MAGIC,
    HEADER_SIZE,
    MAX_CHUNK_SIZE,
)


PLAINTEXT = b'PGDMP' + b'shopping list: eggs, flour, basil\n' * 200


@pytest.fixture
def cipher():
    """Cipher with a low iteration count for speed."""
    return ArtifactCipher('correct horse battery staple', iterations=1000)


@pytest.fixture
def dump_file(tmp_path):
    path = tmp_path / 'mealmate_backup_2024-01-15_02-00-00.dump.gz'
    path.write_bytes(PLAINTEXT)
    return path


class TestArtifactCipher:
    """Test AES-GCM artifact encryption."""

    def test_requires_passphrase(self):
        """Test an empty key raises MissingKeyError."""
        with pytest.raises(MissingKeyError):
            ArtifactCipher('')

        with pytest.raises(MissingKeyError):
            ArtifactCipher(None)

    def test_encrypt_writes_enc_and_removes_source(self, cipher, dump_file):
        """Test encryption appends .enc and deletes the plaintext."""
        encrypted = cipher.encrypt_file(str(dump_file))

        assert encrypted == f"{dump_file}.enc"
        assert not dump_file.exists()
        with open(encrypted, 'rb') as f:
            data = f.read()
        assert data.startswith(MAGIC)
        assert PLAINTEXT not in data

    def test_round_trip(self, cipher, dump_file):
        """Test decrypting restores the exact bytes."""
        encrypted = cipher.encrypt_file(str(dump_file))

        output = cipher.decrypt_file(encrypted)

        assert output == str(dump_file)
        assert dump_file.read_bytes() == PLAINTEXT

    def test_round_trip_with_new_cipher_instance(self, cipher, dump_file, tmp_path):
        """Test only the passphrase is needed to decrypt (salt lives in the artifact)."""
        encrypted = cipher.encrypt_file(str(dump_file))
        other = ArtifactCipher('correct horse battery staple')

        output = other.decrypt_file(encrypted, str(tmp_path / 'out.dump.gz'))

        with open(output, 'rb') as f:
            assert f.read() == PLAINTEXT

    def test_fresh_salt_and_nonce_per_artifact(self, cipher, tmp_path):
        """Test encrypting the same bytes twice yields different ciphertexts."""
        first = tmp_path / 'first.dump'
        second = tmp_path / 'second.dump'
        first.write_bytes(PLAINTEXT)
        second.write_bytes(PLAINTEXT)

        with open(cipher.encrypt_file(str(first)), 'rb') as f:
            first_data = f.read()
        with open(cipher.encrypt_file(str(second)), 'rb') as f:
            second_data = f.read()

        assert first_data != second_data

    def test_wrong_key(self, cipher, dump_file):
        """Test decrypting with the wrong key raises DecryptionError."""
        encrypted = cipher.encrypt_file(str(dump_file))
        wrong = ArtifactCipher('wrong passphrase', iterations=1000)

        with pytest.raises(DecryptionError, match='wrong key or corrupted'):
            wrong.decrypt_file(encrypted)

        assert not dump_file.exists()

    def test_tampered_ciphertext(self, cipher, dump_file):
        """Test a flipped byte is detected by the authentication tag."""
        encrypted = cipher.encrypt_file(str(dump_file))
        with open(encrypted, 'rb') as f:
            data = bytearray(f.read())
        data[-1] ^= 0x01
        with open(encrypted, 'wb') as f:
            f.write(bytes(data))

        with pytest.raises(DecryptionError):
            cipher.decrypt_file(encrypted)

    def test_truncated_artifact(self, cipher, tmp_path):
        """Test an artifact shorter than the header is rejected."""
        truncated = tmp_path / 'a.dump.enc'
        truncated.write_bytes(b'MMBK')

        with pytest.raises(DecryptionError, match='truncated'):
            cipher.decrypt_file(str(truncated))

    def test_unrecognized_format(self, cipher, tmp_path):
        """Test a file without the artifact header is rejected."""
        bogus = tmp_path / 'a.dump.enc'
        bogus.write_bytes(os.urandom(128))

        with pytest.raises(DecryptionError):
            cipher.decrypt_file(str(bogus))

    def test_encrypt_missing_source(self, cipher, tmp_path):
        """Test encrypting a missing file raises EncryptionError and writes nothing."""
        missing = tmp_path / 'missing.dump'

        with pytest.raises(EncryptionError):
            cipher.encrypt_file(str(missing))

        assert not (tmp_path / 'missing.dump.enc').exists()

    def test_decryption_error_is_encryption_error(self):
        """Test the exception hierarchy."""
        assert issubclass(DecryptionError, EncryptionError)
        assert issubclass(MissingKeyError, DecryptionError)


class TestChunkedStream:
    """Test artifacts larger than one chunk."""

    CHUNK = 256
    SEGMENT = CHUNK + 16

    @pytest.fixture
    def small_chunk_cipher(self):
        return ArtifactCipher('correct horse battery staple', iterations=1000, chunk_size=self.CHUNK)

    @pytest.fixture
    def encrypted(self, small_chunk_cipher, dump_file):
        return small_chunk_cipher.encrypt_file(str(dump_file))

    def test_multi_chunk_round_trip(self, small_chunk_cipher, encrypted, dump_file):
        """Test a plaintext spanning many chunks decrypts to the exact bytes."""
        assert len(PLAINTEXT) > 10 * self.CHUNK

        small_chunk_cipher.decrypt_file(encrypted)

        assert dump_file.read_bytes() == PLAINTEXT

    def test_chunk_size_read_from_artifact(self, encrypted, tmp_path):
        """Test a cipher with another default chunk size still decrypts."""
        output = ArtifactCipher('correct horse battery staple').decrypt_file(
            encrypted, str(tmp_path / 'out.dump.gz')
        )

        with open(output, 'rb') as f:
            assert f.read() == PLAINTEXT

    def test_exact_multiple_of_chunk_size(self, small_chunk_cipher, tmp_path):
        """Test a plaintext filling its last chunk exactly."""
        source = tmp_path / 'exact.dump'
        source.write_bytes(b'x' * self.CHUNK * 3)

        output = small_chunk_cipher.decrypt_file(small_chunk_cipher.encrypt_file(str(source)))

        assert source.read_bytes() == b'x' * self.CHUNK * 3
        assert output == str(source)

    def test_empty_plaintext(self, small_chunk_cipher, tmp_path):
        """Test an empty dump still produces an authenticated artifact."""
        source = tmp_path / 'empty.dump'
        source.write_bytes(b'')

        small_chunk_cipher.decrypt_file(small_chunk_cipher.encrypt_file(str(source)))

        assert source.read_bytes() == b''

    def test_dropped_final_chunk(self, small_chunk_cipher, encrypted, dump_file):
        """Test truncating the stream at a chunk boundary is detected."""
        with open(encrypted, 'rb') as f:
            data = f.read()
        last_segment = (len(data) - HEADER_SIZE) % self.SEGMENT or self.SEGMENT
        with open(encrypted, 'wb') as f:
            f.write(data[:-last_segment])

        with pytest.raises(DecryptionError, match='wrong key or corrupted'):
            small_chunk_cipher.decrypt_file(encrypted)

        assert not dump_file.exists()

    def test_reordered_chunks(self, small_chunk_cipher, encrypted):
        """Test swapping two chunks is detected."""
        with open(encrypted, 'rb') as f:
            data = f.read()
        first = data[HEADER_SIZE:HEADER_SIZE + self.SEGMENT]
        second = data[HEADER_SIZE + self.SEGMENT:HEADER_SIZE + 2 * self.SEGMENT]
        with open(encrypted, 'wb') as f:
            f.write(data[:HEADER_SIZE] + second + first + data[HEADER_SIZE + 2 * self.SEGMENT:])

        with pytest.raises(DecryptionError, match='wrong key or corrupted'):
            small_chunk_cipher.decrypt_file(encrypted)

    def test_appended_data(self, small_chunk_cipher, encrypted):
        """Test bytes appended after the final chunk are detected."""
        with open(encrypted, 'ab') as f:
            f.write(b'\x00' * self.SEGMENT)

        with pytest.raises(DecryptionError):
            small_chunk_cipher.decrypt_file(encrypted)

    def test_invalid_chunk_size(self):
        """Test a zero or oversized chunk size is rejected."""
        with pytest.raises(ValueError):
            ArtifactCipher('secret', chunk_size=0)

        with pytest.raises(ValueError):
            ArtifactCipher('secret', chunk_size=MAX_CHUNK_SIZE + 1)
