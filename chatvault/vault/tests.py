import json
import re

from django.test import SimpleTestCase

from vault import crypto_utils
from vault.crypto_utils import (
    DELIMITER,
    adecode_document,
    adecrypt_field,
    aencode_document,
    aencrypt_field,
    compute_tag,
    decode_blob,
    decode_document,
    decrypt_field,
    derive_key,
    digests_match,
    encode_blob,
    encode_document,
    encrypt_field,
    hash_password,
    is_encrypted,
    sha256_hex,
    split_blob,
    verify_blob,
)
from vault.exceptions import AuthenticationError, CryptoError, FormatError, VaultError

PASSWORD = 'correct horse battery staple'
BLOB_PATTERN = re.compile(r'^[0-9a-f]{32}::[0-9a-f]{64}::[0-9a-f]*$')


def flip_hex(char):
    return '0' if char != '0' else '1'


class KeyDerivationTests(SimpleTestCase):
    def test_sha256_hex_known_vector(self):
        self.assertEqual(
            sha256_hex('abc'),
            'ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad',
        )

    def test_derive_key_hashes_password_then_salt(self):
        self.assertEqual(derive_key('ab', 'c'), sha256_hex('abc'))
        self.assertEqual(derive_key(PASSWORD, '00' * 16), derive_key(PASSWORD, '00' * 16))
        self.assertNotEqual(derive_key(PASSWORD, '00' * 16), derive_key(PASSWORD, '11' * 16))

    def test_tag_covers_payload_then_key(self):
        self.assertEqual(compute_tag('61', 'bc'), sha256_hex('61bc'))

    def test_hash_password_is_plain_sha256(self):
        self.assertEqual(hash_password('abc'), sha256_hex('abc'))

    def test_digests_match(self):
        self.assertTrue(digests_match('ab' * 32, 'ab' * 32))
        self.assertFalse(digests_match('ab' * 32, 'ac' * 32))


class BlobCodecTests(SimpleTestCase):
    def test_wire_format(self):
        blob = encode_blob('héllo'.encode('utf-8'), PASSWORD)
        self.assertRegex(blob, BLOB_PATTERN)
        salt_hex, tag_hex, payload_hex = blob.split(DELIMITER)
        self.assertEqual(payload_hex, 'héllo'.encode('utf-8').hex())
        self.assertEqual(len(payload_hex), 2 * len('héllo'.encode('utf-8')))
        self.assertEqual(tag_hex, compute_tag(payload_hex, derive_key(PASSWORD, salt_hex)))

    def test_fresh_salt_per_encode(self):
        first = encode_blob(b'same', PASSWORD)
        second = encode_blob(b'same', PASSWORD)
        self.assertNotEqual(first.split(DELIMITER)[0], second.split(DELIMITER)[0])

    def test_round_trip_and_verify(self):
        blob = encode_blob(b'\x00binary\xff', PASSWORD)
        self.assertEqual(decode_blob(blob, PASSWORD), b'\x00binary\xff')
        self.assertTrue(verify_blob(blob, PASSWORD))
        self.assertFalse(verify_blob(blob, 'wrong'))
        self.assertFalse(verify_blob('garbage', PASSWORD))

    def test_wrong_password_raises_authentication_error(self):
        blob = encode_blob(b'secret', PASSWORD)
        with self.assertLogs('chatvault.security', level='WARNING'):
            with self.assertRaisesMessage(AuthenticationError, 'wrong password or corrupted data'):
                decode_blob(blob, 'not the password')

    def test_tampered_tag_or_payload_is_rejected(self):
        blob = encode_blob(b'{"a": 1}', PASSWORD)
        salt_hex, tag_hex, payload_hex = blob.split(DELIMITER)
        tampered = [
            DELIMITER.join([salt_hex, flip_hex(tag_hex[0]) + tag_hex[1:], payload_hex]),
            DELIMITER.join([salt_hex, tag_hex, payload_hex[:-1] + flip_hex(payload_hex[-1])]),
            DELIMITER.join([salt_hex, tag_hex, 'zz' + payload_hex]),
        ]
        for candidate in tampered:
            with self.subTest(candidate=candidate):
                with self.assertRaises((AuthenticationError, FormatError)):
                    decode_blob(candidate, PASSWORD)

    def test_malformed_blobs_raise_format_error(self):
        for candidate in ['', 'no delimiters', 'a::b', 'a::b::c::d', '::tag::payload', 'salt::::payload']:
            with self.subTest(candidate=candidate):
                with self.assertRaisesMessage(FormatError, 'Invalid encrypted data format'):
                    split_blob(candidate)

    def test_non_hex_payload_with_valid_tag_is_format_error(self):
        salt_hex = '00' * 16
        payload_hex = 'not-hex!'
        tag_hex = compute_tag(payload_hex, derive_key(PASSWORD, salt_hex))
        with self.assertRaises(FormatError):
            decode_blob(DELIMITER.join([salt_hex, tag_hex, payload_hex]), PASSWORD)

    def test_error_hierarchy(self):
        self.assertTrue(issubclass(AuthenticationError, CryptoError))
        self.assertTrue(issubclass(FormatError, CryptoError))
        self.assertTrue(issubclass(CryptoError, VaultError))
        self.assertTrue(VaultError('x', recoverable=True).recoverable)


class DocumentCodecTests(SimpleTestCase):
    def test_round_trip_objects(self):
        for document in [{}, {'apiKeys': {'gemini': 'k'}, 'chatThreads': []}, [1, 'two', None], True, 3.5]:
            with self.subTest(document=document):
                self.assertEqual(decode_document(encode_document(document, PASSWORD), PASSWORD), document)

    def test_json_string_is_encoded_verbatim(self):
        text = '{"b": 1, "a": "ü"}'
        blob = encode_document(text, PASSWORD)
        self.assertEqual(decode_blob(blob, PASSWORD).decode('utf-8'), text)
        self.assertEqual(decode_document(blob, PASSWORD), {'b': 1, 'a': 'ü'})

    def test_objects_are_serialized_compactly_without_ascii_escapes(self):
        blob = encode_document({'text': 'ü'}, PASSWORD)
        self.assertEqual(decode_blob(blob, PASSWORD).decode('utf-8'), '{"text":"ü"}')

    def test_invalid_json_is_rejected_on_encode(self):
        for document in ['{not json', b'\xff\xfe', {'set': {1, 2}}]:
            with self.subTest(document=document):
                with self.assertRaisesMessage(FormatError, 'Encryption failed: Invalid JSON data'):
                    encode_document(document, PASSWORD)

    def test_non_json_plaintext_is_rejected_on_decode(self):
        blob = encode_blob(b'plain words', PASSWORD)
        with self.assertRaises(FormatError):
            decode_document(blob, PASSWORD)

    def test_wrong_password(self):
        blob = encode_document({'a': 1}, PASSWORD)
        with self.assertRaises(AuthenticationError):
            decode_document(blob, 'nope')


class FieldCodecTests(SimpleTestCase):
    def test_round_trip(self):
        encrypted = encrypt_field('sk-or-v1-abc', PASSWORD)
        self.assertTrue(is_encrypted(encrypted))
        self.assertEqual(decrypt_field(encrypted, PASSWORD), 'sk-or-v1-abc')

    def test_no_json_precondition(self):
        self.assertEqual(decrypt_field(encrypt_field('not {json', PASSWORD), PASSWORD), 'not {json')

    def test_empty_values_pass_through(self):
        self.assertEqual(encrypt_field('', PASSWORD), '')
        self.assertEqual(encrypt_field(None, PASSWORD), '')
        self.assertEqual(decrypt_field('', PASSWORD), '')

    def test_is_encrypted_detects_blob_shape(self):
        self.assertTrue(is_encrypted('a::b::c'))
        self.assertFalse(is_encrypted('plain text'))
        self.assertFalse(is_encrypted('a::b'))
        self.assertFalse(is_encrypted('a::::c'))
        self.assertFalse(is_encrypted(None))
        self.assertFalse(is_encrypted(json.dumps({'k': 'v'})))

    def test_wrong_password(self):
        with self.assertRaises(AuthenticationError):
            decrypt_field(encrypt_field('value', PASSWORD), 'other')


class AsyncCodecTests(SimpleTestCase):
    async def test_async_wrappers_round_trip(self):
        blob = await aencode_document({'a': [1, 2]}, PASSWORD)
        self.assertEqual(await adecode_document(blob, PASSWORD), {'a': [1, 2]})

        field = await aencrypt_field('value', PASSWORD)
        self.assertEqual(await adecrypt_field(field, PASSWORD), 'value')

    async def test_async_wrappers_propagate_errors(self):
        blob = await aencode_document({'a': 1}, PASSWORD)
        with self.assertRaises(AuthenticationError):
            await adecode_document(blob, 'wrong')

    def test_salt_source_is_os_random(self):
        self.assertEqual(len(crypto_utils.generate_salt()), crypto_utils.SALT_BYTES)
