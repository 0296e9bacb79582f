"""Connection-string cipher (AES-256-CBC, PKCS#7, random IV, hex output).

Blob layout: hex(IV(16) || ciphertext). There is no MAC, so a corrupted
blob is only reported when the padding or the UTF-8 check catches it.
"""
from __future__ import annotations
import binascii, secrets
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.backends import default_backend
from connvault.config.settings import KEY_LENGTH, IV_LENGTH, BLOCK_SIZE_BITS

class CryptoError(Exception):
	pass

class InvalidKeyLength(CryptoError):
	def __init__(self, length: int | None = None):
		msg = f"Key must be {KEY_LENGTH} bytes"
		if length is not None: msg += f" (got {length})"
		super().__init__(msg)

class InvalidHex(CryptoError): ...
class InvalidCiphertext(CryptoError): ...
class CipherCreationFailed(CryptoError): ...
class EncryptionFailed(CryptoError): ...
class DecryptionFailed(CryptoError): ...
class InvalidUtf8(CryptoError): ...

_backend = default_backend()

def _check_key(key: bytes) -> None:
	try:
		length = len(key)
	except TypeError:
		raise InvalidKeyLength() from None
	if length != KEY_LENGTH:
		raise InvalidKeyLength(length)

def _cipher(key: bytes, iv: bytes, error: type[CryptoError]) -> Cipher:
	try:
		return Cipher(algorithms.AES(key), modes.CBC(iv), backend=_backend)
	except (TypeError, ValueError) as e:
		raise error("Cipher creation failed") from e

def generate_key() -> bytes:
	"""Return 32 bytes from the secure RNG, suitable as an encryption key."""
	return secrets.token_bytes(KEY_LENGTH)

def encrypt_connection_string(plaintext: str, key: bytes) -> str:
	"""Encrypt `plaintext` under `key` and return the hex blob.

	A fresh IV is drawn for every call, so equal inputs give different blobs.
	"""
	_check_key(key)
	if not isinstance(plaintext, str):
		raise EncryptionFailed(f"Plaintext must be a string, got {type(plaintext).__name__}")
	iv = secrets.token_bytes(IV_LENGTH)
	cipher = _cipher(key, iv, CipherCreationFailed)
	try:
		padder = padding.PKCS7(BLOCK_SIZE_BITS).padder()
		padded = padder.update(plaintext.encode('utf-8')) + padder.finalize()
		enc = cipher.encryptor()
		ct = enc.update(padded) + enc.finalize()
	except (TypeError, ValueError, UnicodeEncodeError) as e:
		raise EncryptionFailed("Encryption failed") from e
	return (iv + ct).hex()

def decrypt_connection_string(blob_hex: str, key: bytes) -> str:
	"""Decrypt a hex blob produced by `encrypt_connection_string`."""
	_check_key(key)
	try:
		raw = binascii.unhexlify(blob_hex)
	except (TypeError, ValueError) as e:
		raise InvalidHex("Invalid hex encoding") from e
	if len(raw) < IV_LENGTH:
		raise InvalidCiphertext("Ciphertext shorter than the IV")
	iv, ct = raw[:IV_LENGTH], raw[IV_LENGTH:]
	cipher = _cipher(key, iv, DecryptionFailed)
	try:
		dec = cipher.decryptor()
		padded = dec.update(ct) + dec.finalize()
		unpadder = padding.PKCS7(BLOCK_SIZE_BITS).unpadder()
		data = unpadder.update(padded) + unpadder.finalize()
	except ValueError as e:
		raise DecryptionFailed("Decryption failed") from e
	try:
		return data.decode('utf-8')
	except UnicodeDecodeError as e:
		raise InvalidUtf8("Decrypted data is not valid UTF-8") from e

encrypt = encrypt_connection_string
decrypt = decrypt_connection_string
