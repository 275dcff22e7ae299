#!/usr/bin/env python3
"""
Security module for the collectd reporter.

This module implements the two security modes of the collectd binary network
protocol:

- SIGN: the datagram is prefixed with a signature part holding an
  HMAC-SHA256 over the username and the plain payload.
- ENCRYPT: the plain payload, prefixed with its SHA-1 digest, is encrypted
  with AES-256 in OFB mode keyed by SHA-256 of the password and wrapped in
  an encrypted part carrying the username and the random IV.

The verify/decrypt counterparts follow what a collectd receiver does and are
used to inspect datagrams produced by this module.

Typical usage:
    from encryption import PacketSecurity, SecurityContext, SecurityLevel

    security = PacketSecurity(SecurityContext(SecurityLevel.ENCRYPT, "user", "secret"))

    datagram = security.seal(plain_packet)
    original = security.decrypt(datagram)
"""

import os
import struct
import logging
from enum import Enum
from typing import Dict, Any, NamedTuple
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.backends import default_backend

__version__ = '1.0.0'
__all__ = ['PacketSecurity', 'SecurityContext', 'SecurityLevel', 'SecurityError',
           'TYPE_SIGN_SHA256', 'TYPE_ENCR_AES256']

logger = logging.getLogger("CollectdReporter.Encryption")

TYPE_SIGN_SHA256 = 0x0200
TYPE_ENCR_AES256 = 0x0210

PART_HEADER_LEN = 4
HMAC_LEN = 32
IV_LEN = 16
SHA1_LEN = 20
USERNAME_LEN_FIELD = 2

# type + length + hmac, username follows
SIGNATURE_OVERHEAD = PART_HEADER_LEN + HMAC_LEN
# type + length + username length + iv + sha1 digest, username follows
ENCRYPT_OVERHEAD = PART_HEADER_LEN + USERNAME_LEN_FIELD + IV_LEN + SHA1_LEN


class SecurityError(Exception):
    """Raised when signing, encryption or their verification fails."""
    pass


class SecurityLevel(Enum):
    """Security levels supported by the collectd network plugin."""
    NONE = 'none'
    SIGN = 'sign'
    ENCRYPT = 'encrypt'

    @classmethod
    def parse(cls, value: Any) -> 'SecurityLevel':
        """
        Convert a level or its name ("none", "Sign", "ENCRYPT") to a SecurityLevel.

        Raises:
            ValueError: If the value names no known level
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown security level: {value!r}") from None


class SecurityContext(NamedTuple):
    """Immutable credentials for one reporter."""
    level: SecurityLevel = SecurityLevel.NONE
    username: str = ''
    password: str = ''


class PacketSecurity:
    """Applies the configured security mode to plain collectd packets."""

    def __init__(self, context: SecurityContext):
        """
        Initialize the packet security transform.

        Args:
            context (SecurityContext): Security level and credentials. The
                credentials are expected to have been validated already.
        """
        self.context = context
        self.level = context.level
        self._username = context.username.encode('utf-8')
        self._password = context.password.encode('utf-8')
        self._key = None

        # Track statistics
        self.packets_signed = 0
        self.packets_encrypted = 0
        self.bytes_sealed = 0

    @property
    def overhead(self) -> int:
        """Number of bytes seal() adds to a plain packet."""
        if self.level is SecurityLevel.SIGN:
            return SIGNATURE_OVERHEAD + len(self._username)
        if self.level is SecurityLevel.ENCRYPT:
            return ENCRYPT_OVERHEAD + len(self._username)
        return 0

    def seal(self, packet: bytes) -> bytes:
        """
        Apply the configured security mode to a fully assembled plain packet.

        Args:
            packet (bytes): Plain collectd parts forming one datagram

        Returns:
            bytes: Datagram ready to send

        Raises:
            SecurityError: If the cryptographic transform fails
        """
        if self.level is SecurityLevel.SIGN:
            sealed = self.sign(packet)
        elif self.level is SecurityLevel.ENCRYPT:
            sealed = self.encrypt(packet)
        else:
            return packet
        self.bytes_sealed += len(packet)
        return sealed

    def sign(self, packet: bytes) -> bytes:
        """
        Prefix the packet with a SIGN_SHA256 part.

        The HMAC covers the username followed by the plain packet, so the
        signature part must be the first part of the datagram.
        """
        signature = self._hmac(self._username + packet)
        header = struct.pack('>HH', TYPE_SIGN_SHA256, SIGNATURE_OVERHEAD + len(self._username))
        self.packets_signed += 1
        return header + signature + self._username + packet

    def encrypt(self, packet: bytes) -> bytes:
        """Wrap the packet in an ENCR_AES256 part."""
        try:
            iv = os.urandom(IV_LEN)
            digest = hashes.Hash(hashes.SHA1(), backend=default_backend())
            digest.update(packet)
            encryptor = self._cipher(iv).encryptor()
            ciphertext = encryptor.update(digest.finalize() + packet) + encryptor.finalize()
        except Exception as e:
            logger.error(f"Encryption error: {e}")
            raise SecurityError(f"Failed to encrypt packet: {e}") from e

        length = PART_HEADER_LEN + USERNAME_LEN_FIELD + len(self._username) + IV_LEN + len(ciphertext)
        if length > 0xFFFF:
            raise SecurityError(f"Encrypted part too large ({length} bytes)")
        self.packets_encrypted += 1
        return (struct.pack('>HHH', TYPE_ENCR_AES256, length, len(self._username))
                + self._username + iv + ciphertext)

    def verify(self, datagram: bytes) -> bytes:
        """
        Check the signature of a signed datagram.

        Args:
            datagram (bytes): Datagram starting with a SIGN_SHA256 part

        Returns:
            bytes: The signed plain payload following the signature part

        Raises:
            SecurityError: If the datagram is malformed, signed by another
                user, or the signature does not match
        """
        if len(datagram) < SIGNATURE_OVERHEAD:
            raise SecurityError("Datagram too short to hold a signature")
        part_type, length = struct.unpack_from('>HH', datagram)
        if part_type != TYPE_SIGN_SHA256 or not SIGNATURE_OVERHEAD <= length <= len(datagram):
            raise SecurityError("Datagram does not start with a valid signature part")

        signature = datagram[PART_HEADER_LEN:SIGNATURE_OVERHEAD]
        username = datagram[SIGNATURE_OVERHEAD:length]
        payload = datagram[length:]
        if username != self._username:
            raise SecurityError(f"Datagram signed by unexpected user {username!r}")

        mac = hmac.HMAC(self._password, hashes.SHA256(), backend=default_backend())
        mac.update(username + payload)
        try:
            mac.verify(signature)
        except InvalidSignature:
            raise SecurityError("Signature mismatch") from None
        return payload

    def decrypt(self, datagram: bytes) -> bytes:
        """
        Decrypt an encrypted datagram and check its SHA-1 digest.

        Args:
            datagram (bytes): Datagram holding a single ENCR_AES256 part

        Returns:
            bytes: The plain payload

        Raises:
            SecurityError: If the datagram is malformed or the digest does not
                match (wrong password or tampered data)
        """
        if len(datagram) < PART_HEADER_LEN + USERNAME_LEN_FIELD:
            raise SecurityError("Datagram too short to hold an encrypted part")
        part_type, length, username_len = struct.unpack_from('>HHH', datagram)
        offset = PART_HEADER_LEN + USERNAME_LEN_FIELD
        if part_type != TYPE_ENCR_AES256 or length > len(datagram) \
                or length < offset + username_len + IV_LEN + SHA1_LEN:
            raise SecurityError("Datagram does not start with a valid encrypted part")

        username = datagram[offset:offset + username_len]
        if username != self._username:
            raise SecurityError(f"Datagram encrypted by unexpected user {username!r}")
        offset += username_len
        iv = datagram[offset:offset + IV_LEN]
        ciphertext = datagram[offset + IV_LEN:length]

        decryptor = self._cipher(iv).decryptor()
        plaintext = decryptor.update(ciphertext) + decryptor.finalize()

        digest = hashes.Hash(hashes.SHA1(), backend=default_backend())
        digest.update(plaintext[SHA1_LEN:])
        if digest.finalize() != plaintext[:SHA1_LEN]:
            raise SecurityError("Checksum mismatch after decryption")
        return plaintext[SHA1_LEN:]

    def get_stats(self) -> Dict[str, Any]:
        """
        Get packet security statistics.

        Returns:
            dict: Dictionary with security statistics
        """
        return {
            'security_level': self.level.value,
            'packets_signed': self.packets_signed,
            'packets_encrypted': self.packets_encrypted,
            'bytes_sealed': self.bytes_sealed
        }

    def _hmac(self, data: bytes) -> bytes:
        try:
            mac = hmac.HMAC(self._password, hashes.SHA256(), backend=default_backend())
            mac.update(data)
            return mac.finalize()
        except Exception as e:
            logger.error(f"Signing error: {e}")
            raise SecurityError(f"Failed to sign packet: {e}") from e

    def _cipher(self, iv: bytes) -> Cipher:
        if self._key is None:
            try:
                digest = hashes.Hash(hashes.SHA256(), backend=default_backend())
                digest.update(self._password)
                self._key = digest.finalize()
            except Exception as e:
                logger.error(f"Key derivation error: {e}")
                raise SecurityError(f"Failed to derive encryption key: {e}") from e
        return Cipher(algorithms.AES(self._key), modes.OFB(iv), backend=default_backend())


# Example usage
if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    test_packet = os.urandom(256)
    for level in (SecurityLevel.SIGN, SecurityLevel.ENCRYPT):
        security = PacketSecurity(SecurityContext(level, 'user0', 'secret'))
        sealed = security.seal(test_packet)
        opened = security.verify(sealed) if level is SecurityLevel.SIGN else security.decrypt(sealed)
        print(f"{level.name}:")
        print(f"  Sealed size: {len(sealed)} bytes (overhead {security.overhead})")
        print(f"  Data verified: {opened == test_packet}")
