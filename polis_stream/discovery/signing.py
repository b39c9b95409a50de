"""
Signing — Ed25519 signatures in the OpenSSH SSHSIG format.

Signatures are compatible with `ssh-keygen -Y sign -n file` /
`ssh-keygen -Y verify`: the signed data is the SSHSIG blob (magic, namespace,
reserved, hash algorithm, SHA-512 digest of the content), not the raw content.
"""

import base64
import hashlib
import struct
from typing import Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

SSHSIG_MAGIC = b"SSHSIG"
SSHSIG_VERSION = 1
SSH_NAMESPACE = "file"
HASH_ALGORITHM = "sha512"
KEY_TYPE = "ssh-ed25519"

_ARMOR_BEGIN = "-----BEGIN SSH SIGNATURE-----"
_ARMOR_END = "-----END SSH SIGNATURE-----"
_ARMOR_WIDTH = 64


class SigningError(Exception):
    """Raised when a key or signature cannot be parsed."""
    pass


def generate_keypair(comment: str = "polis-local") -> Tuple[bytes, bytes]:
    """New Ed25519 keypair as (OpenSSH private key PEM, OpenSSH public key line)."""
    private_key = Ed25519PrivateKey.generate()
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.OpenSSH,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_line = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    )
    return private_pem, public_line + b" " + comment.encode() + b"\n"


def build_signing_blob(content: bytes) -> bytes:
    """The SSHSIG "signed data" structure for content."""
    digest = hashlib.sha512(content).digest()
    return (
        SSHSIG_MAGIC
        + _ssh_string(SSH_NAMESPACE.encode())
        + _ssh_string(b"")
        + _ssh_string(HASH_ALGORITHM.encode())
        + _ssh_string(digest)
    )


def sign_content(content: bytes, private_key_pem: bytes) -> str:
    """Sign content and return an armored SSH signature."""
    private_key = _load_private_key(private_key_pem)
    raw_signature = private_key.sign(build_signing_blob(content))

    public_raw = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    blob = (
        SSHSIG_MAGIC
        + struct.pack(">I", SSHSIG_VERSION)
        + _ssh_string(_public_key_blob(public_raw))
        + _ssh_string(SSH_NAMESPACE.encode())
        + _ssh_string(b"")
        + _ssh_string(HASH_ALGORITHM.encode())
        + _ssh_string(_ssh_string(KEY_TYPE.encode()) + _ssh_string(raw_signature))
    )

    encoded = base64.b64encode(blob).decode()
    lines = [encoded[i:i + _ARMOR_WIDTH] for i in range(0, len(encoded), _ARMOR_WIDTH)]
    return "\n".join([_ARMOR_BEGIN, *lines, _ARMOR_END]) + "\n"


def verify_signature(content: bytes, public_key_ssh: bytes, signature: str) -> bool:
    """True if signature is a valid SSHSIG over content by the given public key."""
    public_key = _load_public_key(public_key_ssh)
    raw_signature = parse_signature(signature)
    try:
        public_key.verify(raw_signature, build_signing_blob(content))
    except InvalidSignature:
        return False
    return True


def parse_signature(signature: str) -> bytes:
    """Extract the raw Ed25519 signature bytes from an armored SSHSIG."""
    body = signature.replace(_ARMOR_BEGIN, "").replace(_ARMOR_END, "")
    try:
        blob = base64.b64decode("".join(body.split()), validate=True)
    except ValueError as e:
        raise SigningError(f"invalid signature encoding: {e}") from e

    if not blob.startswith(SSHSIG_MAGIC):
        raise SigningError("invalid signature magic")
    rest = blob[len(SSHSIG_MAGIC):]

    if len(rest) < 4:
        raise SigningError("signature truncated")
    rest = rest[4:]                                     # version
    for _ in range(4):                                  # pubkey, namespace, reserved, hash
        _, rest = _read_ssh_string(rest)
    sig_blob, _ = _read_ssh_string(rest)

    key_type, sig_blob = _read_ssh_string(sig_blob)
    if key_type != KEY_TYPE.encode():
        raise SigningError(f"unsupported signature type: {key_type!r}")
    raw_signature, _ = _read_ssh_string(sig_blob)
    return raw_signature


def _load_private_key(private_key_pem: bytes) -> Ed25519PrivateKey:
    try:
        key = serialization.load_ssh_private_key(private_key_pem, password=None)
    except (ValueError, TypeError) as e:
        raise SigningError(f"failed to parse private key: {e}") from e
    if not isinstance(key, Ed25519PrivateKey):
        raise SigningError("private key is not Ed25519")
    return key


def _load_public_key(public_key_ssh: bytes) -> Ed25519PublicKey:
    parts = public_key_ssh.split()
    if len(parts) < 2 or parts[0] != KEY_TYPE.encode():
        raise SigningError("invalid public key format")
    try:
        key = serialization.load_ssh_public_key(b" ".join(parts[:2]))
    except (ValueError, TypeError) as e:
        raise SigningError(f"failed to parse public key: {e}") from e
    if not isinstance(key, Ed25519PublicKey):
        raise SigningError("public key is not Ed25519")
    return key


def _public_key_blob(public_raw: bytes) -> bytes:
    return _ssh_string(KEY_TYPE.encode()) + _ssh_string(public_raw)


def _ssh_string(data: bytes) -> bytes:
    return struct.pack(">I", len(data)) + data


def _read_ssh_string(data: bytes) -> Tuple[bytes, bytes]:
    if len(data) < 4:
        raise SigningError("signature truncated")
    (length,) = struct.unpack(">I", data[:4])
    if len(data) < 4 + length:
        raise SigningError("signature truncated")
    return data[4:4 + length], data[4 + length:]
