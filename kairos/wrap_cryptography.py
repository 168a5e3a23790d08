#
# (c) Copyright 2022 by Coinkite Inc. This file is covered by license found in COPYING-CC.
#
from typing import Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.serialization import Encoding, PrivateFormat, PublicFormat
from cryptography.hazmat.primitives.serialization import NoEncryption


def _raw_pub(key) -> bytes:
    return key.public_bytes(Encoding.Raw, PublicFormat.Raw)

# WRAP
def ED_pick_keypair() -> Tuple[bytes, bytes]:
    # return (priv[32], pub[32])
    sk = Ed25519PrivateKey.generate()
    privkey = sk.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())
    return privkey, _raw_pub(sk.public_key())


def ED_priv_to_pubkey(pk: bytes) -> bytes:
    assert len(pk) == 32
    return _raw_pub(Ed25519PrivateKey.from_private_bytes(pk).public_key())


def ED_sign(privkey: bytes, msg: bytes) -> bytes:
    assert len(privkey) == 32
    return Ed25519PrivateKey.from_private_bytes(privkey).sign(msg)


def ED_verify(pub: bytes, msg: bytes, sig: bytes) -> bool:
    if len(pub) != 32 or len(sig) != 64:
        return False
    try:
        Ed25519PublicKey.from_public_bytes(pub).verify(sig, msg)
        return True
    except (InvalidSignature, ValueError):
        return False

# EOF
