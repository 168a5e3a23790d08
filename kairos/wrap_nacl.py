#
# (c) Copyright 2022 by Coinkite Inc. This file is covered by license found in COPYING-CC.
#
from typing import Tuple

import nacl.exceptions
from nacl.signing import SigningKey, VerifyKey

# WRAP
def ED_pick_keypair() -> Tuple[bytes, bytes]:
    # return (priv[32], pub[32])
    sk = SigningKey.generate()
    return bytes(sk), bytes(sk.verify_key)


def ED_priv_to_pubkey(pk: bytes) -> bytes:
    assert len(pk) == 32
    return bytes(SigningKey(pk).verify_key)


def ED_sign(privkey: bytes, msg: bytes) -> bytes:
    assert len(privkey) == 32
    return SigningKey(privkey).sign(msg).signature


def ED_verify(pub: bytes, msg: bytes, sig: bytes) -> bool:
    if len(pub) != 32 or len(sig) != 64:
        return False
    try:
        VerifyKey(pub).verify(msg, sig)
        return True
    except (nacl.exceptions.BadSignatureError, nacl.exceptions.ValueError):
        return False

# EOF
