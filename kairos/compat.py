#
# (c) Copyright 2022 by Coinkite Inc. This file is covered by license found in COPYING-CC.
#
# Wrappers for choice of crypto libraries. AKA API Cleanup
#
# My standards:
# - pubkeys: 32 bytes, raw Ed25519 point encoding
# - private key: 32 bytes (the Ed25519 seed)
# - signature: 64 bytes
# - no DER, no PEM, no other serializations
# - messages are signed as-is, Ed25519 does its own hashing
# - verify returns bool, doesn't raise exception
#

__all__ = [ 'sha256s', 'sha512s',
            'ED_pick_keypair', 'ED_priv_to_pubkey', 'ED_sign', 'ED_verify',
            'ED_LIBRARY' ]

# Fall-back code, might be overriden below.
#
def sha256s(msg):
    # single-shot SHA256
    from hashlib import sha256
    return sha256(msg).digest()

def sha512s(msg):
    # single-shot SHA512
    from hashlib import sha512
    return sha512(msg).digest()

# Other codes must be implemented elsewhere...
#

def ED_pick_keypair():
    # return (priv, pub)
    raise NotImplementedError

def ED_priv_to_pubkey(pk):
    # return 32-byte pubkey
    raise NotImplementedError

def ED_sign(privkey, msg):
    # returns 64-byte sig
    raise NotImplementedError

def ED_verify(pub, msg, sig):
    # returns True or False
    raise NotImplementedError


try:
    # PyNaCl (libsodium) <https://pynacl.readthedocs.io/en/latest/signing/>
    import nacl.signing

    from kairos.wrap_nacl import ED_pick_keypair, ED_priv_to_pubkey, ED_sign, ED_verify
    ED_LIBRARY = 'pynacl'

except ImportError:
    try:
        # pyca/cryptography <https://cryptography.io/en/latest/hazmat/primitives/asymmetric/ed25519/>
        import cryptography

        from kairos.wrap_cryptography import ED_pick_keypair, ED_priv_to_pubkey
        from kairos.wrap_cryptography import ED_sign, ED_verify
        ED_LIBRARY = 'cryptography'

    except ImportError:
        raise RuntimeError("need a crypto library")

# EOF
