# (c) Copyright 2021 by Coinkite Inc. This file is covered by license found in COPYING-CC.
#
import os, re, base58, secrets
from binascii import b2a_hex
from datetime import datetime, timezone, timedelta
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from .constants import *
from .exceptions import ValidationError
from .compat import ED_pick_keypair, ED_priv_to_pubkey

# show bytes as hex in a string
B2A = lambda x: b2a_hex(x).decode('ascii')

_DID_RE = re.compile(DID_PATTERN)
_HEX_RE = re.compile(r'^[0-9a-fA-F]*$')

def force_bytes(foo):
    # convert strings to bytes where needed
    return foo.encode('utf-8') if isinstance(foo, str) else foo

def hex_to_bytes(value, size=None, what='value'):
    # accept bytes as-is, or a hex string; optionally insist on exact size
    if isinstance(value, (bytes, bytearray)):
        rv = bytes(value)
    elif isinstance(value, str):
        if len(value) % 2 or not _HEX_RE.match(value):
            raise ValidationError(f"{what} is not a hex string")
        rv = bytes.fromhex(value)
    else:
        raise ValidationError(f"{what} must be bytes or hex, not {type(value).__name__}")

    if size is not None and len(rv) != size:
        raise ValidationError(f"{what} must be {size} bytes, got {len(rv)}")

    return rv

def generate_keypair():
    # fresh Ed25519 (priv, pub) from the OS RNG
    return ED_pick_keypair()

def create_did(pubkey):
    # did:key for an Ed25519 public key
    # - multicodec prefix 0xed01, then base58btc with multibase 'z'
    pubkey = hex_to_bytes(pubkey, what='public key')
    if not pubkey:
        raise ValidationError("public key is empty")
    if len(pubkey) != PUBKEY_SIZE:
        raise ValidationError(f"public key must be {PUBKEY_SIZE} bytes, got {len(pubkey)}")

    did = DID_PREFIX + base58.b58encode(ED25519_MULTICODEC + pubkey).decode('ascii')

    # sanity
    assert _DID_RE.match(did), did

    return did

def is_valid_did(did):
    return isinstance(did, str) and bool(_DID_RE.match(did))

def did_to_pubkey(did):
    # reverse of create_did: recover the 32-byte public key
    if not is_valid_did(did):
        raise ValidationError(f"not a did:key value: {did!r}")

    try:
        raw = base58.b58decode(did[len(DID_PREFIX):])
    except ValueError:
        raise ValidationError("bad base58 in DID")

    if raw[0:2] != ED25519_MULTICODEC:
        raise ValidationError("DID is not for an Ed25519 key")
    if len(raw) != 2 + PUBKEY_SIZE:
        raise ValidationError("DID holds a key of the wrong length")

    return raw[2:]

def did_document(did, chip_uid=None, device_id=None):
    # W3C DID document for a did:key, with our optional pendant service
    did_to_pubkey(did)
    key_id = f'{did}#key-1'

    rv = {
        '@context': [
            'https://www.w3.org/ns/did/v1',
            'https://w3id.org/security/multikey/v1',
        ],
        'id': did,
        'controller': did,
        'verificationMethod': [{
            'id': key_id,
            'type': 'Multikey',
            'controller': did,
            'publicKeyMultibase': did[len('did:key:'):],
        }],
        'authentication': [key_id],
        'assertionMethod': [key_id],
    }

    if chip_uid or device_id:
        endpoint = dict()
        if chip_uid:
            endpoint['chipUID'] = normalize_chip_uid(chip_uid)
        if device_id:
            endpoint['deviceID'] = device_id
        rv['service'] = [dict(id=f'{did}#kairos', type='KairOSPendant',
                                serviceEndpoint=endpoint)]

    return rv

def derive_device_key(master_seed, device_id):
    # Each device gets its own keypair, derived from the identity's master seed.
    # - HKDF-SHA512, 32 bytes out, used directly as Ed25519 private key
    # - returns (privkey, pubkey, derivation path)
    assert len(master_seed) == MASTER_SEED_SIZE

    kdf = HKDF(algorithm=hashes.SHA512(), length=PRIVKEY_SIZE, salt=HKDF_SALT,
                info=(HKDF_INFO_PREFIX + device_id).encode('utf-8'))
    privkey = kdf.derive(master_seed)

    return privkey, ED_priv_to_pubkey(privkey), DERIVATION_PATH.format(device_id=device_id)

def pick_nonce(size=16):
    # pick a nonce for our side
    # - must be a "non trival" value
    for retry in range(3):
        rv = os.urandom(size)
        if len(set(rv)) >= 2:
            return rv

    raise RuntimeError("stuck RNG?")

def make_device_id(device_type):
    # <type>-<random hex>; caller must still check for collisions
    slug = re.sub(r'[^a-z0-9]+', '-', device_type.lower()).strip('-') or 'device'
    return f'{slug}-{secrets.token_hex(DEVICE_ID_ENTROPY)}'

def normalize_chip_uid(uid):
    # Canonical chip UID: upper-case hex bytes joined by colons, like 04:AB:CD:EF:12:34:56
    # - accepts colons, dashes, spaces or no separators at all
    # - ISO 14443 UIDs are 4, 7 or 10 bytes; allow anything from 4..10
    if not isinstance(uid, str):
        raise ValidationError("chip UID must be a string")

    bare = re.sub(r'[\s:\-]', '', uid)
    if not bare or len(bare) % 2 or not _HEX_RE.match(bare):
        raise ValidationError(f"chip UID is not hex: {uid!r}")
    if not (4 <= len(bare)//2 <= 10):
        raise ValidationError(f"chip UID must be 4..10 bytes: {uid!r}")

    bare = bare.upper()
    return ':'.join(bare[pos:pos+2] for pos in range(0, len(bare), 2))

def compact_chip_uid(uid):
    # chip UID without separators, for short URLs
    return normalize_chip_uid(uid).replace(':', '')

#
# Time. Everything is UTC, millisecond precision.
#
def utc_now():
    return truncate_ms(datetime.now(timezone.utc))

def truncate_ms(when):
    if when.tzinfo is None:
        raise ValidationError("timestamp must be timezone-aware")
    when = when.astimezone(timezone.utc)
    return when.replace(microsecond=(when.microsecond // 1000) * 1000)

def now_ms():
    return to_epoch_ms(datetime.now(timezone.utc))

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

def to_epoch_ms(when):
    return (truncate_ms(when) - EPOCH) // timedelta(milliseconds=1)

def from_epoch_ms(ms):
    return EPOCH + timedelta(milliseconds=ms)

def to_iso(when):
    # same shape as javascript's Date.toISOString()
    return truncate_ms(when).isoformat(timespec='milliseconds').replace('+00:00', 'Z')

def from_iso(txt):
    if not isinstance(txt, str):
        raise ValidationError("timestamp must be an ISO-8601 string")
    if txt.endswith('Z') or txt.endswith('z'):
        txt = txt[:-1] + '+00:00'
    try:
        when = datetime.fromisoformat(txt)
    except ValueError:
        raise ValidationError(f"bad ISO-8601 timestamp: {txt!r}")
    if when.tzinfo is None:
        # we only ever write UTC
        when = when.replace(tzinfo=timezone.utc)
    return truncate_ms(when)

# EOF
