#
# (c) Copyright 2022 by Coinkite Inc. This file is covered by license found in COPYING-CC.
#
# nfc_url.py
#
# The URL we write onto a tag, in one of three sizes:
#
#   full:       <base>/nfc?did=<DID>&signature=<hex>&publicKey=<hex>&uid=<chipUID>
#   compact:    <base>/nfc?c=<chipUID w/o colons>&s=<hex>&p=<hex>
#   reference:  <base>/nfc?d=<deviceId>&c=<chipUID>
#
# First one that fits the chip wins. Signature and public key are never
# shortened; if neither full form fits, the tag only carries a reference to a
# device already in the registry.
#
import re
from dataclasses import dataclass
from urllib.parse import quote, urlsplit, parse_qsl

from .constants import *
from .exceptions import ValidationError, CapacityExceeded
from .compat import ED_verify
from .utils import create_did, hex_to_bytes, normalize_chip_uid, compact_chip_uid, force_bytes

_DEVICE_ID_RE = re.compile(r'^[A-Za-z0-9_\-]+$')

def tag_challenge(chip_uid):
    # message that the signature on a tag covers
    return 'KairOS-Tag-' + normalize_chip_uid(chip_uid)

def _clean_hex(value, min_len, what):
    # lower-case hex string of at least min_len chars, never truncated
    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).hex()
    hex_to_bytes(value, what=what)
    if len(value) < min_len:
        raise ValidationError(f"{what} too short: {len(value)} hex chars, need {min_len}",
                                hint="never truncate cryptographic fields")
    return value.lower()

def _nfc_url(base_url, pairs):
    return base_url.rstrip('/') + '/nfc?' + '&'.join(f'{k}={v}' for k, v in pairs)

def _verify_tag_sig(public_key, signature, chip_uid, challenge):
    if challenge is not None and not isinstance(challenge, (str, bytes, bytearray)):
        return False
    try:
        msg = force_bytes(challenge if challenge is not None else tag_challenge(chip_uid))
        return ED_verify(bytes.fromhex(public_key), msg, bytes.fromhex(signature))
    except (ValueError, TypeError):
        return False


@dataclass(frozen=True)
class FullPayload:
    chip_uid: str
    did: str
    public_key: str
    signature: str

    tier = TIER_FULL

    def __post_init__(self):
        object.__setattr__(self, 'chip_uid', normalize_chip_uid(self.chip_uid))
        object.__setattr__(self, 'public_key',
                                _clean_hex(self.public_key, MIN_PUBKEY_HEX, 'public key'))
        object.__setattr__(self, 'signature',
                                _clean_hex(self.signature, MIN_SIG_HEX, 'signature'))
        if self.did != create_did(self.public_key):
            raise ValidationError("DID does not match public key")

    def to_url(self, base_url=DEFAULT_BASE_URL):
        return _nfc_url(base_url, [
            ('did', quote(self.did, safe='')),
            ('signature', self.signature),
            ('publicKey', self.public_key),
            ('uid', quote(self.chip_uid, safe=':')),
        ])

    @classmethod
    def from_params(cls, p):
        return cls(chip_uid=p['uid'], did=p['did'], public_key=p['publicKey'],
                    signature=p['signature'])

    def verify(self, challenge=None):
        return _verify_tag_sig(self.public_key, self.signature, self.chip_uid, challenge)


@dataclass(frozen=True)
class CompactPayload:
    chip_uid: str
    public_key: str
    signature: str

    tier = TIER_COMPACT

    def __post_init__(self):
        object.__setattr__(self, 'chip_uid', normalize_chip_uid(self.chip_uid))
        object.__setattr__(self, 'public_key',
                                _clean_hex(self.public_key, MIN_PUBKEY_HEX, 'public key'))
        object.__setattr__(self, 'signature',
                                _clean_hex(self.signature, MIN_SIG_HEX, 'signature'))

    @property
    def did(self):
        # not on the wire, but implied by the key
        return create_did(self.public_key)

    def to_url(self, base_url=DEFAULT_BASE_URL):
        return _nfc_url(base_url, [
            ('c', compact_chip_uid(self.chip_uid)),
            ('s', self.signature),
            ('p', self.public_key),
        ])

    @classmethod
    def from_params(cls, p):
        return cls(chip_uid=p['c'], public_key=p['p'], signature=p['s'])

    def verify(self, challenge=None):
        return _verify_tag_sig(self.public_key, self.signature, self.chip_uid, challenge)


@dataclass(frozen=True)
class DecentralizedReferencePayload:
    device_id: str
    chip_uid: str

    tier = TIER_REFERENCE

    def __post_init__(self):
        if not isinstance(self.device_id, str) or not _DEVICE_ID_RE.match(self.device_id):
            raise ValidationError(f"bad device id: {self.device_id!r}")
        object.__setattr__(self, 'chip_uid', normalize_chip_uid(self.chip_uid))

    def to_url(self, base_url=DEFAULT_BASE_URL):
        return _nfc_url(base_url, [
            ('d', self.device_id),
            ('c', quote(self.chip_uid, safe=':')),
        ])

    @classmethod
    def from_params(cls, p):
        return cls(device_id=p['d'], chip_uid=p['c'])

    def resolve(self, registry):
        # look up the device record that holds the key material
        dev = registry.get_device(self.device_id)
        if dev is None:
            raise ValidationError(f"device {self.device_id} is not registered",
                                    hint="register the device before trusting this tag")
        if registry.is_revoked(self.chip_uid):
            raise ValidationError(f"chip {self.chip_uid} has been revoked",
                                    hint="this tag was reported lost or replaced")
        if dev.chip_uid and dev.chip_uid != self.chip_uid:
            raise ValidationError(f"device {self.device_id} is bound to another chip")
        return dev


# query keys => payload class
TIER_KEYS = {
    frozenset(['did', 'signature', 'publicKey', 'uid']): FullPayload,
    frozenset(['c', 's', 'p']): CompactPayload,
    frozenset(['d', 'c']): DecentralizedReferencePayload,
}

def chip_budget(chip):
    # chip class name, or a byte count
    if isinstance(chip, int) and not isinstance(chip, bool):
        if chip <= 0:
            raise ValidationError("chip capacity must be positive")
        return chip
    try:
        return CHIP_CAPACITY[chip]
    except (KeyError, TypeError):
        raise ValidationError(f"unknown chip type: {chip!r}",
                                hint='pick one of: ' + ', '.join(CHIP_CAPACITY))

def url_bytes(url):
    return len(url.encode('utf-8'))

def encode_for_chip(chip_uid, did, public_key, signature, chip=DEFAULT_CHIP,
                        base_url=DEFAULT_BASE_URL, device_id=None, registry=None):
    # Pick the first format that fits, returns (payload, url) or raises CapacityExceeded.
    # - registry can be anything that supports "device_id in registry"
    budget = chip_budget(chip)

    full = FullPayload(chip_uid=chip_uid, did=did, public_key=public_key, signature=signature)
    compact = CompactPayload(chip_uid=chip_uid, public_key=full.public_key,
                                signature=full.signature)

    candidates = [full]
    problems = []

    if len(compact.signature) >= MIN_SIG_HEX and len(compact.public_key) >= MIN_PUBKEY_HEX:
        candidates.append(compact)
    else:
        problems.append('compact would shorten signature/public key')

    if device_id is None:
        problems.append('no device id for reference format')
    elif registry is None or device_id not in registry:
        problems.append(f'device {device_id} is not registered')
    else:
        candidates.append(DecentralizedReferencePayload(device_id=device_id, chip_uid=chip_uid))

    for payload in candidates:
        url = payload.to_url(base_url)
        size = url_bytes(url)
        if size <= budget:
            return payload, url
        problems.append(f'{payload.tier} needs {size} bytes')

    label = chip if isinstance(chip, str) else 'chip'
    if device_id is None or registry is None or device_id not in registry:
        hint = "register the device to use the decentralized reference format, " \
                "or use a larger-capacity chip"
    else:
        hint = "use a larger-capacity chip or a shorter base URL"

    raise CapacityExceeded(f"nothing fits {label} ({budget} bytes): " + '; '.join(problems),
                            hint=hint)

def decode_url(url):
    # Takes the full URL read from a tag, returns a payload object, or raises
    parts = urlsplit(url)
    if not parts.query:
        raise ValidationError("URL has no query part")

    try:
        pairs = parse_qsl(parts.query, strict_parsing=True)
    except ValueError:
        raise ValidationError("Badly formated link")

    raw = dict(pairs)
    if len(raw) != len(pairs):
        raise ValidationError("repeated query parameter")

    cls = TIER_KEYS.get(frozenset(raw))
    if cls is None:
        raise ValidationError("unrecognized NFC parameters: " + ', '.join(sorted(raw)))

    return cls.from_params(raw)

def url_size_report(chip_uid, did, public_key, signature, base_url=DEFAULT_BASE_URL,
                        device_id=None):
    # Byte size of each format, and which chip classes each one fits.
    # - for humans picking a chip
    payloads = [FullPayload(chip_uid=chip_uid, did=did, public_key=public_key,
                                signature=signature)]
    payloads.append(CompactPayload(chip_uid=chip_uid, public_key=payloads[0].public_key,
                                    signature=payloads[0].signature))
    if device_id:
        payloads.append(DecentralizedReferencePayload(device_id=device_id, chip_uid=chip_uid))

    rv = dict()
    for p in payloads:
        size = url_bytes(p.to_url(base_url))
        rv[p.tier] = dict(bytes=size,
                            fits=[name for name, cap in CHIP_CAPACITY.items() if size <= cap])
    return rv

# EOF
