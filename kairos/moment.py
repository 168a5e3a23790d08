#
# (c) Copyright 2022 by Coinkite Inc. This file is covered by license found in COPYING-CC.
#
# moment.py
#
# Signed "moments": a timestamped record that two identities met.
#
import json
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional

from .constants import MOMENT_TOLERANCE, SIG_SIZE
from .exceptions import ValidationError
from .compat import ED_sign, ED_verify
from .utils import B2A, hex_to_bytes, is_valid_did, truncate_ms, utc_now, to_iso, from_iso

# wire field order, which is also the signing order
SIGNED_FIELDS = ('subject', 'issuer', 'timestamp', 'description')


@dataclass(frozen=True)
class Moment:
    subject: str
    issuer: str
    timestamp: datetime
    description: str
    signature: Optional[bytes] = None

    def __post_init__(self):
        for fld in ('subject', 'issuer'):
            if not is_valid_did(getattr(self, fld)):
                raise ValidationError(f"moment {fld} is not a DID: {getattr(self, fld)!r}")
        if not isinstance(self.description, str):
            raise ValidationError("moment description must be text")
        if not isinstance(self.timestamp, datetime):
            raise ValidationError("moment timestamp must be a datetime")

        # keep only what survives the ISO round trip
        object.__setattr__(self, 'timestamp', truncate_ms(self.timestamp))

        if self.signature is not None:
            object.__setattr__(self, 'signature', hex_to_bytes(self.signature, what='signature'))

    @classmethod
    def create(cls, subject, issuer, description, timestamp=None):
        return cls(subject=subject, issuer=issuer, description=description,
                    timestamp=timestamp or utc_now())

    def unsigned(self):
        return replace(self, signature=None)

    def to_dict(self):
        rv = dict(subject=self.subject, issuer=self.issuer,
                    timestamp=to_iso(self.timestamp), description=self.description)
        rv['signature'] = B2A(self.signature) if self.signature is not None else None
        return rv

    @classmethod
    def from_dict(cls, d):
        if not isinstance(d, dict):
            raise ValidationError("moment record must be a mapping")
        try:
            return cls(subject=d['subject'], issuer=d['issuer'],
                        timestamp=from_iso(d['timestamp']),
                        description=d['description'],
                        signature=d.get('signature'))
        except KeyError as exc:
            raise ValidationError(f"moment record is missing {exc.args[0]!r}")


def canonicalize(moment):
    # Bytes that get signed: compact JSON, keys in fixed order, UTF-8.
    # - signature field (if any) is never included
    body = dict(subject=moment.subject, issuer=moment.issuer,
                timestamp=to_iso(moment.timestamp), description=moment.description)
    assert tuple(body) == SIGNED_FIELDS

    return json.dumps(body, ensure_ascii=False, separators=(',', ':')).encode('utf-8')

def sign(privkey, canonical_bytes):
    # 64-byte Ed25519 signature over exactly these bytes
    privkey = hex_to_bytes(privkey, 32, 'private key')
    return ED_sign(privkey, canonical_bytes)

def sign_moment(privkey, moment):
    # returns a copy of the moment with signature filled in
    return replace(moment, signature=sign(privkey, canonicalize(moment)))

def verify(pubkey, moment, signature=None):
    # True only if signature covers this exact moment under this key.
    # - never raises: tampered, wrong key and garbage encodings are all just False
    if signature is None:
        signature = moment.signature
    if signature is None:
        return False

    try:
        pubkey = hex_to_bytes(pubkey, 32, 'public key')
        signature = hex_to_bytes(signature, SIG_SIZE, 'signature')
        msg = canonicalize(moment)
    except (ValidationError, TypeError, AttributeError):
        return False

    return ED_verify(pubkey, msg, signature)

def timestamp_is_fresh(moment, now=None, tolerance=MOMENT_TOLERANCE):
    # Policy check, separate from verify(): moment must be within +/- 5 minutes
    # of our local clock. Both ends are inclusive.
    when = moment.timestamp if isinstance(moment, Moment) else moment
    if not isinstance(when, datetime) or not (now is None or isinstance(now, datetime)):
        raise ValidationError("timestamps must be datetime objects")
    now = truncate_ms(now) if now is not None else utc_now()
    when = truncate_ms(when)

    return abs(now - when) <= timedelta(seconds=tolerance)

# EOF
