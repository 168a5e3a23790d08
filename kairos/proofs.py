#
# (c) Copyright 2022 by Coinkite Inc. This file is covered by license found in COPYING-CC.
#
# proofs.py
#
# Threshold proofs: "this identity holds at least N moments".
#
# What is proven: the holder of signerPublicKey signed the tuple
# (threshold, actualCount, timestamp). That gives authorship and integrity.
# It does NOT hide actualCount; this is a signed commitment, not a range proof.
# Comparing actualCount against threshold is up to the application.
#
import json
from dataclasses import dataclass
from typing import List

from .constants import MIN_THRESHOLD, THRESHOLD_MILESTONES, GEOMETRIC_STEPS, SIG_SIZE
from .exceptions import ValidationError
from .compat import ED_sign, ED_verify, ED_priv_to_pubkey
from .utils import B2A, hex_to_bytes, now_ms


@dataclass(frozen=True)
class Proof:
    threshold: int
    actual_count: int
    timestamp: int              # epoch milliseconds
    proof: str                  # hex signature
    signer_public_key: str      # hex

    @property
    def passes(self):
        # application policy, not a cryptographic fact
        return self.actual_count >= self.threshold

    def to_dict(self):
        return dict(threshold=self.threshold, actualCount=self.actual_count,
                    timestamp=self.timestamp, proof=self.proof,
                    signerPublicKey=self.signer_public_key)

    @classmethod
    def from_dict(cls, d):
        try:
            rv = cls(threshold=d['threshold'], actual_count=d['actualCount'],
                        timestamp=d['timestamp'], proof=d['proof'],
                        signer_public_key=d['signerPublicKey'])
        except (KeyError, TypeError) as exc:
            raise ValidationError(f"bad proof record: {exc}")

        for fld in ('threshold', 'actual_count', 'timestamp'):
            v = getattr(rv, fld)
            if not isinstance(v, int) or isinstance(v, bool):
                raise ValidationError(f"proof {fld} must be an integer")
        return rv


def proof_message(threshold, actual_count, timestamp):
    # what gets signed; fixed key order, compact JSON
    return json.dumps(dict(threshold=threshold, actualCount=actual_count, timestamp=timestamp),
                        separators=(',', ':')).encode('ascii')

def recommended_thresholds(count) -> List[int]:
    # Milestones worth revealing for someone holding `count` moments.
    # - strictly increasing, never above count, ends with count itself
    if count <= 0:
        return []
    if count < MIN_THRESHOLD:
        return [count]

    rv = [MIN_THRESHOLD]
    rv.extend(m for m in THRESHOLD_MILESTONES if MIN_THRESHOLD < m <= count)

    # beyond the hand-picked list: 100, 250, 500, 1000, 2500 ...
    decade = 100
    while decade <= count:
        for step in GEOMETRIC_STEPS:
            m = int(decade * step)
            if rv[-1] < m <= count:
                rv.append(m)
        decade *= 10

    if rv[-1] != count:
        rv.append(count)

    return rv

def generate_proof(moments, threshold, privkey, pubkey=None, timestamp=None):
    # Sign (threshold, actual count, now) with the identity's key.
    if not moments:
        raise ValidationError("need at least one moment to prove anything")
    if not isinstance(threshold, int) or isinstance(threshold, bool) or threshold <= 0:
        raise ValidationError(f"threshold must be a positive integer, got {threshold!r}")

    privkey = hex_to_bytes(privkey, 32, 'private key')
    my_pubkey = ED_priv_to_pubkey(privkey)
    if pubkey is not None and hex_to_bytes(pubkey, 32, 'public key') != my_pubkey:
        raise ValidationError("public key does not belong to this private key")

    actual_count = len(moments)
    timestamp = now_ms() if timestamp is None else timestamp

    sig = ED_sign(privkey, proof_message(threshold, actual_count, timestamp))

    return Proof(threshold=threshold, actual_count=actual_count, timestamp=timestamp,
                    proof=B2A(sig), signer_public_key=B2A(my_pubkey))

def verify_proof(proof):
    # True if proof is an untouched signature by signer_public_key. Never raises.
    try:
        pubkey = hex_to_bytes(proof.signer_public_key, 32, 'public key')
        sig = hex_to_bytes(proof.proof, SIG_SIZE, 'proof')
        msg = proof_message(proof.threshold, proof.actual_count, proof.timestamp)
    except (ValidationError, AttributeError, TypeError):
        return False

    return ED_verify(pubkey, msg, sig)

def generate_session_proofs(moments, privkey, thresholds=None):
    # one proof per threshold; same moment list, so same actual count in each
    # - order of result follows thresholds
    moments = tuple(moments)
    if thresholds is None:
        thresholds = recommended_thresholds(len(moments))

    timestamp = now_ms()
    return [generate_proof(moments, t, privkey, timestamp=timestamp) for t in thresholds]

# EOF
