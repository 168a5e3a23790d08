#
# (c) Copyright 2022 by Coinkite Inc. This file is covered by license found in COPYING-CC.
#
# registry.py
#
# One identity (a master seed) and the devices/tags that hang off it.
#
# - each device key is derived from the master seed, so only the seed is stored
# - all changes go through IdentityStore.transaction(): one writer at a time,
#   work on a copy, persist, then swap in. Failure anywhere = no change.
# - lost or replaced chips go on a signed revocation list, kept in the same record
#
import os, asyncio, cbor2
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional

from .constants import *
from .exceptions import ValidationError
from .compat import ED_sign, ED_verify
from .utils import create_did, derive_device_key, hex_to_bytes, force_bytes
from .utils import make_device_id, normalize_chip_uid, now_ms
from .moment import Moment, sign_moment
from .proofs import generate_proof
from .nfc_url import encode_for_chip, tag_challenge
from .ndef import tag_image
from .transport import write_tag, read_tag_uid


@dataclass(frozen=True)
class Device:
    device_id: str
    name: str
    device_type: str
    public_key: bytes
    derivation_path: str
    chip_uid: Optional[str] = None
    created_at: int = 0

    @property
    def did(self):
        return create_did(self.public_key)

    def to_record(self):
        return dict(device_id=self.device_id, name=self.name, device_type=self.device_type,
                    public_key=self.public_key, derivation_path=self.derivation_path,
                    chip_uid=self.chip_uid, created_at=self.created_at)

    @classmethod
    def from_record(cls, r):
        return cls(**r)


@dataclass(frozen=True)
class Revocation:
    chip_uid: str
    revoked_at: int                 # epoch milliseconds
    reason: str
    signature: bytes
    new_chip_uid: Optional[str] = None

    def message(self):
        # what the revocation key signs
        return revocation_message(self.chip_uid, self.reason, self.revoked_at,
                                    self.new_chip_uid)

    def to_record(self):
        return dict(chip_uid=self.chip_uid, revoked_at=self.revoked_at, reason=self.reason,
                    signature=self.signature, new_chip_uid=self.new_chip_uid)

    @classmethod
    def from_record(cls, r):
        return cls(**r)

def revocation_message(chip_uid, reason, revoked_at, new_chip_uid=None):
    rv = f'revoke:{chip_uid}:{reason}:{revoked_at}'
    if new_chip_uid:
        rv += f':{new_chip_uid}'
    return rv.encode('ascii')


@dataclass
class Identity:
    master_seed: bytes
    user_id: str = ''
    devices: Dict[str, Device] = field(default_factory=dict)
    created_at: int = 0
    revocations: List[Revocation] = field(default_factory=list)

    def copy(self):
        # devices and revocations are frozen, so new containers are enough
        return replace(self, devices=dict(self.devices), revocations=list(self.revocations))

    def to_record(self):
        return dict(version=IDENTITY_RECORD_VERSION, master_seed=self.master_seed,
                    user_id=self.user_id, created_at=self.created_at,
                    devices=[d.to_record() for d in self.devices.values()],
                    revocations=[r.to_record() for r in self.revocations])

    @classmethod
    def from_record(cls, r):
        if r.get('version') != IDENTITY_RECORD_VERSION:
            raise ValidationError(f"unknown identity record version: {r.get('version')}")
        devs = [Device.from_record(d) for d in r['devices']]
        revs = [Revocation.from_record(x) for x in r.get('revocations', [])]
        return cls(master_seed=r['master_seed'], user_id=r['user_id'],
                    created_at=r['created_at'], devices={d.device_id: d for d in devs},
                    revocations=revs)

    def revoked(self, chip_uid):
        for r in self.revocations:
            if r.chip_uid == chip_uid:
                return r
        return None


class IdentityStore:
    #
    # The one place identity state lives. Pass it around; don't make it global.
    #

    def __init__(self, kv, key=IDENTITY_STORAGE_KEY):
        self.kv = kv
        self.key = key
        self.identity = None
        self._lock = asyncio.Lock()

    def _read(self):
        raw = self.kv.get(self.key)
        if raw is None:
            return None
        try:
            return Identity.from_record(cbor2.loads(raw))
        except (cbor2.CBORDecodeError, KeyError, TypeError, AttributeError) as exc:
            raise ValidationError(f"corrupt identity record: {exc}",
                                    hint="restore the store from a backup")

    def _write(self, ident):
        self.kv.set(self.key, cbor2.dumps(ident.to_record()))

    async def load(self):
        # existing identity, or None
        async with self._lock:
            if self.identity is None:
                self.identity = self._read()
            return self.identity

    async def initialize(self, seed_source=None, user_id=''):
        # Create-or-load. Calling again just returns what's there.
        # - seed_source: 32 bytes, or a callable returning them; default is OS RNG
        async with self._lock:
            if self.identity is None:
                self.identity = self._read()
            if self.identity is not None:
                return self.identity

            if seed_source is None:
                seed = os.urandom(MASTER_SEED_SIZE)
            else:
                seed = seed_source() if callable(seed_source) else seed_source
            seed = hex_to_bytes(seed, MASTER_SEED_SIZE, 'master seed')
            if len(set(seed)) < 2:
                raise ValidationError("master seed has no entropy")

            ident = Identity(master_seed=seed, user_id=user_id, created_at=now_ms())
            self._write(ident)
            self.identity = ident
            return ident

    @asynccontextmanager
    async def transaction(self):
        # single writer; yields a private copy, committed only if body succeeds
        async with self._lock:
            if self.identity is None:
                self.identity = self._read()
            if self.identity is None:
                raise ValidationError("no identity yet", hint="run initialize first")

            work = self.identity.copy()
            yield work

            self._write(work)
            self.identity = work


class DeviceRegistry:
    #
    # Devices under one identity. Secret keys are re-derived when needed,
    # and never leave this object.
    #

    def __init__(self, store):
        self.store = store

    def _identity(self):
        if self.store.identity is None:
            raise ValidationError("identity not loaded", hint="load or initialize it first")
        return self.store.identity

    def __contains__(self, device_id):
        ident = self.store.identity
        return ident is not None and device_id in ident.devices

    def __len__(self):
        ident = self.store.identity
        return len(ident.devices) if ident else 0

    def get_device(self, device_id):
        return self._identity().devices.get(device_id)

    def devices(self):
        return sorted(self._identity().devices.values(), key=lambda d: (d.created_at, d.device_id))

    def find_by_chip(self, chip_uid):
        # device on this chip; None if nobody, or if the chip is revoked
        chip_uid = normalize_chip_uid(chip_uid)
        ident = self._identity()
        if ident.revoked(chip_uid):
            return None
        for d in ident.devices.values():
            if d.chip_uid == chip_uid:
                return d
        return None

    def device_did(self, device_id):
        return self._require(device_id).did

    def _require(self, device_id):
        dev = self.get_device(device_id)
        if dev is None:
            raise ValidationError(f"unknown device: {device_id}")
        return dev

    def _privkey(self, device_id):
        dev = self._require(device_id)
        privkey, pubkey, _ = derive_device_key(self._identity().master_seed, device_id)
        assert pubkey == dev.public_key, 'derived key changed?'
        return privkey

    @staticmethod
    def _new_device(ident, name, device_type, chip_uid=None):
        # Device record with a fresh id and its derived key, not yet added anywhere
        for retry in range(5):
            device_id = make_device_id(device_type)
            if device_id not in ident.devices:
                break
        else:
            raise RuntimeError("stuck RNG? device id collisions")

        _, pubkey, path = derive_device_key(ident.master_seed, device_id)

        return Device(device_id=device_id, name=name, device_type=device_type,
                        public_key=pubkey, derivation_path=path, chip_uid=chip_uid,
                        created_at=now_ms())

    async def register_device(self, name, device_type='passive'):
        # New device with its own keypair; returns the device id.
        async with self.store.transaction() as ident:
            dev = self._new_device(ident, name, device_type)
            ident.devices[dev.device_id] = dev
        return dev.device_id

    @staticmethod
    def _check_chip_free(ident, chip_uid, device_id=None):
        if ident.revoked(chip_uid):
            raise ValidationError(f"chip {chip_uid} is revoked")
        for other in ident.devices.values():
            if other.chip_uid == chip_uid and other.device_id != device_id:
                raise ValidationError(f"chip {chip_uid} already used by {other.device_id}")

    async def bind_chip(self, device_id, chip_uid):
        # tie a device to the physical tag it lives on; only once
        chip_uid = normalize_chip_uid(chip_uid)
        async with self.store.transaction() as ident:
            dev = ident.devices.get(device_id)
            if dev is None:
                raise ValidationError(f"unknown device: {device_id}")
            if dev.chip_uid and dev.chip_uid != chip_uid:
                raise ValidationError(f"device {device_id} already bound to {dev.chip_uid}")
            self._check_chip_free(ident, chip_uid, device_id)
            ident.devices[device_id] = replace(dev, chip_uid=chip_uid)

    async def remove_device(self, device_id):
        async with self.store.transaction() as ident:
            if ident.devices.pop(device_id, None) is None:
                raise ValidationError(f"unknown device: {device_id}")

    def authenticate_locally(self, device_id, challenge):
        # sign challenge with device's key; returns 64-byte signature
        return ED_sign(self._privkey(device_id), force_bytes(challenge))

    @staticmethod
    def verify_locally(signature, challenge, public_key):
        # anyone can do this; no secrets needed. Never raises.
        if not isinstance(challenge, (str, bytes, bytearray)):
            return False
        try:
            sig = hex_to_bytes(signature, 64, 'signature')
            pubkey = hex_to_bytes(public_key, 32, 'public key')
        except ValidationError:
            return False
        return ED_verify(pubkey, bytes(force_bytes(challenge)), sig)

    def sign_moment(self, device_id, subject, description, timestamp=None):
        # device is the issuer
        m = Moment.create(subject=subject, issuer=self.device_did(device_id),
                            description=description, timestamp=timestamp)
        return sign_moment(self._privkey(device_id), m)

    def prove(self, device_id, moments, threshold):
        return generate_proof(moments, threshold, self._privkey(device_id))

    async def provision_tag(self, name, device_type, writer, chip=DEFAULT_CHIP,
                                base_url=DEFAULT_BASE_URL, timeout=WRITE_TIMEOUT):
        # Make a device for the tag on the writer, put its URL on the tag, then
        # record it. The identity only changes after the tag write succeeded,
        # in one transaction; failure, timeout or cancel before that changes nothing.
        # - returns (device_id, payload, url)
        ident = await self.store.load()
        if ident is None:
            raise ValidationError("no identity yet", hint="run initialize first")

        chip_uid = await read_tag_uid(writer, timeout=timeout)
        self._check_chip_free(ident, chip_uid)

        dev = self._new_device(ident, name, device_type, chip_uid=chip_uid)
        privkey, _, _ = derive_device_key(ident.master_seed, dev.device_id)
        sig = ED_sign(privkey, tag_challenge(chip_uid).encode('ascii'))

        # reference format is fine: the device is recorded before anyone can read the tag
        known = set(ident.devices) | {dev.device_id}
        payload, url = encode_for_chip(chip_uid, dev.did, dev.public_key, sig, chip=chip,
                                        base_url=base_url, device_id=dev.device_id,
                                        registry=known)

        await write_tag(writer, tag_image(url), timeout=timeout)

        async with self.store.transaction() as work:
            if dev.device_id in work.devices:
                raise ValidationError(f"device id {dev.device_id} taken meanwhile")
            self._check_chip_free(work, chip_uid)
            work.devices[dev.device_id] = dev

        return dev.device_id, payload, url

    #
    # Revocation list: chips that must no longer be trusted
    #
    def revocation_public_key(self):
        _, pubkey, _ = derive_device_key(self._identity().master_seed, REVOCATION_KEY_ID)
        return pubkey

    def is_revoked(self, chip_uid):
        # the Revocation entry, or None
        return self._identity().revoked(normalize_chip_uid(chip_uid))

    def revocations(self):
        return list(self._identity().revocations)

    @staticmethod
    def verify_revocation(entry, public_key):
        # Never raises.
        try:
            pubkey = hex_to_bytes(public_key, 32, 'public key')
            sig = hex_to_bytes(entry.signature, SIG_SIZE, 'signature')
            msg = entry.message()
        except (ValidationError, AttributeError, UnicodeEncodeError):
            return False
        return ED_verify(pubkey, msg, sig)

    def _sign_revocation(self, ident, chip_uid, reason, new_chip_uid):
        when = now_ms()
        privkey, _, _ = derive_device_key(ident.master_seed, REVOCATION_KEY_ID)
        sig = ED_sign(privkey, revocation_message(chip_uid, reason, when, new_chip_uid))
        return Revocation(chip_uid=chip_uid, revoked_at=when, reason=reason, signature=sig,
                            new_chip_uid=new_chip_uid)

    async def revoke_chip(self, chip_uid, reason='lost'):
        # Put a chip on the revocation list. Its device stays, but the chip is
        # refused from now on.
        if reason not in REVOCATION_REASONS:
            raise ValidationError(f"bad revocation reason: {reason!r}",
                                    hint='pick one of: ' + ', '.join(REVOCATION_REASONS))
        chip_uid = normalize_chip_uid(chip_uid)

        async with self.store.transaction() as ident:
            if ident.revoked(chip_uid):
                raise ValidationError(f"chip {chip_uid} is already revoked")
            entry = self._sign_revocation(ident, chip_uid, reason, None)
            ident.revocations.append(entry)

        return entry

    async def rotate_chip(self, old_chip_uid, new_chip_uid):
        # Device moves to a new chip; the old one is revoked. One transaction.
        old_chip_uid = normalize_chip_uid(old_chip_uid)
        new_chip_uid = normalize_chip_uid(new_chip_uid)
        if old_chip_uid == new_chip_uid:
            raise ValidationError("new chip is the old chip")

        async with self.store.transaction() as ident:
            if ident.revoked(old_chip_uid):
                raise ValidationError(f"chip {old_chip_uid} is already revoked")

            dev = None
            for d in ident.devices.values():
                if d.chip_uid == old_chip_uid:
                    dev = d
                    break
            if dev is None:
                raise ValidationError(f"no device is bound to chip {old_chip_uid}")

            self._check_chip_free(ident, new_chip_uid, dev.device_id)

            entry = self._sign_revocation(ident, old_chip_uid, 'rotation', new_chip_uid)
            ident.revocations.append(entry)
            ident.devices[dev.device_id] = replace(dev, chip_uid=new_chip_uid)

        return entry

# EOF
