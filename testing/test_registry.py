#
# (c) Copyright 2022 by Coinkite Inc. This file is covered by license found in COPYING-CC.
#
# Identity store, device registry and provisioning of tags.
#
import pytest, asyncio, cbor2

from kairos.constants import *
from kairos.exceptions import ValidationError, StorageUnavailable, TagTimeout, KairosError
from kairos.store import MemoryStore, FileStore
from kairos.registry import IdentityStore, DeviceRegistry
from kairos.transport import EmulatedTag
from kairos.utils import did_to_pubkey
from kairos.moment import verify
from kairos.proofs import verify_proof
from kairos.nfc_url import decode_url, DecentralizedReferencePayload
from kairos.ndef import tlv_unwrap, decode_uri_record

from conftest import TEST_SEED

class FlakyStore(MemoryStore):
    # memory store that can be told to stop working
    broken = False

    def set(self, key, value):
        if self.broken:
            raise StorageUnavailable("disk on fire")
        super().set(key, value)

def test_fresh_identity(make_registry):
    async def doit():
        reg = await make_registry()
        assert len(reg) == 0
        assert reg.devices() == []

        dev_id = await reg.register_device('Left pendant', 'pendant')
        assert len(reg) == 1
        assert dev_id in reg
        assert dev_id.startswith('pendant-')

        dev = reg.get_device(dev_id)
        assert dev.name == 'Left pendant'
        assert dev.did == reg.device_did(dev_id)
        assert dev.derivation_path.endswith(dev_id)
        assert dev.chip_uid is None

        # second init is a no-op, even with another seed
        ident = await reg.store.initialize(seed_source=bytes(31) + b'\x01')
        assert ident.master_seed == TEST_SEED
        assert len(ident.devices) == 1

    asyncio.run(doit())

def test_bad_seeds():
    async def doit(seed):
        store = IdentityStore(MemoryStore())
        with pytest.raises(ValidationError):
            await store.initialize(seed_source=seed)
        assert store.identity is None

    for seed in [bytes(32), b'\x01' * 32, bytes(16), 'nothex']:
        asyncio.run(doit(seed))

def test_seed_callable():
    async def doit():
        store = IdentityStore(MemoryStore())
        ident = await store.initialize(seed_source=lambda: TEST_SEED, user_id='alice')
        assert ident.master_seed == TEST_SEED
        assert ident.user_id == 'alice'

        # random by default
        other = await IdentityStore(MemoryStore()).initialize()
        assert len(other.master_seed) == MASTER_SEED_SIZE
        assert other.master_seed != TEST_SEED

    asyncio.run(doit())

def test_no_identity():
    async def doit():
        store = IdentityStore(MemoryStore())
        assert await store.load() is None

        reg = DeviceRegistry(store)
        assert len(reg) == 0
        assert 'x' not in reg
        with pytest.raises(ValidationError):
            await reg.register_device('nope')
        with pytest.raises(ValidationError):
            reg.devices()

    asyncio.run(doit())

def test_authenticate(make_registry):
    async def doit():
        reg = await make_registry()
        a = await reg.register_device('A')
        b = await reg.register_device('B')

        challenge = 'KairOS-Local-test-1'
        sig = reg.authenticate_locally(a, challenge)
        assert len(sig) == 64

        pub_a = reg.get_device(a).public_key
        pub_b = reg.get_device(b).public_key
        assert pub_a != pub_b

        assert DeviceRegistry.verify_locally(sig, challenge, pub_a)
        assert reg.verify_locally(sig.hex(), challenge, pub_a.hex())
        assert not reg.verify_locally(sig, challenge + 'x', pub_a)
        assert not reg.verify_locally(sig, challenge, pub_b)
        assert not reg.verify_locally('zz', challenge, pub_a)

        with pytest.raises(ValidationError):
            reg.authenticate_locally('passive-000000000000', challenge)
        with pytest.raises(ValidationError):
            reg.device_did('passive-000000000000')

    asyncio.run(doit())

def test_moments_and_proofs(make_registry):
    async def doit():
        reg = await make_registry()
        a = await reg.register_device('A')
        b = await reg.register_device('B')

        moments = [reg.sign_moment(a, reg.device_did(b), f'met #{n}') for n in range(6)]
        for m in moments:
            assert m.issuer == reg.device_did(a)
            assert verify(did_to_pubkey(m.issuer), m)

        pr = reg.prove(a, moments, 5)
        assert pr.actual_count == 6
        assert pr.signer_public_key == reg.get_device(a).public_key.hex()
        assert verify_proof(pr)

    asyncio.run(doit())

def test_concurrent_registration(make_registry):
    kv = MemoryStore()

    async def doit():
        reg = await make_registry(kv=kv)
        ids = await asyncio.gather(*[reg.register_device(f'dev {n}') for n in range(20)])
        assert len(set(ids)) == 20
        assert len(reg) == 20

        # all of them made it to storage
        store2 = IdentityStore(kv)
        ident = await store2.load()
        assert set(ident.devices) == set(ids)

    asyncio.run(doit())

def test_storage_failure(make_registry):
    kv = FlakyStore()

    async def doit():
        reg = await make_registry(kv=kv)
        await reg.register_device('ok')

        kv.broken = True
        with pytest.raises(StorageUnavailable):
            await reg.register_device('not ok')

        # nothing changed, in memory or on disk
        assert len(reg) == 1
        assert len((await IdentityStore(kv).load()).devices) == 1

        kv.broken = False
        await reg.register_device('ok again')
        assert len(reg) == 2

    asyncio.run(doit())

def test_failed_transaction(make_registry):
    async def doit():
        reg = await make_registry()
        await reg.register_device('A')

        with pytest.raises(ZeroDivisionError):
            async with reg.store.transaction() as ident:
                ident.devices.clear()
                1/0

        assert len(reg) == 1

    asyncio.run(doit())

def test_file_store(tmp_path):
    path = tmp_path / 'kairos'

    async def first():
        store = IdentityStore(FileStore(str(path)))
        await store.initialize(seed_source=TEST_SEED)
        reg = DeviceRegistry(store)
        dev_id = await reg.register_device('A', 'pendant')
        return dev_id, reg.authenticate_locally(dev_id, 'hello')

    async def second():
        store = IdentityStore(FileStore(str(path)))
        assert await store.load() is not None
        return DeviceRegistry(store)

    dev_id, sig = asyncio.run(first())
    reg = asyncio.run(second())

    assert dev_id in reg
    assert reg.authenticate_locally(dev_id, 'hello') == sig
    assert [p.name for p in path.iterdir()] == [IDENTITY_STORAGE_KEY]

def test_file_store_unreachable(tmp_path):
    blocker = tmp_path / 'afile'
    blocker.write_text('not a directory')

    async def doit():
        store = IdentityStore(FileStore(str(blocker / 'sub')))
        with pytest.raises(StorageUnavailable):
            await store.initialize(seed_source=TEST_SEED)
        assert store.identity is None

    asyncio.run(doit())

def test_corrupt_record():
    async def doit(raw):
        kv = MemoryStore()
        kv.set(IDENTITY_STORAGE_KEY, raw)
        with pytest.raises(ValidationError):
            await IdentityStore(kv).load()

    for raw in [b'\xff\xff', cbor2.dumps([1, 2]), cbor2.dumps(dict(version=99)),
                    cbor2.dumps(dict(version=1, master_seed=TEST_SEED))]:
        asyncio.run(doit(raw))

def test_bind_chip(make_registry):
    async def doit():
        reg = await make_registry()
        a = await reg.register_device('A')
        b = await reg.register_device('B')

        await reg.bind_chip(a, '04abcdef123456')
        assert reg.get_device(a).chip_uid == '04:AB:CD:EF:12:34:56'
        assert reg.find_by_chip('04:ab:cd:ef:12:34:56').device_id == a

        # same again is fine
        await reg.bind_chip(a, '04:AB:CD:EF:12:34:56')

        with pytest.raises(ValidationError):
            await reg.bind_chip(a, '04:00:00:00:00:00:01')
        with pytest.raises(ValidationError):
            await reg.bind_chip(b, '04abcdef123456')
        with pytest.raises(ValidationError):
            await reg.bind_chip('nope', '04abcdef123456')

        await reg.remove_device(a)
        assert a not in reg
        assert reg.find_by_chip('04abcdef123456') is None
        with pytest.raises(ValidationError):
            await reg.remove_device(a)

    asyncio.run(doit())

def _tag_url(tag):
    return decode_uri_record(tlv_unwrap(bytes(tag.memory)))

@pytest.mark.parametrize('chip,tier', [
    ('large', TIER_FULL),
    ('medium', TIER_FULL),
    ('secure', TIER_REFERENCE),
    ('ultra-small', TIER_REFERENCE),
])
def test_provision(make_registry, chip, tier):
    async def doit():
        reg = await make_registry()
        tag = EmulatedTag(chip)

        dev_id, payload, url = await reg.provision_tag('pendant', 'pendant', tag, chip=chip)
        assert payload.tier == tier
        assert tag.write_count == 1
        assert _tag_url(tag) == url
        assert decode_url(url) == payload

        dev = reg.get_device(dev_id)
        assert dev.chip_uid == tag.uid
        assert reg.find_by_chip(tag.uid) == dev

        if isinstance(payload, DecentralizedReferencePayload):
            assert payload.resolve(reg) == dev
        else:
            assert payload.verify()
            assert payload.did == dev.did

    asyncio.run(doit())

def test_provision_refused(make_registry):
    async def doit():
        reg = await make_registry()
        await reg.register_device('existing')

        with pytest.raises(KairosError):
            await reg.provision_tag('x', 'pendant', EmulatedTag('large', fail=True), chip='large')
        assert len(reg) == 1

    asyncio.run(doit())

def test_provision_timeout(make_registry):
    async def doit():
        reg = await make_registry()
        tag = EmulatedTag('large', delay=2)

        with pytest.raises(TagTimeout):
            await reg.provision_tag('x', 'pendant', tag, chip='large', timeout=0.05)

        # one retry, then gave up; nothing recorded
        assert tag.write_count == 2
        assert len(reg) == 0

    asyncio.run(doit())

def test_provision_cancelled(make_registry):
    async def doit():
        reg = await make_registry()
        tag = EmulatedTag('large', delay=5)

        task = asyncio.create_task(reg.provision_tag('x', 'pendant', tag, chip='large'))
        await asyncio.sleep(0.05)

        # nothing recorded while the write is in progress
        assert tag.write_count == 1
        assert len(reg) == 0

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(reg) == 0

    asyncio.run(doit())

def test_provision_same_chip(make_registry):
    async def doit():
        reg = await make_registry()
        uid = '04:11:22:33:44:55:66'

        await reg.provision_tag('first', 'pendant', EmulatedTag('large', uid=uid), chip='large')

        again = EmulatedTag('large', uid=uid)
        with pytest.raises(ValidationError):
            await reg.provision_tag('second', 'pendant', again, chip='large')
        assert again.write_count == 0
        assert len(reg) == 1

    asyncio.run(doit())

def test_resolve_unknown(make_registry):
    async def doit():
        reg = await make_registry()
        ref = DecentralizedReferencePayload(device_id='pendant-000000000000',
                                                chip_uid='04:11:22:33')
        with pytest.raises(ValidationError):
            ref.resolve(reg)

    asyncio.run(doit())

class SabotageTag(EmulatedTag):
    # tag whose write also takes the storage down with it
    def __init__(self, kv, **kws):
        super().__init__(**kws)
        self.kv = kv

    async def write(self, data):
        self.kv.broken = True
        return await super().write(data)

@pytest.mark.parametrize('fail', [True, False])
def test_provision_storage_down(make_registry, fail):
    kv = FlakyStore()

    async def doit():
        reg = await make_registry(kv=kv)
        await reg.register_device('existing')
        tag = SabotageTag(kv, chip='large', fail=fail)

        # tag error is reported as itself; storage error only if it was the problem
        with pytest.raises(KairosError) as ee:
            await reg.provision_tag('x', 'pendant', tag, chip='large')
        assert isinstance(ee.value, StorageUnavailable) == (not fail)

        # nothing persisted, in memory or on disk
        assert len(reg) == 1
        assert reg.find_by_chip(tag.uid) is None
        kv.broken = False
        assert len((await IdentityStore(kv).load()).devices) == 1

    asyncio.run(doit())

@pytest.mark.parametrize('challenge', [None, 5, 1.5, object(), ['a'], dict(a=1)])
def test_verify_locally_garbage(make_registry, challenge):
    async def doit():
        reg = await make_registry()
        a = await reg.register_device('A')
        sig = reg.authenticate_locally(a, 'hello')
        assert DeviceRegistry.verify_locally(sig, challenge, reg.get_device(a).public_key) is False

    asyncio.run(doit())

def test_revoke(make_registry):
    async def doit():
        reg = await make_registry()
        uid = '04:11:22:33:44:55:66'
        dev_id, payload, url = await reg.provision_tag('p', 'pendant',
                                                EmulatedTag('ultra-small', uid=uid))
        assert payload.resolve(reg).device_id == dev_id
        assert reg.is_revoked(uid) is None

        with pytest.raises(ValidationError):
            await reg.revoke_chip(uid, 'bored')

        entry = await reg.revoke_chip('04112233445566', 'lost')
        assert entry.chip_uid == uid
        assert entry.reason == 'lost'
        assert reg.is_revoked(uid) == entry

        pub = reg.revocation_public_key()
        assert DeviceRegistry.verify_revocation(entry, pub)
        assert DeviceRegistry.verify_revocation(entry, pub.hex())
        assert not DeviceRegistry.verify_revocation(entry, reg.get_device(dev_id).public_key)
        forged = entry.__class__(chip_uid=uid, revoked_at=entry.revoked_at, reason='stolen',
                                    signature=entry.signature)
        assert not DeviceRegistry.verify_revocation(forged, pub)
        assert not DeviceRegistry.verify_revocation(None, pub)

        # refused from now on
        assert reg.find_by_chip(uid) is None
        with pytest.raises(ValidationError):
            payload.resolve(reg)
        with pytest.raises(ValidationError):
            await reg.revoke_chip(uid)
        with pytest.raises(ValidationError):
            await reg.provision_tag('again', 'pendant', EmulatedTag('large', uid=uid),
                                        chip='large')

        # device itself is still there
        assert dev_id in reg

    asyncio.run(doit())

def test_revocations_persist():
    kv = MemoryStore()

    async def doit():
        store = IdentityStore(kv)
        await store.initialize(seed_source=TEST_SEED)
        reg = DeviceRegistry(store)
        await reg.revoke_chip('04:01:02:03', 'stolen')

        again = DeviceRegistry(IdentityStore(kv))
        await again.store.load()
        entry = again.is_revoked('04010203')
        assert entry.reason == 'stolen'
        assert again.verify_revocation(entry, again.revocation_public_key())

    asyncio.run(doit())

def test_revocations_storage_failure(make_registry):
    kv = FlakyStore()

    async def doit():
        reg = await make_registry(kv=kv)
        kv.broken = True
        with pytest.raises(StorageUnavailable):
            await reg.revoke_chip('04:01:02:03')
        assert reg.is_revoked('04:01:02:03') is None
        assert reg.revocations() == []

    asyncio.run(doit())

def test_rotate(make_registry):
    async def doit():
        reg = await make_registry()
        old, new = '04:11:22:33:44:55:66', '04:aa:bb:cc:dd:ee:ff'
        dev_id, payload, url = await reg.provision_tag('p', 'pendant',
                                                EmulatedTag('ultra-small', uid=old))

        with pytest.raises(ValidationError):
            await reg.rotate_chip(old, old)
        with pytest.raises(ValidationError):
            await reg.rotate_chip('04:00:00:00', new)

        entry = await reg.rotate_chip(old, new)
        assert entry.reason == 'rotation'
        assert entry.new_chip_uid == '04:AA:BB:CC:DD:EE:FF'
        assert reg.verify_revocation(entry, reg.revocation_public_key())

        assert reg.get_device(dev_id).chip_uid == '04:AA:BB:CC:DD:EE:FF'
        assert reg.find_by_chip(new).device_id == dev_id
        assert reg.find_by_chip(old) is None

        # old tag's URL no longer resolves; a new one for the new chip does
        with pytest.raises(ValidationError):
            payload.resolve(reg)
        ref = DecentralizedReferencePayload(device_id=dev_id, chip_uid=new)
        assert ref.resolve(reg).device_id == dev_id

        with pytest.raises(ValidationError):
            await reg.rotate_chip(old, '04:01:01:01')

    asyncio.run(doit())
@pytest.mark.device
def test_real_tag(make_registry, writer):
    # overwrites the tag on the reader
    async def doit():
        reg = await make_registry()
        dev_id, payload, url = await reg.provision_tag('real', 'pendant', writer,
                                                            chip='ultra-small')
        got = await writer.read(144)
        assert decode_uri_record(tlv_unwrap(got)) == url

    asyncio.run(doit())

# EOF
