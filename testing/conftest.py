import pytest, asyncio

from kairos.store import MemoryStore
from kairos.registry import IdentityStore, DeviceRegistry

def pytest_configure(config):
    config.addinivalue_line("markers", "device: needs a tag on a USB (PC/SC) reader")

# fixed master seed, so failures can be reproduced
TEST_SEED = bytes(range(1, 33))

@pytest.fixture
def keypair():
    from kairos.utils import generate_keypair
    return generate_keypair()

@pytest.fixture
def make_registry():
    # Registry over a fresh in-memory store, built inside the running loop.
    # - use: reg = await make_registry()
    async def doit(seed=TEST_SEED, kv=None):
        store = IdentityStore(kv if kv is not None else MemoryStore())
        await store.initialize(seed_source=seed)
        return DeviceRegistry(store)
    return doit

@pytest.fixture(scope='session')
def writer():
    # a tag on a connected reader (via USB)
    from kairos.transport import find_first

    w = find_first()
    if w is None:
        raise pytest.fail('no tag / reader found')
    return w

# EOF
