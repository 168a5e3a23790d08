#!/usr/bin/env python
#
# (c) Copyright 2021 by Coinkite Inc. This file is covered by license found in COPYING-CC.
#
# To use this, install with:
#
#   pip install --editable '.[cli]'
#
# That will create the command "kairos" in your path.
#
#
import click, sys, os, json, asyncio
from functools import wraps

from kairos.utils import B2A, create_did, did_to_pubkey, did_document
from kairos.constants import *
from kairos.exceptions import KairosError, CryptographicMismatch
from kairos.store import FileStore
from kairos.registry import IdentityStore, DeviceRegistry
from kairos.moment import Moment, verify, timestamp_is_fresh
from kairos.proofs import Proof, verify_proof, recommended_thresholds
from kairos.nfc_url import encode_for_chip, decode_url, tag_challenge, url_size_report
from kairos.nfc_url import CompactPayload, FullPayload
from kairos.ndef import tlv_unwrap, decode_uri_record, tag_image
from kairos.replay import ChallengeGuard, parse_challenge
from kairos import __version__

# dict of options that apply to all commands
global global_opts
global_opts = dict()

# Cleanup display (supress traceback) for user-feedback exceptions
_sys_excepthook = sys.excepthook
def my_hook(ty, val, tb):
    if issubclass(ty, RuntimeError):
        # includes all KairosError
        print("FATAL: %s" % val, file=sys.stderr)
    else:
        return _sys_excepthook(ty, val, tb)
sys.excepthook=my_hook

def fail(msg):
    # show message and stop
    click.echo(f"FAILURE: {msg}", err=True)
    sys.exit(1)

def display_errors(f):
    # one-line errors, and a non-zero exit, instead of a traceback
    @wraps(f)
    def wrapper(*args, **kws):
        try:
            return f(*args, **kws)
        except KairosError as exc:
            fail(str(exc))
    return wrapper

def store_path():
    return os.path.expanduser(global_opts.get('store') or '~/.kairos')

async def open_registry(must_exist=True):
    # Identity store and registry for this run. Build inside the running loop.
    if global_opts.get('verbose'):
        import kairos.transport as tt
        tt.VERBOSE = True

    store = IdentityStore(FileStore(store_path()))
    ident = await store.load()
    if ident is None and must_exist:
        fail(f"No identity in {store_path()} yet. Run: kairos init")

    return DeviceRegistry(store)

def get_registry():
    # for commands that only read
    return asyncio.run(open_registry())

def dump_json(obj):
    click.echo(json.dumps(obj, indent=2))

def read_json(fd):
    try:
        return json.load(fd)
    except ValueError as exc:
        fail(f"{fd.name}: not JSON: {exc}")

# Accept any prefix of a command name.
#
# from <https://click.palletsprojects.com/en/8.0.x/advanced/?#command-aliases>
class AliasedGroup(click.Group):
    def get_command(self, ctx, cmd_name):
        rv = click.Group.get_command(self, ctx, cmd_name)
        if rv is not None:
            return rv
        matches = [x for x in self.list_commands(ctx)
                   if x.startswith(cmd_name)]
        if not matches:
            return None
        elif len(matches) == 1:
            return click.Group.get_command(self, ctx, matches[0])
        ctx.fail(f"Abiguous command. Pick one of: {' | '.join(sorted(matches))}")

    def resolve_command(self, ctx, args):
        # always return the full command name
        _, cmd, args = super().resolve_command(ctx, args)
        return cmd.name, cmd, args


#
# Options we want for all commands
#
@click.group(cls=AliasedGroup)
@click.option('--store', '-s', default='~/.kairos', envvar='KAIROS_STORE', metavar="DIR",
                    help="Directory holding your identity (env: KAIROS_STORE)")
@click.option('--base-url', '-u', default=DEFAULT_BASE_URL, metavar="URL",
                    help="Site that NFC URLs point to")
@click.option('--verbose', '-v', is_flag=True,
                    help="Show traffic with tags.")
@click.option('--pdb', is_flag=True,
                    help="Prepare patient for surgery to remove bugs.")
@click.version_option(version=__version__)
def main(**kws):
    '''
    Self-sovereign identity for NFC pendants: keys, moments, proofs and tags.

    You can use "dev", or "d" for "devices": any distinct prefix for all commands.
    '''
    # implement PDB option here
    if kws.pop('pdb', False):
        import pdb
        def doit(ex_cls, ex, tb):
            pdb.pm()
        sys.excepthook = doit

    # global options, mostly not considered here
    global global_opts
    global_opts.update(kws)


@main.command('init')
@click.option('--seed', metavar="HEX", default=None,
                help="Use this 32-byte master seed (testing only!)")
@click.option('--user', metavar="NAME", default='', help="Label for this identity")
@display_errors
def init_identity(seed, user):
    "Create your identity (master seed), or show the existing one"
    async def doit():
        reg = await open_registry(must_exist=False)
        had = await reg.store.load()
        ident = await reg.store.initialize(seed_source=seed,
                                            user_id=user)
        return had, ident

    had, ident = asyncio.run(doit())
    if had is not None:
        click.echo(f"Identity already exists in {store_path()}: {len(ident.devices)} device(s)")
    else:
        if seed:
            print("WARNING: Using provided master seed! Testing purposes only!!")
        click.echo(f"New identity created in {store_path()}")

@main.command('devices')
def list_devices():
    "List devices under this identity"
    reg = get_registry()

    count = 0
    for d in reg.devices():
        click.echo(f"{d.device_id}  {d.name!r}  [{d.device_type}]  chip={d.chip_uid or '-'}")
        click.echo(f"    {d.did}")
        count += 1

    if not count:
        click.echo("(none yet)")

@main.command('register')
@click.argument('name', type=str)
@click.option('--type', '-t', 'device_type', default='passive', metavar="TYPE",
                help="Kind of device: passive, pendant, esp32 ...")
@display_errors
def register(name, device_type):
    "Add a new device (and its key) to this identity"
    async def doit():
        reg = await open_registry()
        device_id = await reg.register_device(name, device_type)
        return device_id, reg.device_did(device_id)

    device_id, did = asyncio.run(doit())
    click.echo(device_id)
    click.echo(did)

@main.command('did')
@click.argument('device_id', type=str, required=False)
@click.option('--pubkey', '-p', metavar="HEX", default=None,
                help="Show DID for this public key instead")
@click.option('--document', '-d', is_flag=True, help="Show the full DID document")
@display_errors
def show_did(device_id, pubkey, document):
    "Show DID of a device (or of any Ed25519 public key)"
    if pubkey:
        did = create_did(pubkey)
        dev = None
    elif device_id:
        dev = get_registry().get_device(device_id)
        if not dev:
            fail(f"Unknown device: {device_id}")
        did = dev.did
    else:
        fail("Need a device id or --pubkey")

    if not document:
        click.echo(did)
    else:
        dump_json(did_document(did, chip_uid=dev and dev.chip_uid,
                                        device_id=dev and dev.device_id))

@main.command('auth')
@click.argument('device_id', type=str)
@click.option('--challenge', '-c', metavar="TEXT", default=None,
                help="Sign this challenge, default: make a fresh one")
@display_errors
def authenticate(device_id, challenge):
    "Sign a challenge with a device key, and check the result"
    reg = get_registry()
    dev = reg.get_device(device_id)
    if not dev:
        fail(f"Unknown device: {device_id}")

    # our own challenges are checked for age and device before signing
    guard = ChallengeGuard()
    if challenge is None:
        challenge = guard.make_challenge(device_id)
    if parse_challenge(challenge) and not guard.check(challenge, device_id):
        fail("Challenge is too old, from the future, or for another device")

    sig = reg.authenticate_locally(device_id, challenge)
    if not reg.verify_locally(sig, challenge, dev.public_key):
        raise CryptographicMismatch("signature we just made does not verify?!")

    click.echo(f"challenge: {challenge}")
    click.echo(f"signature: {B2A(sig)}")
    click.echo(f"publicKey: {B2A(dev.public_key)}")

@main.command('moment')
@click.argument('device_id', type=str)
@click.argument('subject', type=str, metavar="SUBJECT_DID")
@click.argument('description', type=str)
@display_errors
def make_moment(device_id, subject, description):
    "Sign a moment: this device (issuer) met SUBJECT_DID, now"
    reg = get_registry()
    m = reg.sign_moment(device_id, subject, description)
    dump_json(m.to_dict())

@main.command('check')
@click.argument('moment_file', type=click.File('rt'), metavar="MOMENT.json")
@click.option('--pubkey', '-p', metavar="HEX", default=None,
                help="Expected signer, default: the issuer's DID")
@click.option('--fresh', '-f', is_flag=True,
                help="Also insist the timestamp is within 5 minutes of now")
@display_errors
def check_moment(moment_file, pubkey, fresh):
    "Verify the signature on a moment"
    m = Moment.from_dict(read_json(moment_file))
    pubkey = pubkey or did_to_pubkey(m.issuer)

    if not verify(pubkey, m):
        raise CryptographicMismatch("moment signature does not verify",
                                        hint="tampered, or signed by another key")

    if fresh and not timestamp_is_fresh(m):
        fail(f"Moment timestamp is not within {MOMENT_TOLERANCE} seconds of now.")

    click.echo(f"Signed by {m.issuer}")

def _load_moments(fd):
    # JSON list of moment dicts, each must verify against its issuer
    raw = read_json(fd)
    if not isinstance(raw, list):
        fail("Expecting a JSON list of moments")

    rv = []
    for n, d in enumerate(raw):
        m = Moment.from_dict(d)
        if not verify(did_to_pubkey(m.issuer), m):
            raise CryptographicMismatch(f"moment #{n+1} does not verify")
        rv.append(m)
    return rv

@main.command('prove')
@click.argument('device_id', type=str)
@click.argument('moments_file', type=click.File('rt'), metavar="MOMENTS.json")
@click.option('--threshold', '-t', type=click.IntRange(min=1), multiple=True,
                help="Threshold(s) to prove, default: recommended ones")
@display_errors
def prove(device_id, moments_file, threshold):
    "Make threshold proofs over a list of signed moments"
    reg = get_registry()
    moments = _load_moments(moments_file)

    thresholds = list(threshold) or recommended_thresholds(len(moments))
    dump_json([reg.prove(device_id, moments, t).to_dict() for t in thresholds])

@main.command('verify-proof')
@click.argument('proof_file', type=click.File('rt'), metavar="PROOF.json")
@display_errors
def check_proof(proof_file):
    "Verify one proof, or a list of them"
    raw = read_json(proof_file)
    if isinstance(raw, dict):
        raw = [raw]

    for d in raw:
        pr = Proof.from_dict(d)
        if not verify_proof(pr):
            raise CryptographicMismatch(f"proof for threshold {pr.threshold} does not verify")

        what = 'meets' if pr.passes else 'DOES NOT meet'
        click.echo(f"ok: {pr.actual_count} moments, {what} threshold {pr.threshold}")

@main.command('thresholds')
@click.argument('count', type=click.IntRange(min=0))
def show_thresholds(count):
    "Show the thresholds worth proving for COUNT moments"
    click.echo(' '.join(str(t) for t in recommended_thresholds(count)) or '(none)')

@main.command('url')
@click.argument('device_id', type=str)
@click.option('--uid', metavar="04:AB:..", default=None,
                help="Chip UID, default: the chip the device is bound to")
@click.option('--chip', '-c', type=click.Choice(list(CHIP_CAPACITY)), default=DEFAULT_CHIP,
                help="Class of chip the URL must fit")
@click.option('--sizes', is_flag=True, help="Show size of each URL format")
@click.option('--qr', is_flag=True, help="Show as QR code")
@click.option('--outfile', '-o', metavar="filename.png",
                        help="Save an SVG or PNG (depends on extension)", default=None,
                        type=click.File('wb'))
@display_errors
def make_url(device_id, uid, chip, sizes, qr, outfile):
    "Make the NFC URL for a device's tag"
    reg = get_registry()
    dev = reg.get_device(device_id)
    if not dev:
        fail(f"Unknown device: {device_id}")

    uid = uid or dev.chip_uid
    if not uid:
        fail("Device is not bound to a chip; give --uid")

    sig = reg.authenticate_locally(device_id, tag_challenge(uid))

    if sizes:
        rpt = url_size_report(uid, dev.did, dev.public_key, sig,
                                base_url=global_opts['base_url'], device_id=device_id)
        for tier, info in rpt.items():
            click.echo(f"{tier:>10}: {info['bytes']} bytes, fits: {', '.join(info['fits']) or '-'}")
        click.echo()

    payload, url = encode_for_chip(uid, dev.did, dev.public_key, sig, chip=chip,
                                        base_url=global_opts['base_url'],
                                        device_id=device_id, registry=reg)

    click.echo(f"[{payload.tier}] {url}")

    if qr or outfile:
        import pyqrcode
        q = pyqrcode.create(url, error='L', mode='binary')

        if not outfile:
            print(q.terminal(quiet_zone=2))
        else:
            if outfile.name.lower().endswith('.svg'):
                q.svg(outfile, scale=1)
            else:
                q.png(outfile)

            outfile.seek(0, os.SEEK_END)
            click.echo(f"Wrote {outfile.tell():,} bytes to: {outfile.name}", err=1)

@main.command('decode')
@click.argument('url', type=str)
@display_errors
def decode(url):
    "Decode (and check) a URL read from a tag"
    payload = decode_url(url)

    click.echo(f"format: {payload.tier}")
    click.echo(f"chip: {payload.chip_uid}")

    if isinstance(payload, (FullPayload, CompactPayload)):
        click.echo(f"did: {payload.did}")
        if not payload.verify():
            raise CryptographicMismatch("tag signature does not match chip UID and key")
        click.echo("signature: ok")
        return

    click.echo(f"device: {payload.device_id}")
    reg = asyncio.run(open_registry(must_exist=False))
    if reg.store.identity is None:
        click.echo("(no local identity, can't resolve)")
        return

    dev = payload.resolve(reg)
    click.echo(f"did: {dev.did}")

@main.command('revoke')
@click.argument('chip_uid', type=str)
@click.option('--reason', '-r', type=click.Choice(REVOCATION_REASONS[:-1]), default='lost',
                help="Why this chip can't be trusted anymore")
@display_errors
def revoke(chip_uid, reason):
    "Put a chip on the revocation list"
    async def doit():
        reg = await open_registry()
        return await reg.revoke_chip(chip_uid, reason)

    entry = asyncio.run(doit())
    click.echo(f"revoked: {entry.chip_uid} ({entry.reason})")
    click.echo(f"signature: {B2A(entry.signature)}")

@main.command('rotate')
@click.argument('old_uid', type=str)
@click.argument('new_uid', type=str)
@display_errors
def rotate(old_uid, new_uid):
    "Move a device from one chip to another, revoking the old chip"
    async def doit():
        reg = await open_registry()
        entry = await reg.rotate_chip(old_uid, new_uid)
        return entry, reg.find_by_chip(new_uid)

    entry, dev = asyncio.run(doit())
    click.echo(f"{dev.device_id} now on chip {entry.new_chip_uid}")
    click.echo(f"revoked: {entry.chip_uid}")

@main.command('revoked')
def list_revoked():
    "List revoked chips, and check their signatures"
    reg = get_registry()
    pub = reg.revocation_public_key()

    count = 0
    for r in reg.revocations():
        ok = 'ok' if reg.verify_revocation(r, pub) else 'BAD SIGNATURE'
        extra = f' => {r.new_chip_uid}' if r.new_chip_uid else ''
        click.echo(f"{r.chip_uid}  {r.reason}{extra}  at={r.revoked_at}  [{ok}]")
        count += 1

    if not count:
        click.echo("(none)")

@main.command('write')
@click.argument('name', type=str)
@click.option('--type', '-t', 'device_type', default='pendant', metavar="TYPE",
                help="Kind of device")
@click.option('--chip', '-c', type=click.Choice(list(CHIP_CAPACITY)), default=DEFAULT_CHIP,
                help="Class of chip on the reader")
@click.option('--timeout', type=click.FloatRange(min=0.1), default=WRITE_TIMEOUT,
                help="Seconds allowed for each write attempt")
@click.option('--emulate', '-e', is_flag=True, help="Write to an emulated tag in memory")
@display_errors
def write(name, device_type, chip, timeout, emulate):
    "Register a new device for the tag on the reader, and write its URL"
    from kairos.transport import find_first, EmulatedTag

    writer = EmulatedTag(chip) if emulate else find_first()
    if writer is None:
        fail("No tag found. Is it in place on reader?")

    async def doit():
        reg = await open_registry()
        return await reg.provision_tag(name, device_type, writer, chip=chip,
                                        base_url=global_opts['base_url'], timeout=timeout)

    try:
        device_id, payload, url = asyncio.run(doit())

        # read back what landed on the tag
        got = asyncio.run(writer.read(len(tag_image(url))))
    finally:
        writer.close()

    if decode_uri_record(tlv_unwrap(got)) != url:
        fail("Tag contents do not match what was written?!")

    click.echo(f"{device_id} on chip {payload.chip_uid}")
    click.echo(f"[{payload.tier}] {url}")

# EOF
