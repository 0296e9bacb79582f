"""CLI commands implemented with click.

A thin caller over the profile store: every command opens the store,
runs one operation and closes it. Keys are passed as hex (64 characters)
through --key or the CONNVAULT_KEY environment variable.
"""
from __future__ import annotations
import binascii, logging, uuid, click
from pathlib import Path
from datetime import datetime
from connvault.config import settings
from connvault.lib.crypto import CryptoError, generate_key, encrypt_connection_string, decrypt_connection_string
from connvault.lib.store import ProfileStore, ConnectionProfile, StorageError

log = logging.getLogger(__name__)

class HexKey(click.ParamType):
	name = 'hex-key'

	def convert(self, value, param, ctx):
		if isinstance(value, (bytes, bytearray)):
			return bytes(value)
		try:
			return binascii.unhexlify(value.strip())
		except (ValueError, TypeError):
			self.fail('key must be hex encoded', param, ctx)

def key_option(f):
	return click.option('--key', type=HexKey(), envvar=settings.KEY_ENV_VAR, prompt=True, hide_input=True,
		help=f'Hex-encoded {settings.KEY_LENGTH}-byte key (or ${settings.KEY_ENV_VAR}).')(f)

def _fail(e: Exception):
	click.echo(f'Error: {e}', err=True)
	raise SystemExit(1)

def resolve_log_level(verbose: bool = False) -> int:
	"""Numeric level for the CLI; unknown level names fall back to the default."""
	if verbose:
		return logging.DEBUG
	level = logging.getLevelName(settings.log_level())
	if not isinstance(level, int):
		level = logging.getLevelName(settings.LOG_LEVEL)
	return level

def _open(ctx) -> ProfileStore:
	opts = ctx.obj
	return ProfileStore(opts['db'], backend=opts['backend'])

@click.group()
@click.option('--db', type=click.Path(dir_okay=False, path_type=Path), envvar=settings.DB_ENV_VAR, default=None, help='Profile store file.')
@click.option('--backend', type=click.Choice(settings.BACKEND_KINDS), envvar=settings.BACKEND_ENV_VAR, default=None, help='Storage backend.')
@click.option('--verbose', '-v', is_flag=True, help='Debug logging.')
@click.pass_context
def cli(ctx, db, backend, verbose):
	"""connvault: encrypted connection profile store"""
	logging.basicConfig(level=resolve_log_level(verbose), format=settings.LOG_FORMAT)
	ctx.obj = {'db': db or settings.db_path(), 'backend': backend or settings.backend_kind()}

@cli.command()
@click.pass_context
def init(ctx):
	"""Create the profile store (idempotent)."""
	try:
		with _open(ctx) as store:
			click.echo(f'Profile store ready at {store.path}.')
	except StorageError as e:
		_fail(e)

@cli.command()
def keygen():
	"""Print a fresh random key as hex."""
	click.echo(generate_key().hex())

@cli.command()
@click.option('--id', 'profile_id', default=None, help='Profile id (defaults to a new UUID).')
@click.option('--name', prompt=True)
@click.option('--connection-string', prompt=True, hide_input=True)
@key_option
@click.pass_context
def save(ctx, profile_id, name, connection_string, key):
	"""Create or update a profile."""
	profile = ConnectionProfile(profile_id or str(uuid.uuid4()), name, connection_string)
	try:
		with _open(ctx) as store:
			store.save_profile(profile, key)
		click.echo(f'Saved profile {profile.id}.')
	except (CryptoError, StorageError) as e:
		_fail(e)

@cli.command('list')
@click.option('--show-secrets', is_flag=True, help='Also print decrypted connection strings.')
@key_option
@click.pass_context
def list_profiles(ctx, show_secrets, key):
	"""List profiles ordered by name."""
	try:
		with _open(ctx) as store:
			profiles = store.list_profiles(key)
	except (CryptoError, StorageError) as e:
		_fail(e)
	for p in profiles:
		line = f'{p.id}: {p.name}'
		if show_secrets: line += f'  {p.connection_string}'
		click.echo(line)

@cli.command()
@click.argument('profile_id')
@key_option
@click.pass_context
def show(ctx, profile_id, key):
	"""Print the decrypted connection string of a profile."""
	try:
		with _open(ctx) as store:
			profile = store.get_profile(profile_id, key)
	except (CryptoError, StorageError) as e:
		_fail(e)
	if profile is None:
		click.echo('Not found')
		raise SystemExit(1)
	click.echo(profile.connection_string)

@cli.command()
@click.argument('profile_id')
@click.pass_context
def delete(ctx, profile_id):
	"""Delete a profile (unknown ids are ignored)."""
	try:
		with _open(ctx) as store:
			store.delete_profile(profile_id)
		click.echo(f'Deleted profile {profile_id}.')
	except StorageError as e:
		_fail(e)

@cli.command()
@click.argument('text')
@key_option
def encrypt(text, key):
	"""Encrypt TEXT and print the hex blob."""
	try:
		click.echo(encrypt_connection_string(text, key))
	except CryptoError as e:
		_fail(e)

@cli.command()
@click.argument('blob')
@key_option
def decrypt(blob, key):
	"""Decrypt a hex BLOB."""
	try:
		click.echo(decrypt_connection_string(blob, key))
	except CryptoError as e:
		_fail(e)

@cli.command()
@click.option('--dest', type=click.Path(file_okay=False, path_type=Path), default=Path('backups'), help='Destination directory for backups.')
@click.pass_context
def backup(ctx, dest):
	"""Copy the profile store (encrypted form) to DEST."""
	stamp = datetime.now().strftime('%Y%m%d_%H%M%S')
	try:
		with _open(ctx) as store:
			target = store.backup(dest / f"{store.path.stem}_{stamp}{store.path.suffix}{settings.BACKUP_SUFFIX}")
		click.echo(f'Backup written: {target}')
	except StorageError as e:
		_fail(e)
