import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click

from content_identity.config import Config, configure_logging
from content_identity.errors import ContentIdentityError
from content_identity.service.hashing import (
    address_for_key,
    content_hash,
    identity_for_address,
    normalize_content_hash,
)
from content_identity.service.identity_service import ContentIdentityService
from content_identity.service.manifest_builder import build_manifest, serialize_manifest
from content_identity.service.platform_verifier import make_proof_line
from content_identity.service.providers import build_providers
from content_identity.service.upload_orchestrator import UploadOrchestrator


def build_service() -> ContentIdentityService:
    return ContentIdentityService.from_config()


def validate_content_hash(ctx, param, value):
    try:
        return normalize_content_hash(value)
    except ValueError:
        raise click.BadParameter("Content hash must be 64 hex characters, optionally 0x-prefixed")


def _signing_key(required: bool = True) -> Optional[str]:
    if not Config.SIGNER_PRIVATE_KEY and required:
        raise click.UsageError("SIGNER_PRIVATE_KEY is not set")
    return Config.SIGNER_PRIVATE_KEY or None


def _identity(identity: Optional[str]) -> str:
    if identity:
        return identity
    return identity_for_address(address_for_key(_signing_key()), Config.CHAIN_ID)


def _run(coro):
    try:
        return asyncio.run(coro)
    except ContentIdentityError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Log at DEBUG level")
def cli(verbose: bool):
    """Register content identities and verify platform bindings."""
    configure_logging(logging.DEBUG if verbose else logging.INFO, stream=sys.stderr)


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def upload(path: Path):
    """Upload a file through the provider pool and print its CID."""
    providers = build_providers(Config.load_providers())
    if not providers:
        raise click.UsageError("UPLOAD_PROVIDERS is empty")
    result = _run(UploadOrchestrator(providers).upload(path.read_bytes(), path.name))
    click.echo(f"cid: {result.cid}")
    click.echo(f"provider: {result.provider} ({result.attempts} attempt(s), {result.elapsed:.2f}s)")
    for failure in result.failures:
        click.echo(f"skipped: {failure.provider} after {failure.attempts} attempt(s): {failure.message}")


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--cid", required=True, help="CID the content was uploaded under")
@click.option("--identity", default=None, help="Creator identity; defaults to the signing key's did:pkh")
@click.option("--sign/--no-sign", default=True, help="Sign the manifest digest with SIGNER_PRIVATE_KEY")
def manifest(path: Path, cid: str, identity: Optional[str], sign: bool):
    """Print the canonical manifest for a file without publishing it."""
    key = _signing_key(required=sign)
    document = build_manifest(cid, content_hash(path.read_bytes()), _identity(identity), private_key=key if sign else None)
    click.echo(serialize_manifest(document).decode("utf-8"))


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--identity", default=None, help="Creator identity; defaults to the signing key's did:pkh")
@click.option("--deadline", type=float, default=None, help="Overall time budget in seconds")
def register(path: Path, identity: Optional[str], deadline: Optional[float]):
    """Upload, publish the manifest and anchor the content hash."""
    service = build_service()
    registration = _run(
        service.register_content(path.read_bytes(), _identity(identity), filename=path.name, deadline_seconds=deadline)
    )
    click.echo(
        json.dumps(
            {
                "content_hash": registration.content_hash,
                "cid": registration.upload.cid,
                "manifest_uri": registration.manifest_uri,
                "manifest_digest": registration.manifest.digest,
                "identity": registration.entry.identity,
                "tx_hash": registration.entry.transaction_hash,
            },
            indent=2,
        )
    )


@cli.command()
@click.argument("hash_value", metavar="CONTENT_HASH", callback=validate_content_hash)
def resolve(hash_value: str):
    """Look up the registry entry for a content hash."""
    entry = _run(build_service().resolve_entry(hash_value))
    if entry is None:
        click.echo(f"{hash_value} is not anchored", err=True)
        sys.exit(2)
    click.echo(f"identity: {entry.identity}")
    click.echo(f"anchored_at: {entry.anchored_at.isoformat()}")
    if entry.transaction_hash:
        click.echo(f"tx_hash: {entry.transaction_hash}")


@cli.command()
@click.argument("hash_value", metavar="CONTENT_HASH", callback=validate_content_hash)
@click.option("--issued-at", type=int, default=None, help="Unix timestamp to embed; defaults to now")
def proof(hash_value: str, issued_at: Optional[int]):
    """Print a signed proof line to paste into a platform description."""
    click.echo(make_proof_line(hash_value, _signing_key(), issued_at))


@cli.command()
@click.argument("url")
@click.argument("manifest_uri")
def verify(url: str, manifest_uri: str):
    """Submit a platform binding and verify it."""
    record = _run(build_service().bind_and_verify(url, manifest_uri))
    if record.verified:
        click.echo(f"verified: {record.platform}/{record.external_id} signed by {record.recovered_signer}")
        return
    click.echo(f"failed: {record.reason}: {record.detail}", err=True)
    sys.exit(1)


@cli.command()
def serve():
    """Run the HTTP API."""
    from content_identity.main import run

    run()


if __name__ == "__main__":
    cli()
