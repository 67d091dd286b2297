import asyncio

import click

from ...remote.client import RemoteSignerClient
from .._ctx import CLIContext
from .._root import cli_root
from ..runtime import pkisigner_exception_manager

__all__ = ['remote', 'remote_ping', 'remote_certs', 'remote_softcards']


@cli_root.group(help='query the remote signing device', name='remote')
def remote():
    pass


def _client(ctx: click.Context) -> RemoteSignerClient:
    cli_ctx: CLIContext = ctx.obj
    if cli_ctx.config is None or cli_ctx.config.remote_signer is None:
        raise click.ClickException(
            "No 'remote-signer' section in the configuration file"
        )
    return RemoteSignerClient(cli_ctx.config.remote_signer)


def _run(coro):
    response = asyncio.run(coro)
    with pkisigner_exception_manager():
        response.raise_for_status()
    return response


@remote.command(name='ping', help='check whether the device is reachable')
@click.pass_context
def remote_ping(ctx):
    client = _client(ctx)
    _run(client.ping())
    click.echo(f"Remote signer at {client.config.address} is reachable")


@remote.command(name='certs', help='list certificates held by the device')
@click.option(
    '--key-id',
    help='only show the certificate of this key',
    required=False,
)
@click.pass_context
def remote_certs(ctx, key_id):
    client = _client(ctx)
    if key_id is not None:
        response = _run(client.get_certificate_details(key_id))
        certificates = response.certificates or [response.data]
    else:
        response = _run(client.list_certificates())
        certificates = response.certificates or []
    for entry in certificates:
        if isinstance(entry, dict):
            label = entry.get('keyId') or entry.get('id') or '?'
            subject = entry.get('subject', '')
            click.echo(f"{label}:{subject}")
        elif entry is not None:
            click.echo(str(entry))


@remote.command(
    name='softcards', help='list softcards in the key management data store'
)
@click.option(
    '--certs',
    help='list the certificates of each softcard instead',
    type=bool,
    is_flag=True,
    default=False,
    show_default=True,
)
@click.pass_context
def remote_softcards(ctx, certs):
    client = _client(ctx)
    if certs:
        response = _run(client.list_softcard_certificates())
        for cert in response.data:
            click.echo(f"{cert.id}:{cert.subject}:{cert.issuer}")
        return
    response = _run(client.list_softcards())
    for card in response.data:
        click.echo(f"{card.name}:{'VALID' if card.is_valid else 'INVALID'}")
