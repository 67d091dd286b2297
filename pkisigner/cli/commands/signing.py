import asyncio
from typing import Optional

import click

from ...config.errors import ConfigurationError
from ...config.local_keys import PemDerSignatureConfig
from ...keys import load_cert_from_pemder
from ...remote.client import RemoteSignerClient
from ...sign.functions import async_sign_detached, async_sign_encapsulated
from ...sign.signers import RemoteSigner, Signer, signer_from_pemder_config
from .._ctx import CLIContext
from .._root import cli_root
from ..runtime import pkisigner_exception_manager
from ..utils import grab_certs, logger, read_passphrase, readable_file

__all__ = ['signing', 'sign_pemder', 'sign_remote']


@cli_root.group(help='sign files', name='sign')
def signing():
    pass


def _output_options(f):
    f = click.option(
        '--encapsulated',
        help='embed the payload in the CMS object (legacy format) instead of '
        'producing a detached-combined envelope',
        type=bool,
        is_flag=True,
        default=False,
        show_default=True,
    )(f)
    f = click.option(
        '--no-armor',
        help='write the envelope in binary form instead of PEM',
        type=bool,
        is_flag=True,
        default=False,
        show_default=True,
    )(f)
    return f


def _write_envelope(signer: Signer, infile, outfile, encapsulated, no_armor):
    payload = infile.read()
    infile.close()
    sign_fun = async_sign_encapsulated if encapsulated else async_sign_detached
    with pkisigner_exception_manager():
        result = asyncio.run(sign_fun(payload, signer, armored=not no_armor))
    outfile.write(result)
    outfile.close()
    logger.info(
        f"Wrote {'encapsulated' if encapsulated else 'detached-combined'} "
        f"envelope of {len(result)} bytes"
    )


def _digest_algorithm(ctx: CLIContext, override: Optional[str]) -> str:
    if override is not None:
        return override
    if ctx.config is not None:
        return ctx.config.digest_algorithm
    return 'sha256'


_digest_option = click.option(
    '--digest-algorithm',
    type=click.Choice(('sha256', 'sha384', 'sha512')),
    required=False,
    help='digest algorithm to sign with (default: from config, or sha256)',
)


@signing.command(
    name='pemder', help='sign a file with key material from PEM/DER files'
)
@click.argument('infile', type=click.File('rb'))
@click.argument('outfile', type=click.File('wb'))
@click.option(
    '--key',
    help='file containing the private key (PEM/DER)',
    type=readable_file,
    required=False,
)
@click.option(
    '--cert',
    help='file containing the signer\'s certificate (PEM/DER)',
    type=readable_file,
    required=False,
)
@click.option(
    '--chain',
    type=readable_file,
    multiple=True,
    help='file(s) containing the chain of trust for the '
    'signer\'s certificate (PEM/DER), issuer first. May be '
    'passed multiple times.',
)
@click.option(
    '--pemder-setup',
    type=str,
    required=False,
    help='name of preconfigured PEM/DER profile (overrides all '
    'other options)',
)
@click.option(
    '--passfile',
    help='file containing the passphrase for the private key',
    required=False,
    type=click.File('r'),
    show_default='stdin',
)
@click.option(
    '--no-pass',
    help='assume the private key file is unencrypted',
    type=bool,
    is_flag=True,
    default=False,
    show_default=True,
)
@_digest_option
@_output_options
@click.pass_context
def sign_pemder(
    ctx: click.Context,
    infile,
    outfile,
    key,
    cert,
    chain,
    pemder_setup,
    passfile,
    no_pass,
    digest_algorithm,
    encapsulated,
    no_armor,
):
    cli_ctx: CLIContext = ctx.obj
    if pemder_setup:
        cli_config = cli_ctx.config
        if cli_config is None:
            raise click.ClickException(
                "The --pemder-setup option requires a configuration file"
            )
        try:
            pemder_config = cli_config.get_pemder_config(pemder_setup)
        except ConfigurationError as e:
            msg = f"Error while reading PEM/DER setup {pemder_setup}"
            logger.error(msg, exc_info=e)
            raise click.ClickException(msg)
    elif not (key and cert):
        raise click.ClickException(
            "Either both the --key and --cert options, or the --pemder-setup "
            "option must be provided."
        )
    else:
        pemder_config = PemDerSignatureConfig(
            key_file=key,
            cert_file=cert,
            other_certs=grab_certs(chain),
            digest_algorithm=_digest_algorithm(cli_ctx, digest_algorithm),
        )

    if pemder_config.key_passphrase is not None:
        passphrase = pemder_config.key_passphrase
    elif passfile is not None or (
        pemder_config.prompt_passphrase and not no_pass
    ):
        passphrase_str = read_passphrase(passfile, prompt='Key passphrase: ')
        passphrase = (
            passphrase_str.encode('utf-8') if passphrase_str else None
        )
    else:
        passphrase = None

    with pkisigner_exception_manager():
        signer = signer_from_pemder_config(
            pemder_config, provided_key_passphrase=passphrase
        )
    _write_envelope(signer, infile, outfile, encapsulated, no_armor)


@signing.command(
    name='remote', help='sign a file with a key held by a remote signer'
)
@click.argument('infile', type=click.File('rb'))
@click.argument('outfile', type=click.File('wb'))
@click.option(
    '--key-id', help='identifier of the key on the device', required=True
)
@click.option(
    '--cert',
    help='file containing the signer\'s certificate (PEM/DER)',
    type=readable_file,
    required=True,
)
@click.option(
    '--chain',
    type=readable_file,
    multiple=True,
    help='file(s) containing the chain of trust for the '
    'signer\'s certificate (PEM/DER), issuer first. May be '
    'passed multiple times.',
)
@click.option(
    '--card-name',
    help='softcard holding the key',
    required=False,
)
@click.option(
    '--passfile',
    help='file containing the softcard passphrase',
    required=False,
    type=click.File('r'),
    show_default='stdin',
)
@_digest_option
@_output_options
@click.pass_context
def sign_remote(
    ctx: click.Context,
    infile,
    outfile,
    key_id,
    cert,
    chain,
    card_name,
    passfile,
    digest_algorithm,
    encapsulated,
    no_armor,
):
    cli_ctx: CLIContext = ctx.obj
    if cli_ctx.config is None or cli_ctx.config.remote_signer is None:
        raise click.ClickException(
            "Signing with a remote signer requires a 'remote-signer' section "
            "in the configuration file"
        )
    passphrase = None
    if card_name is not None:
        passphrase = read_passphrase(passfile, prompt='Softcard passphrase: ')

    with pkisigner_exception_manager():
        signer = RemoteSigner(
            client=RemoteSignerClient(cli_ctx.config.remote_signer),
            key_id=key_id,
            signing_cert=load_cert_from_pemder(cert),
            cert_chain=grab_certs(chain) or (),
            card_name=card_name,
            passphrase=passphrase,
            digest_algorithm=_digest_algorithm(cli_ctx, digest_algorithm),
        )
    _write_envelope(signer, infile, outfile, encapsulated, no_armor)
