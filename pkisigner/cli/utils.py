import getpass
import logging
from typing import Optional

import click

from ..keys import load_certs_from_pemder

logger = logging.getLogger("cli")

readable_file = click.Path(exists=True, readable=True, dir_okay=False)


def _warn_empty_passphrase():
    click.echo(
        click.style(
            "WARNING: passphrase is empty. If you intended to sign with an "
            "unencrypted private key, use --no-pass instead.",
            bold=True,
        )
    )


def grab_certs(files):
    if not files:
        return None
    try:
        return list(load_certs_from_pemder(files))
    except (IOError, ValueError) as e:
        logger.error(f'Could not load certificates from {files}', exc_info=e)
        raise click.ClickException(
            "Could not load certificates from the files provided"
        )


def read_passphrase(passfile, prompt: str) -> Optional[str]:
    """
    Read a passphrase from the first line of a file, or prompt for it
    if no file was given.
    """
    if passfile is not None:
        passphrase = passfile.readline().strip()
        passfile.close()
    else:
        passphrase = getpass.getpass(prompt=prompt)
    if not passphrase:
        _warn_empty_passphrase()
        return None
    return passphrase
