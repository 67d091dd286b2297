import click
import tzlocal

from ...chain import CertificateSummary
from ...keys import load_cert_from_pemder
from ...sign.validation import verify_envelope
from .._root import cli_root
from ..runtime import pkisigner_exception_manager
from ..utils import logger, readable_file

__all__ = ['verify']


def _format_validity(summary: CertificateSummary) -> str:
    tz = tzlocal.get_localzone()
    not_before = summary.not_valid_before.astimezone(tz)
    not_after = summary.not_valid_after.astimezone(tz)
    return (
        f"{not_before.strftime('%Y-%m-%d %H:%M:%S %Z')} - "
        f"{not_after.strftime('%Y-%m-%d %H:%M:%S %Z')}"
    )


@cli_root.command(
    name='verify',
    help='verify a signed envelope and print its certificate chain',
)
@click.argument('infile', type=click.File('rb'))
@click.option(
    '--cert',
    help='verify against this certificate instead of the embedded one',
    type=readable_file,
    required=False,
)
@click.option(
    '--extract',
    help='write the signed payload to this file',
    type=click.File('wb'),
    required=False,
)
def verify(infile, cert, extract):
    data = infile.read()
    infile.close()
    with pkisigner_exception_manager():
        trusted_cert = load_cert_from_pemder(cert) if cert else None
        result = verify_envelope(data, trusted_cert=trusted_cert)

    fmt = result.envelope_format.name.lower()
    if not result.verified:
        logger.error(f"Signature in {fmt} envelope does not verify")
        raise click.ClickException("Validation failed")

    click.echo(f"Signature OK ({fmt} envelope)")
    for role, chain_cert in result.chain.roles():
        summary = CertificateSummary.from_cert(chain_cert)
        click.echo(f"{role}: {summary.subject}")
        click.echo(f"  Issuer: {summary.issuer}")
        click.echo(f"  Serial: {summary.serial_number:x}")
        click.echo(f"  Valid: {_format_validity(summary)}")

    if extract is not None:
        extract.write(result.payload)
        extract.close()
