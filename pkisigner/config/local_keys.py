from dataclasses import dataclass
from typing import List, Optional

from asn1crypto import x509

from ..keys import load_certs_from_pemder
from . import api
from .errors import ConfigurationError

__all__ = ['PemDerSignatureConfig']


@dataclass(frozen=True)
class PemDerSignatureConfig(api.ConfigurableMixin):
    """
    Configuration for a signature using PEM or DER-encoded key material on disk.
    """

    key_file: str
    """Signer's private key."""

    cert_file: str
    """Signer's certificate."""

    other_certs: Optional[List[x509.Certificate]] = None
    """
    Other relevant certificates, in signing order (the signer's issuer first).
    """

    key_passphrase: Optional[bytes] = None
    """Signer's key passphrase (if relevant)."""

    prompt_passphrase: bool = True
    """
    Prompt for the key passphrase. Default is ``True``.

    .. note::
        If :attr:`key_passphrase` is not ``None``, this setting has no effect.
    """

    digest_algorithm: str = 'sha256'
    """
    Digest algorithm to sign with.
    """

    @classmethod
    def process_entries(cls, config_dict):
        super().process_entries(config_dict)

        other_certs = config_dict.get('other_certs', ())
        if isinstance(other_certs, str):
            other_certs = (other_certs,)
        try:
            config_dict['other_certs'] = list(
                load_certs_from_pemder(other_certs)
            )
        except (IOError, ValueError) as e:
            raise ConfigurationError(
                f"Could not load certificates: {e}"
            ) from e

        try:
            passphrase = config_dict['key_passphrase']
            if passphrase is not None:
                config_dict['key_passphrase'] = passphrase.encode('utf8')
        except KeyError:
            pass
