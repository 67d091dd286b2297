import asyncio
import logging
from typing import Iterable, List, Optional

from asn1crypto import algos, cms, keys, x509
from asn1crypto.algos import SignedDigestAlgorithm
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ec import (
    ECDSA,
    EllipticCurvePrivateKey,
)
from cryptography.hazmat.primitives.asymmetric.padding import PKCS1v15
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
from pyhanko_certvalidator.sig_validate import (
    DefaultSignatureValidator,
    SignatureValidationContext,
)

from ..chain import public_key_handle, same_certificate
from ..config.errors import ConfigurationError
from ..config.local_keys import PemDerSignatureConfig
from ..errors import (
    CertificateMismatchError,
    RemoteOperationFailed,
    SigningError,
    SigningKeyError,
)
from ..keys import (
    load_cert_from_pemder,
    load_certs_from_pemder,
    load_private_key_from_pemder,
)
from .general import (
    DEFAULT_MD,
    SUPPORTED_DIGEST_ALGORITHMS,
    compute_digest,
    get_pyca_cryptography_hash_for_signing,
)

__all__ = [
    'Signer',
    'SimpleSigner',
    'RemoteSigner',
    'signer_from_pemder_config',
]

logger = logging.getLogger(__name__)

SUPPORTED_KEY_ALGORITHMS = ('rsa', 'ec')


class Signer:
    """
    Abstract signer object that is agnostic as to where the cryptographic
    operations actually happen.

    Two implementations are provided:

    * :class:`.SimpleSigner` implements the easy case where all the key material
      can be loaded into memory.
    * :class:`.RemoteSigner` delegates the raw signing operation to a remote
      signing device through a :class:`~pkisigner.remote.client.RemoteSignerClient`.

    Signatures are always computed directly over the digest of the payload,
    i.e. without signed attributes.

    :param signing_cert:
        See :attr:`signing_cert`.
    :param cert_chain:
        See :attr:`cert_chain`.
    :param digest_algorithm:
        See :attr:`digest_algorithm`.
    """

    def __init__(
        self,
        *,
        signing_cert: x509.Certificate,
        cert_chain: Iterable[x509.Certificate] = (),
        digest_algorithm: str = DEFAULT_MD,
    ):
        digest_algorithm = digest_algorithm.lower()
        if digest_algorithm not in SUPPORTED_DIGEST_ALGORITHMS:
            raise SigningError(
                f"Digest algorithm '{digest_algorithm}' is not supported; "
                f"choose one of {', '.join(SUPPORTED_DIGEST_ALGORITHMS)}."
            )
        self._signing_cert = signing_cert
        self._cert_chain = list(cert_chain)
        self._digest_algorithm = digest_algorithm

    @property
    def signing_cert(self) -> x509.Certificate:
        """
        The certificate that will be used to create the signature.
        """
        return self._signing_cert

    @property
    def cert_chain(self) -> List[x509.Certificate]:
        """
        Other certificates to embed in the signature, in signing order
        (i.e. the signer's issuer first, the root last).
        """
        return self._cert_chain

    @property
    def digest_algorithm(self) -> str:
        """
        Digest algorithm used for signing. This value determines both the
        digest algorithm and the signature algorithm recorded in the
        ``SignerInfo``.
        """
        return self._digest_algorithm

    def get_signature_mechanism_for_digest(
        self, digest_algorithm: str
    ) -> SignedDigestAlgorithm:
        """
        Put together the signature mechanism based on the public key in
        the signer's certificate.

        :param digest_algorithm:
            Digest algorithm to use as part of the signature mechanism.
        :return:
            A :class:`.SignedDigestAlgorithm` object.
        :raises SigningKeyError:
            if the key algorithm is neither RSA nor EC.
        """
        algo = self.signing_cert.public_key.algorithm
        if algo == 'rsa':
            mech = digest_algorithm + '_rsa'
        elif algo == 'ec':
            mech = digest_algorithm + '_ecdsa'
        else:
            raise SigningKeyError(
                f"Signature mechanism {algo} is unsupported."
            )
        return SignedDigestAlgorithm({'algorithm': mech})

    def signer_info(self, digest_algorithm: str, signature: bytes):
        """
        Format the ``SignerInfo`` entry for a CMS signature.

        :param digest_algorithm:
            Digest algorithm to use.
        :param signature:
            The raw signature to embed.
        :return:
            An :class:`.asn1crypto.cms.SignerInfo` object.
        """
        signing_cert = self.signing_cert
        return cms.SignerInfo(
            {
                'version': 'v1',
                'sid': cms.SignerIdentifier(
                    {
                        'issuer_and_serial_number': cms.IssuerAndSerialNumber(
                            {
                                'issuer': signing_cert.issuer,
                                'serial_number': signing_cert.serial_number,
                            }
                        )
                    }
                ),
                'digest_algorithm': algos.DigestAlgorithm(
                    {'algorithm': digest_algorithm}
                ),
                'signature_algorithm': self.get_signature_mechanism_for_digest(
                    digest_algorithm
                ),
                'signature': signature,
            }
        )

    def _embedded_certs(self) -> List[x509.Certificate]:
        result = [self.signing_cert]
        for cert in self.cert_chain:
            if not any(same_certificate(cert, c) for c in result):
                result.append(cert)
        return result

    def _package_signature(
        self, *, digest_algorithm: str, signature: bytes, encap_content_info
    ) -> cms.ContentInfo:
        sig_info = self.signer_info(digest_algorithm, signature)
        certs = [
            cms.CertificateChoices(name='certificate', value=cert)
            for cert in self._embedded_certs()
        ]
        # this is the SignedData object for our message (see RFC 5652 § 5.1)
        signed_data = {
            'version': 'v1',
            'digest_algorithms': cms.DigestAlgorithms(
                (sig_info['digest_algorithm'],)
            ),
            'encap_content_info': encap_content_info,
            'certificates': certs,
            'signer_infos': [sig_info],
        }
        return cms.ContentInfo(
            {
                'content_type': cms.ContentType('signed_data'),
                'content': cms.SignedData(signed_data),
            }
        )

    async def async_sign_digest(
        self, digest: bytes, digest_algorithm: str
    ) -> bytes:
        """
        Compute the raw cryptographic signature over a precomputed digest.

        :param digest:
            The digest of the data to sign.
        :param digest_algorithm:
            Digest algorithm used to compute the digest.
        :return:
            Signature bytes.
        """
        raise NotImplementedError

    async def async_sign(
        self, payload: bytes, detached: bool = True
    ) -> cms.ContentInfo:
        """
        Produce a CMS signature over a payload.

        :param payload:
            The data to sign.
        :param detached:
            If ``True``, the payload is not embedded in the CMS object.
            Otherwise, it is included as ``eContent``.
        :return:
            A CMS ``ContentInfo`` object of type ``signedData``.
        """
        digest_algorithm = self.digest_algorithm
        # fail early on unsupported keys
        self.get_signature_mechanism_for_digest(digest_algorithm)
        digest = compute_digest(payload, digest_algorithm)
        signature = await self.async_sign_digest(digest, digest_algorithm)
        if detached:
            encap_content_info = {'content_type': 'data'}
        else:
            encap_content_info = {'content_type': 'data', 'content': payload}
        return self._package_signature(
            digest_algorithm=digest_algorithm,
            signature=signature,
            encap_content_info=encap_content_info,
        )

    def sign(self, payload: bytes, detached: bool = True) -> cms.ContentInfo:
        """
        Synchronous wrapper around :meth:`async_sign`.
        """
        return asyncio.run(self.async_sign(payload, detached=detached))

    def _check_signature(
        self, signature: bytes, digest: bytes, digest_algorithm: str
    ):
        try:
            DefaultSignatureValidator().validate_signature(
                signature,
                digest,
                self.signing_cert.public_key,
                self.get_signature_mechanism_for_digest(digest_algorithm),
                SignatureValidationContext(
                    contextual_md_algorithm=digest_algorithm, prehashed=True
                ),
            )
        except InvalidSignature as e:
            raise CertificateMismatchError(
                "The signature produced by the signing key does not verify "
                "against the signer's certificate"
            ) from e


class SimpleSigner(Signer):
    """
    Simple signer implementation where the key material is available in local
    memory.
    """

    signing_key: keys.PrivateKeyInfo
    """
    Private key associated with the certificate in :attr:`signing_cert`.
    """

    def __init__(
        self,
        signing_cert: x509.Certificate,
        signing_key: keys.PrivateKeyInfo,
        cert_chain: Iterable[x509.Certificate] = (),
        digest_algorithm: str = DEFAULT_MD,
    ):
        self.signing_key = signing_key
        super().__init__(
            signing_cert=signing_cert,
            cert_chain=cert_chain,
            digest_algorithm=digest_algorithm,
        )

    async def async_sign_digest(
        self, digest: bytes, digest_algorithm: str
    ) -> bytes:
        return self.sign_digest(digest, digest_algorithm)

    def _load_private_key(self):
        key_algo = self.signing_key.algorithm
        if key_algo not in SUPPORTED_KEY_ALGORITHMS:
            raise SigningKeyError(
                f"Key algorithm {key_algo} is unsupported by this signer."
            )
        priv_key = serialization.load_der_private_key(
            self.signing_key.dump(), password=None
        )
        cert_pub_key = public_key_handle(self.signing_cert)
        pub_key = priv_key.public_key()
        if type(pub_key) is not type(cert_pub_key) or \
                pub_key.public_numbers() != cert_pub_key.public_numbers():
            raise CertificateMismatchError(
                "The private key does not match the public key in the "
                "signer's certificate"
            )
        return priv_key

    def sign_digest(self, digest: bytes, digest_algorithm: str) -> bytes:
        """
        Synchronous raw signature implementation.

        :param digest:
            Digest of the data to be signed.
        :param digest_algorithm:
            Digest algorithm used.
        :return:
            Raw signature encoded according to the conventions of the
            signing algorithm used.
        """
        signature_mechanism = self.get_signature_mechanism_for_digest(
            digest_algorithm
        )
        mechanism = signature_mechanism.signature_algo
        priv_key = self._load_private_key()
        hash_algo = get_pyca_cryptography_hash_for_signing(
            digest_algorithm, prehashed=True
        )

        if mechanism == 'rsassa_pkcs1v15':
            assert isinstance(priv_key, RSAPrivateKey)
            return priv_key.sign(digest, PKCS1v15(), hash_algo)
        elif mechanism == 'ecdsa':
            assert isinstance(priv_key, EllipticCurvePrivateKey)
            return priv_key.sign(digest, signature_algorithm=ECDSA(hash_algo))
        else:  # pragma: nocover
            raise SigningKeyError(
                f"The signature mechanism {mechanism} "
                "is unsupported by this signer."
            )

    @classmethod
    def _load_ca_chain(cls, ca_chain_files=None):
        try:
            return list(load_certs_from_pemder(ca_chain_files))
        except (IOError, ValueError) as e:  # pragma: nocover
            logger.error('Could not load CA chain', exc_info=e)
            return None

    @classmethod
    def load(
        cls,
        key_file,
        cert_file,
        ca_chain_files=None,
        key_passphrase=None,
        other_certs=None,
        digest_algorithm=DEFAULT_MD,
    ):
        """
        Load certificates and key material from PEM/DER files.

        :param key_file:
            File containing the signer's private key.
        :param cert_file:
            File containing the signer's certificate.
        :param ca_chain_files:
            Files containing the signer's chain of trust, in signing order.
        :param key_passphrase:
            Passphrase to decrypt the private key (if required).
        :param other_certs:
            Other relevant certificates, specified as a list of
            :class:`.asn1crypto.x509.Certificate` objects.
        :param digest_algorithm:
            Digest algorithm to sign with.
        :return:
            A :class:`.SimpleSigner` object initialised with key material loaded
            from the files provided, or ``None`` if loading failed.
        """
        try:
            # load cryptographic data (both PEM and DER are supported)
            signing_key = load_private_key_from_pemder(
                key_file, passphrase=key_passphrase
            )
            signing_cert = load_cert_from_pemder(cert_file)
        except (IOError, ValueError, TypeError) as e:
            logger.error('Could not load cryptographic material', exc_info=e)
            return None

        ca_chain = cls._load_ca_chain(ca_chain_files) if ca_chain_files else []
        if ca_chain is None:  # pragma: nocover
            return None

        cert_chain = ca_chain if other_certs is None else ca_chain + other_certs
        return SimpleSigner(
            signing_cert=signing_cert,
            signing_key=signing_key,
            cert_chain=cert_chain,
            digest_algorithm=digest_algorithm,
        )


def signer_from_pemder_config(
    config: PemDerSignatureConfig,
    provided_key_passphrase: Optional[bytes] = None,
):
    key_passphrase = config.key_passphrase or provided_key_passphrase
    result = SimpleSigner.load(
        key_file=config.key_file,
        cert_file=config.cert_file,
        other_certs=config.other_certs,
        key_passphrase=key_passphrase,
        digest_algorithm=config.digest_algorithm,
    )
    if result is None:
        raise ConfigurationError("Error while loading key material")
    return result


class RemoteSigner(Signer):
    """
    Signer that delegates the raw signing operation to a remote signing
    device. The digest is computed locally; only the digest travels over
    the wire.

    Since the key never leaves the device, the correspondence between key
    and certificate is checked after the fact, by verifying the returned
    signature against the public key in :attr:`signing_cert`.

    :param client:
        A :class:`~pkisigner.remote.client.RemoteSignerClient`.
    :param key_id:
        Identifier of the key on the device.
    :param signing_cert:
        The signer's certificate.
    :param cert_chain:
        Other certificates to embed, in signing order.
    :param card_name:
        Name of the softcard holding the key, if any.
    :param passphrase:
        Passphrase used to authenticate to the softcard.
    :param digest_algorithm:
        Digest algorithm to sign with.
    """

    def __init__(
        self,
        client,
        key_id: str,
        signing_cert: x509.Certificate,
        cert_chain: Iterable[x509.Certificate] = (),
        card_name: Optional[str] = None,
        passphrase: Optional[str] = None,
        digest_algorithm: str = DEFAULT_MD,
    ):
        self.client = client
        self.key_id = key_id
        self.card_name = card_name
        self.passphrase = passphrase
        super().__init__(
            signing_cert=signing_cert,
            cert_chain=cert_chain,
            digest_algorithm=digest_algorithm,
        )

    async def async_sign_digest(
        self, digest: bytes, digest_algorithm: str
    ) -> bytes:
        result = await self.client.sign_hash(
            key_id=self.key_id,
            digest=digest,
            hash_algorithm=digest_algorithm,
            card_name=self.card_name,
            passphrase=self.passphrase,
        )
        result.raise_for_status()
        signature = result.signature
        if not signature:
            raise RemoteOperationFailed(
                "The remote signer did not return a signature"
            )
        self._check_signature(signature, digest, digest_algorithm)
        return signature
