"""
Verification of signed envelopes.

Two envelope formats are accepted (see :class:`.EnvelopeFormat`). The format
is not recorded anywhere in the envelope, so :func:`verify_envelope` first
tries to interpret the input as a detached-combined container, and only falls
back to the legacy encapsulated interpretation if that fails *to parse*.
An envelope that parses but whose signature does not verify is reported as
such, and is never reinterpreted.

Only the cryptographic integrity of the signature is checked. No trust
decisions are made: the caller is responsible for deciding whether the
returned chain is acceptable.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

from asn1crypto import cms, core, x509
from cryptography.exceptions import InvalidSignature
from pyhanko_certvalidator.sig_validate import (
    DefaultSignatureValidator,
    SignatureValidationContext,
)

from ..chain import CertificateChain, order_embedded_certs, public_key_handle
from ..errors import (
    AsnDecodeError,
    CMSExtractionError,
    FramingError,
    MissingPublicKey,
    SigningError,
    ValueErrorWithMessage,
    VerificationSetupError,
)
from .envelope import EnvelopeFormat, unarmor_envelope, unpack_detached
from .general import (
    compute_digest,
    extract_certificate_info,
    extract_signer_info,
    find_cms_attribute,
    load_signed_data,
)

__all__ = ['VerificationResult', 'verify_envelope']

logger = logging.getLogger(__name__)

_KEY_ALGORITHMS_FOR_MECHANISM = {
    'rsassa_pkcs1v15': 'rsa',
    'rsassa_pss': 'rsa',
    'ecdsa': 'ec',
}


@dataclass(frozen=True)
class VerificationResult:
    """
    Outcome of verifying a signed envelope.
    """

    verified: bool
    """
    Whether the signature is cryptographically valid.
    """

    envelope_format: EnvelopeFormat
    """
    The format the envelope was interpreted in.
    """

    payload: Optional[bytes] = None
    """
    The signed payload. Only set if :attr:`verified` is ``True``.
    """

    chain: Optional[CertificateChain] = None
    """
    The certificates embedded in the envelope, signer first. Only set if
    :attr:`verified` is ``True``.
    """

    signer_cert: Optional[x509.Certificate] = None
    """
    The certificate used to verify the signature.
    """


@dataclass(frozen=True)
class _AttemptFailed:
    envelope_format: EnvelopeFormat
    error: ValueErrorWithMessage


@dataclass(frozen=True)
class _PreparedCheck:
    envelope_format: EnvelopeFormat
    payload: bytes
    signer_info: cms.SignerInfo
    cert: x509.Certificate
    chain: CertificateChain
    signed_data: bytes
    prehashed: bool
    md_algorithm: str
    actual_digest: bytes
    embedded_digest: Optional[bytes]


def _unique_attribute(attrs, name):
    values = find_cms_attribute(attrs, name)
    if len(values) != 1:
        raise CMSExtractionError(
            f"Attribute {name} must have exactly one value"
        )
    return values[0]


def _select_cert(
    signed_data: cms.SignedData, trusted_cert: Optional[x509.Certificate]
):
    cert_info = extract_certificate_info(signed_data)
    embedded = cert_info.embedded_certs
    if trusted_cert is not None:
        cert = trusted_cert
    elif cert_info.signer_cert is not None:
        cert = cert_info.signer_cert
    elif embedded:
        logger.debug(
            "No embedded certificate matches the signer identifier; "
            "falling back to the first embedded certificate"
        )
        cert = embedded[0]
    else:
        raise CMSExtractionError(
            "No certificate available to verify the signature"
        )
    public_key_handle(cert)
    return cert, order_embedded_certs(cert, embedded)


def _prepare(
    envelope_format: EnvelopeFormat,
    signed_data: cms.SignedData,
    payload: bytes,
    trusted_cert: Optional[x509.Certificate],
) -> _PreparedCheck:
    signer_info = extract_signer_info(signed_data)
    md_algorithm = signer_info['digest_algorithm']['algorithm'].native
    try:
        mechanism = signer_info['signature_algorithm'].signature_algo
    except ValueError as e:
        raise CMSExtractionError(
            f"Unsupported signature algorithm: {e}"
        ) from e
    if mechanism not in _KEY_ALGORITHMS_FOR_MECHANISM:
        raise CMSExtractionError(
            f"Signature mechanism {mechanism} is not supported"
        )
    try:
        actual_digest = compute_digest(payload, md_algorithm)
    except SigningError as e:
        raise CMSExtractionError(e.msg) from e
    cert, chain = _select_cert(signed_data, trusted_cert)

    signed_attrs = signer_info['signed_attrs']
    if signed_attrs is core.VOID:
        embedded_digest = None
        prehashed = True
        data_to_verify = actual_digest
    else:
        # signed_attrs comes with context-specific tagging.
        # We need to re-tag it with a universal SET OF tag.
        signed_attrs = signed_attrs.untag()
        data_to_verify = signed_attrs.dump()
        prehashed = False
        content_type = _unique_attribute(signed_attrs, 'content_type')
        if content_type.native != 'data':
            raise CMSExtractionError(
                f"Content type {content_type.native} did not match "
                f"expected value 'data'"
            )
        digest_attr = _unique_attribute(signed_attrs, 'message_digest')
        embedded_digest = digest_attr.native

    return _PreparedCheck(
        envelope_format=envelope_format,
        payload=payload,
        signer_info=signer_info,
        cert=cert,
        chain=chain,
        signed_data=data_to_verify,
        prehashed=prehashed,
        md_algorithm=md_algorithm,
        actual_digest=actual_digest,
        embedded_digest=embedded_digest,
    )


_SETUP_ERRORS = (
    FramingError,
    AsnDecodeError,
    CMSExtractionError,
    MissingPublicKey,
)


def _attempt_detached(
    data: bytes, trusted_cert: Optional[x509.Certificate]
) -> Union[_PreparedCheck, _AttemptFailed]:
    fmt = EnvelopeFormat.DETACHED
    try:
        sig_der, payload = unpack_detached(data)
        signed_data = load_signed_data(sig_der)
        if signed_data['encap_content_info']['content'].native is not None:
            raise CMSExtractionError(
                "Detached signature unexpectedly contains encapsulated content"
            )
        return _prepare(fmt, signed_data, payload, trusted_cert)
    except _SETUP_ERRORS as e:
        return _AttemptFailed(fmt, e)


def _attempt_encapsulated(
    data: bytes, trusted_cert: Optional[x509.Certificate]
) -> Union[_PreparedCheck, _AttemptFailed]:
    fmt = EnvelopeFormat.ENCAPSULATED
    try:
        signed_data = load_signed_data(data)
        payload = signed_data['encap_content_info']['content'].native
        if payload is None:
            raise CMSExtractionError(
                "Signed data does not contain encapsulated content"
            )
        return _prepare(fmt, signed_data, payload, trusted_cert)
    except _SETUP_ERRORS as e:
        return _AttemptFailed(fmt, e)


def _check_signature(prepared: _PreparedCheck) -> bool:
    signer_info = prepared.signer_info
    signature_algorithm = signer_info['signature_algorithm']
    expected_key_algo = _KEY_ALGORITHMS_FOR_MECHANISM[
        signature_algorithm.signature_algo
    ]
    if prepared.cert.public_key.algorithm != expected_key_algo:
        logger.debug(
            f"Certificate key type {prepared.cert.public_key.algorithm} "
            f"cannot produce {signature_algorithm.signature_algo} signatures"
        )
        return False
    if (
        prepared.embedded_digest is not None
        and prepared.embedded_digest != prepared.actual_digest
    ):
        logger.debug("Message digest attribute does not match the payload")
        return False
    try:
        DefaultSignatureValidator().validate_signature(
            signer_info['signature'].native,
            prepared.signed_data,
            prepared.cert.public_key,
            signature_algorithm,
            SignatureValidationContext(
                contextual_md_algorithm=prepared.md_algorithm,
                prehashed=prepared.prehashed,
            ),
        )
    except InvalidSignature:
        return False
    return True


def verify_envelope(
    data: Union[bytes, str], trusted_cert: Optional[x509.Certificate] = None
) -> VerificationResult:
    """
    Verify a signed envelope and recover its payload and certificate chain.

    :param data:
        The envelope, either PEM-armored or in binary form.
    :param trusted_cert:
        Certificate to verify the signature with. If not provided, the
        signer's certificate is looked up among the embedded certificates.
    :return:
        A :class:`VerificationResult`.
    :raises MalformedInput:
        if the PEM armor is malformed.
    :raises FramingError:
        if the input is neither a valid encapsulated envelope, nor a
        detached-combined container with a valid length prefix.
    :raises VerificationSetupError:
        if the input cannot be interpreted in either format.
    """
    raw = unarmor_envelope(data)

    attempt = _attempt_detached(raw, trusted_cert)
    if isinstance(attempt, _AttemptFailed):
        detached_failure = attempt
        logger.debug(
            f"Could not interpret envelope as detached-combined: "
            f"{detached_failure.error.failure_message}; "
            f"trying encapsulated format"
        )
        attempt = _attempt_encapsulated(raw, trusted_cert)
        if isinstance(attempt, _AttemptFailed):
            msg = (
                f"Envelope could not be interpreted. As detached-combined: "
                f"{detached_failure.error.failure_message}. As encapsulated: "
                f"{attempt.error.failure_message}."
            )
            causes = (detached_failure.error, attempt.error)
            if isinstance(detached_failure.error, FramingError):
                raise FramingError(msg, causes=causes)
            raise VerificationSetupError(msg, causes=causes)

    prepared = attempt
    if not _check_signature(prepared):
        logger.info(
            f"Signature in {prepared.envelope_format.name.lower()} envelope "
            f"does not verify"
        )
        return VerificationResult(
            verified=False,
            envelope_format=prepared.envelope_format,
            signer_cert=prepared.cert,
        )
    return VerificationResult(
        verified=True,
        envelope_format=prepared.envelope_format,
        payload=prepared.payload,
        chain=prepared.chain,
        signer_cert=prepared.cert,
    )
