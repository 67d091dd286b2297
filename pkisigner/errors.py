"""
Exception hierarchy shared by the codec, signing, verification and remote
signing modules.

Errors raised while reading input (PEM armor, DER structures, container
framing) derive from :class:`ValueErrorWithMessage`. Errors raised while
producing a signature derive from :class:`SigningError`, and errors originating
from a remote signing device derive from :class:`RemoteSignerError`.
"""

__all__ = [
    'ValueErrorWithMessage',
    'MalformedInput',
    'InvalidBase64',
    'AsnDecodeError',
    'MissingPublicKey',
    'CMSExtractionError',
    'VerificationSetupError',
    'FramingError',
    'SigningError',
    'SigningKeyError',
    'CertificateMismatchError',
    'EncodingError',
    'RemoteSignerError',
    'ConnectTimeout',
    'ConnectionRefused',
    'CommandTimeout',
    'RemoteAuthenticationFailed',
    'RemoteOperationFailed',
]


class ValueErrorWithMessage(ValueError):
    """
    Value error with a failure message attribute that can be conveniently
    extracted, instead of having to rely on extracting exception args
    generically.
    """

    def __init__(self, failure_message):
        self.failure_message = str(failure_message)
        super().__init__(failure_message)


class MalformedInput(ValueErrorWithMessage):
    """Input text does not have the expected shape (e.g. no PEM blocks)."""


class InvalidBase64(MalformedInput):
    """PEM body is not valid base64."""


class AsnDecodeError(ValueErrorWithMessage):
    """DER data could not be decoded into the expected ASN.1 structure."""


class MissingPublicKey(ValueErrorWithMessage):
    """The public key of a certificate could not be extracted."""


class CMSExtractionError(ValueErrorWithMessage):
    pass


class VerificationSetupError(ValueErrorWithMessage):
    """
    Raised when a signed envelope cannot be interpreted at all, as opposed
    to an envelope that parses correctly but carries a signature that does
    not verify.

    :param failure_message:
        Description of the problem.
    :param causes:
        The underlying errors encountered in each interpretation attempt.
    """

    def __init__(self, failure_message, causes=()):
        self.causes = tuple(causes)
        super().__init__(failure_message)


class FramingError(VerificationSetupError):
    """
    Length prefix or buffer bound violated, either in the detached-combined
    container or in the remote protocol framing.
    """


class SigningError(ValueError):
    """
    Error encountered while signing a file.
    """

    def __init__(self, msg: str, *args):
        self.msg = msg
        super().__init__(msg, *args)


class SigningKeyError(SigningError):
    """The key algorithm is not supported for signing."""


class CertificateMismatchError(SigningError):
    """The signing key does not correspond to the signer's certificate."""


class EncodingError(SigningError):
    """The signed structure could not be serialised."""


class RemoteSignerError(SigningError):
    """Base class for errors reported by the remote signing client."""


class ConnectTimeout(RemoteSignerError):
    pass


class ConnectionRefused(RemoteSignerError):
    pass


class CommandTimeout(RemoteSignerError):
    pass


class RemoteAuthenticationFailed(RemoteSignerError):
    pass


class RemoteOperationFailed(RemoteSignerError):
    pass
