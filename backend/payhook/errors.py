class PayhookError(Exception):
    pass


class VerificationError(PayhookError):
    """A delivery could not be authenticated; it must be rejected."""


class SignatureMissing(VerificationError):
    pass


class SignatureMismatch(VerificationError):
    pass


class MalformedPayload(VerificationError):
    pass


class DedupStoreUnavailable(PayhookError):
    """The seen-event store could not be reached."""


class DownstreamProcessingError(PayhookError):
    """A handler failed after the delivery was verified and acknowledged."""
