# donor_alerts/errors.py


class DonorAlertsError(Exception):
    """Base class for errors raised inside the pipeline."""


class StoreError(DonorAlertsError):
    """A read or write against one of the backing stores failed."""


class GatewayError(DonorAlertsError):
    """
    The push gateway did not accept a message.
    `code` is a short machine-readable class (timeout, invalid_token, ...),
    `permanent` says whether sending the same message again can help.
    """

    def __init__(self, message: str, code: str = "gateway_error", permanent: bool = False):
        super().__init__(message)
        self.code = code
        self.permanent = permanent



class ConflictError(StoreError):
    """A conditional write lost: the record changed since it was read."""
