# activation_server/errors.py
"""
Error kinds raised while handling a verification request.

Each error carries the HTTP status it maps to and a message that is safe to
return to the client.
"""


class ActivationError(Exception):
    status_code = 500
    message = "Internal server error."

    def __init__(self, message: str | None = None, is_trial: bool = False, expires_at=None):
        if message is not None:
            self.message = message
        # trial details echoed back in the signed rejection
        self.is_trial = is_trial
        self.expires_at = expires_at
        super().__init__(self.message)


class InvalidRequest(ActivationError):
    status_code = 400
    message = "License code and machine ID are required."


class MalformedBody(ActivationError):
    status_code = 400
    message = "Invalid request body."


class InvalidCode(ActivationError):
    status_code = 404
    message = "License code not found or invalid."


class BoundToOtherDevice(ActivationError):
    status_code = 403
    message = "License code is already activated on another device."


class TrialExpired(ActivationError):
    status_code = 402
    message = "Trial period has expired."


class ConfigurationError(ActivationError):
    message = "Server configuration error."


class StoreError(ActivationError):
    # the underlying driver error is logged, never sent to the client
    message = "Internal server error."
