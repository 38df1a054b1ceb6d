"""Error taxonomy for the teleconsultation call session.

Every failure that ends a join attempt is one of these. The call session turns
them into the ``error`` phase with ``user_message`` as the text shown to the
participant; routes turn them into HTTP errors.
"""
from typing import Optional


class TeleconsultaError(Exception):
    """Base class for call-session failures."""

    user_message = "Could not start the call."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.user_message)
        if message:
            self.user_message = message


class MediaAccessError(TeleconsultaError):
    """Camera and microphone could not be opened. The user must fix permissions and retry."""

    user_message = (
        "Could not access the camera or microphone. "
        "Please allow access and try again."
    )


class SignalingError(TeleconsultaError):
    """Reading or writing the shared call room failed."""

    user_message = "Could not reach the signaling server."


class RoomAlreadyExists(SignalingError):
    user_message = "The room for this consultation was already created."


class AnswerAlreadySubmitted(SignalingError):
    user_message = "This consultation is already in progress with another participant."


class RoomNotFound(SignalingError):
    user_message = "Consultation room not found."


class NegotiationError(TeleconsultaError):
    """Creating or applying a session description failed."""

    user_message = "Could not negotiate the connection. Please join again."


class TransportFailure(TeleconsultaError):
    """The peer connection reported ``failed``."""

    user_message = "Connection lost. Please join again."
