"""Error taxonomy shared by the inference client, relay and client side."""

from typing import Optional


class UpstreamError(Exception):
    """Failure talking to the inference server.

    Used directly as the catch-all wrapping the original message; the
    subclasses name the failures callers react to.
    """

    status_code = 500
    public_message = "Failed to process the request"

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details if details is not None else message


class UpstreamUnavailable(UpstreamError):
    """Inference server is not reachable."""

    status_code = 503
    public_message = "Inference server is not running"


class ModelNotFound(UpstreamError):
    """Requested model is not installed on the inference server."""

    status_code = 404
    public_message = "Model not found"


class BadRequest(UpstreamError):
    """Inference server rejected the generation parameters."""

    status_code = 400
    public_message = "Invalid request parameters"


class InvalidUpstreamResponse(UpstreamError):
    """Response lacks the fields a chat completion must carry."""

    status_code = 502
    public_message = "Invalid response from inference server"


class UpstreamTimeout(UpstreamError):
    """Inference server did not answer in time."""

    status_code = 504
    public_message = "Inference server timed out"


class ProtocolError(UpstreamError):
    """Inference server answered with an unexpected schema or status."""

    status_code = 502
    public_message = "Failed to list models"


class NotFound(LookupError):
    """Conversation id is not in the store."""

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation {conversation_id} not found")
        self.conversation_id = conversation_id


class StreamInProgress(RuntimeError):
    """A send is already streaming into this conversation."""

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation {conversation_id} already has a response in flight")
        self.conversation_id = conversation_id
