"""
DialBridge - Exception Hierarchy

Structured exceptions for consistent error handling across the system.
All exceptions include error codes for API responses.
"""

from typing import Optional


class DialBridgeError(Exception):
    """Base exception for all DialBridge errors."""

    code: str = "UNKNOWN_ERROR"
    status_code: int = 500

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


# =============================================================================
# Call Errors
# =============================================================================

class CallError(DialBridgeError):
    """Error related to call bookkeeping."""
    code = "CALL_ERROR"
    status_code = 400


class CallNotFoundError(CallError):
    """Call not found in the ledger."""
    code = "CALL_NOT_FOUND"
    status_code = 404


class CallLimitError(CallError):
    """Maximum concurrent calls exceeded."""
    code = "CALL_LIMIT_EXCEEDED"
    status_code = 429


class InvalidTransitionError(CallError):
    """Requested operation is not valid in the call's current state."""
    code = "INVALID_TRANSITION"
    status_code = 409


# =============================================================================
# Carrier Errors
# =============================================================================

class CarrierError(DialBridgeError):
    """Error in the telephony carrier integration."""
    code = "CARRIER_ERROR"
    status_code = 502


class CarrierRejectedError(CarrierError):
    """Carrier refused the dial request."""
    code = "CARRIER_REJECTED"
    status_code = 400


class CarrierUnavailableError(CarrierError):
    """Carrier API could not be reached or returned garbage."""
    code = "CARRIER_UNAVAILABLE"
    status_code = 502


# =============================================================================
# Audio Errors
# =============================================================================

class AudioProcessingError(DialBridgeError):
    """Error processing audio stream."""
    code = "AUDIO_PROCESSING_ERROR"
    status_code = 500


class AudioDecodeError(AudioProcessingError):
    """Malformed audio payload (bad base64, odd-length PCM, unsupported rate)."""
    code = "AUDIO_DECODE_ERROR"
    status_code = 400


class FrameBufferOverflowError(AudioProcessingError):
    """Too many frames buffered while the voice session was connecting."""
    code = "FRAME_BUFFER_OVERFLOW"


# =============================================================================
# Voice Session Errors
# =============================================================================

class VoiceSessionError(DialBridgeError):
    """Error in the generative voice AI session."""
    code = "VOICE_SESSION_ERROR"
    status_code = 502


class VoiceSessionOpenError(VoiceSessionError):
    """Voice session could not be opened (auth, quota, network)."""
    code = "VOICE_SESSION_OPEN_FAILED"


class ToolResponseDeliveryError(VoiceSessionError):
    """A tool result could not be delivered back to the voice session."""
    code = "TOOL_RESPONSE_UNDELIVERED"


# =============================================================================
# Validation Errors
# =============================================================================

class ValidationError(DialBridgeError):
    """Input validation error."""
    code = "VALIDATION_ERROR"
    status_code = 400


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(DialBridgeError):
    """Configuration error."""
    code = "CONFIGURATION_ERROR"
    status_code = 500
