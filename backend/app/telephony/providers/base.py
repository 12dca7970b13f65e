"""
DialBridge - Carrier Provider Base

Abstract base class for carrier implementations.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional
from xml.sax.saxutils import quoteattr


@dataclass(frozen=True)
class DialResult:
    """Outcome of a dial request."""
    accepted: bool
    reference: Optional[str] = None
    message: str = ""


class CarrierProvider(ABC):
    """
    Abstract base class for carriers.

    Implementations handle carrier-specific:
    - Dial (click-to-call) requests
    - Hangup requests
    - Media stream connect instructions
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name."""
        ...

    @property
    def audio_encoding(self) -> str:
        """Media socket audio encoding."""
        return "audio/x-mulaw"

    @property
    def audio_sample_rate(self) -> int:
        """Media socket sample rate."""
        return 8000

    @abstractmethod
    async def dial(self, phone_number: str, call_id: str, answer_url: Optional[str] = None) -> DialResult:
        """
        Ask the carrier to place an outbound call.

        Args:
            phone_number: Normalized digits-only number
            call_id: Local call id, passed through where the carrier allows
            answer_url: URL serving the connect instructions

        Returns:
            DialResult; a carrier refusal is ``accepted=False``, not an exception

        Raises:
            CarrierUnavailableError: The carrier could not be reached
        """
        ...

    @abstractmethod
    async def hangup(self, reference: str) -> None:
        """
        Ask the carrier to end a call.

        Raises:
            CarrierUnavailableError: The carrier could not be reached
        """
        ...

    def format_connect_response(self, stream_url: str) -> str:
        """
        Instructions that connect the answered call to our media socket.

        Args:
            stream_url: WebSocket URL for media streaming
        """
        return (
            '<?xml version="1.0" encoding="UTF-8"?>\n'
            "<Response>\n"
            "    <Say>Connecting you to the AI agent.</Say>\n"
            "    <Connect>\n"
            f"        <Stream url={quoteattr(stream_url)} />\n"
            "    </Connect>\n"
            "</Response>"
        )

    async def aclose(self) -> None:
        """Release network resources."""
        return None
