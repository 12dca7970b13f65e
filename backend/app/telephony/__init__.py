"""
DialBridge - Telephony Module

Outbound calling over a carrier with a real-time media stream.

Components:
- router: Carrier webhooks (status updates, answer URL)
- websocket: Media stream endpoints
- bridge: Per-call relay between the media socket and the voice AI
- lifecycle: Call state machine fed by dial, webhook and bridge signals
- call_ledger: Authoritative in-memory call records
- audio_processor: μ-law codec and resampling
- frame_buffer: Caller audio held while the AI session connects
- providers: Carrier REST clients
- privacy: Phone number normalization and masking

Privacy:
    Phone numbers are masked in logs and API responses.
    Audio is processed in memory and never persisted.
"""

from .audio_processor import TelephonyAudioProcessor
from .call_ledger import CallLedger
from .frame_buffer import FrameBuffer
from .models import CallRecord
from .privacy import mask_phone_number, normalize_phone_number

__all__ = [
    "CallLedger",
    "CallRecord",
    "FrameBuffer",
    "TelephonyAudioProcessor",
    "mask_phone_number",
    "normalize_phone_number",
]
