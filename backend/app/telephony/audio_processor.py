"""
DialBridge - Telephony Audio Processor

Audio format conversion between the carrier media socket and the voice AI.

    carrier → AI:  μ-law 8kHz  → PCM16 8kHz  → PCM16 16kHz
    AI → carrier:  PCM16 24kHz → PCM16 8kHz  → μ-law 8kHz

The codec is ITU-T G.711 μ-law (bias 132, clip 32635). Encoding must match
the carrier's decoder bit for bit, so it is table-driven and exact.

Rate conversion is deliberately naive: upsampling duplicates samples and
downsampling keeps every Nth sample with no anti-alias filter.
"""

from __future__ import annotations

import base64
import binascii
import logging
import struct
from math import gcd
from typing import Optional

from app.core.exceptions import AudioDecodeError
from app.core.types import (
    AI_INPUT_FORMAT,
    AI_OUTPUT_FORMAT,
    TELEPHONY_FORMAT,
    AudioCodec,
    AudioFormat,
    AudioFrame,
)

logger = logging.getLogger(__name__)


MULAW_BIAS = 0x84
MULAW_CLIP = 32635
SUPPORTED_SAMPLE_RATES = (8000, 16000, 24000)


# =============================================================================
# μ-law Codec
# =============================================================================

def mulaw_decode_sample(byte: int) -> int:
    """Expand one μ-law byte to a 16-bit linear sample."""
    byte = ~byte & 0xFF
    sign = byte & 0x80
    exponent = (byte >> 4) & 0x07
    mantissa = byte & 0x0F

    sample = ((mantissa << 3) + MULAW_BIAS) << exponent
    sample -= MULAW_BIAS

    return -sample if sign else sample


def mulaw_encode_sample(sample: int) -> int:
    """Compress one 16-bit linear sample to a μ-law byte."""
    sign = 0x80 if sample < 0 else 0
    if sign:
        sample = -sample
    if sample > MULAW_CLIP:
        sample = MULAW_CLIP
    sample += MULAW_BIAS

    exponent = 0
    mask = 0x4000
    for candidate in range(7, 0, -1):
        if sample & mask:
            exponent = candidate
            break
        mask >>= 1

    mantissa = (sample >> (exponent + 3)) & 0x0F
    return ~(sign | (exponent << 4) | mantissa) & 0xFF


MULAW_DECODE_TABLE = [mulaw_decode_sample(b) for b in range(256)]

# Indexed by sample + 32768
MULAW_ENCODE_TABLE = bytes(mulaw_encode_sample(s) for s in range(-32768, 32768))


def _unpack_pcm16(pcm: bytes) -> tuple:
    if len(pcm) % 2:
        raise AudioDecodeError(
            "PCM16 buffer has odd length",
            details={"length": len(pcm)},
        )
    return struct.unpack(f"<{len(pcm) // 2}h", pcm)


def _pack_pcm16(samples) -> bytes:
    return struct.pack(f"<{len(samples)}h", *samples)


def mulaw_to_pcm16(data: bytes) -> bytes:
    """Decode μ-law bytes to little-endian PCM16."""
    return _pack_pcm16([MULAW_DECODE_TABLE[b] for b in data])


def pcm16_to_mulaw(pcm: bytes) -> bytes:
    """
    Encode little-endian PCM16 to μ-law.

    Raises:
        AudioDecodeError: If the buffer has odd length
    """
    return bytes(MULAW_ENCODE_TABLE[s + 32768] for s in _unpack_pcm16(pcm))


# =============================================================================
# Rate Conversion
# =============================================================================

def resample_pcm16(pcm: bytes, source_rate: int, target_rate: int) -> bytes:
    """
    Convert PCM16 between 8, 16 and 24 kHz.

    Each sample is repeated ``target/g`` times and every ``source/g``-th
    sample of the result is kept (g = gcd of the rates). Output length is
    ``floor(n * target / source)``.

    Raises:
        AudioDecodeError: On odd-length input or an unsupported rate
    """
    for rate in (source_rate, target_rate):
        if rate not in SUPPORTED_SAMPLE_RATES:
            raise AudioDecodeError(
                f"Unsupported sample rate: {rate}",
                details={"supported": list(SUPPORTED_SAMPLE_RATES)},
            )

    samples = _unpack_pcm16(pcm)
    if source_rate == target_rate:
        return pcm

    g = gcd(source_rate, target_rate)
    up = target_rate // g
    down = source_rate // g

    if down == 1:
        expanded = [s for s in samples for _ in range(up)]
        return _pack_pcm16(expanded)

    expanded = [s for s in samples for _ in range(up)] if up > 1 else list(samples)
    out_length = len(samples) * up // down
    return _pack_pcm16(expanded[::down][:out_length])


def upsample_8k_to_16k(pcm: bytes) -> bytes:
    """Duplicate every sample."""
    return resample_pcm16(pcm, 8000, 16000)


def downsample_24k_to_8k(pcm: bytes) -> bytes:
    """Keep every third sample."""
    return resample_pcm16(pcm, 24000, 8000)


# =============================================================================
# Base64 Framing
# =============================================================================

def decode_base64_audio(payload: Optional[str]) -> bytes:
    """
    Decode a base64 media payload from the carrier.

    Raises:
        AudioDecodeError: If the payload is missing or not valid base64
    """
    if not payload:
        raise AudioDecodeError("Empty media payload")
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise AudioDecodeError(f"Invalid base64 media payload: {e}") from e


def encode_base64_audio(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


# =============================================================================
# Per-call Processor
# =============================================================================

class TelephonyAudioProcessor:
    """
    Converts frames for one call in both directions and keeps counters.

    Usage:
        processor = TelephonyAudioProcessor()

        frame = processor.inbound(media_payload_b64)    # → PCM16 16kHz frame
        payload = processor.outbound(pcm24k_bytes)      # → base64 μ-law 8kHz
    """

    def __init__(
        self,
        telephony_format: AudioFormat = TELEPHONY_FORMAT,
        ai_input_format: AudioFormat = AI_INPUT_FORMAT,
        ai_output_format: AudioFormat = AI_OUTPUT_FORMAT,
    ):
        self._telephony = telephony_format
        self._ai_input = ai_input_format
        self._ai_output = ai_output_format

        self._frames_in = 0
        self._frames_out = 0
        self._bytes_in = 0
        self._bytes_out = 0
        self._frames_rejected = 0

    @property
    def telephony_format(self) -> AudioFormat:
        return self._telephony

    def inbound(self, payload: str) -> AudioFrame:
        """
        Carrier media payload → AI input frame.

        Raises:
            AudioDecodeError: Malformed payload
        """
        try:
            raw = decode_base64_audio(payload)
            if self._telephony.codec == AudioCodec.MULAW:
                pcm = mulaw_to_pcm16(raw)
            else:
                pcm = raw
            pcm = resample_pcm16(pcm, self._telephony.sample_rate, self._ai_input.sample_rate)
        except AudioDecodeError:
            self._frames_rejected += 1
            raise

        self._frames_in += 1
        self._bytes_in += len(raw)
        return AudioFrame(pcm, self._ai_input)

    def outbound(self, pcm: bytes) -> str:
        """
        AI output PCM → base64 carrier media payload.

        Raises:
            AudioDecodeError: Odd-length PCM
        """
        try:
            narrow = resample_pcm16(pcm, self._ai_output.sample_rate, self._telephony.sample_rate)
            if self._telephony.codec == AudioCodec.MULAW:
                narrow = pcm16_to_mulaw(narrow)
        except AudioDecodeError:
            self._frames_rejected += 1
            raise

        self._frames_out += 1
        self._bytes_out += len(narrow)
        return encode_base64_audio(narrow)

    def reset(self) -> None:
        self._frames_in = 0
        self._frames_out = 0
        self._bytes_in = 0
        self._bytes_out = 0
        self._frames_rejected = 0

    @property
    def stats(self) -> dict:
        return {
            "frames_in": self._frames_in,
            "frames_out": self._frames_out,
            "bytes_in": self._bytes_in,
            "bytes_out": self._bytes_out,
            "frames_rejected": self._frames_rejected,
        }
