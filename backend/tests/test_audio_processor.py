"""
DialBridge - Audio Processor Tests

Tests for the μ-law codec, rate conversion and base64 framing.
These tests verify:
- Exact G.711 μ-law reference vectors
- Byte-level round trip through decode and encode
- Sample duplication and decimation lengths
- Malformed input rejection

Run with: pytest tests/test_audio_processor.py -v
"""

import base64
import struct

import pytest

from app.core.exceptions import AudioDecodeError
from app.core.types import AI_INPUT_FORMAT
from app.telephony.audio_processor import (
    MULAW_DECODE_TABLE,
    TelephonyAudioProcessor,
    decode_base64_audio,
    downsample_24k_to_8k,
    mulaw_decode_sample,
    mulaw_encode_sample,
    mulaw_to_pcm16,
    pcm16_to_mulaw,
    resample_pcm16,
    upsample_8k_to_16k,
)


def pcm(*samples: int) -> bytes:
    return struct.pack(f"<{len(samples)}h", *samples)


def samples_of(data: bytes) -> tuple:
    return struct.unpack(f"<{len(data) // 2}h", data)


class TestMulawEncode:
    """Reference vectors for compression."""

    @pytest.mark.parametrize("sample,expected", [
        (0, 0xFF),
        (32767, 0x80),
        (-32768, 0x00),
        (-1, 0x7F),
        (1000, 0xCE),
        (-1000, 0x4E),
        (100, 0xF2),
    ])
    def test_reference_vectors(self, sample: int, expected: int):
        """Encoder output should match G.711 exactly."""
        assert mulaw_encode_sample(sample) == expected

    def test_clips_above_max(self):
        """Magnitudes above the clip level should saturate."""
        assert mulaw_encode_sample(32700) == mulaw_encode_sample(32635)

    def test_buffer_encode(self):
        """PCM buffer encodes sample by sample."""
        assert pcm16_to_mulaw(pcm(0, 1000, -1000)) == bytes([0xFF, 0xCE, 0x4E])


class TestMulawDecode:
    """Reference vectors for expansion."""

    @pytest.mark.parametrize("byte,expected", [
        (0xFF, 0),
        (0x7F, 0),
        (0x80, 32124),
        (0x00, -32124),
        (0xCE, 988),
        (0x4E, -988),
        (0xF2, 104),
    ])
    def test_reference_vectors(self, byte: int, expected: int):
        """Decoder output should match the standard table."""
        assert mulaw_decode_sample(byte) == expected
        assert MULAW_DECODE_TABLE[byte] == expected

    def test_buffer_decode_is_little_endian(self):
        """Decoded PCM is two bytes per input byte, little-endian."""
        data = mulaw_to_pcm16(bytes([0x80, 0xFF]))
        assert data == pcm(32124, 0)
        assert len(data) == 4

    def test_round_trip_every_byte(self):
        """Every byte except negative zero survives decode then encode."""
        for byte in range(256):
            if byte == 0x7F:
                continue
            assert mulaw_encode_sample(mulaw_decode_sample(byte)) == byte, hex(byte)

    def test_negative_zero_maps_to_positive_zero(self):
        """0x7F decodes to 0, which encodes as 0xFF."""
        assert mulaw_encode_sample(mulaw_decode_sample(0x7F)) == 0xFF


class TestResampling:
    """Tests for duplication and decimation."""

    def test_upsample_duplicates_each_sample(self):
        """8k→16k should repeat every sample once."""
        assert samples_of(upsample_8k_to_16k(pcm(1, 2, 3))) == (1, 1, 2, 2, 3, 3)

    def test_downsample_keeps_every_third_sample(self):
        """24k→8k should keep samples 0, 3, 6 ..."""
        assert samples_of(downsample_24k_to_8k(pcm(*range(9)))) == (0, 3, 6)

    @pytest.mark.parametrize("count,expected", [(0, 0), (1, 0), (2, 0), (3, 1), (10, 3), (480, 160)])
    def test_downsample_length_is_floor(self, count: int, expected: int):
        """Output length should be floor(n / 3)."""
        out = downsample_24k_to_8k(pcm(*([7] * count)))
        assert len(out) == expected * 2

    def test_generic_16k_to_24k(self):
        """Non-integer ratios duplicate then decimate."""
        assert samples_of(resample_pcm16(pcm(5, 9), 16000, 24000)) == (5, 5, 9)

    def test_same_rate_is_identity(self):
        data = pcm(1, -1, 2)
        assert resample_pcm16(data, 16000, 16000) == data

    def test_unsupported_rate_rejected(self):
        with pytest.raises(AudioDecodeError):
            resample_pcm16(pcm(1), 44100, 8000)

    def test_odd_length_rejected(self):
        """Odd-length PCM is malformed."""
        with pytest.raises(AudioDecodeError):
            downsample_24k_to_8k(b"\x00\x01\x02")
        with pytest.raises(AudioDecodeError):
            pcm16_to_mulaw(b"\x00")


class TestBase64Framing:
    """Tests for payload decoding."""

    def test_invalid_base64_rejected(self):
        with pytest.raises(AudioDecodeError):
            decode_base64_audio("not base64!!")

    def test_empty_payload_rejected(self):
        with pytest.raises(AudioDecodeError):
            decode_base64_audio("")
        with pytest.raises(AudioDecodeError):
            decode_base64_audio(None)


class TestTelephonyAudioProcessor:
    """Tests for the per-call processor."""

    def test_inbound_produces_16k_pcm(self):
        """μ-law 8kHz payload → PCM16 16kHz frame."""
        processor = TelephonyAudioProcessor()
        payload = base64.b64encode(bytes([0xFF, 0x80])).decode()

        frame = processor.inbound(payload)

        assert frame.format == AI_INPUT_FORMAT
        assert samples_of(frame.data) == (0, 0, 32124, 32124)
        assert frame.sample_count == 4
        assert processor.stats["frames_in"] == 1
        assert processor.stats["bytes_in"] == 2

    def test_outbound_produces_mulaw_payload(self):
        """PCM16 24kHz → base64 μ-law 8kHz."""
        processor = TelephonyAudioProcessor()

        payload = processor.outbound(pcm(0, 0, 0, 1000, 1000, 1000))

        assert base64.b64decode(payload) == bytes([0xFF, 0xCE])
        assert processor.stats["frames_out"] == 1

    def test_rejected_frames_are_counted(self):
        processor = TelephonyAudioProcessor()
        with pytest.raises(AudioDecodeError):
            processor.inbound("%%%")
        with pytest.raises(AudioDecodeError):
            processor.outbound(b"\x01")
        assert processor.stats["frames_rejected"] == 2
        assert processor.stats["frames_in"] == 0

    def test_reset_clears_counters(self):
        processor = TelephonyAudioProcessor()
        processor.inbound(base64.b64encode(b"\xff").decode())
        processor.reset()
        assert processor.stats["frames_in"] == 0
