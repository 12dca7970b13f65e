"""
DialBridge - Simulated Carrier

Development carrier that accepts every dial without placing a real call.
Use with ``CARRIER_PROVIDER=simulator`` and drive the call by posting
webhooks and opening the media socket by hand.
"""

import logging
import uuid
from typing import Dict, List, Optional

from ..privacy import mask_phone_number
from .base import CarrierProvider, DialResult

logger = logging.getLogger(__name__)


class SimulatorProvider(CarrierProvider):
    """Accepts every dial with a synthetic reference; hangups are recorded only."""

    def __init__(self, accept: bool = True):
        self.accept = accept
        self.dialed: List[str] = []
        self.hangups: List[str] = []
        # call id → synthetic carrier reference
        self.references: Dict[str, str] = {}

    @property
    def name(self) -> str:
        return "simulator"

    async def dial(self, phone_number: str, call_id: str, answer_url: Optional[str] = None) -> DialResult:
        self.dialed.append(call_id)
        logger.info("Simulated dial: call=%s, to=%s", call_id, mask_phone_number(phone_number))
        if not self.accept:
            return DialResult(accepted=False, message="Simulated rejection")
        reference = f"sim-{uuid.uuid4().hex[:12]}"
        self.references[call_id] = reference
        return DialResult(accepted=True, reference=reference, message="queued")

    async def hangup(self, reference: str) -> None:
        self.hangups.append(reference)
        logger.info("Simulated hangup: reference=%s", reference)
