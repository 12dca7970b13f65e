"""
DialBridge - Backend Application Package

This package contains the outbound AI calling backend:
- Carrier webhooks, dial and hangup endpoints
- Real-time media bridge between the carrier socket and the voice AI session
- Call ledger, lifecycle reconciliation and call history
- Tool-call handling for business actions raised by the AI
"""

__version__ = "0.1.0"
