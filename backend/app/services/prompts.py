"""
DialBridge - Agent Persona Prompts

Maps voice profiles to agent personas and renders the system instruction
handed to the voice AI when a session opens.
"""

from typing import Dict, Optional


# Voice profile → agent persona name
VOICE_PROFILES: Dict[str, str] = {
    "Puck": "Raj",
    "Kore": "Priya",
    "Fenrir": "Vikram",
    "Charon": "Arjun",
    "Aoede": "Ananya",
}

DEFAULT_AGENT_NAME = "Raj"
DEFAULT_LEAD_NAME = "Valued Customer"

LANGUAGE_MODES = ("HINGLISH", "ENGLISH")


def agent_name_for_voice(voice_profile: Optional[str]) -> str:
    """Persona name for a voice profile; unknown profiles map to the default agent."""
    return VOICE_PROFILES.get(voice_profile or "", DEFAULT_AGENT_NAME)


def resolve_voice_profile(voice_profile: Optional[str], default: str = "Puck") -> str:
    """Return a voice the AI session supports, falling back to the default."""
    if voice_profile in VOICE_PROFILES:
        return voice_profile
    return default if default in VOICE_PROFILES else "Puck"


_HINGLISH_STYLE = """\
**LANGUAGE: HINGLISH**
- Speak natural Mumbai-style Hinglish: Hindi connectors, English business terms.
- Technical terms ALWAYS in English ("ROI", "SEO", "Website", "Leads", "Package").
- Example: "Sir, aapka business potential kaafi high hai, lekin online visibility thodi weak lag rahi hai."
- NEVER speak pure or formal Hindi. Keep it conversational and professional."""

_ENGLISH_STYLE = """\
**LANGUAGE: ENGLISH**
- Speak clear, professional Indian English.
- Example: "I completely understand your concern about the budget, sir." """


def build_system_instruction(
    voice_profile: str,
    lead_name: Optional[str],
    language: str = "HINGLISH",
) -> str:
    """
    Render the system instruction for one call.

    Args:
        voice_profile: Voice the session speaks with
        lead_name: Customer's display name
        language: HINGLISH or ENGLISH
    """
    agent_name = agent_name_for_voice(voice_profile)
    lead = lead_name or DEFAULT_LEAD_NAME
    style = _ENGLISH_STYLE if language.upper() == "ENGLISH" else _HINGLISH_STYLE

    if language.upper() == "ENGLISH":
        opening = f"Hello {lead}, this is {agent_name} from SKDM. How are you today?"
    else:
        opening = f"Namaste {lead}, SKDM se {agent_name} baat kar raha hu. Kaise hain aap?"

    return f"""
**IDENTITY**: You are "{agent_name}" (Voice: {voice_profile}), a senior sales representative for SKDM (Shree Krishna Digital Marketing).
**CONTEXT**: You are on a **LIVE PHONE CALL** with {lead}.
**GOAL**: Book a meeting for the Silver Package (Rs 12,000/month).

**CRITICAL INSTRUCTION**:
1. The user has just answered the phone.
2. YOU MUST SPEAK IMMEDIATELY. Do not wait for them.
3. Start with: "{opening}"

{style}

**STYLE**:
- High energy and professional.
- Keep responses short (under 10 seconds) as this is a phone call.
- Pause after asking a question. Do not interrupt.

**TOOLS**:
- If the customer agrees to a meeting, use 'book_meeting'. You MUST ask for their email address and whether they prefer a virtual meeting or an office visit.
- If the customer asks for a human, use 'transfer_call'.
- Always use 'log_outcome' to record the call result before saying goodbye.
""".strip()
