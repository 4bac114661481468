"""Telephony to voice-AI audio relay"""

from callbridge.services.relay.state import RelayState, RelayEvent, transition
from callbridge.services.relay.audio_relay import AudioRelay

__all__ = ["RelayState", "RelayEvent", "transition", "AudioRelay"]
