"""CallBridge - telephony to voice-AI relay service"""

__version__ = "1.0.0"
