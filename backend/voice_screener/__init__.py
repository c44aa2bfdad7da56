"""
Voice Screener
Unattended voice screening interviews over a realtime speech-to-speech connection.
"""

__version__ = "1.0.0"
