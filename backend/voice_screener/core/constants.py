"""
Core Application Constants
Defines interview session configuration and system-wide constants.
"""

# Realtime control channel
DATA_CHANNEL_LABEL = "oai-events"
END_INTERVIEW_TOOL_NAME = "end_interview"

# Termination
END_FAILSAFE_SECONDS = 5.0  # Max wait for goodbye audio once end_interview was called

# Elapsed-time display (soft budget: 15 minute target)
TIMER_TICK_SECONDS = 0.25
INTERVIEW_TARGET_SECONDS = 15 * 60
SOFT_WARNING_SECONDS = 5 * 60
SOFT_ALERT_SECONDS = 15 * 60

# Transcript
TRANSCRIBING_PLACEHOLDER = "Transcribing..."
SESSION_ENDED_MESSAGE = "Interview session ended"

# Media upload type tags
MEDIA_COMBINED = "combined"
MEDIA_CAMERA = "camera"

# Session status values
STATUS_CREATED = "created"
STATUS_IN_PROGRESS = "in-progress"

# Mixed recording audio format
MIX_SAMPLE_RATE = 48000
