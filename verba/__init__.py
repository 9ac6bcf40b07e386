"""
Verba - push-to-record dictation with adaptive silence auto-stop.

Records from the microphone, ends the recording on its own once the speaker
has stopped talking, transcribes the audio with OpenAI and copies the text
to the clipboard.
"""

__version__ = "0.1.0"
__author__ = "Brian Weaver"
__description__ = "Push-to-record dictation with adaptive silence auto-stop"
