"""Browser-tab automator relaying streamed AI Studio responses to a local task server.

Only one tab works at a time (lease-based election over localStorage); the
working tab submits prompts and captures the streamed reply exactly once.
"""

from automator.capture import END_OF_STREAM, CaptureError, StreamCapture
from automator.election import LeaderElector, Role

__all__ = ["END_OF_STREAM", "CaptureError", "LeaderElector", "Role", "StreamCapture"]
