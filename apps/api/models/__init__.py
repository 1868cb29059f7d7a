"""Models package."""

from .video import ProcessingState, Verdict, VideoRecord
