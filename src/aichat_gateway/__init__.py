"""Local HTTP gateway over chat session transcripts and the claude CLI."""

__version__ = "0.1.0"
