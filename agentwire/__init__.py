"""agentwire: process orchestration and streaming output for agent CLIs."""

__version__ = "0.1.0"
