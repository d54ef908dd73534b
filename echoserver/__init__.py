"""http-echo-server — echo every HTTP request back as JSON."""

__version__ = "0.3.0"
