"""mongogui - authentication, session and connection security layer."""

__version__ = "0.1.0"
