"""ucrbridge: PowerShell session manager and WebSocket relay for Teams voice administration."""

__version__ = "0.1.0"
