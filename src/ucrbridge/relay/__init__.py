"""WebSocket relay between browser clients and shell sessions."""
