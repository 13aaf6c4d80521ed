"""HTTP and WebSocket surface of the room session."""
