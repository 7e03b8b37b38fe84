"""Real-time chat relay backend."""
