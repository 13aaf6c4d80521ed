"""chatsync: realtime room synchronization core for a chat client."""
