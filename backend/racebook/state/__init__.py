"""Client-side state container."""
