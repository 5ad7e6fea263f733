"""Language-exchange partner matching and WebRTC signaling."""
