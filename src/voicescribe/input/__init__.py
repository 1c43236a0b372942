"""Audio input: capture, voice activity and format conversion."""
