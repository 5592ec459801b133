"""SpoilerShield companion service: capture, detection, relay, sessions and recaps."""
