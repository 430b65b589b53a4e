"""Administrative HTTP API."""
