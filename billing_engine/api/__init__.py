"""HTTP surface: inbound charge outcome webhooks and health checks."""
