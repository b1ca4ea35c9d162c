"""HTTP API: gateway webhooks, on-demand checks and monitoring."""
