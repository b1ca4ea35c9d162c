"""External integrations: gateways, mutation feeds, hub and callbacks."""
