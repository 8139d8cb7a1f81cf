"""HTTP layer of the giving webhooks service."""
