"""API routes package.

- webhooks: Stripe webhook endpoint (registered without prefix at
  /webhooks/stripe, the URL configured in the Stripe dashboard)
"""

from api.routes.webhooks import router as webhooks_router

__all__ = ["webhooks_router"]
