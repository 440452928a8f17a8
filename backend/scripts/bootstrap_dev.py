"""
Dev bootstrap script — issue a bearer token (and optionally a webhook
subscription) for local development without going through /auth/login.

Usage:
    python -m scripts.bootstrap_dev [user_id] [webhook_url]

This will:
  1. Issue a token for `user_id` (default "dev-user")
  2. If webhook_url is given, subscribe it to every event type
  3. Print the raw token and webhook secret ONCE (neither is shown again)
"""

import asyncio
import sys

# Ensure the project root is on the path
sys.path.insert(0, ".")

from taskflow_gateway.core.database import async_session_factory, engine
from taskflow_gateway.services import webhooks
from taskflow_gateway.services.events import EVENT_TYPES
from taskflow_gateway.services.token_store import TokenStore


async def main(user_id: str, webhook_url: str | None) -> None:
    # ── Issue token ─────────────────────────────────────────
    issued = await TokenStore(async_session_factory).issue(user_id)

    # ── Optional webhook subscription ───────────────────────
    subscription = None
    if webhook_url:
        async with async_session_factory() as session:
            subscription = await webhooks.create_subscription(
                session,
                owner_user_id=user_id,
                target_url=webhook_url,
                event_types=sorted(EVENT_TYPES),
            )

    # ── Print results ───────────────────────────────────────
    print()
    print("=" * 60)
    print("  Dev Bootstrap Complete")
    print("=" * 60)
    print()
    print(f"  User:       {issued.user_id}")
    print(f"  Token:      {issued.token}")
    print(f"  Expires:    {issued.expires_at:%Y-%m-%d %H:%M:%S %Z}")
    if subscription is not None:
        print()
        print(f"  Webhook:    {subscription.target_url}")
        print(f"  Sub ID:     {subscription.id}")
        print(f"  Secret:     {subscription.secret}")
    print()
    print("  ⚠  Copy these now — they will NEVER be shown again.")
    print("=" * 60)
    print()

    await engine.dispose()


if __name__ == "__main__":
    args = sys.argv[1:]
    asyncio.run(main(args[0] if args else "dev-user", args[1] if len(args) > 1 else None))
