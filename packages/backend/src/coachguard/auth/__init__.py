"""Authentication — identity issuing, session resolution, token transport.

Learn: Three layers, leaves first:
1. providers/ — the credential provider (built-in or Supabase) that signs
   people up, signs them in, and refreshes/revokes their tokens
2. session.py — the SessionResolver, the only component that talks to the
   provider on behalf of a request; owns the expiry policy and the
   single-flighted refresh
3. dependencies.py — FastAPI Depends() wrappers that hand each route an
   explicit, per-request resolved session (no ambient "current user")
"""
