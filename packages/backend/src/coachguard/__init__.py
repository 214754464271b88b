"""CoachGuard — access control for the coaching platform.

Resolves who is making a request, guarantees every identity has a profile,
keeps each user's conversations, messages and progress private, and
throttles the authentication entry points.
"""

__version__ = "0.1.0"
