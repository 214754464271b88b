"""Authorization policy.

Learn: Two decisions, two places, one of them authoritative:
- route_guard.py — may this browser *navigate* to this page? Advisory:
  it drives redirects for a pleasant UX and is never the last line.
- ownership.py — may this principal read/write this row? Authoritative:
  every data-access handler calls it, whatever the route guard said.

Role checks live here and only here. Call sites never compare role
strings themselves.
"""
