"""
Document Registry.

Owns document identity (per-tenant control numbers), immutable versions and
the lifecycle state machine:
- draft -> active -> approved -> under_review -> active | archived
- any non-obsolete state -> obsolete
Documents are never deleted; they are archived or made obsolete instead.
"""
