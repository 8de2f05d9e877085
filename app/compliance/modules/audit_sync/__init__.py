"""
External audit-management sync: evidence mappings, the outbound client and export runs.
"""
