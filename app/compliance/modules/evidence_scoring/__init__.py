"""
Evidence Scoring Engine: per-element sufficiency (sufficient / partial / insufficient).
"""
