"""
Evidence Linker: document <-> regulatory element links (manual or auto, with confidence).
"""
