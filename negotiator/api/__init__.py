"""
Signalling relay surface and wire schemas.
"""
