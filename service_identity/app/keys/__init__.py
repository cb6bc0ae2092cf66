"""
Signing key management: generation, the active-key memo and kid lookup.
"""
