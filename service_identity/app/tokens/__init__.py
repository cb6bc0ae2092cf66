"""
Token issuance: signed access/identity/email-verification tokens and the
opaque refresh token lifecycle.
"""
