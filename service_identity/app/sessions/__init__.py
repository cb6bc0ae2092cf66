"""
Password-based sessions and relying-client validation.
"""
