"""
Federated identity: generic OAuth2 providers, the hosted identity platform,
server-held OAuth state and synchronization into local users.
"""
