"""
Adapters to the Identity service's external collaborators: the record
store, the notification dispatcher and the optional Redis cache.
"""
