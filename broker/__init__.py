"""
Long-poll broker — owns the question log, answer log, attachment store
and waiter registry, and serves them to the HTTP API.
"""
