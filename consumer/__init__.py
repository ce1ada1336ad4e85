"""
Consumer side — long-polls the broker, processes questions one at a time
and acknowledges answers idempotently.
"""
