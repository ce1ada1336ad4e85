"""
Push-broadcast relay — fans arbitrary JSON objects out to connected listeners.
"""
