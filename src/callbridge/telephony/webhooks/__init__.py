"""
Provider webhook endpoints and payload parsing.
"""
