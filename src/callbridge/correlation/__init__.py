"""
Correlation of provider and channel events to calls and permissions.
"""
