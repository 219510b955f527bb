"""
Real-time call notifications for agent consoles.
"""
