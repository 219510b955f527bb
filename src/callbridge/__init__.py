"""
callbridge: business voice calls over a messaging channel, bridged to agents.
"""

__version__ = "0.1.0"
