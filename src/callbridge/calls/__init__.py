"""
Call lifecycle: models, state machine, persistence and API.
"""
