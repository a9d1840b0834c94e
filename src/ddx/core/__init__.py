"""
Core upload state machine, batch orchestration and quota handling.
"""
