"""
habitclock - weekly habit alarms with verification prompts
"""

__version__ = "0.1.0"
__logo__ = "⏰"
