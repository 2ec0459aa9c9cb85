"""
loopsmith — phase-driven agent execution engine for coding assistants.

    from loopsmith.engine import PhaseController
"""

__version__ = "0.1.0"
